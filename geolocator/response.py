from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import KeyRejected, ProtocolError

KEY_REJECTED_CODE = 400
UNKNOWN_ACCURACY = -1.0


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    accuracy: float = UNKNOWN_ACCURACY


def _preview(data: bytes) -> str:
    return data[:200].decode("utf-8", errors="replace")


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def parse_location_response(data: bytes) -> Location:
    try:
        doc = json.loads(data)
    except ValueError as exc:
        raise ProtocolError(f"response is not valid JSON: {exc}") from exc

    if not isinstance(doc, Mapping):
        raise ProtocolError(f"expected a JSON object at root level in {_preview(data)!r}")

    position = doc.get("position")
    if not isinstance(position, Mapping) or not position:
        raise ProtocolError(f"no location data found in {_preview(data)!r}")

    latitude = _as_number(position.get("latitude"))
    longitude = _as_number(position.get("longitude"))
    if latitude is None or longitude is None:
        raise ProtocolError(f"latitude or longitude not readable in {_preview(data)!r}")

    accuracy = _as_number(position.get("precision"))
    return Location(
        latitude=latitude,
        longitude=longitude,
        accuracy=UNKNOWN_ACCURACY if accuracy is None else accuracy,
    )


def raise_for_error_body(data: bytes) -> None:
    """Raise KeyRejected when an error body reports the key as invalid.

    Bodies that are not JSON or carry other codes are ignored.
    """

    try:
        doc = json.loads(data)
    except ValueError:
        return
    if not isinstance(doc, Mapping):
        return
    error = doc.get("error")
    if not isinstance(error, Mapping):
        return
    if _as_number(error.get("code")) == KEY_REJECTED_CODE:
        raise KeyRejected(f"lookup key rejected: {_preview(data)}")
