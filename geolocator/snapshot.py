from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Literal

RadioType = Literal["gsm", "wcdma", "lte", "unknown"]

WIFI_AGE_MS = 500
_SUPPORTED_RADIO_TYPES = {"gsm", "wcdma", "lte"}
_NOMAP_SUFFIX = "_nomap"


@dataclass(frozen=True)
class CellObservation:
    radio_type: RadioType
    mcc: int
    mnc: int
    location_area_code: int
    cell_id: int
    signal_strength: int = 0


@dataclass(frozen=True)
class WifiObservation:
    mac_address: str
    signal_strength: int
    name: str = ""
    hidden: bool = False
    age_ms: int = WIFI_AGE_MS


@dataclass(frozen=True)
class CarrierInfo:
    carrier_name: str
    home_mcc: int
    home_mnc: int


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """Normalized radio environment used as lookup input.

    Cells and networks are already filtered: everything held here is safe to
    transmit.
    """

    cells: tuple[CellObservation, ...] = ()
    wifi: tuple[WifiObservation, ...] = ()
    carrier: CarrierInfo | None = None
    fallback_lacf: bool = True
    fallback_ipf: bool = True

    @property
    def has_wifi(self) -> bool:
        return bool(self.wifi)

    @property
    def is_empty(self) -> bool:
        return not self.cells and not self.wifi


def is_transmittable_cell(cell: CellObservation) -> bool:
    """Cell estimates need all five of radio type, mcc, mnc, lac and cell id."""

    if cell.radio_type not in _SUPPORTED_RADIO_TYPES:
        return False
    return all(
        int(v) != 0 for v in (cell.mcc, cell.mnc, cell.location_area_code, cell.cell_id)
    )


def is_usable_network(network: WifiObservation) -> bool:
    # Hidden and *_nomap networks must not be used for privacy reasons.
    if network.hidden or network.name.endswith(_NOMAP_SUFFIX):
        return False
    return bool(network.mac_address.strip())


def cell_tower_fields(cells: Iterable[CellObservation]) -> dict[str, Any]:
    towers: list[dict[str, Any]] = []
    for cell in cells:
        if not is_transmittable_cell(cell):
            continue
        tower: dict[str, Any] = {
            "radioType": cell.radio_type,
            "mobileCountryCode": int(cell.mcc),
            "mobileNetworkCode": int(cell.mnc),
            "locationAreaCode": int(cell.location_area_code),
            "cellId": int(cell.cell_id),
        }
        if cell.signal_strength:
            tower["signalStrength"] = int(cell.signal_strength)
        towers.append(tower)

    if not towers:
        return {}
    return {"cellTowers": towers}


def wlan_access_point_fields(networks: Iterable[WifiObservation]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for network in networks:
        if not is_usable_network(network):
            continue
        out.append(
            {
                "mac": network.mac_address.strip(),
                "signal_strength": int(network.signal_strength),
                "age": int(network.age_ms),
            }
        )
    return out


def carrier_fields(carrier: CarrierInfo | None) -> dict[str, Any]:
    if carrier is None:
        return {}
    return {
        "carrier": carrier.carrier_name,
        "considerIp": True,
        "homeMobileCountryCode": int(carrier.home_mcc),
        "homeMobileNetworkCode": int(carrier.home_mnc),
    }


def fallback_fields(*, lacf: bool, ipf: bool) -> dict[str, Any]:
    return {"fallbacks": {"lacf": bool(lacf), "ipf": bool(ipf)}}


def cell_ids_from_payload(payload: dict[str, Any]) -> frozenset[int]:
    ids: set[int] = set()
    towers = payload.get("cellTowers")
    if not isinstance(towers, list):
        return frozenset()
    for tower in towers:
        if not isinstance(tower, dict):
            continue
        cell_id = tower.get("cellId")
        if isinstance(cell_id, int) and not isinstance(cell_id, bool) and cell_id != 0:
            ids.add(cell_id)
    return frozenset(ids)


def build_snapshot(
    *,
    cells: Iterable[CellObservation] | None = None,
    wifi: Iterable[WifiObservation] | None = None,
    carrier: CarrierInfo | None = None,
    fallback_lacf: bool = True,
    fallback_ipf: bool = True,
) -> EnvironmentSnapshot:
    return EnvironmentSnapshot(
        cells=tuple(c for c in (cells or ()) if is_transmittable_cell(c)),
        wifi=tuple(n for n in (wifi or ()) if is_usable_network(n)),
        carrier=carrier,
        fallback_lacf=bool(fallback_lacf),
        fallback_ipf=bool(fallback_ipf),
    )


def parse_observations(
    raw: dict[str, Any],
) -> tuple[list[CellObservation], list[WifiObservation], CarrierInfo | None]:
    """Parse an observation document (as produced by the radio stack dumps).

    Unknown radio types are kept as "unknown" so the builder drops them.
    """

    cells: list[CellObservation] = []
    for item in raw.get("cells") or []:
        if not isinstance(item, dict):
            raise ValueError("'cells' entries must be objects")
        radio = str(item.get("radio_type") or "unknown").strip().lower()
        cells.append(
            CellObservation(
                radio_type=radio if radio in _SUPPORTED_RADIO_TYPES else "unknown",  # type: ignore[arg-type]
                mcc=_as_int(item.get("mcc")),
                mnc=_as_int(item.get("mnc")),
                location_area_code=_as_int(item.get("lac")),
                cell_id=_as_int(item.get("cell_id")),
                signal_strength=_as_int(item.get("signal_strength")),
            )
        )

    wifi: list[WifiObservation] = []
    for item in raw.get("wifi") or []:
        if not isinstance(item, dict):
            raise ValueError("'wifi' entries must be objects")
        wifi.append(
            WifiObservation(
                mac_address=str(item.get("mac") or ""),
                signal_strength=_as_int(item.get("signal_strength")),
                name=str(item.get("name") or ""),
                hidden=bool(item.get("hidden", False)),
            )
        )

    carrier: CarrierInfo | None = None
    carrier_raw = raw.get("carrier")
    if isinstance(carrier_raw, dict):
        carrier = CarrierInfo(
            carrier_name=str(carrier_raw.get("name") or ""),
            home_mcc=_as_int(carrier_raw.get("mcc")),
            home_mnc=_as_int(carrier_raw.get("mnc")),
        )

    return cells, wifi, carrier


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return 0
