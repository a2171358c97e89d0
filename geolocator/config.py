from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError


class LocatorConfigError(ValueError):
    """Raised when locator env configuration is invalid."""


DEFAULT_API_URL = "http://api.lbs.yandex.net/geolocation"
DEFAULT_KEY_PATH = "/etc/yandex.key"
DEFAULT_STATE_PATH = "./geolocator_state.json"
DEFAULT_REQUEST_TIMEOUT_S = 10.0

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


@dataclass(frozen=True)
class LocatorConfig:
    api_url: str
    key_path: Path
    state_path: Path
    fallback_lacf: bool
    fallback_ipf: bool
    wlan_data_allowed: bool
    request_timeout_s: float
    log_level: str
    log_format: str


def load_locator_config_from_env() -> LocatorConfig:
    api_url = os.getenv("GEOLOCATOR_API_URL", DEFAULT_API_URL).strip()
    if not api_url:
        raise LocatorConfigError("GEOLOCATOR_API_URL must be non-empty")

    key_path = os.getenv("GEOLOCATOR_KEY_PATH", DEFAULT_KEY_PATH).strip()
    if not key_path:
        raise LocatorConfigError("GEOLOCATOR_KEY_PATH must be non-empty")

    state_path = os.getenv("GEOLOCATOR_STATE_PATH", DEFAULT_STATE_PATH).strip()
    if not state_path:
        raise LocatorConfigError("GEOLOCATOR_STATE_PATH must be non-empty")

    log_format = os.getenv("LOG_FORMAT", "text").strip().lower() or "text"
    if log_format not in {"text", "json"}:
        raise LocatorConfigError("LOG_FORMAT must be one of: ['json', 'text']")

    return LocatorConfig(
        api_url=api_url,
        key_path=Path(key_path),
        state_path=Path(state_path),
        fallback_lacf=_parse_bool_env("GEOLOCATOR_FALLBACKS_LACF", default=True),
        fallback_ipf=_parse_bool_env("GEOLOCATOR_FALLBACKS_IPF", default=True),
        wlan_data_allowed=_parse_bool_env("GEOLOCATOR_WLAN_DATA_ALLOWED", default=True),
        request_timeout_s=_parse_positive_float_env(
            "GEOLOCATOR_REQUEST_TIMEOUT_S", default=DEFAULT_REQUEST_TIMEOUT_S
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_format=log_format,
    )


def load_api_key(path: Path) -> str:
    """Read the lookup key; called on every attempt so key rotation needs no restart."""

    try:
        key = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError as exc:
        raise ConfigurationError(f"key file {path} does not exist") from exc
    except OSError as exc:
        raise ConfigurationError(f"can't read key file {path}: {exc}") from exc
    if not key:
        raise ConfigurationError(f"key file {path} is empty")
    return key


def _parse_bool_env(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    norm = raw.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    raise LocatorConfigError(f"{name} must be one of: {sorted(_TRUE_VALUES | _FALSE_VALUES)}")


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise LocatorConfigError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise LocatorConfigError(f"{name} must be > 0")
    return parsed
