from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

KEY_FAILURE_TIME_KEY = "/locator/keyfailure_time"
KEY_FAILURE_COOLDOWN = timedelta(hours=12)


class SettingsStore(Protocol):
    """Named value persistence surviving process restarts."""

    def get(self, name: str) -> str | None: ...

    def set(self, name: str, value: str) -> None: ...

    def clear(self, name: str) -> None: ...


class MemorySettingsStore:
    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(values or {})

    def get(self, name: str) -> str | None:
        return self._values.get(name)

    def set(self, name: str, value: str) -> None:
        self._values[name] = value

    def clear(self, name: str) -> None:
        self._values.pop(name, None)


class JsonFileSettingsStore:
    """Small JSON object on disk, rewritten atomically on every change."""

    def __init__(self, *, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._values = self._load()

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._values.get(name)

    def set(self, name: str, value: str) -> None:
        with self._lock:
            self._values[name] = str(value)
            self._save()

    def clear(self, name: str) -> None:
        with self._lock:
            if self._values.pop(name, None) is not None:
                self._save()

    def _load(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("state file unreadable, starting empty path=%s err=%r", self.path, exc)
            return {}

        try:
            parsed: Any = json.loads(raw)
        except ValueError:
            logger.warning("state file is not valid JSON, starting empty path=%s", self.path)
            return {}
        if not isinstance(parsed, Mapping):
            return {}
        return {str(k): str(v) for k, v in parsed.items() if isinstance(v, str)}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._values, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)


class KeyFailureMarker:
    """Last time the service rejected the lookup key.

    A marker in [0, 12h) of age suppresses all requests. Markers from the
    future or older than the cooldown do not.
    """

    def __init__(
        self,
        store: SettingsStore,
        *,
        now_fn: NowFn | None = None,
        cooldown: timedelta = KEY_FAILURE_COOLDOWN,
    ) -> None:
        self._store = store
        self._now_fn = now_fn or _utcnow
        self.cooldown = cooldown

    def failure_time(self) -> datetime | None:
        raw = self._store.get(KEY_FAILURE_TIME_KEY)
        if not raw:
            return None
        try:
            return _parse_dt(raw)
        except ValueError:
            return None

    def active(self) -> bool:
        failed_at = self.failure_time()
        if failed_at is None:
            return False
        age = self._now_fn() - failed_at
        return timedelta(0) <= age < self.cooldown

    def mark(self) -> datetime:
        now = self._now_fn()
        self._store.set(KEY_FAILURE_TIME_KEY, now.astimezone(timezone.utc).isoformat())
        return now

    def clear(self) -> None:
        self._store.clear(KEY_FAILURE_TIME_KEY)


def _parse_dt(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
