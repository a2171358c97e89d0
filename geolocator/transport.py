from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import requests

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResult:
    """Terminal event for one submitted call.

    Exactly one of these is delivered per call. `cancelled` results carry no
    body.
    """

    status_code: int | None = None
    body: bytes = b""
    error: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


CompletionFn = Callable[[TransportResult], None]


class TransportCall(Protocol):
    def cancel(self) -> None: ...


class Transport(Protocol):
    def submit(self, url: str, body: Mapping[str, Any], on_complete: CompletionFn) -> TransportCall:
        """Start a POST and return immediately.

        Raises TransportError when the call cannot even be started.
        """
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def start_thread_timer(delay_s: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(max(0.0, float(delay_s)), callback)
    timer.daemon = True
    timer.start()
    return timer


class _RequestsCall:
    def __init__(self, on_complete: CompletionFn) -> None:
        self._on_complete = on_complete
        self._lock = threading.Lock()
        self._done = False

    def deliver(self, result: TransportResult) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        self._on_complete(result)

    def cancel(self) -> None:
        # requests cannot interrupt an in-progress read; the late response is
        # dropped by deliver() instead.
        self.deliver(TransportResult(error="operation canceled", cancelled=True))


class RequestsTransport:
    """Transport backed by a shared requests.Session and a worker pool."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout_s: float = 30.0,
        max_workers: int = 2,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout_s = float(timeout_s)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="geolocator-http")

    def submit(self, url: str, body: Mapping[str, Any], on_complete: CompletionFn) -> _RequestsCall:
        call = _RequestsCall(on_complete)
        try:
            self._executor.submit(self._run, call, url, dict(body))
        except RuntimeError as exc:
            raise TransportError(f"could not start request: {exc}") from exc
        return call

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.session.close()

    def _run(self, call: _RequestsCall, url: str, body: dict[str, Any]) -> None:
        try:
            resp = self.session.post(url, json=body, timeout=self.timeout_s)
        except requests.RequestException as exc:
            call.deliver(TransportResult(error=f"{type(exc).__name__}: {exc}"))
            return

        if resp.status_code >= 400:
            call.deliver(
                TransportResult(
                    status_code=resp.status_code,
                    body=resp.content,
                    error=f"HTTP {resp.status_code} {resp.reason or ''}".strip(),
                )
            )
            return
        call.deliver(TransportResult(status_code=resp.status_code, body=resp.content))
