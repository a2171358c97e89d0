"""Single-flight request lifecycle.

IDLE -> SENDING -> AWAITING_RESPONSE -> IDLE

Each submitted request resolves exactly once, to SUCCESS, PROTOCOL_ERROR,
TRANSPORT_ERROR or TIMED_OUT. The timeout never resolves a request on its
own: it flags the request and cancels the transport call, and the
transport's completion (delivered for the cancellation) does the teardown.
Whatever completion arrives first for a flagged request resolves as TIMED_OUT.
"""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from .errors import ConfigurationError, KeyRejected, ProtocolError, RequestTimedOut, TransportError
from .response import Location, parse_location_response, raise_for_error_body
from .snapshot import WifiObservation, wlan_access_point_fields
from .state import KeyFailureMarker
from .transport import TimerFactory, TimerHandle, Transport, TransportCall, TransportResult, start_thread_timer

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0"
REQUEST_TIMEOUT_S = 10.0


class RequestState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_RESPONSE = "awaiting_response"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    PROTOCOL_ERROR = "protocol_error"
    TRANSPORT_ERROR = "transport_error"
    TIMED_OUT = "timed_out"


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    TIMED_OUT = "timed_out"


class AttemptStatus(str, Enum):
    SENT = "sent"
    IN_FLIGHT = "in_flight"
    KEY_COOLDOWN = "key_cooldown"
    CONFIGURATION_ERROR = "configuration_error"
    TRANSPORT_ERROR = "transport_error"


_ERROR_KINDS = {
    OutcomeKind.PROTOCOL_ERROR: ErrorKind.PROTOCOL,
    OutcomeKind.TRANSPORT_ERROR: ErrorKind.TRANSPORT,
    OutcomeKind.TIMED_OUT: ErrorKind.TIMED_OUT,
}


@dataclass(frozen=True)
class RequestOutcome:
    kind: OutcomeKind
    location: Location | None = None
    detail: str = ""
    key_rejected: bool = False

    def raise_for_error(self) -> Location:
        """Return the location, or raise the error this outcome stands for."""

        if self.kind is OutcomeKind.SUCCESS and self.location is not None:
            return self.location
        if self.key_rejected:
            raise KeyRejected(self.detail)
        if self.kind is OutcomeKind.TIMED_OUT:
            raise RequestTimedOut(self.detail)
        if self.kind is OutcomeKind.PROTOCOL_ERROR:
            raise ProtocolError(self.detail)
        raise TransportError(self.detail)


@dataclass
class InFlightRequest:
    call: TransportCall | None = None
    timer: TimerHandle | None = None
    timed_out: bool = False
    resolved: bool = False


LocationFoundFn = Callable[[float, float, float], None]
ErrorFn = Callable[[ErrorKind, str], None]
OutcomeFn = Callable[[RequestOutcome], None]
KeyLoader = Callable[[], str]


def build_request_body(
    *,
    api_key: str,
    payload: Mapping[str, Any],
    wifi: Iterable[WifiObservation] = (),
) -> dict[str, Any]:
    body: dict[str, Any] = {"common": {"version": PROTOCOL_VERSION, "api_key": api_key}}
    body.update(payload)
    networks = wlan_access_point_fields(wifi)
    if networks:
        body["wifi_networks"] = networks
    return body


class RequestLifecycleManager:
    def __init__(
        self,
        *,
        transport: Transport,
        key_loader: KeyLoader,
        key_failure: KeyFailureMarker,
        api_url: str,
        timeout_s: float = REQUEST_TIMEOUT_S,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.transport = transport
        self.api_url = api_url
        self.timeout_s = float(timeout_s)
        self._key_loader = key_loader
        self._key_failure = key_failure
        self._timer_factory = timer_factory or start_thread_timer

        self._lock = threading.RLock()
        self._state = RequestState.IDLE
        self._in_flight: InFlightRequest | None = None

        self._location_listeners: list[LocationFoundFn] = []
        self._error_listeners: list[ErrorFn] = []
        self._outcome_listeners: list[OutcomeFn] = []

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def on_location_found(self, callback: LocationFoundFn) -> None:
        self._location_listeners.append(callback)

    def on_error(self, callback: ErrorFn) -> None:
        self._error_listeners.append(callback)

    def on_outcome(self, callback: OutcomeFn) -> None:
        self._outcome_listeners.append(callback)

    def attempt_request(
        self,
        payload: Mapping[str, Any],
        wifi: Iterable[WifiObservation] = (),
    ) -> AttemptStatus:
        try:
            api_key = self._key_loader()
        except ConfigurationError as exc:
            logger.warning("unable to load lookup key: %s", exc)
            self._emit_error(ErrorKind.CONFIGURATION, str(exc))
            return AttemptStatus.CONFIGURATION_ERROR

        with self._lock:
            if self._in_flight is not None:
                logger.debug("previous request still in progress")
                return AttemptStatus.IN_FLIGHT

            if self._key_failure.active():
                logger.debug("key failure younger than the cooldown, refusing a new try")
                return AttemptStatus.KEY_COOLDOWN

            body = build_request_body(api_key=api_key, payload=payload, wifi=wifi)
            in_flight = InFlightRequest()
            self._in_flight = in_flight
            self._state = RequestState.SENDING

        # Submit outside the lock: a transport may complete synchronously.
        try:
            call = self.transport.submit(
                self.api_url,
                body,
                functools.partial(self._handle_completion, in_flight),
            )
        except TransportError as exc:
            with self._lock:
                if self._in_flight is in_flight:
                    in_flight.resolved = True
                    self._teardown()
            logger.warning("request submission failed: %s", exc)
            self._publish(RequestOutcome(kind=OutcomeKind.TRANSPORT_ERROR, detail=str(exc)))
            return AttemptStatus.TRANSPORT_ERROR

        with self._lock:
            in_flight.call = call
            if self._in_flight is in_flight and not in_flight.resolved:
                in_flight.timer = self._timer_factory(
                    self.timeout_s,
                    functools.partial(self._handle_timeout, in_flight),
                )
                self._state = RequestState.AWAITING_RESPONSE

        logger.info(
            "lookup request sent",
            extra={"fields": {"url": self.api_url, "sections": sorted(k for k in body if k != "common")}},
        )
        return AttemptStatus.SENT

    def _handle_timeout(self, in_flight: InFlightRequest) -> None:
        with self._lock:
            if self._in_flight is not in_flight or in_flight.resolved:
                return
            in_flight.timed_out = True
            call = in_flight.call

        logger.info("lookup request timed out after %.1fs, aborting", self.timeout_s)
        if call is not None:
            call.cancel()

    def _handle_completion(self, in_flight: InFlightRequest, result: TransportResult) -> None:
        with self._lock:
            if self._in_flight is not in_flight or in_flight.resolved:
                logger.debug("completion for an unknown request ignored")
                return
            in_flight.resolved = True
            if in_flight.timer is not None:
                in_flight.timer.cancel()
            self._teardown()
            outcome = self._resolve(in_flight, result)

        self._publish(outcome)

    def _resolve(self, in_flight: InFlightRequest, result: TransportResult) -> RequestOutcome:
        if in_flight.timed_out:
            return RequestOutcome(kind=OutcomeKind.TIMED_OUT, detail="manual timeout")

        if result.ok:
            try:
                location = parse_location_response(result.body)
            except ProtocolError as exc:
                return RequestOutcome(kind=OutcomeKind.PROTOCOL_ERROR, detail=str(exc))
            self._update_key_failure(self._key_failure.clear)
            return RequestOutcome(kind=OutcomeKind.SUCCESS, location=location)

        key_rejected = False
        try:
            raise_for_error_body(result.body)
        except KeyRejected:
            logger.warning("lookup key rejected by the service, disabling lookups for 12 hours")
            self._update_key_failure(self._key_failure.mark)
            key_rejected = True
        return RequestOutcome(
            kind=OutcomeKind.TRANSPORT_ERROR,
            detail=result.error or "transport error",
            key_rejected=key_rejected,
        )

    @staticmethod
    def _update_key_failure(update: Callable[[], object]) -> None:
        # The outcome is still published when the state file cannot be written.
        try:
            update()
        except OSError as exc:
            logger.error("unable to persist key failure state: %s", exc)

    def _teardown(self) -> None:
        self._in_flight = None
        self._state = RequestState.IDLE

    def _publish(self, outcome: RequestOutcome) -> None:
        for outcome_cb in list(self._outcome_listeners):
            self._call_listener(outcome_cb, outcome)

        if outcome.kind is OutcomeKind.SUCCESS and outcome.location is not None:
            loc = outcome.location
            logger.info(
                "location found",
                extra={"fields": {"latitude": loc.latitude, "longitude": loc.longitude, "accuracy": loc.accuracy}},
            )
            for location_cb in list(self._location_listeners):
                self._call_listener(location_cb, loc.latitude, loc.longitude, loc.accuracy)
            return

        logger.info(
            "lookup request failed",
            extra={
                "fields": {
                    "kind": outcome.kind.value,
                    "detail": outcome.detail,
                    "key_rejected": outcome.key_rejected,
                }
            },
        )
        self._emit_error(_ERROR_KINDS[outcome.kind], outcome.detail)

    def _emit_error(self, kind: ErrorKind, detail: str) -> None:
        for error_cb in list(self._error_listeners):
            self._call_listener(error_cb, kind, detail)

    @staticmethod
    def _call_listener(callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("lookup listener raised")
