from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from typing import Iterable

from .config import LocatorConfig, load_api_key
from .lifecycle import AttemptStatus, ErrorFn, LocationFoundFn, OutcomeFn, RequestLifecycleManager
from .scheduler import NowFn, QueryDecision, QueryScheduler
from .snapshot import CarrierInfo, CellObservation, EnvironmentSnapshot, WifiObservation, build_snapshot
from .state import JsonFileSettingsStore, KeyFailureMarker
from .transport import RequestsTransport, TimerFactory, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerResult:
    decision: QueryDecision
    status: AttemptStatus | None = None

    @property
    def sent(self) -> bool:
        return self.status is AttemptStatus.SENT


class OnlineLocator:
    """Keeps the latest radio observations and runs lookups on environment changes."""

    def __init__(
        self,
        *,
        scheduler: QueryScheduler,
        manager: RequestLifecycleManager,
        fallback_lacf: bool = True,
        fallback_ipf: bool = True,
        wlan_data_allowed: bool = True,
    ) -> None:
        self.scheduler = scheduler
        self.manager = manager
        self.fallback_lacf = bool(fallback_lacf)
        self.fallback_ipf = bool(fallback_ipf)

        self._lock = threading.RLock()
        self._cells: tuple[CellObservation, ...] = ()
        self._wifi: tuple[WifiObservation, ...] = ()
        self._carrier: CarrierInfo | None = None
        self._wlan_data_allowed = bool(wlan_data_allowed)

    def on_location_found(self, callback: LocationFoundFn) -> None:
        self.manager.on_location_found(callback)

    def on_error(self, callback: ErrorFn) -> None:
        self.manager.on_error(callback)

    def on_outcome(self, callback: OutcomeFn) -> None:
        self.manager.on_outcome(callback)

    @property
    def wlan_data_allowed(self) -> bool:
        return self._wlan_data_allowed

    def set_wlan_data_allowed(self, allowed: bool) -> None:
        with self._lock:
            self._wlan_data_allowed = bool(allowed)

    def update_cells(self, cells: Iterable[CellObservation]) -> None:
        with self._lock:
            self._cells = tuple(cells)

    def update_wifi(self, networks: Iterable[WifiObservation]) -> None:
        with self._lock:
            self._wifi = tuple(networks)

    def update_carrier(self, carrier: CarrierInfo | None) -> None:
        with self._lock:
            self._carrier = carrier

    def snapshot(self) -> EnvironmentSnapshot:
        with self._lock:
            return build_snapshot(
                cells=self._cells,
                wifi=self._wifi if self._wlan_data_allowed else (),
                carrier=self._carrier,
                fallback_lacf=self.fallback_lacf,
                fallback_ipf=self.fallback_ipf,
            )

    def find_location(self) -> TriggerResult:
        """Run one environment-changed trigger."""

        snapshot = self.snapshot()
        decision = self.scheduler.decide(snapshot)
        if not decision.issue:
            return TriggerResult(decision=decision)

        status = self.manager.attempt_request(decision.payload, snapshot.wifi)
        if status is AttemptStatus.SENT:
            self.scheduler.accept(decision)
        else:
            logger.debug("lookup not sent status=%s", status.value)
        return TriggerResult(decision=decision, status=status)


def build_online_locator(
    config: LocatorConfig,
    *,
    transport: Transport | None = None,
    timer_factory: TimerFactory | None = None,
    now_fn: NowFn | None = None,
) -> OnlineLocator:
    key_failure = KeyFailureMarker(JsonFileSettingsStore(path=config.state_path), now_fn=now_fn)
    manager = RequestLifecycleManager(
        transport=transport or RequestsTransport(timeout_s=config.request_timeout_s * 3),
        key_loader=functools.partial(load_api_key, config.key_path),
        key_failure=key_failure,
        api_url=config.api_url,
        timeout_s=config.request_timeout_s,
        timer_factory=timer_factory,
    )
    logger.info(
        "online locator ready api=%s lacf=%s ipf=%s wlan=%s",
        config.api_url,
        config.fallback_lacf,
        config.fallback_ipf,
        config.wlan_data_allowed,
    )
    return OnlineLocator(
        scheduler=QueryScheduler(now_fn=now_fn),
        manager=manager,
        fallback_lacf=config.fallback_lacf,
        fallback_ipf=config.fallback_ipf,
        wlan_data_allowed=config.wlan_data_allowed,
    )
