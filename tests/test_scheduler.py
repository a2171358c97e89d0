from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from geolocator.scheduler import (
    BackOffState,
    QueryHistory,
    QueryRecord,
    QueryScheduler,
    more_info,
    new_cells,
)
from geolocator.snapshot import CarrierInfo, CellObservation, EnvironmentSnapshot, WifiObservation, build_snapshot


class _Clock:
    def __init__(self, start: datetime) -> None:
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float) -> None:
        self._current = self._current + timedelta(seconds=seconds)


def _clock() -> _Clock:
    return _Clock(datetime(2026, 2, 21, 12, 0, 0, tzinfo=timezone.utc))


def _cell(cell_id: int) -> CellObservation:
    return CellObservation(radio_type="lte", mcc=250, mnc=1, location_area_code=7701, cell_id=cell_id)


_WIFI = [WifiObservation(mac_address="00:11:22:33:44:55", signal_strength=-60, name="lab")]


def _snapshot(*cell_ids: int, wifi: bool = True, carrier: CarrierInfo | None = None) -> EnvironmentSnapshot:
    return build_snapshot(cells=[_cell(i) for i in cell_ids], wifi=_WIFI if wifi else None, carrier=carrier)


def test_backoff_factor_stays_in_bounds_and_interval_is_exact() -> None:
    state = BackOffState()
    assert state.factor == 8
    assert state.interval_ms == 140_000

    for _ in range(10):
        state.tighten()
        assert 1 <= state.factor <= 64
        assert state.interval_ms == 60_000 + 10_000 * state.factor
    assert state.factor == 64

    for _ in range(10):
        state.relax()
        assert 1 <= state.factor <= 64
        assert state.interval_ms == 60_000 + 10_000 * state.factor
    assert state.factor == 1


def test_backoff_adjust_targets_six_minutes_per_query() -> None:
    state = BackOffState()
    state.adjust(6.0)
    assert state.factor == 8
    state.adjust(5.0)
    assert state.factor == 8
    state.adjust(3.9)
    assert state.factor == 16
    state.adjust(6.1)
    assert state.factor == 8


def test_history_is_bounded_and_neutral_until_three_entries() -> None:
    clock = _clock()
    history = QueryHistory()
    history.push(clock.now())
    clock.advance(60)
    history.push(clock.now())
    assert history.minutes_per_query() == 6.0

    for _ in range(12):
        clock.advance(60)
        history.push(clock.now())

    assert len(history) == 10
    stamps = history.timestamps()
    assert stamps[0] == clock.now()
    assert stamps[0] > stamps[-1]
    assert history.minutes_per_query() == pytest.approx(9 / 10)


def test_more_info_is_strict_and_asymmetric() -> None:
    towers = {"cellTowers": [{"cellId": 1}]}
    smaller = {**towers, "fallbacks": {"lacf": True, "ipf": True}}
    larger = {**smaller, "carrier": "MTS"}

    assert more_info(larger, smaller) is True
    assert more_info(smaller, larger) is False
    assert more_info(smaller, dict(smaller)) is False
    assert new_cells(larger, smaller) is False


def test_new_cells_compares_distinct_cell_ids() -> None:
    a = {"cellTowers": [{"cellId": 1}, {"cellId": 2}]}
    same = {"cellTowers": [{"cellId": 2}, {"cellId": 1}, {"cellId": 1}]}
    other = {"cellTowers": [{"cellId": 1}, {"cellId": 3}]}

    assert new_cells(a, same) is False
    assert new_cells(a, other) is True
    assert new_cells(a, {}) is True


def test_empty_snapshot_is_never_issued_and_keeps_wifi_grace() -> None:
    scheduler = QueryScheduler(now_fn=_clock().now)
    decision = scheduler.decide(build_snapshot())
    assert decision.issue is False
    assert scheduler.waiting_for_wifi is True
    assert len(scheduler.history) == 0


def test_first_cell_only_trigger_waits_once_for_wifi() -> None:
    scheduler = QueryScheduler(now_fn=_clock().now)

    first = scheduler.decide(_snapshot(1, wifi=False))
    assert first.issue is False
    assert scheduler.waiting_for_wifi is False

    second = scheduler.decide(_snapshot(1, wifi=False))
    assert second.issue is True
    assert second.payload["cellTowers"][0]["cellId"] == 1
    assert second.reasons is not None and second.reasons.first_time_query is True


def test_wifi_present_on_first_trigger_uses_up_wifi_wait() -> None:
    scheduler = QueryScheduler(now_fn=_clock().now)
    decision = scheduler.decide(_snapshot(1))
    assert decision.issue is True
    assert scheduler.waiting_for_wifi is False


def test_later_cell_only_trigger_is_not_postponed() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)
    scheduler.accept(scheduler.decide(_snapshot(1)))

    clock.advance(3600)
    second = scheduler.decide(_snapshot(2, wifi=False))
    assert second.issue is True
    assert second.reasons is not None and second.reasons.new_cells is True


def test_candidate_payload_carries_cells_carrier_and_fallbacks_but_not_wifi() -> None:
    scheduler = QueryScheduler(now_fn=_clock().now)
    decision = scheduler.decide(_snapshot(1, carrier=CarrierInfo("MTS", 250, 1)))

    assert set(decision.payload) == {
        "cellTowers",
        "carrier",
        "considerIp",
        "homeMobileCountryCode",
        "homeMobileNetworkCode",
        "fallbacks",
    }


def test_unchanged_snapshot_within_interval_is_not_eligible() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)

    first = scheduler.decide(_snapshot(1))
    scheduler.accept(first)

    clock.advance(30)
    second = scheduler.decide(_snapshot(1))
    assert second.issue is False
    assert second.reasons is not None and second.reasons.eligible is False
    assert scheduler.backoff.factor == 8
    assert len(scheduler.history) == 1


def test_eligible_request_is_locally_throttled_until_interval_elapses() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)
    scheduler.accept(scheduler.decide(_snapshot(1)))
    record = scheduler.last_query

    clock.advance(30)
    throttled = scheduler.decide(_snapshot(2))
    assert throttled.issue is False
    assert throttled.reasons is not None and throttled.reasons.new_cells is True
    assert scheduler.last_query is record
    assert len(scheduler.history) == 1

    clock.advance(110)
    issued = scheduler.decide(_snapshot(2))
    assert issued.issue is True
    assert issued.reasons is not None and issued.reasons.interval_exceeded is True
    assert len(scheduler.history) == 2


def test_frequent_queries_tighten_backoff() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)

    for cell_id in (1, 2, 3):
        decision = scheduler.decide(_snapshot(cell_id))
        assert decision.issue is True
        scheduler.accept(decision)
        clock.advance(150)
    assert scheduler.backoff.factor == 8

    fourth = scheduler.decide(_snapshot(4))
    assert fourth.issue is True
    scheduler.accept(fourth)
    assert scheduler.backoff.factor == 16
    assert scheduler.backoff.interval_ms == 220_000

    clock.advance(150)
    fifth = scheduler.decide(_snapshot(5))
    assert fifth.issue is False
    assert scheduler.backoff.factor == 32
    assert len(scheduler.history) == 4


def test_sparse_queries_relax_backoff_until_unthrottled() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)

    for cell_id in range(1, 7):
        decision = scheduler.decide(_snapshot(cell_id))
        assert decision.issue is True
        scheduler.accept(decision)
        clock.advance(20 * 60)

    assert scheduler.backoff.factor == 1

    # Fully relaxed back-off lets new information through immediately.
    clock.advance(10)
    scheduler.accept(scheduler.decide(_snapshot(100)))
    clock.advance(10)
    decision = scheduler.decide(_snapshot(101))
    assert decision.issue is True
    assert decision.reasons is not None and decision.reasons.interval_exceeded is False


def test_accept_only_replaces_record_for_issued_decisions() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)

    suppressed = scheduler.decide(build_snapshot())
    scheduler.accept(suppressed)
    assert scheduler.last_query is None

    issued = scheduler.decide(_snapshot(1))
    scheduler.accept(issued)
    assert scheduler.last_query is not None
    assert scheduler.last_query.timestamp == clock.now()
    assert scheduler.last_query.payload == issued.payload


def test_explicit_previous_query_is_used_for_comparison() -> None:
    clock = _clock()
    scheduler = QueryScheduler(now_fn=clock.now)
    candidate = scheduler.decide(_snapshot(1))
    previous = QueryRecord(timestamp=clock.now() - timedelta(seconds=30), payload=dict(candidate.payload))

    decision = scheduler.decide(_snapshot(1), previous)
    assert decision.issue is False
    assert decision.reasons is not None and decision.reasons.eligible is False
