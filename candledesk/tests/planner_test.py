"""Tests for SyncPlanner."""

import pytest

from candledesk.core.models import Gap, SeriesId
from candledesk.data.candle_store import CandleStore
from candledesk.sync.planner import GapKind, SyncPlanner
from candledesk.tests.fakes import HOUR, T0, make_candle, make_candles


@pytest.fixture
def planner():
    return SyncPlanner()


class TestPlan:
    """Test range selection and ordering."""

    def test_empty_series_plans_full_history(self, planner):
        now = T0 + 100 * HOUR

        plan = planner.plan(None, None, HOUR, provider_earliest=T0, now=now)

        assert len(plan) == 1
        assert plan.ranges[0].kind is GapKind.HISTORICAL
        assert plan.gaps == [Gap(T0, now)]
        assert plan.estimated_total == 100

    def test_empty_series_with_unknown_earliest_uses_fallback(self):
        planner = SyncPlanner({"sync": {"fallback_history_candles": 50}})
        now = T0

        plan = planner.plan(None, None, HOUR, provider_earliest=None, now=now)

        assert plan.gaps == [Gap(now - 50 * HOUR, now)]
        assert plan.estimated_total == 50

    def test_order_is_recent_then_internal_newest_first_then_historical(self, planner):
        min_ts = T0
        max_ts = T0 + 100 * HOUR
        now = max_ts + 10 * HOUR
        internal = [Gap(T0 + 10 * HOUR, T0 + 20 * HOUR), Gap(T0 + 50 * HOUR, T0 + 60 * HOUR)]

        plan = planner.plan(min_ts, max_ts, HOUR, provider_earliest=T0 - 30 * HOUR, now=now, internal_gaps=internal)

        assert [r.kind for r in plan.ranges] == [
            GapKind.RECENT, GapKind.INTERNAL, GapKind.INTERNAL, GapKind.HISTORICAL,
        ]
        assert plan.gaps == [
            Gap(max_ts, now),
            Gap(T0 + 50 * HOUR, T0 + 60 * HOUR),
            Gap(T0 + 10 * HOUR, T0 + 20 * HOUR),
            Gap(T0 - 30 * HOUR, min_ts),
        ]
        assert plan.estimated_total == 10 + 10 + 10 + 30

    def test_fresh_series_has_no_recent_gap(self, planner):
        max_ts = T0 + 10 * HOUR
        now = max_ts + HOUR  # within interval + 10%

        plan = planner.plan(T0, max_ts, HOUR, provider_earliest=T0, now=now)

        assert not plan

    def test_recent_gap_after_threshold(self, planner):
        max_ts = T0 + 10 * HOUR
        now = max_ts + 3961

        plan = planner.plan(T0, max_ts, HOUR, provider_earliest=T0, now=now)

        assert plan.gaps == [Gap(max_ts, now)]
        assert plan.ranges[0].kind is GapKind.RECENT

    def test_unknown_earliest_skips_historical(self, planner):
        plan = planner.plan(T0, T0 + HOUR, HOUR, provider_earliest=None, now=T0 + HOUR)
        assert not plan

    def test_stale_threshold_is_configurable(self):
        planner = SyncPlanner({"sync": {"stale_fraction": 0.5, "min_stale_seconds": 60}})
        assert planner.stale_threshold(HOUR) == 5400
        assert planner.stale_threshold(60) == 90


class TestPlanForStore:
    """Test planning straight from a store."""

    def test_reads_bounds_and_gaps_from_store(self, planner):
        sid = SeriesId("BTCUSDT", "1h")
        store = CandleStore(sid, make_candles(T0, 3) + [make_candle(T0 + 10 * HOUR)])
        now = T0 + 10 * HOUR + 60

        plan = planner.plan_for_store(store, provider_earliest=T0, now=now)

        assert plan.gaps == [Gap(T0 + 2 * HOUR, T0 + 10 * HOUR)]
        assert plan.ranges[0].expected_candles == 8
