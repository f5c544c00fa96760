"""
Backfill planning: which ranges of a series are missing, and in which
order to fetch them.

The order is fixed: the recent gap first (current price matters most),
then internal holes newest to oldest, then deep history last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from candledesk.core.models import Gap
from candledesk.data.candle_store import CandleStore
from candledesk.helpers.time_helper import expected_candles, recent_gap_threshold

DEFAULT_FALLBACK_HISTORY_CANDLES = 1000


class GapKind(Enum):
    RECENT = "recent"
    INTERNAL = "internal"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class PlannedRange:
    gap: Gap
    kind: GapKind
    expected_candles: int


@dataclass
class SyncPlan:
    ranges: list[PlannedRange] = field(default_factory=list)

    @property
    def gaps(self) -> list[Gap]:
        return [r.gap for r in self.ranges]

    @property
    def estimated_total(self) -> int:
        return sum(r.expected_candles for r in self.ranges)

    def __len__(self) -> int:
        return len(self.ranges)

    def __bool__(self) -> bool:
        return bool(self.ranges)


class SyncPlanner:
    """
    Parameters
    ----------
    config : dict, optional
        Full app config; reads ``sync.stale_fraction``,
        ``sync.min_stale_seconds`` and ``sync.fallback_history_candles``.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(self, config: Optional[dict] = None, logger: Optional[logging.Logger] = None) -> None:
        sync_cfg = (config or {}).get("sync", {})
        self.stale_fraction: float = sync_cfg.get("stale_fraction", 0.1)
        self.min_stale_seconds: int = sync_cfg.get("min_stale_seconds", 300)
        self.fallback_history_candles: int = sync_cfg.get(
            "fallback_history_candles", DEFAULT_FALLBACK_HISTORY_CANDLES
        )
        self.logger = logger or logging.getLogger(__name__)

    def stale_threshold(self, interval_seconds: int) -> int:
        return recent_gap_threshold(interval_seconds, self.stale_fraction, self.min_stale_seconds)

    def plan(
        self,
        min_ts: Optional[int],
        max_ts: Optional[int],
        interval_seconds: int,
        provider_earliest: Optional[int],
        now: int,
        internal_gaps: Optional[list[Gap]] = None,
    ) -> SyncPlan:
        """
        Build the ordered list of ranges to backfill.

        Parameters
        ----------
        min_ts, max_ts : int or None
            Bounds of the stored series; both ``None`` when it is empty.
        interval_seconds : int
            Series interval.
        provider_earliest : int or None
            Oldest timestamp the provider has; ``None`` when unknown.
        now : int
            Current time in seconds.
        internal_gaps : list[Gap], optional
            Holes from ``CandleStore.detect_gaps``.

        Returns
        -------
        SyncPlan
            ``[recent?, *internal (newest first), historical?]``.
        """
        plan = SyncPlan()

        def add(start: int, end: int, kind: GapKind) -> None:
            if end <= start:
                return
            plan.ranges.append(PlannedRange(
                gap=Gap(start, end),
                kind=kind,
                expected_candles=expected_candles(start, end, interval_seconds),
            ))

        if min_ts is None or max_ts is None:
            if provider_earliest is None:
                start = now - self.fallback_history_candles * interval_seconds
                self.logger.debug(
                    f"Earliest available timestamp unknown; planning the last "
                    f"{self.fallback_history_candles} candles."
                )
            else:
                start = provider_earliest
            add(start, now, GapKind.HISTORICAL)
            return plan

        if max_ts < now - self.stale_threshold(interval_seconds):
            add(max_ts, now, GapKind.RECENT)

        for gap in sorted(internal_gaps or [], key=lambda g: g.start, reverse=True):
            add(gap.start, gap.end, GapKind.INTERNAL)

        if provider_earliest is not None and provider_earliest < min_ts:
            add(provider_earliest, min_ts, GapKind.HISTORICAL)

        return plan

    def plan_for_store(
        self,
        store: CandleStore,
        provider_earliest: Optional[int],
        now: int,
    ) -> SyncPlan:
        interval_seconds = store.series_id.interval_seconds
        plan = self.plan(
            min_ts=store.min_timestamp(),
            max_ts=store.max_timestamp(),
            interval_seconds=interval_seconds,
            provider_earliest=provider_earliest,
            now=now,
            internal_gaps=store.detect_gaps(interval_seconds),
        )
        if plan:
            kinds = ", ".join(f"{r.kind.value}({r.expected_candles})" for r in plan.ranges)
            self.logger.info(
                f"[{store.series_id}] Planned {len(plan)} range(s), "
                f"~{plan.estimated_total} candles: {kinds}"
            )
        return plan
