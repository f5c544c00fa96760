"""
Resumable, paginated backfill of planned gaps.

One ``BatchDownloadCoordinator`` drives one series through

    IDLE -> PLANNING -> DRAINING -> DONE | CANCELLED

Draining walks each planned range backward from its end, one provider page
per batch, merging every page into the ``CandleStore`` as soon as it
arrives.  Pausing and cancelling are checked only between batches; a
request already in flight always completes.  All state lives in the
``DownloadProgress`` record, so calling ``run()`` again after a pause
resumes exactly where the previous run stopped.

``DownloadManager`` keeps one coordinator per series and runs each as an
asyncio task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from candledesk.core.errors import AppError
from candledesk.core.models import Candle, DownloadProgress, SeriesId
from candledesk.data.candle_store import CandleStore, MergeResult
from candledesk.exchanges.base import MarketDataProvider
from candledesk.sync.planner import SyncPlan, SyncPlanner
from candledesk.sync.retry import RetryConfig, RetryExecutor

DEFAULT_THROTTLE_SECONDS = 0.1

PersistFn = Callable[[CandleStore], Any]
MergeCallback = Callable[[CandleStore, MergeResult], None]


class DownloadState(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    DRAINING = "draining"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class BatchOutcome:
    raw_count: int
    kept_count: int
    merge: MergeResult = field(default_factory=MergeResult)
    range_complete: bool = False
    error: Optional[AppError] = None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class BatchDownloadCoordinator:
    """
    Backfills one series.

    Parameters
    ----------
    store : CandleStore
        Series to fill; merged into after every page.
    provider : MarketDataProvider
        Candle source.
    planner : SyncPlanner, optional
        Builds the ordered gap list.
    retry : RetryExecutor, optional
        Wraps every provider call.
    persist : callable, optional
        Blocking ``persist(store)`` called in a worker thread after every
        page that changed the store.  Failures are logged, not raised.
    on_merge : callable, optional
        ``on_merge(store, result)`` called on the event loop after every
        page that changed the store.
    config : dict, optional
        Full app config; reads ``sync.throttle_seconds`` and ``retry``.
    sleep : callable, optional
        Awaitable sleep used for throttling, ``asyncio.sleep`` by default.
    """

    def __init__(
        self,
        store: CandleStore,
        provider: MarketDataProvider,
        planner: Optional[SyncPlanner] = None,
        retry: Optional[RetryExecutor] = None,
        persist: Optional[PersistFn] = None,
        on_merge: Optional[MergeCallback] = None,
        config: Optional[dict] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        config = config or {}
        self.logger = logger or logging.getLogger(__name__)
        self.store = store
        self.provider = provider
        self.planner = planner or SyncPlanner(config, logger=self.logger)
        self.retry = retry or RetryExecutor(logger=self.logger)
        self.persist = persist
        self.on_merge = on_merge
        self._sleep = sleep or asyncio.sleep

        sync_cfg = config.get("sync", {})
        self.throttle_seconds: float = sync_cfg.get("throttle_seconds", DEFAULT_THROTTLE_SECONDS)
        self.api_retry = RetryConfig.from_config(config, "api")
        self.background_retry = RetryConfig.from_config(config, "non_critical")

        self.state = DownloadState.IDLE
        self.plan_result: Optional[SyncPlan] = None
        self.progress = DownloadProgress(series_id=store.series_id)

    @property
    def series_id(self) -> SeriesId:
        return self.store.series_id

    @property
    def page_size(self) -> int:
        return self.provider.page_size

    @property
    def is_finished(self) -> bool:
        return self.state in (DownloadState.DONE, DownloadState.CANCELLED)

    @property
    def is_paused(self) -> bool:
        return self.progress.paused

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def plan(self, now: Optional[int] = None) -> SyncPlan:
        """Query the provider's earliest timestamp and build the gap list."""
        now = int(time.time()) if now is None else now
        self.state = DownloadState.PLANNING

        outcome = await self.retry.execute(
            lambda: self.provider.check_earliest_available_timestamp(self.series_id),
            self.background_retry,
            context=f"earliest timestamp {self.series_id}",
        )
        if self.state is DownloadState.CANCELLED:
            return SyncPlan()
        earliest = outcome.value if outcome.ok else None
        if earliest is None:
            self.logger.info(
                f"[{self.series_id}] Earliest available timestamp unknown; "
                f"historical range limited to stored data."
            )

        plan = self.planner.plan_for_store(self.store, earliest, now)
        self.plan_result = plan
        self.progress.pending_gaps = plan.gaps
        self.progress.estimated_total = plan.estimated_total
        self.progress.candles_fetched = 0
        self._next_range()

        if self.progress.current_range_start is None:
            self.state = DownloadState.DONE
            self.logger.info(f"[{self.series_id}] Nothing to download.")
        else:
            self.state = DownloadState.DRAINING
        return plan

    async def drain_step(self) -> Optional[BatchOutcome]:
        """
        Fetch and merge one page of the current range.

        Returns ``None`` without touching the provider when the
        coordinator is not draining or is paused.
        """
        if self.state is not DownloadState.DRAINING or self.progress.paused:
            return None

        sid = self.series_id
        start = self.progress.current_range_start
        end = self.progress.current_range_end

        await self._sleep(self.throttle_seconds)
        result = await self.retry.execute(
            lambda: self.provider.fetch_candles_backward(sid, start, end),
            self.api_retry,
            context=f"backfill {sid} ({start}, {end}]",
        )
        self.progress.batches += 1

        if not result.ok:
            # The next planning pass finds whatever this range left behind.
            self.logger.warning(
                f"[{sid}] Abandoning range ({start}, {end}] after "
                f"{result.attempts} attempt(s): {result.error.user_message}"
            )
            outcome = BatchOutcome(raw_count=0, kept_count=0, range_complete=True, error=result.error)
            self._finish_range()
            return outcome

        raw: list[Candle] = list(result.value or [])
        kept = [c for c in raw if start <= c.ts <= end]
        merge = self.store.merge(kept)
        self.progress.candles_fetched += len(kept)
        self.progress.range_candles_fetched += len(kept)

        if merge.changed:
            if self.on_merge is not None:
                self.on_merge(self.store, merge)
            await self._persist()

        complete = self._range_complete(raw, start, end)
        self.logger.debug(
            f"[{sid}] Batch {self.progress.batches}: {len(raw)} raw, {len(kept)} kept, "
            f"{merge.added} new, range {'done' if complete else 'continues'}."
        )

        outcome = BatchOutcome(
            raw_count=len(raw), kept_count=len(kept), merge=merge, range_complete=complete,
        )
        if complete:
            self._finish_range()
        return outcome

    async def run(self, now: Optional[int] = None) -> DownloadProgress:
        """Plan if needed, then drain until done, paused or cancelled."""
        if self.state is DownloadState.IDLE:
            await self.plan(now)
        while self.state is DownloadState.DRAINING and not self.progress.paused:
            await self.drain_step()
        return self.progress

    def pause(self) -> None:
        self.progress.paused = True
        self.logger.info(f"[{self.series_id}] Download paused.")

    def resume(self) -> None:
        self.progress.paused = False
        self.logger.info(f"[{self.series_id}] Download resumed.")

    def cancel(self) -> None:
        if not self.is_finished:
            self.state = DownloadState.CANCELLED
            self.logger.info(
                f"[{self.series_id}] Download cancelled after "
                f"{self.progress.candles_fetched} candles."
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _range_complete(self, raw: list[Candle], start: int, end: int) -> bool:
        if not raw:
            return True
        oldest = min(c.ts for c in raw)
        if oldest <= start or len(raw) < self.page_size:
            return True
        next_end = oldest - 1
        if next_end >= end:
            # The provider ignored the upper bound; stop instead of looping.
            self.logger.warning(f"[{self.series_id}] Provider returned no older candles; closing range.")
            return True
        self.progress.current_range_end = next_end
        return False

    def _finish_range(self) -> None:
        p = self.progress
        self.logger.info(
            f"[{self.series_id}] Range ({p.current_range_start}, {p.current_range_end}] "
            f"complete: {p.range_candles_fetched} candles."
        )
        self._next_range()
        if p.current_range_start is None and self.state is DownloadState.DRAINING:
            self.state = DownloadState.DONE
            self.logger.info(
                f"[{self.series_id}] Download complete: {p.candles_fetched} candles "
                f"(estimated {p.estimated_total}) in {p.batches} batch(es)."
            )

    def _next_range(self) -> None:
        p = self.progress
        p.range_candles_fetched = 0
        if p.pending_gaps:
            gap = p.pending_gaps.pop(0)
            p.current_range_start = gap.start
            p.current_range_end = gap.end
        else:
            p.current_range_start = None
            p.current_range_end = None

    async def _persist(self) -> None:
        if self.persist is None:
            return
        try:
            await asyncio.to_thread(self.persist, self.store)
        except Exception as exc:
            self.logger.error(f"[{self.series_id}] Failed to save series: {exc}")


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class DownloadManager:
    """
    Registry of in-flight backfills, one per series.

    Coordinators are created by ``start`` and dropped once they finish or
    are stopped.  A paused coordinator stays registered; ``resume`` starts
    a new task that continues from its progress.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        planner: Optional[SyncPlanner] = None,
        retry: Optional[RetryExecutor] = None,
        persist: Optional[PersistFn] = None,
        on_merge: Optional[MergeCallback] = None,
        config: Optional[dict] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.provider = provider
        self.config = config or {}
        self.planner = planner or SyncPlanner(self.config, logger=self.logger)
        self.retry = retry or RetryExecutor(logger=self.logger)
        self.persist = persist
        self.on_merge = on_merge
        self._sleep = sleep
        self._coordinators: dict[SeriesId, BatchDownloadCoordinator] = {}
        self._tasks: dict[SeriesId, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, store: CandleStore, now: Optional[int] = None) -> BatchDownloadCoordinator:
        """Start backfilling *store*; returns the existing coordinator if one runs."""
        sid = store.series_id
        existing = self._coordinators.get(sid)
        if existing is not None:
            return existing

        coordinator = BatchDownloadCoordinator(
            store,
            self.provider,
            planner=self.planner,
            retry=self.retry,
            persist=self.persist,
            on_merge=self.on_merge,
            config=self.config,
            sleep=self._sleep,
            logger=self.logger,
        )
        self._coordinators[sid] = coordinator
        self._spawn(coordinator, now)
        self.logger.info(f"[{sid}] Backfill started.")
        return coordinator

    def is_downloading(self, series_id: SeriesId) -> bool:
        coordinator = self._coordinators.get(series_id)
        return coordinator is not None and not coordinator.is_finished

    def pause(self, series_id: SeriesId) -> bool:
        coordinator = self._coordinators.get(series_id)
        if coordinator is None:
            return False
        coordinator.pause()
        return True

    def resume(self, series_id: SeriesId) -> bool:
        coordinator = self._coordinators.get(series_id)
        if coordinator is None:
            return False
        coordinator.resume()
        task = self._tasks.get(series_id)
        if task is None or task.done():
            self._spawn(coordinator, None)
        return True

    def is_paused(self, series_id: SeriesId) -> bool:
        coordinator = self._coordinators.get(series_id)
        return coordinator is not None and coordinator.is_paused

    def stop(self, series_id: SeriesId) -> bool:
        """Cancel at the next batch boundary and forget the series."""
        coordinator = self._coordinators.pop(series_id, None)
        if coordinator is None:
            return False
        coordinator.cancel()
        return True

    def progress(self, series_id: SeriesId) -> Optional[DownloadProgress]:
        coordinator = self._coordinators.get(series_id)
        return coordinator.progress if coordinator else None

    def all_progress(self) -> list[DownloadProgress]:
        return [c.progress for c in self._coordinators.values()]

    @property
    def count(self) -> int:
        return len(self._coordinators)

    async def wait(self, series_id: SeriesId) -> None:
        task = self._tasks.get(series_id)
        if task is not None:
            await task

    async def wait_all(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _spawn(self, coordinator: BatchDownloadCoordinator, now: Optional[int]) -> None:
        sid = coordinator.series_id
        self._tasks[sid] = asyncio.create_task(self._run(coordinator, now))

    async def _run(self, coordinator: BatchDownloadCoordinator, now: Optional[int]) -> None:
        sid = coordinator.series_id
        try:
            await coordinator.run(now)
        except Exception as exc:
            coordinator.cancel()
            self.logger.error(f"[{sid}] Backfill failed: {exc}", exc_info=True)
        finally:
            if coordinator.is_finished:
                if self._coordinators.get(sid) is coordinator:
                    del self._coordinators[sid]
                # A restarted series already owns a newer task.
                if self._tasks.get(sid) is asyncio.current_task():
                    del self._tasks[sid]
