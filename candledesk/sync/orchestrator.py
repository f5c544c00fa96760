"""
Periodic sync of every registered series plus paper-trading matching.

Two passes run on the event loop:

Missing-data pass
    Brings each series up to date.  Empty series get a full backfill
    through the ``DownloadManager``; the others fetch everything since
    their last candle (or the last 100 candles when they are far behind).
    Then the internal holes of every series are fetched.  Mutated series
    are saved.
Live-tick pass
    Fetches the latest candle of every active series and merges it.  When
    anything changed, indicators are recomputed once, the render
    generation is bumped and, with paper trading on, every updated price
    goes through pending-order and TP/SL matching and the enabled
    strategies.

Provider calls for different series run concurrently in worker threads.
Merging and matching happen on the loop thread once all fetches of the
pass have returned, so stores and the ledger have a single writer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from candledesk.core.models import Candle, Gap, SeriesId, Trade
from candledesk.data.candle_store import CandleStore, MergeResult
from candledesk.data.storage import SeriesStorage
from candledesk.exchanges.base import MarketDataProvider
from candledesk.execution.paper_trader import PaperTrader
from candledesk.helpers.time_helper import compute_fetch_since, now_ts
from candledesk.indicators.technical import IndicatorCache
from candledesk.strategies.base import MarketContext
from candledesk.strategies.manager import StrategyManager
from candledesk.sync.batch_download import DownloadManager
from candledesk.sync.retry import RetryConfig, RetryExecutor

DEFAULT_TICK_SECONDS = 5
DEFAULT_MISSING_DATA_EVERY = 60


@dataclass
class TickReport:
    updated: list[SeriesId] = field(default_factory=list)
    failed: list[SeriesId] = field(default_factory=list)
    trades: list[Trade] = field(default_factory=list)
    ledger_saved: Optional[bool] = None

    @property
    def changed(self) -> bool:
        return bool(self.updated)


class RealtimeSyncOrchestrator:
    """
    Parameters
    ----------
    provider : MarketDataProvider
        The single candle source; shared by every fetch.
    storage : SeriesStorage, optional
        Saves mutated series.  Nothing is saved without one.
    trader : PaperTrader, optional
        Paper-trading execution; matching is skipped without one or when
        it is disabled.
    indicators : IndicatorCache, optional
        Recomputed for every changed series.
    strategies : StrategyManager, optional
        Evaluated on every newly appended candle when paper trading is on.
    retry : RetryExecutor, optional
        Wraps every provider call.
    downloads : DownloadManager, optional
        Runs full backfills; built from the other arguments if omitted.
    config : dict, optional
        Full app config; reads ``sync`` and ``retry``.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        storage: Optional[SeriesStorage] = None,
        trader: Optional[PaperTrader] = None,
        indicators: Optional[IndicatorCache] = None,
        strategies: Optional[StrategyManager] = None,
        retry: Optional[RetryExecutor] = None,
        downloads: Optional[DownloadManager] = None,
        config: Optional[dict] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or {}
        self.logger = logger or logging.getLogger(__name__)
        self.provider = provider
        self.storage = storage
        self.trader = trader
        self.indicators = indicators
        self.strategies = strategies
        self.retry = retry or RetryExecutor(logger=self.logger)
        self.downloads = downloads or DownloadManager(
            provider,
            retry=self.retry,
            persist=storage.write_series if storage is not None else None,
            on_merge=self._on_backfill_merge,
            config=self.config,
            logger=self.logger,
        )

        sync_cfg = self.config.get("sync", {})
        self.tick_seconds: float = sync_cfg.get("tick_seconds", DEFAULT_TICK_SECONDS)
        self.missing_data_every: int = max(1, sync_cfg.get("missing_data_every", DEFAULT_MISSING_DATA_EVERY))
        self.api_retry = RetryConfig.from_config(self.config, "api")
        self.tick_retry = RetryConfig.from_config(self.config, "non_critical")

        self.render_generation = 0
        self._stores: dict[SeriesId, CandleStore] = {}
        self._active: set[SeriesId] = set()
        self._in_flight: set[SeriesId] = set()
        # Holes the provider had nothing for (e.g. exchange downtime).
        self._unfillable: set[tuple[SeriesId, Gap]] = set()
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Series registry
    # ------------------------------------------------------------------

    def register_series(
        self,
        series_id: SeriesId,
        store: Optional[CandleStore] = None,
        active: bool = True,
    ) -> CandleStore:
        if store is None:
            store = CandleStore(series_id, logger=self.logger)
        self._stores[series_id] = store
        self.set_active(series_id, active)
        self.logger.info(f"[{series_id}] Registered ({len(store)} candles, active={active}).")
        return store

    def set_active(self, series_id: SeriesId, active: bool) -> None:
        if active:
            self._active.add(series_id)
        else:
            self._active.discard(series_id)

    def store(self, series_id: SeriesId) -> Optional[CandleStore]:
        return self._stores.get(series_id)

    @property
    def series(self) -> list[SeriesId]:
        return list(self._stores)

    @property
    def paper_trading(self) -> bool:
        return self.trader is not None and self.trader.enabled

    # ------------------------------------------------------------------
    # Missing-data pass
    # ------------------------------------------------------------------

    async def complete_missing_data(self, now: Optional[int] = None) -> set[SeriesId]:
        """Catch every idle series up to *now*, then fill internal holes."""
        now = now_ts() if now is None else now
        calls = []
        for sid, store in self._stores.items():
            if self._busy(sid):
                continue
            if store.is_empty():
                self.downloads.start(store, now)
                continue
            since, stale = compute_fetch_since(store.max_timestamp(), now, sid.interval_seconds)
            if stale:
                self.logger.info(f"[{sid}] Series is stale; fetching the latest candles since {since}.")
            calls.append((sid, self._bind(self.provider.fetch_candles_since, sid, since), f"candles since {since} {sid}"))

        mutated: set[SeriesId] = set()
        with self._claim(sid for sid, _, _ in calls):
            results, _ = await self._fetch_all(calls, self.api_retry)
            for sid, candles in results:
                if self._stores[sid].merge(candles or []).changed:
                    mutated.add(sid)

        mutated |= await self._internal_gap_pass()
        await self._after_mutation(mutated)
        if mutated:
            self.logger.info(f"Missing-data pass updated {len(mutated)} series.")
        return mutated

    async def complete_internal_gaps(self) -> set[SeriesId]:
        """Fetch every internal hole of every idle series."""
        mutated = await self._internal_gap_pass()
        await self._after_mutation(mutated)
        return mutated

    # ------------------------------------------------------------------
    # Live-tick pass
    # ------------------------------------------------------------------

    async def apply_realtime_updates(self, now: Optional[int] = None) -> TickReport:
        """Fetch and apply the latest candle of every active series."""
        report = TickReport()
        # A running backfill does not block ticks; its pages merge by timestamp.
        targets = [sid for sid in self._active if sid in self._stores and sid not in self._in_flight]
        calls = [
            (sid, self._bind(self.provider.fetch_latest_candle, sid), f"latest candle {sid}")
            for sid in targets
        ]

        updates: list[tuple[SeriesId, Candle, MergeResult]] = []
        with self._claim(targets):
            results, report.failed = await self._fetch_all(calls, self.tick_retry)
            for sid, candle in results:
                if candle is None:
                    continue
                merge = self._stores[sid].update_or_append(candle)
                if merge.changed:
                    updates.append((sid, candle, merge))

        if not updates:
            return report

        report.updated = [sid for sid, _, _ in updates]
        report.trades, ledger_changed = self._apply_updates(updates)
        if ledger_changed:
            report.ledger_saved = await asyncio.to_thread(self.trader.save)
        # A new candle means the previous one closed: save it.
        await self._persist_series({sid for sid, _, merge in updates if merge.added})
        return report

    def apply_stream_candle(self, series_id: SeriesId, candle: Candle) -> list[Trade]:
        """
        Apply a candle pushed by a stream.  Must be called on the event
        loop; saving is scheduled in the background.
        """
        store = self._stores.get(series_id)
        if store is None:
            return []
        merge = store.update_or_append(candle)
        if not merge.changed:
            return []
        trades, ledger_changed = self._apply_updates([(series_id, candle, merge)])
        if ledger_changed:
            self._spawn(asyncio.to_thread(self.trader.save))
        if merge.added:
            self._spawn(self._persist_series({series_id}))
        return trades

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run both passes until *stop_event* is set."""
        self.logger.info(
            f"Sync loop started: {len(self._stores)} series, tick every {self.tick_seconds}s, "
            f"missing-data pass every {self.missing_data_every} ticks."
        )
        tick = 0
        while not stop_event.is_set():
            try:
                if tick % self.missing_data_every == 0:
                    await self.complete_missing_data()
                await self.apply_realtime_updates()
            except Exception as exc:
                self.logger.error(f"Sync pass failed: {exc}", exc_info=True)
            tick += 1
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Sync loop stopped.")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _internal_gap_pass(self) -> set[SeriesId]:
        calls = []
        for sid, store in self._stores.items():
            if self._busy(sid) or store.is_empty():
                continue
            for gap in store.detect_gaps(sid.interval_seconds):
                if (sid, gap) in self._unfillable:
                    continue
                calls.append((
                    (sid, gap),
                    self._bind(self.provider.fetch_candles_in_range, sid, gap.start, gap.end),
                    f"gap ({gap.start}, {gap.end}] {sid}",
                ))
        if not calls:
            return set()

        mutated: set[SeriesId] = set()
        with self._claim({sid for (sid, _), _, _ in calls}):
            results, _ = await self._fetch_all(calls, self.api_retry)
            for (sid, gap), candles in results:
                merge = self._stores[sid].merge(candles or [])
                if merge.added:
                    mutated.add(sid)
                    self.logger.info(f"[{sid}] Gap ({gap.start}, {gap.end}] filled with {merge.added} candles.")
                else:
                    self._unfillable.add((sid, gap))
                    self.logger.debug(f"[{sid}] Provider has no data for gap ({gap.start}, {gap.end}].")
        return mutated

    def _apply_updates(self, updates: list[tuple[SeriesId, Candle, MergeResult]]) -> tuple[list[Trade], bool]:
        """Indicators, render generation and matching for merged candles."""
        for sid, _, _ in updates:
            self._recompute_indicators(sid)
        self.render_generation += 1

        if not self.paper_trading:
            return [], False

        version = self.trader.ledger.version
        trades: list[Trade] = []
        for sid, candle, merge in updates:
            trades.extend(self.trader.on_price(sid.symbol, candle.close, candle.ts))
            if merge.appended and self.strategies is not None:
                trades.extend(self._run_strategies(sid, candle))
        changed = self.trader.ledger.version != version
        if changed:
            self.render_generation += 1
        return trades, changed

    def _run_strategies(self, sid: SeriesId, candle: Candle) -> list[Trade]:
        store = self._stores[sid]
        context = MarketContext(
            symbol=sid.symbol,
            series_id=sid,
            candles=store.to_frame(),
            current_price=candle.close,
            current_volume=candle.volume,
        )
        trades = []
        for reg, result in self.strategies.evaluate_all(context):
            executed = self.trader.apply_signal(
                reg.id, reg.strategy.name, result, sid.symbol, candle.close, candle.ts,
            )
            if isinstance(executed, Trade):
                trades.append(executed)
        return trades

    async def _after_mutation(self, mutated: set[SeriesId]) -> None:
        if not mutated:
            return
        for sid in mutated:
            self._recompute_indicators(sid)
        self.render_generation += 1
        await self._persist_series(mutated)

    async def _persist_series(self, series_ids: Iterable[SeriesId]) -> None:
        if self.storage is None:
            return
        stores = [self._stores[sid] for sid in series_ids]
        if not stores:
            return
        results = await asyncio.gather(
            *(asyncio.to_thread(self.storage.write_series, store) for store in stores),
            return_exceptions=True,
        )
        for store, result in zip(stores, results):
            if isinstance(result, Exception):
                self.logger.error(f"[{store.series_id}] Failed to save series: {result}")

    def _on_backfill_merge(self, store: CandleStore, merge: MergeResult) -> None:
        self._recompute_indicators(store.series_id)
        self.render_generation += 1

    def _recompute_indicators(self, sid: SeriesId) -> None:
        if self.indicators is None:
            return
        try:
            self.indicators.recompute(self._stores[sid])
        except (KeyError, ValueError) as exc:
            self.logger.warning(f"[{sid}] Indicator recompute failed: {exc}")

    async def _fetch_all(self, calls: list[tuple[Any, Callable[[], Any], str]], config: RetryConfig):
        """Run every call concurrently; return ``(successes, failed keys)``."""
        outcomes = await asyncio.gather(
            *(self.retry.execute(fn, config, context) for _, fn, context in calls)
        )
        successes, failed = [], []
        for (key, _, _), outcome in zip(calls, outcomes):
            if outcome.ok:
                successes.append((key, outcome.value))
            else:
                failed.append(key)
        return successes, failed

    def _busy(self, sid: SeriesId) -> bool:
        return sid in self._in_flight or self.downloads.is_downloading(sid)

    def _claim(self, series_ids: Iterable[SeriesId]) -> "_InFlight":
        return _InFlight(self._in_flight, set(series_ids))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _bind(fn: Callable, *args) -> Callable[[], Any]:
        return lambda: fn(*args)


class _InFlight:
    """Marks series as busy for the duration of a ``with`` block."""

    def __init__(self, registry: set[SeriesId], series_ids: set[SeriesId]) -> None:
        self.registry = registry
        self.series_ids = series_ids

    def __enter__(self) -> "_InFlight":
        self.registry.update(self.series_ids)
        return self

    def __exit__(self, *exc) -> None:
        self.registry.difference_update(self.series_ids)
