"""Tests for BatchDownloadCoordinator and DownloadManager

Tests cover:
- Draining a gap in one or several backward pages
- Empty pages and exhausted retries closing a range
- Pause / resume / cancel at batch boundaries
- Persist and merge callbacks
- The per-series download registry
"""

import asyncio

import pytest

from candledesk.core.errors import NetworkError, ValidationError
from candledesk.core.models import SeriesId
from candledesk.data.candle_store import CandleStore
from candledesk.sync.batch_download import BatchDownloadCoordinator, DownloadManager, DownloadState
from candledesk.sync.retry import RetryExecutor
from candledesk.tests.fakes import HOUR, T0, FakeProvider, make_candles, no_sleep

SID = SeriesId("BTCUSDT", "1h")
NOW = T0 + 11 * HOUR + 60


@pytest.fixture
def history():
    return make_candles(T0, 12)


@pytest.fixture
def store(history):
    # First and last candle only: one internal gap of 11 intervals.
    return CandleStore(SID, [history[0], history[11]])


def make_coordinator(store, provider, **kwargs):
    return BatchDownloadCoordinator(
        store,
        provider,
        retry=RetryExecutor(sleep=no_sleep),
        sleep=no_sleep,
        **kwargs,
    )


class TestDrain:
    """Test paging through a planned range."""

    def test_single_batch_fills_gap(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        coordinator = make_coordinator(store, provider)

        progress = asyncio.run(coordinator.run(NOW))

        assert coordinator.state is DownloadState.DONE
        assert progress.estimated_total == 11
        assert progress.candles_fetched == 11
        assert progress.batches == 1
        assert list(store.candles) == history
        assert store.detect_gaps(HOUR) == []

    def test_pages_walk_backward(self, store, history):
        """Each full page moves the upper bound below its oldest candle."""
        provider = FakeProvider({SID: history}, page_size=4, earliest=T0)
        coordinator = make_coordinator(store, provider)

        progress = asyncio.run(coordinator.run(NOW))

        uppers = [call[3] for call in provider.calls_to("fetch_candles_backward")]
        assert uppers == [T0 + 11 * HOUR, T0 + 7 * HOUR - 1, T0 + 3 * HOUR - 1]
        assert progress.batches == 3
        assert progress.candles_fetched == 11
        assert len(store) == 12

    def test_empty_page_completes_range(self, store):
        provider = FakeProvider({}, earliest=T0)
        coordinator = make_coordinator(store, provider)

        asyncio.run(coordinator.plan(NOW))
        outcome = asyncio.run(coordinator.drain_step())

        assert outcome.raw_count == 0
        assert outcome.range_complete
        assert coordinator.state is DownloadState.DONE

    def test_non_retryable_failure_abandons_range(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        provider.failures["fetch_candles_backward"].append(ValidationError("bad symbol"))
        coordinator = make_coordinator(store, provider)

        asyncio.run(coordinator.plan(NOW))
        outcome = asyncio.run(coordinator.drain_step())

        assert outcome.error is not None
        assert outcome.range_complete
        assert coordinator.state is DownloadState.DONE
        assert len(store) == 2

    def test_transient_failure_is_retried(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        provider.failures["fetch_candles_backward"].append(NetworkError("reset"))
        coordinator = make_coordinator(store, provider)

        asyncio.run(coordinator.run(NOW))

        assert len(provider.calls_to("fetch_candles_backward")) == 2
        assert len(store) == 12

    def test_out_of_range_candles_are_dropped(self, history):
        """Candles the provider returns outside the gap are not merged."""
        store = CandleStore(SID, [history[5], history[11]])
        provider = FakeProvider({SID: history}, earliest=history[5].ts)
        coordinator = make_coordinator(store, provider)

        asyncio.run(coordinator.run(NOW))

        assert store.min_timestamp() == history[5].ts
        assert len(store) == 7

    def test_nothing_to_download(self, history):
        store = CandleStore(SID, history)
        provider = FakeProvider({SID: history}, earliest=T0)
        coordinator = make_coordinator(store, provider)

        asyncio.run(coordinator.run(NOW))

        assert coordinator.state is DownloadState.DONE
        assert provider.calls_to("fetch_candles_backward") == []

    def test_persist_and_merge_callbacks(self, store, history):
        saved = []
        merged = []
        provider = FakeProvider({SID: history}, page_size=4, earliest=T0)
        coordinator = make_coordinator(
            store,
            provider,
            persist=lambda s: saved.append(len(s)),
            on_merge=lambda s, result: merged.append(result.added),
        )

        asyncio.run(coordinator.run(NOW))

        assert saved == [6, 10, 12]
        assert merged == [4, 4, 2]

    def test_persist_failure_does_not_stop_download(self, store, history):
        def broken(_store):
            raise OSError("disk full")

        provider = FakeProvider({SID: history}, earliest=T0)
        coordinator = make_coordinator(store, provider, persist=broken)

        asyncio.run(coordinator.run(NOW))

        assert coordinator.state is DownloadState.DONE
        assert len(store) == 12


class TestPauseAndCancel:
    """Test control between batches."""

    def test_paused_coordinator_does_not_fetch(self, store, history):
        provider = FakeProvider({SID: history}, page_size=4, earliest=T0)
        coordinator = make_coordinator(store, provider)
        asyncio.run(coordinator.plan(NOW))

        coordinator.pause()
        outcome = asyncio.run(coordinator.drain_step())

        assert outcome is None
        assert provider.calls_to("fetch_candles_backward") == []

    def test_resume_continues_from_progress(self, store, history):
        provider = FakeProvider({SID: history}, page_size=4, earliest=T0)
        coordinator = make_coordinator(store, provider)
        asyncio.run(coordinator.plan(NOW))
        asyncio.run(coordinator.drain_step())
        coordinator.pause()

        asyncio.run(coordinator.run())
        assert coordinator.state is DownloadState.DRAINING
        assert coordinator.progress.batches == 1

        coordinator.resume()
        progress = asyncio.run(coordinator.run())

        assert coordinator.state is DownloadState.DONE
        assert progress.batches == 3
        assert progress.candles_fetched == 11

    def test_cancel_stops_at_batch_boundary(self, store, history):
        provider = FakeProvider({SID: history}, page_size=4, earliest=T0)
        coordinator = make_coordinator(store, provider)
        asyncio.run(coordinator.plan(NOW))
        asyncio.run(coordinator.drain_step())

        coordinator.cancel()
        asyncio.run(coordinator.run())

        assert coordinator.state is DownloadState.CANCELLED
        assert len(provider.calls_to("fetch_candles_backward")) == 1
        assert len(store) == 6

    def test_cancel_during_last_batch_stays_cancelled(self, store, history):
        """The in-flight page still merges, but the range does not end as DONE."""

        class CancelDuringFetch(FakeProvider):
            def fetch_candles_backward(self, series_id, lower_ts, upper_ts_exclusive):
                coordinator.cancel()
                return super().fetch_candles_backward(series_id, lower_ts, upper_ts_exclusive)

        coordinator = make_coordinator(store, CancelDuringFetch({SID: history}, earliest=T0))

        asyncio.run(coordinator.run(NOW))

        assert coordinator.state is DownloadState.CANCELLED
        assert len(store) == 12


class TestDownloadManager:
    """Test the per-series registry."""

    def make_manager(self, provider):
        return DownloadManager(provider, retry=RetryExecutor(sleep=no_sleep), sleep=no_sleep)

    def test_download_runs_to_completion_and_is_forgotten(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        manager = self.make_manager(provider)

        async def scenario():
            first = manager.start(store, NOW)
            again = manager.start(store, NOW)
            assert first is again
            assert manager.is_downloading(SID)
            await manager.wait_all()

        asyncio.run(scenario())

        assert manager.count == 0
        assert not manager.is_downloading(SID)
        assert len(store) == 12

    def test_pause_keeps_series_registered_until_resumed(self, store, history):
        provider = FakeProvider({SID: history}, page_size=4, earliest=T0)
        manager = self.make_manager(provider)

        async def scenario():
            manager.start(store, NOW)
            manager.pause(SID)
            await manager.wait(SID)
            assert manager.is_paused(SID)
            assert manager.count == 1
            assert manager.progress(SID).batches == 0

            assert manager.resume(SID)
            await manager.wait(SID)

        asyncio.run(scenario())

        assert manager.count == 0
        assert len(store) == 12

    def test_stop_cancels_and_forgets(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        manager = self.make_manager(provider)

        async def scenario():
            coordinator = manager.start(store, NOW)
            assert manager.stop(SID)
            await asyncio.sleep(0)
            return coordinator

        coordinator = asyncio.run(scenario())

        assert manager.count == 0
        assert coordinator.state is DownloadState.CANCELLED
        assert not manager.stop(SID)

    def test_stop_while_planning_cancels(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        manager = self.make_manager(provider)

        async def scenario():
            coordinator = manager.start(store, NOW)
            await asyncio.sleep(0)
            assert coordinator.state is DownloadState.PLANNING
            assert manager.stop(SID)
            await manager.wait(SID)
            return coordinator

        coordinator = asyncio.run(scenario())

        assert coordinator.state is DownloadState.CANCELLED
        assert provider.calls_to("fetch_candles_backward") == []
        assert len(store) == 2

    def test_restart_after_stop_keeps_new_task(self, store, history):
        provider = FakeProvider({SID: history}, earliest=T0)
        manager = self.make_manager(provider)

        async def scenario():
            manager.start(store, NOW)
            await asyncio.sleep(0)
            old_task = manager._tasks[SID]
            manager.stop(SID)

            restarted = manager.start(store, NOW)
            manager.pause(SID)
            new_task = manager._tasks[SID]
            await old_task

            assert manager._tasks.get(SID) is new_task
            assert manager.is_downloading(SID)

            assert manager.resume(SID)
            await manager.wait_all()
            return restarted

        restarted = asyncio.run(scenario())

        assert restarted.state is DownloadState.DONE
        assert manager.count == 0
        assert len(store) == 12

    def test_unknown_series(self):
        manager = self.make_manager(FakeProvider())
        assert not manager.pause(SID)
        assert not manager.resume(SID)
        assert manager.progress(SID) is None
        assert manager.all_progress() == []
