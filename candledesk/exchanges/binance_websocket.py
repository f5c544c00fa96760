"""
Binance spot WebSocket kline stream client.

Subscribes to kline events for a list of series via the combined stream
endpoint.  Every event (the forming candle as well as the closing one) is
converted to a ``Candle`` and passed to the *on_candle* callback, which
runs on the event-loop thread.

Streams are batched into groups of at most ``MAX_STREAMS_PER_CONNECTION``
(Binance limits streams per connection).  Each batch runs in its own
``asyncio`` task; all tasks share the same event loop.

Usage::

    stream = BinanceKlineStream(
        series=[SeriesId.parse("BTCUSDT_1m")],
        on_candle=orchestrator.apply_stream_candle,
    )
    await stream.run_forever()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from candledesk.core.models import Candle, SeriesId

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_WS_BASE = "wss://stream.binance.com:9443/stream?streams="

MAX_STREAMS_PER_CONNECTION = 200

# Reconnect delay in seconds, doubled after each failed attempt up to the cap.
_RECONNECT_DELAY_SECS = 5
_MAX_RECONNECT_DELAY_SECS = 60

CandleCallback = Callable[[SeriesId, Candle], object]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def kline_event_to_candle(k: dict) -> Candle:
    """Convert a Binance ``k`` kline payload to a ``Candle``."""
    return Candle(
        ts=int(k["t"]) // 1000,
        open=float(k["o"]),
        high=float(k["h"]),
        low=float(k["l"]),
        close=float(k["c"]),
        volume=float(k["v"]),
    )


# ---------------------------------------------------------------------------
# Stream client
# ---------------------------------------------------------------------------

class BinanceKlineStream:
    """
    Parameters
    ----------
    series : list[SeriesId]
        Series to subscribe to.
    on_candle : CandleCallback
        Signature: ``(series_id, candle) -> Any``.  Called on the
        event-loop thread; must not block.
    closed_only : bool
        Only forward candles whose kline has closed.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        series: list[SeriesId],
        on_candle: CandleCallback,
        closed_only: bool = False,
        base_url: str = _WS_BASE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.series = list(series)
        self.on_candle = on_candle
        self.closed_only = closed_only
        self.base_url = base_url
        self.logger = logger or logging.getLogger(__name__)
        self._by_stream = {self._stream_name(sid): sid for sid in self.series}
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Start all stream batches and run until :meth:`stop` is called."""
        self._stop_event = asyncio.Event()
        batches = self._build_batches()
        self.logger.info(
            f"Starting {len(batches)} WebSocket connection(s) for {len(self.series)} series."
        )
        await asyncio.gather(*(self._run_batch(batch, idx) for idx, batch in enumerate(batches)))

    def stop(self) -> None:
        """Signal all connections to close gracefully."""
        if self._stop_event:
            self._stop_event.set()

    def handle_message(self, raw: str | bytes) -> Optional[tuple[SeriesId, Candle]]:
        """Dispatch one raw combined-stream message; returns what was forwarded."""
        msg = json.loads(raw)
        stream = msg.get("stream", "")
        data = msg.get("data", {})
        if data.get("e") != "kline":
            return None
        sid = self._by_stream.get(stream)
        if sid is None:
            return None
        k = data["k"]
        if self.closed_only and not k.get("x"):
            return None
        candle = kline_event_to_candle(k)
        self.on_candle(sid, candle)
        return sid, candle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _stream_name(sid: SeriesId) -> str:
        return f"{sid.symbol.lower()}@kline_{sid.interval}"

    def _build_batches(self) -> list[list[SeriesId]]:
        n = MAX_STREAMS_PER_CONNECTION
        return [self.series[i : i + n] for i in range(0, len(self.series), n)]

    def _build_url(self, batch: list[SeriesId]) -> str:
        return self.base_url + "/".join(self._stream_name(sid) for sid in batch)

    def _stopping(self) -> bool:
        return bool(self._stop_event and self._stop_event.is_set())

    async def _run_batch(self, batch: list[SeriesId], batch_idx: int) -> None:
        """Listen on one connection, reconnecting with a growing delay."""
        url = self._build_url(batch)
        delay = _RECONNECT_DELAY_SECS
        while not self._stopping():
            try:
                self.logger.info(f"[Batch {batch_idx}] Connecting to {len(batch)} kline streams.")
                async with websockets.connect(url, ping_interval=20, ping_timeout=10) as ws:
                    self.logger.info(f"[Batch {batch_idx}] Connected.")
                    delay = _RECONNECT_DELAY_SECS
                    await self._listen(ws, batch_idx)
            except (ConnectionClosedError, ConnectionClosedOK) as exc:
                if self._stopping():
                    break
                self.logger.warning(f"[Batch {batch_idx}] Stream closed ({exc}); reconnect in {delay}s.")
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
                if self._stopping():
                    break
                self.logger.error(f"[Batch {batch_idx}] Stream error ({exc}); reconnect in {delay}s.")
            if self._stopping():
                break

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, _MAX_RECONNECT_DELAY_SECS)

        self.logger.info(f"[Batch {batch_idx}] Stream stopped.")

    async def _listen(self, ws, batch_idx: int) -> None:
        async for raw in ws:
            if self._stopping():
                break
            try:
                self.handle_message(raw)
            except (ValueError, KeyError, TypeError) as exc:
                self.logger.error(f"[Batch {batch_idx}] Bad kline message: {exc}", exc_info=True)
