"""Tests for BinanceKlineStream message handling (no network)."""

import json

import pytest

from candledesk.core.models import Candle, SeriesId
from candledesk.exchanges.binance_websocket import (
    MAX_STREAMS_PER_CONNECTION,
    BinanceKlineStream,
    kline_event_to_candle,
)

T0 = 1_700_000_000 - (1_700_000_000 % 3600)
BTC = SeriesId("BTCUSDT", "1h")
ETH = SeriesId("ETHUSDT", "1m")


def kline_message(stream, closed=False, close="101.5"):
    return json.dumps({
        "stream": stream,
        "data": {
            "e": "kline",
            "s": stream.split("@")[0].upper(),
            "k": {
                "t": T0 * 1000,
                "o": "100.0",
                "h": "102.0",
                "l": "99.0",
                "c": close,
                "v": "7.25",
                "x": closed,
            },
        },
    })


@pytest.fixture
def received():
    return []


@pytest.fixture
def stream(received):
    return BinanceKlineStream([BTC, ETH], on_candle=lambda sid, c: received.append((sid, c)))


def test_kline_event_to_candle():
    k = json.loads(kline_message("btcusdt@kline_1h"))["data"]["k"]
    assert kline_event_to_candle(k) == Candle(T0, 100.0, 102.0, 99.0, 101.5, 7.25)


def test_forming_candle_is_forwarded(stream, received):
    result = stream.handle_message(kline_message("btcusdt@kline_1h"))

    assert result == (BTC, Candle(T0, 100.0, 102.0, 99.0, 101.5, 7.25))
    assert received == [result]


def test_routes_by_stream_name(stream, received):
    stream.handle_message(kline_message("ethusdt@kline_1m"))
    assert received[0][0] == ETH


def test_closed_only_skips_forming_candles(received):
    stream = BinanceKlineStream([BTC], on_candle=lambda sid, c: received.append(c), closed_only=True)

    assert stream.handle_message(kline_message("btcusdt@kline_1h", closed=False)) is None
    assert stream.handle_message(kline_message("btcusdt@kline_1h", closed=True)) is not None
    assert len(received) == 1


@pytest.mark.parametrize("raw", [
    json.dumps({"stream": "btcusdt@trade", "data": {"e": "trade"}}),
    kline_message("solusdt@kline_1h"),
    json.dumps({"result": None, "id": 1}),
])
def test_other_messages_are_ignored(stream, received, raw):
    assert stream.handle_message(raw) is None
    assert received == []


def test_url_and_batches():
    many = [SeriesId(f"SYM{i}USDT", "1m") for i in range(MAX_STREAMS_PER_CONNECTION + 1)]
    stream = BinanceKlineStream(many, on_candle=lambda sid, c: None, base_url="wss://example.test/stream?streams=")

    batches = stream._build_batches()

    assert [len(b) for b in batches] == [MAX_STREAMS_PER_CONNECTION, 1]
    assert stream._build_url(batches[1]) == f"wss://example.test/stream?streams=sym{MAX_STREAMS_PER_CONNECTION}usdt@kline_1m"
