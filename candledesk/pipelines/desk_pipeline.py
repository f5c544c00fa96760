import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from candledesk.core.config import load_config
from candledesk.core.errors import ConfigurationError, InvalidSeriesIdError
from candledesk.core.models import SeriesId
from candledesk.data.ledger_store import LedgerStore
from candledesk.data.storage import SeriesStorage
from candledesk.exchanges.base import MarketDataProvider
from candledesk.exchanges.binance_klines import BinanceKlinesProvider
from candledesk.exchanges.binance_websocket import BinanceKlineStream
from candledesk.exchanges.ccxt_provider import CcxtMarketDataProvider
from candledesk.execution.paper_trader import PaperTrader
from candledesk.indicators.technical import IndicatorCache
from candledesk.strategies.manager import StrategyManager
from candledesk.sync.orchestrator import RealtimeSyncOrchestrator
from candledesk.utils.logger import parse_level, setup_logger

# Project root (two levels up from this file: candledesk/pipelines/ -> repo root)
ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = ROOT / "config" / "candledesk_config.json"


# ---------------------------------------------------------------------------
# STAGE 1: INIT
# ---------------------------------------------------------------------------

def init(config_path: Path = DEFAULT_CONFIG_PATH) -> tuple[dict, logging.Logger]:
    config = load_config(config_path)

    log_path = ROOT / config["data_paths"]["log_path"] / "desk_pipeline.log"
    logger = setup_logger("candledesk", log_path, level=parse_level(config.get("log_level", "INFO")))
    logger.info("========== candledesk starting ==========")
    logger.info("========== Stage 1 ==========")
    logger.info(f"Config loaded from: {config_path}")
    logger.info(
        f"Provider: {config['provider']['name']} | "
        f"Series: {len(config.get('series', []))} | "
        f"Paper trading: {config['execution']['paper_trading']}"
    )
    return config, logger


# ---------------------------------------------------------------------------
# STAGE 2: PROVIDER
# ---------------------------------------------------------------------------

def build_provider(config: dict, logger: logging.Logger) -> MarketDataProvider:
    logger.info("========== Stage 2 ==========")
    provider_cfg = config.get("provider", {})
    name = provider_cfg.get("name", "binance")
    page_size = config.get("sync", {}).get("page_size", provider_cfg.get("page_size", 1000))

    if name == "binance":
        provider = BinanceKlinesProvider(
            base_url=provider_cfg.get("base_url", "https://api.binance.com"),
            page_size=page_size,
            logger=logger,
        )
        if not provider.ping():
            logger.warning("Binance REST API unreachable; sync passes will retry.")
    elif name == "ccxt":
        provider = CcxtMarketDataProvider(
            exchange_id=provider_cfg.get("exchange_id", "binance"),
            venue_type=provider_cfg.get("venue_type", "spot"),
            page_size=page_size,
            logger=logger,
        )
    else:
        raise ConfigurationError(f"Unknown provider: {name!r}")

    logger.info(f"Provider ready: {provider.name} (page size {provider.page_size}).")
    return provider


# ---------------------------------------------------------------------------
# STAGE 3: LOCAL STATE
# ---------------------------------------------------------------------------

def build_orchestrator(
    config: dict,
    provider: MarketDataProvider,
    logger: logging.Logger,
) -> RealtimeSyncOrchestrator:
    """Load series, ledger and strategies from disk and wire the orchestrator."""
    logger.info("========== Stage 3 ==========")
    paths = config["data_paths"]

    storage = SeriesStorage(ROOT / paths["data_path"], provider=provider.name, logger=logger)
    ledger_store = LedgerStore(ROOT / paths["ledger_path"], logger=logger)
    trader = PaperTrader(ledger_store.load(), store=ledger_store, config=config, logger=logger)
    strategies = StrategyManager.load(ROOT / paths["strategies_path"], logger=logger)

    orchestrator = RealtimeSyncOrchestrator(
        provider,
        storage=storage,
        trader=trader,
        indicators=IndicatorCache(logger=logger),
        strategies=strategies,
        config=config,
        logger=logger,
    )

    for entry in config.get("series", []):
        try:
            sid = SeriesId.parse(entry["name"])
        except (KeyError, InvalidSeriesIdError) as exc:
            logger.error(f"Skipping series entry {entry!r}: {exc}")
            continue
        orchestrator.register_series(sid, storage.read_series(sid), active=entry.get("active", True))

    logger.info(f"{len(orchestrator.series)} series registered.")
    return orchestrator


# ---------------------------------------------------------------------------
# STAGE 4: RUN
# ---------------------------------------------------------------------------

async def heartbeat(orchestrator: RealtimeSyncOrchestrator, logger: logging.Logger, interval_sec: int = 600):
    while True:
        await asyncio.sleep(interval_sec)
        account = orchestrator.trader.account if orchestrator.trader else None
        equity = f", equity {account.equity:.2f}" if account else ""
        logger.info(
            f"Heartbeat: render generation {orchestrator.render_generation}, "
            f"{orchestrator.downloads.count} backfill(s) running{equity}."
        )


async def run(config: dict, orchestrator: RealtimeSyncOrchestrator, logger: logging.Logger) -> None:
    logger.info("========== Stage 4 ==========")
    sync_cfg = config.get("sync", {})
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers.
            pass

    stream: Optional[BinanceKlineStream] = None
    tasks = [
        asyncio.create_task(heartbeat(orchestrator, logger, sync_cfg.get("heartbeat_seconds", 600))),
    ]
    if sync_cfg.get("use_websocket") and isinstance(orchestrator.provider, BinanceKlinesProvider):
        stream = BinanceKlineStream(
            series=orchestrator.series,
            on_candle=orchestrator.apply_stream_candle,
            logger=logger,
        )
        tasks.append(asyncio.create_task(stream.run_forever()))

    try:
        await orchestrator.run(stop_event)
    finally:
        if stream is not None:
            stream.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if orchestrator.trader is not None:
            orchestrator.trader.save()
        logger.info("========== candledesk stopped ==========")


def main(config_path: Path = DEFAULT_CONFIG_PATH) -> None:
    config, logger = init(config_path)
    provider = build_provider(config, logger)
    orchestrator = build_orchestrator(config, provider, logger)
    asyncio.run(run(config, orchestrator, logger))


if __name__ == "__main__":
    main()
