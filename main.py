import asyncio
import logging
from typing import Optional

import uvicorn

from analytics.indicators import IndicatorEngine
from analytics.regime import RegimeClassifier
from api.alerts import build_notifier
from api.fastapi_server import create_app
from api.metrics import MetricsCollector, start_metrics_server
from config import Settings, load_config
from ingest.market_data import MarketDataFetcher
from ingest.symbol_universe import SymbolUniverse
from monitoring.logging_utils import attach_log_buffer, setup_logging
from orchestration.lifecycle import LifecycleController
from orchestration.positions import PositionTracker
from orchestration.scanner import Scanner
from orchestration.state import BotState
from risk.risk_filter import RiskFilter
from strategy.execution import OrderExecutor
from strategy.signal_manager import SignalBook
from strategy.signal_processor import SignalGenerator
from strategy.transports.binance import build_gateway


logger = logging.getLogger(__name__)


class ScannerSystem:
    """Wire every component once from Settings; the API drives it through the controller."""

    def __init__(self, settings: Settings, metrics: Optional[MetricsCollector] = None, log_buffer=None):
        self.settings = settings
        self.metrics = metrics or MetricsCollector()
        self.log_buffer = log_buffer

        self.gateway = build_gateway(settings.exchange)
        self.notifier = build_notifier(settings.notifications)
        self.state = BotState()
        self.book = SignalBook(settings.monitoring.signal_history_size)
        self.tracker = PositionTracker(
            epsilon=settings.positions.epsilon,
            create_from_stream=settings.positions.create_from_stream,
        )

        self.universe = SymbolUniverse.from_settings(self.gateway, settings.strategy)
        self.fetcher = MarketDataFetcher.from_settings(self.gateway, settings.strategy)
        self.scanner = Scanner(
            self.universe,
            self.fetcher,
            IndicatorEngine.from_settings(settings.indicators),
            RegimeClassifier.from_settings(settings.regime),
            SignalGenerator.from_settings(settings.signals),
            RiskFilter.from_settings(settings.filters),
            self.book,
            self.notifier,
            interval=settings.strategy.interval,
            candle_limit=settings.strategy.candle_limit,
            min_history=settings.strategy.min_history,
            concurrency_limit=settings.strategy.concurrency_limit,
            state=self.state,
            metrics=self.metrics,
        )
        self.executor = OrderExecutor(
            self.gateway,
            self.tracker,
            self.state,
            self.notifier,
            settings.orders,
            book=self.book,
            metrics=self.metrics,
        )
        self.controller = LifecycleController(
            settings,
            self.gateway,
            self.scanner,
            self.executor,
            self.tracker,
            self.book,
            self.state,
            self.notifier,
            log_buffer=log_buffer,
            metrics=self.metrics,
        )

    def create_app(self):
        return create_app(
            self.controller,
            cors_origins=self.settings.api.cors_origins,
            auto_start=self.settings.api.auto_start,
        )

    async def close(self) -> None:
        await self.gateway.close()


async def main(config_path: Optional[str] = None):
    settings = Settings.from_config(load_config(config_path))
    monitoring = settings.monitoring
    setup_logging(getattr(logging, monitoring.log_level.upper(), logging.INFO), log_file=monitoring.log_file)
    log_buffer = attach_log_buffer(monitoring.log_buffer_size)

    if monitoring.prometheus_enabled:
        start_metrics_server(monitoring.prometheus_port, monitoring.prometheus_port_scan)

    system = ScannerSystem(settings, log_buffer=log_buffer)
    if not settings.exchange.has_credentials:
        logger.warning("No Binance API credentials configured: scanning only, auto-order unavailable")

    server = uvicorn.Server(
        uvicorn.Config(
            system.create_app(),
            host=settings.api.host,
            port=settings.api.port,
            log_level=monitoring.log_level.lower(),
        )
    )
    try:
        await server.serve()
    finally:
        await system.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("System shutting down on interrupt")


if __name__ == "__main__":
    run()
