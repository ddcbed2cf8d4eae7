import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from prometheus_client import CollectorRegistry

from analytics.regime import Regime
from api.metrics import MetricsCollector
from monitoring.async_utils import gather_bounded
from strategy.signal_manager import Signal


logger = logging.getLogger(__name__)

SignalCallback = Callable[[List[Signal]], Awaitable[Any]]

# marker for symbols skipped because of short history
_INSUFFICIENT = object()


@dataclass
class ScanSummary:
    symbols: int
    signals: int
    errors: int
    started_at: float
    duration_s: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            'symbols': self.symbols,
            'signals': self.signals,
            'errors': self.errors,
            'started_at': self.started_at,
            'duration_s': round(self.duration_s, 3),
        }


@dataclass
class ScanResult:
    summary: ScanSummary
    signals: Tuple[Signal, ...] = ()
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


class Scanner:
    """
    One scan cycle over the symbol universe.

    Per-symbol pipelines (candles, indicators, regime, signal, risk filter) run
    under a concurrency bound; a failing symbol is counted and logged without
    affecting the others. The accepted batch replaces the previous one.
    """

    def __init__(
        self,
        universe,
        fetcher,
        indicators,
        classifier,
        generator,
        risk_filter,
        book,
        notifier,
        interval: str = '1h',
        candle_limit: int = 200,
        min_history: int = 200,
        concurrency_limit: int = 20,
        state=None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.universe = universe
        self.fetcher = fetcher
        self.indicators = indicators
        self.classifier = classifier
        self.generator = generator
        self.risk_filter = risk_filter
        self.book = book
        self.notifier = notifier
        self.interval = interval
        self.candle_limit = max(candle_limit, min_history)
        self.min_history = min_history
        self.concurrency_limit = concurrency_limit
        self.state = state
        self.metrics = metrics or MetricsCollector(CollectorRegistry())
        self._clock = clock or time.time

    async def scan(self, on_signals: Optional[SignalCallback] = None) -> ScanResult:
        started = self._clock()
        t0 = time.monotonic()
        self.book.clear()

        symbols = await self.universe.get_symbols()
        logger.info("Scan started over %s symbols", len(symbols))

        outcomes = await gather_bounded(symbols, self._analyze, self.concurrency_limit)

        signals: List[Signal] = []
        errors: Dict[str, str] = {}
        skipped: List[str] = []
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                errors[symbol] = str(outcome) or outcome.__class__.__name__
            elif outcome is _INSUFFICIENT:
                skipped.append(symbol)
            elif outcome is not None:
                signals.append(outcome)

        batch = self.book.replace(signals)
        duration = time.monotonic() - t0
        summary = ScanSummary(
            symbols=len(symbols),
            signals=len(batch),
            errors=len(errors),
            started_at=started,
            duration_s=duration,
        )

        if errors:
            preview = '; '.join(f"{s}: {e}" for s, e in list(errors.items())[:10])
            logger.warning("Scan had %s symbol failures: %s", len(errors), preview)
        if skipped:
            logger.debug("Skipped %s symbols with short history", len(skipped))
        logger.info(
            "Scan finished: %s symbols, %s signals, %s errors in %.1fs",
            summary.symbols,
            summary.signals,
            summary.errors,
            duration,
        )

        self.metrics.record_scan(summary.symbols, summary.errors, duration)
        for signal in batch:
            self.metrics.record_signal(signal.regime.value, signal.direction.value)
        if self.state is not None:
            self.state.record_scan(summary.signals, summary.errors, self._clock())

        # all signal notifications in flight at once
        await asyncio.gather(*(self.notifier.send_signal(signal) for signal in batch))
        await self.notifier.send_scan_summary(summary)

        if on_signals is not None and batch:
            try:
                await on_signals(list(batch))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Signal callback failed")

        return ScanResult(summary=summary, signals=batch, errors=errors, skipped=skipped)

    async def _analyze(self, symbol: str):
        candles = await self.fetcher.fetch(symbol, self.interval, self.candle_limit)
        if not candles or len(candles) < self.min_history:
            return _INSUFFICIENT

        indicators = self.indicators.compute(candles)
        if indicators is None:
            return _INSUFFICIENT

        regime = self.classifier.classify_indicators(indicators)
        if regime is Regime.MIXED:
            return None

        candidate = self.generator.generate(candles, indicators, regime)
        if candidate is None:
            return None
        return self.risk_filter.evaluate(symbol, candidate, candles, indicators)

