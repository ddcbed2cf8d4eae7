import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


class MarketDataFetcher:
    """Backward-paginated candle history for one symbol at a time."""

    def __init__(
        self,
        gateway,
        batch_size: int = 100,
        delay_range_s=(0.5, 0.7),
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.gateway = gateway
        self.batch_size = max(1, int(batch_size))
        self.delay_min_s, self.delay_max_s = delay_range_s
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, gateway, strategy_settings, **kwargs) -> 'MarketDataFetcher':
        return cls(
            gateway,
            batch_size=strategy_settings.batch_size,
            delay_range_s=(strategy_settings.batch_delay_min_s, strategy_settings.batch_delay_max_s),
            **kwargs,
        )

    async def fetch(self, symbol: str, interval: str, limit: int) -> Optional[List[Candle]]:
        """
        Return up to ``limit`` most recent candles, oldest first.

        Returns None when nothing could be fetched and a shorter list when the
        exchange runs out of history. Gateway errors propagate.
        """
        if limit <= 0:
            return None

        by_open_time: Dict[int, Candle] = {}
        end_time: Optional[int] = None
        first = True

        while len(by_open_time) < limit:
            if not first:
                await self._sleep(self._rng.uniform(self.delay_min_s, self.delay_max_s))
            first = False

            wanted = min(self.batch_size, limit - len(by_open_time))
            if end_time is not None:
                # endTime is inclusive, so the boundary candle comes back again
                wanted = min(self.batch_size, wanted + 1)
            batch = await self.gateway.fetch_klines(symbol, interval, wanted, end_time=end_time)
            if not batch:
                break

            before = len(by_open_time)
            for candle in batch:
                by_open_time.setdefault(candle.open_time, candle)

            if len(batch) < wanted or len(by_open_time) == before:
                break
            end_time = batch[0].open_time

        if not by_open_time:
            logger.debug("No candles returned for %s %s", symbol, interval)
            return None

        candles = sorted(by_open_time.values(), key=lambda c: c.open_time)
        if len(candles) > limit:
            candles = candles[-limit:]
        if len(candles) < limit:
            logger.debug("Only %s of %s candles available for %s", len(candles), limit, symbol)
        return candles
