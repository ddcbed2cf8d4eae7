import asyncio
import logging
import time
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)


class SymbolUniverse:
    """Time-cached list of tradable USDT perpetual symbols."""

    def __init__(
        self,
        gateway,
        quote_asset: str = 'USDT',
        contract_type: str = 'PERPETUAL',
        ttl_s: float = 3600.0,
        max_symbols: Optional[int] = 500,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.gateway = gateway
        self.quote_asset = quote_asset
        self.contract_type = contract_type
        self.ttl_s = ttl_s
        self.max_symbols = max_symbols
        self._clock = clock or time.monotonic
        self._symbols: List[str] = []
        self._updated_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, gateway, strategy_settings, **kwargs) -> 'SymbolUniverse':
        return cls(
            gateway,
            quote_asset=strategy_settings.quote_asset,
            contract_type=strategy_settings.contract_type,
            ttl_s=strategy_settings.symbol_cache_ttl_s,
            max_symbols=strategy_settings.max_symbols,
            **kwargs,
        )

    @property
    def is_stale(self) -> bool:
        if self._updated_at is None:
            return True
        return self._clock() - self._updated_at > self.ttl_s

    def invalidate(self) -> None:
        self._updated_at = None

    async def get_symbols(self) -> List[str]:
        """Never raises; on refresh failure the previous cache is returned."""
        async with self._lock:
            if self.is_stale:
                await self._refresh()
            return list(self._symbols)

    async def _refresh(self) -> None:
        try:
            specs = await self.gateway.fetch_exchange_info()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Symbol universe refresh failed, keeping %s cached symbols: %s", len(self._symbols), e)
            return

        symbols = [
            spec.symbol
            for spec in specs
            if spec.status == 'TRADING'
            and spec.contract_type == self.contract_type
            and spec.quote_asset == self.quote_asset
        ]
        if self.max_symbols and len(symbols) > self.max_symbols:
            logger.info("Capping symbol universe at %s of %s", self.max_symbols, len(symbols))
            symbols = symbols[:self.max_symbols]
        self._symbols = symbols
        self._updated_at = self._clock()
        logger.info("Symbol universe refreshed: %s symbols", len(symbols))
