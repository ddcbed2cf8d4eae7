from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from strategy.execution_types import OrderIntent, OrderTicket


class ExchangeGateway(ABC):
    """Everything the scanner and executor need from the exchange.

    Implementations are chosen once at startup (mainnet or testnet); callers
    never branch on the variant.
    """

    name = "exchange"

    @property
    @abstractmethod
    def has_credentials(self) -> bool:
        ...

    @abstractmethod
    async def fetch_exchange_info(self) -> List[Any]:
        """Return every listed symbol as a SymbolSpec."""

    @abstractmethod
    async def fetch_symbol_spec(self, symbol: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        limit: int,
        end_time: Optional[int] = None,
    ) -> List[Any]:
        """Return candles oldest first, ending at ``end_time`` (inclusive) when given."""

    @abstractmethod
    async def fetch_balance(self) -> Optional[Dict[str, float]]:
        ...

    @abstractmethod
    async def fetch_positions(self) -> List[Dict[str, Any]]:
        """Non-flat positions with full field names."""

    @abstractmethod
    async def fetch_position_amount(self, symbol: str) -> Optional[Decimal]:
        ...

    async def fetch_position_entry(self, symbol: str) -> Optional[float]:
        for pos in await self.fetch_positions():
            if pos.get("symbol") == symbol and pos.get("entryPrice"):
                return float(pos["entryPrice"])
        return None

    @abstractmethod
    async def fetch_server_time(self) -> int:
        ...

    @abstractmethod
    async def set_margin_type(self, symbol: str, margin_type: str = "ISOLATED") -> None:
        ...

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        ...

    @abstractmethod
    async def place_order(self, intent: OrderIntent) -> OrderTicket:
        ...

    @abstractmethod
    async def create_listen_key(self) -> str:
        ...

    @abstractmethod
    async def keepalive_listen_key(self, listen_key: str) -> None:
        ...

    @abstractmethod
    async def close_listen_key(self, listen_key: str) -> None:
        ...

    @abstractmethod
    def stream_url(self, listen_key: str) -> str:
        ...

    async def close(self) -> None:
        return None
