from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional


MARKET = "MARKET"
TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"
STOP_MARKET = "STOP_MARKET"


class OrderRejected(Exception):
    """A load-bearing order step failed; the remaining steps were not attempted."""

    def __init__(self, symbol: str, reason: str, step: str = "order"):
        self.symbol = symbol
        self.reason = reason
        self.step = step
        super().__init__(f"{symbol}: {step} rejected ({reason})")


@dataclass(frozen=True)
class OrderIntent:
    """Order parameters handed to the exchange gateway; never persisted."""

    symbol: str
    side: str
    type: str
    quantity: Decimal = Decimal("0")
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    close_position: bool = False
    reduce_only: bool = False
    working_type: Optional[str] = None

    def __post_init__(self):
        if self.quantity < 0:
            raise ValueError("OrderIntent quantity must not be negative")
        if not self.close_position and self.quantity == 0:
            raise ValueError("OrderIntent needs a quantity unless it closes the position")

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.upper(),
            "type": self.type,
            "newOrderRespType": "RESULT",
        }
        if self.close_position:
            params["closePosition"] = "true"
        else:
            params["quantity"] = format(self.quantity, "f")
        if self.price is not None:
            params["price"] = format(self.price, "f")
            params["timeInForce"] = "GTC"
        if self.stop_price is not None:
            params["stopPrice"] = format(self.stop_price, "f")
        if self.reduce_only:
            params["reduceOnly"] = "true"
        if self.working_type:
            params["workingType"] = self.working_type
        return params


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    avg_price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.client_order_id:
            return self.client_order_id
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "avg_price": self.avg_price,
            "stop_price": self.stop_price,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
        }


@dataclass
class ExecutionResult:
    symbol: str
    success: bool
    direction: Optional[str] = None
    quantity: Optional[Decimal] = None
    entry_price: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    leverage: Optional[int] = None
    entry_order: Optional[OrderTicket] = None
    take_profit_order: Optional[OrderTicket] = None
    stop_loss_order: Optional[OrderTicket] = None
    error: Optional[str] = None
    skipped: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def unprotected(self) -> bool:
        """Entry filled but at least one bracket leg is missing."""
        return self.success and (self.take_profit_order is None or self.stop_loss_order is None)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "success": self.success,
            "skipped": self.skipped,
            "direction": self.direction,
            "quantity": format(self.quantity, "f") if self.quantity is not None else None,
            "entry_price": self.entry_price,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "leverage": self.leverage,
            "unprotected": self.unprotected,
            "error": self.error,
            "warnings": list(self.warnings),
            "entry_order": self.entry_order.as_dict() if self.entry_order else None,
        }
