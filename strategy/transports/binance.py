import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from ingest.market_data import Candle

from strategy.execution_types import OrderIntent, OrderTicket
from strategy.transports.base import ExchangeGateway


__all__ = [
    "BinanceFuturesGateway",
    "BinanceTestnetGateway",
    "SymbolSpec",
    "BinanceAPIError",
    "build_gateway",
]

logger = logging.getLogger(__name__)


@dataclass
class SymbolSpec:
    symbol: str
    quote_asset: str
    status: str
    contract_type: str
    lot_step: Decimal
    tick_size: Decimal
    min_qty: Decimal = Decimal("0")
    filters: List[Dict[str, Any]] = field(default_factory=list)


class BinanceFuturesGateway(ExchangeGateway):
    """USDⓈ-M futures gateway over signed REST plus the user-data stream."""

    name = "binance"
    rest_url = "https://fapi.binance.com"
    ws_url = "wss://fstream.binance.com/ws"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        recv_window: int = 5000,
        timeout_s: float = 15.0,
        rest: Optional[BinanceRESTClient] = None,
    ) -> None:
        self._rest = rest or BinanceRESTClient(
            base_url=self.rest_url,
            api_key=api_key,
            api_secret=api_secret,
            recv_window=recv_window,
            timeout_s=timeout_s,
        )
        self._specs: Dict[str, SymbolSpec] = {}
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self._rest.api_key and self._rest.api_secret)

    async def fetch_exchange_info(self) -> List[SymbolSpec]:
        data = await self._rest.get("/fapi/v1/exchangeInfo")
        if not isinstance(data, dict):
            return []
        specs: List[SymbolSpec] = []
        for payload in data.get("symbols") or []:
            spec = self._parse_symbol_spec(payload)
            if spec is not None:
                specs.append(spec)
        async with self._lock:
            self._specs.update((spec.symbol, spec) for spec in specs)
        return specs

    async def fetch_symbol_spec(self, symbol: str) -> Optional[SymbolSpec]:
        cached = self._specs.get(symbol)
        if cached is not None:
            return cached
        await self.fetch_exchange_info()
        return self._specs.get(symbol)

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        limit: int,
        end_time: Optional[int] = None,
    ) -> List[Candle]:
        params = {
            "symbol": symbol,
            "interval": interval,
            "limit": limit,
            "endTime": end_time,
        }
        payload = await self._rest.get("/fapi/v1/klines", params=params)
        if not isinstance(payload, list):
            return []
        candles: List[Candle] = []
        for row in payload:
            try:
                candles.append(
                    Candle(
                        open_time=int(row[0]),
                        open=float(row[1]),
                        high=float(row[2]),
                        low=float(row[3]),
                        close=float(row[4]),
                        volume=float(row[5]),
                    )
                )
            except (IndexError, TypeError, ValueError):
                logger.debug("Skipping malformed kline for %s: %s", symbol, row)
        return candles

    async def fetch_balance(self) -> Optional[Dict[str, float]]:
        data = await self._rest.get("/fapi/v2/balance", signed=True)
        if not isinstance(data, list):
            return None
        for asset in data:
            if asset.get("asset") != "USDT":
                continue
            return {
                "total": self._as_float(asset.get("balance")) or 0.0,
                "available": self._as_float(asset.get("availableBalance")) or 0.0,
                "unrealized_pnl": self._as_float(asset.get("crossUnPnl")) or 0.0,
            }
        return None

    async def fetch_positions(self) -> List[Dict[str, Any]]:
        data = await self._rest.get("/fapi/v2/positionRisk", signed=True)
        if not isinstance(data, list):
            return []
        positions: List[Dict[str, Any]] = []
        for pos in data:
            amount = self._as_float(pos.get("positionAmt"))
            if not amount:
                continue
            positions.append(
                {
                    "symbol": pos.get("symbol"),
                    "positionAmt": amount,
                    "entryPrice": self._as_float(pos.get("entryPrice")),
                    "markPrice": self._as_float(pos.get("markPrice")),
                    "unrealizedPnl": self._as_float(pos.get("unRealizedProfit")),
                    "leverage": self._as_int(pos.get("leverage")),
                }
            )
        return positions

    async def fetch_position_amount(self, symbol: str) -> Optional[Decimal]:
        data = await self._rest.get(
            "/fapi/v2/positionRisk",
            params={"symbol": symbol},
            signed=True,
        )
        if not isinstance(data, list):
            return None
        for pos in data:
            if pos.get("symbol") != symbol:
                continue
            amount = self._as_decimal(pos.get("positionAmt"))
            if amount is not None:
                return amount
        return None

    async def fetch_position_entry(self, symbol: str) -> Optional[float]:
        data = await self._rest.get(
            "/fapi/v2/positionRisk",
            params={"symbol": symbol},
            signed=True,
        )
        if not isinstance(data, list):
            return None
        for pos in data:
            if pos.get("symbol") == symbol:
                entry = self._as_float(pos.get("entryPrice"))
                if entry:
                    return entry
        return None

    async def fetch_server_time(self) -> int:
        data = await self._rest.get("/fapi/v1/time")
        if not isinstance(data, dict) or "serverTime" not in data:
            raise BinanceAPIError(200, None, "malformed server time response", str(data))
        return int(data["serverTime"])

    async def set_margin_type(self, symbol: str, margin_type: str = "ISOLATED") -> None:
        try:
            await self._rest.post(
                "/fapi/v1/marginType",
                params={"symbol": symbol, "marginType": margin_type},
                signed=True,
            )
        except BinanceAPIError as exc:
            if exc.is_already_set:
                logger.debug("%s margin type already %s", symbol, margin_type)
                return
            raise

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._rest.post(
            "/fapi/v1/leverage",
            params={"symbol": symbol, "leverage": int(leverage)},
            signed=True,
        )

    async def place_order(self, intent: OrderIntent) -> OrderTicket:
        data = await self._rest.post("/fapi/v1/order", params=intent.to_params(), signed=True)
        ticket = self._parse_order_ack(data)
        if ticket is None:
            raise BinanceAPIError(200, None, "unexpected order acknowledgement", str(data))
        return ticket

    async def create_listen_key(self) -> str:
        data = await self._rest.post("/fapi/v1/listenKey")
        if not isinstance(data, dict) or not data.get("listenKey"):
            raise BinanceAPIError(200, None, "listenKey missing from response", str(data))
        return data["listenKey"]

    async def keepalive_listen_key(self, listen_key: str) -> None:
        await self._rest.put("/fapi/v1/listenKey", params={"listenKey": listen_key})

    async def close_listen_key(self, listen_key: str) -> None:
        await self._rest.delete("/fapi/v1/listenKey", params={"listenKey": listen_key})

    def stream_url(self, listen_key: str) -> str:
        return f"{self.ws_url}/{listen_key}"

    async def close(self) -> None:
        async with self._lock:
            await self._rest.close()

    def _parse_symbol_spec(self, payload: Dict[str, Any]) -> Optional[SymbolSpec]:
        symbol = payload.get("symbol")
        if not symbol:
            return None
        tick_size = None
        lot_step = None
        min_qty = Decimal("0")
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and tick_size is None:
                tick_size = self._as_decimal(filt.get("tickSize"))
            elif ftype == "LOT_SIZE" and lot_step is None:
                lot_step = self._as_decimal(filt.get("stepSize"))
                min_qty = self._as_decimal(filt.get("minQty")) or Decimal("0")
        if not tick_size or not lot_step:
            # fall back to the advertised precisions
            tick_size = tick_size or Decimal(1).scaleb(-int(payload.get("pricePrecision") or 0))
            lot_step = lot_step or Decimal(1).scaleb(-int(payload.get("quantityPrecision") or 0))
        return SymbolSpec(
            symbol=symbol,
            quote_asset=payload.get("quoteAsset", ""),
            status=payload.get("status", ""),
            contract_type=payload.get("contractType", ""),
            lot_step=lot_step.normalize(),
            tick_size=tick_size.normalize(),
            min_qty=min_qty,
            filters=list(payload.get("filters", [])),
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        qty_val = payload.get("origQty") or payload.get("executedQty") or payload.get("quantity")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            quantity=self._as_float(qty_val) or 0.0,
            status=payload.get("status"),
            price=self._as_float(payload.get("price")),
            avg_price=self._as_float(payload.get("avgPrice")),
            stop_price=self._as_float(payload.get("stopPrice")),
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_decimal(value: Any) -> Optional[Decimal]:
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None


class BinanceTestnetGateway(BinanceFuturesGateway):
    name = "binance-testnet"
    rest_url = "https://testnet.binancefuture.com"
    ws_url = "wss://stream.binancefuture.com/ws"


def build_gateway(settings) -> BinanceFuturesGateway:
    """Pick the gateway variant once from ``ExchangeSettings``."""
    cls = BinanceTestnetGateway if settings.testnet else BinanceFuturesGateway
    logger.info("Using %s gateway", cls.name)
    return cls(
        api_key=settings.api_key,
        api_secret=settings.api_secret,
        recv_window=settings.recv_window,
        timeout_s=settings.request_timeout_s,
    )
