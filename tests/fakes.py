"""
In-memory exchange and notifier doubles shared by the test modules
"""
import sys
import time
from decimal import Decimal
from typing import Dict, List, Optional

sys.path.insert(0, '.')

from api.alerts import NotificationChannel
from ingest.market_data import Candle
from strategy.execution_types import MARKET, OrderTicket
from strategy.transports.base import ExchangeGateway
from strategy.transports.binance import SymbolSpec

HOUR_MS = 3_600_000


def make_spec(symbol='BTCUSDT', lot_step='0.001', tick_size='0.1', min_qty='0', status='TRADING',
              contract_type='PERPETUAL', quote_asset='USDT'):
    return SymbolSpec(
        symbol=symbol,
        quote_asset=quote_asset,
        status=status,
        contract_type=contract_type,
        lot_step=Decimal(lot_step),
        tick_size=Decimal(tick_size),
        min_qty=Decimal(min_qty),
    )


def make_candles(closes, volume=1000.0, spread=0.01, start=1_700_000_000_000, step=HOUR_MS, volumes=None):
    candles = []
    for i, close in enumerate(closes):
        prev = closes[i - 1] if i else close
        candles.append(Candle(
            open_time=start + i * step,
            open=prev,
            high=max(prev, close) * (1 + spread),
            low=min(prev, close) * (1 - spread),
            close=close,
            volume=volumes[i] if volumes is not None else volume,
        ))
    return candles


class FakeGateway(ExchangeGateway):
    name = 'fake'

    def __init__(self, specs=None, candles=None, credentials=True, positions=None):
        self.specs: Dict[str, SymbolSpec] = {s.symbol: s for s in (specs or [])}
        self.candles: Dict[str, List[Candle]] = dict(candles or {})
        self.credentials = credentials
        self.positions: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (positions or {}).items()}
        self.entry_prices: Dict[str, float] = {}
        self.fill_price: Optional[float] = None
        self.balance = {'total': 1000.0, 'available': 1000.0, 'unrealized_pnl': 0.0}
        self.server_time: Optional[int] = None

        self.calls: List[tuple] = []
        self.orders = []
        self.kline_requests: List[tuple] = []
        self.failures: Dict[str, BaseException] = {}
        self.order_failures: Dict[str, BaseException] = {}
        self.kline_failures: Dict[str, BaseException] = {}
        self._order_seq = 0

    def _check(self, method, *args):
        self.calls.append((method,) + args)
        error = self.failures.get(method)
        if error is not None:
            raise error

    def mutations(self):
        return [c for c in self.calls if c[0] in ('set_margin_type', 'set_leverage', 'place_order')]

    @property
    def has_credentials(self) -> bool:
        return self.credentials

    async def fetch_exchange_info(self):
        self._check('fetch_exchange_info')
        return list(self.specs.values())

    async def fetch_symbol_spec(self, symbol):
        self._check('fetch_symbol_spec', symbol)
        return self.specs.get(symbol)

    async def fetch_klines(self, symbol, interval, limit, end_time=None):
        self.kline_requests.append((symbol, interval, limit, end_time))
        error = self.kline_failures.get(symbol)
        if error is not None:
            raise error
        series = self.candles.get(symbol, [])
        if end_time is not None:
            series = [c for c in series if c.open_time <= end_time]
        return series[-limit:]

    async def fetch_balance(self):
        self._check('fetch_balance')
        return dict(self.balance)

    async def fetch_positions(self):
        self._check('fetch_positions')
        return [
            {
                'symbol': symbol,
                'positionAmt': str(amount),
                'entryPrice': self.entry_prices.get(symbol, 100.0),
                'markPrice': self.entry_prices.get(symbol, 100.0),
                'unrealizedPnl': 0.0,
                'leverage': 20,
            }
            for symbol, amount in self.positions.items()
            if amount
        ]

    async def fetch_position_amount(self, symbol):
        self._check('fetch_position_amount', symbol)
        return self.positions.get(symbol, Decimal('0'))

    async def fetch_server_time(self):
        self._check('fetch_server_time')
        return self.server_time if self.server_time is not None else int(time.time() * 1000)

    async def set_margin_type(self, symbol, margin_type='ISOLATED'):
        self._check('set_margin_type', symbol, margin_type)

    async def set_leverage(self, symbol, leverage):
        self._check('set_leverage', symbol, leverage)

    async def place_order(self, intent):
        self.calls.append(('place_order', intent.symbol, intent.type))
        error = self.order_failures.get(intent.type)
        if error is not None:
            raise error
        self.orders.append(intent)
        self._order_seq += 1
        if intent.type == MARKET:
            signed = intent.quantity if intent.side == 'BUY' else -intent.quantity
            current = self.positions.get(intent.symbol, Decimal('0'))
            self.positions[intent.symbol] = Decimal('0') if intent.reduce_only else current + signed
        return OrderTicket(
            symbol=intent.symbol,
            side=intent.side,
            type=intent.type,
            quantity=float(intent.quantity),
            status='FILLED' if intent.type == MARKET else 'NEW',
            avg_price=self.fill_price if intent.type == MARKET else None,
            stop_price=float(intent.stop_price) if intent.stop_price is not None else None,
            exchange_order_id=self._order_seq,
        )

    async def create_listen_key(self):
        self._check('create_listen_key')
        return 'listen-key'

    async def keepalive_listen_key(self, listen_key):
        self._check('keepalive_listen_key', listen_key)

    async def close_listen_key(self, listen_key):
        self._check('close_listen_key', listen_key)

    def stream_url(self, listen_key):
        return f"wss://example.invalid/ws/{listen_key}"


class RecordingNotifier(NotificationChannel):
    name = 'recording'

    def __init__(self, fail_times: int = 0):
        self.sent = []
        self.attempts = 0
        self.fail_times = fail_times

    async def deliver(self, notification):
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise ConnectionError('channel down')
        self.sent.append(notification)

    def kinds(self):
        return [n.kind for n in self.sent]


async def no_sleep(_delay):
    return None
