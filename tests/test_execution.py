import asyncio
import sys
from datetime import date
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from analytics.regime import Regime
from config.settings import OrderSettings
from ingest.binance_rest import BinanceAPIError
from orchestration.positions import Position, PositionTracker
from orchestration.state import BotState
from strategy.execution import DAILY_LIMIT_REACHED, OrderExecutor
from strategy.execution_types import MARKET, STOP_MARKET, TAKE_PROFIT_MARKET, OrderRejected
from strategy.signal_manager import Direction, Signal, SignalBook
from tests.fakes import FakeGateway, RecordingNotifier, make_spec

TODAY = date(2024, 5, 1)


def _signal(symbol='BTCUSDT', direction=Direction.LONG, price=100.0, strength=70, tp_roi=9.0):
    return Signal(
        symbol=symbol,
        direction=direction,
        price=price,
        strength=strength,
        tp_roi=tp_roi,
        sl_roi=-4.5,
        reason='test',
        regime=Regime.TRENDING,
    )


def _setup(symbols=('BTCUSDT',), **order_overrides):
    gateway = FakeGateway(specs=[make_spec(s) for s in symbols])
    gateway.fill_price = 100.0
    tracker = PositionTracker()
    state = BotState(today=lambda: TODAY)
    notifier = RecordingNotifier()
    book = SignalBook()
    executor = OrderExecutor(gateway, tracker, state, notifier, OrderSettings(**order_overrides), book=book)
    return executor, gateway, tracker, state, notifier, book


def _api_error(code, msg, status=400):
    return BinanceAPIError(status, code, msg, '{}')


def test_places_entry_then_brackets():
    executor, gateway, tracker, state, notifier, book = _setup()
    signal = _signal()
    book.replace([signal])

    result = asyncio.run(executor.place_order(signal))

    assert result.success
    assert not result.unprotected
    assert result.quantity == Decimal('2.000')
    assert [c[0] for c in gateway.mutations()] == ['set_margin_type', 'set_leverage', 'place_order', 'place_order', 'place_order']
    entry, tp, sl = gateway.orders
    assert (entry.type, entry.side, entry.quantity) == (MARKET, 'BUY', Decimal('2.000'))
    assert (tp.type, tp.side, tp.stop_price, tp.close_position) == (TAKE_PROFIT_MARKET, 'SELL', Decimal('100.2'), True)
    assert (sl.type, sl.side, sl.stop_price) == (STOP_MARKET, 'SELL', Decimal('99.9'))
    assert sl.working_type == 'MARK_PRICE'

    assert tracker.get('BTCUSDT').take_profit == 100.2
    assert state.daily_order_count == 1
    assert len(book) == 0
    assert 'order' in notifier.kinds()


def test_short_entry_uses_mirrored_sides():
    executor, gateway, *_ = _setup()
    result = asyncio.run(executor.place_order(_signal(direction=Direction.SHORT)))
    entry, tp, sl = gateway.orders
    assert entry.side == 'SELL'
    assert tp.side == sl.side == 'BUY'
    assert result.take_profit == 99.8
    assert result.stop_loss == 100.1


def test_margin_already_set_and_clock_skew_are_tolerated():
    executor, gateway, *_ = _setup()
    gateway.failures['set_margin_type'] = _api_error(-4046, 'No need to change margin type.')
    gateway.failures['set_leverage'] = _api_error(-1021, 'Timestamp for this request is outside of the recvWindow.')
    result = asyncio.run(executor.place_order(_signal()))
    assert result.success


def test_fatal_leverage_error_aborts_before_entry():
    executor, gateway, tracker, state, notifier, _ = _setup()
    gateway.failures['set_leverage'] = _api_error(-4028, 'Leverage 200 is not valid')

    result = asyncio.run(executor.place_order(_signal()))

    assert not result.success
    assert 'leverage' in result.error
    assert gateway.orders == []
    assert len(tracker) == 0
    assert state.daily_order_count == 0
    assert notifier.kinds() == ['order_failed']


def test_fatal_margin_error_aborts():
    executor, gateway, *_ = _setup()
    gateway.failures['set_margin_type'] = _api_error(-1102, 'Mandatory parameter was not sent', status=400)
    result = asyncio.run(executor.place_order(_signal()))
    assert not result.success
    assert ('set_leverage', 'BTCUSDT', 20) not in gateway.calls


def test_zero_quantity_rejects_without_exchange_mutation():
    executor, gateway, *_ = _setup()
    gateway.specs['BTCUSDT'] = make_spec('BTCUSDT', lot_step='1')
    result = asyncio.run(executor.place_order(_signal(price=1000.0)))
    assert not result.success
    assert 'less than one lot' in result.error
    assert gateway.mutations() == []


def test_entry_failure_places_no_brackets():
    executor, gateway, tracker, state, notifier, _ = _setup()
    gateway.order_failures[MARKET] = _api_error(-2019, 'Margin is insufficient.')

    result = asyncio.run(executor.place_order(_signal()))

    assert not result.success
    assert 'market entry failed' in result.error
    assert gateway.orders == []
    assert len(tracker) == 0
    assert state.daily_order_count == 0


def test_bracket_leg_failure_leaves_position_unprotected():
    executor, gateway, tracker, state, notifier, _ = _setup()
    gateway.order_failures[STOP_MARKET] = _api_error(-2021, 'Order would immediately trigger.')

    result = asyncio.run(executor.place_order(_signal()))

    assert result.success
    assert result.unprotected
    assert result.take_profit_order is not None
    assert result.stop_loss_order is None
    assert any('stop_loss' in w for w in result.warnings)
    # the entry is not rolled back
    assert gateway.positions['BTCUSDT'] == Decimal('2.000')
    assert tracker.has_position('BTCUSDT')
    assert state.daily_order_count == 1
    assert 'error' in notifier.kinds()


def test_entry_price_falls_back_to_position_lookup():
    executor, gateway, *_ = _setup()
    gateway.fill_price = None
    gateway.entry_prices['BTCUSDT'] = 101.0
    result = asyncio.run(executor.place_order(_signal()))
    assert result.entry_price == 101.0
    assert result.take_profit == 101.2


def test_daily_limit_blocks_orders():
    executor, gateway, tracker, state, notifier, _ = _setup(max_orders_per_day=1)
    state.roll_day()
    state.daily_order_count = 1

    result = asyncio.run(executor.place_order(_signal()))

    assert result.skipped
    assert result.error == DAILY_LIMIT_REACHED
    assert gateway.mutations() == []
    assert notifier.kinds() == ['message']


def test_existing_exchange_position_skips_before_any_mutation():
    executor, gateway, *_ = _setup()
    gateway.positions['BTCUSDT'] = Decimal('0.5')
    result = asyncio.run(executor.place_order(_signal()))
    assert result.skipped
    assert gateway.mutations() == []


def test_position_check_failure_rejects():
    executor, gateway, *_ = _setup()
    gateway.failures['fetch_position_amount'] = ConnectionError('timeout')
    result = asyncio.run(executor.place_order(_signal()))
    assert not result.success
    assert 'position check failed' in result.error
    assert gateway.mutations() == []


def test_batch_ranks_and_applies_per_scan_limit():
    symbols = ['AUSDT', 'BUSDT', 'CUSDT', 'DUSDT', 'EUSDT']
    executor, gateway, tracker, state, notifier, _ = _setup(symbols=symbols)
    signals = [_signal(s, strength=st) for s, st in zip(symbols, (61, 90, 75, 80, 65))]

    results = asyncio.run(executor.execute_batch(signals))

    assert [r.symbol for r in results] == ['BUSDT', 'DUSDT', 'CUSDT']
    entries = [o.symbol for o in gateway.orders if o.type == MARKET]
    assert entries == ['BUSDT', 'DUSDT', 'CUSDT']
    assert notifier.sent[-1].kind == 'message'
    assert 'AUSDT' in notifier.sent[-1].title and 'EUSDT' in notifier.sent[-1].title


def test_batch_can_rank_by_tp_roi():
    executor, *_ = _setup(symbols=['AUSDT', 'BUSDT'], rank_by='tp_roi', order_limit_per_scan=1)
    signals = [_signal('AUSDT', strength=90, tp_roi=6.0), _signal('BUSDT', strength=61, tp_roi=12.0)]
    results = asyncio.run(executor.execute_batch(signals))
    assert [r.symbol for r in results] == ['BUSDT']


def test_batch_skips_tracked_symbols():
    executor, gateway, tracker, *_ = _setup(symbols=['AUSDT', 'BUSDT'])
    tracker.upsert(Position(symbol='AUSDT', side='LONG', size=1.0))
    results = asyncio.run(executor.execute_batch([_signal('AUSDT', strength=99), _signal('BUSDT')]))
    assert [r.symbol for r in results] == ['BUSDT']


def test_batch_stops_at_daily_limit():
    symbols = ['AUSDT', 'BUSDT', 'CUSDT']
    executor, gateway, tracker, state, *_ = _setup(symbols=symbols, max_orders_per_day=2)
    results = asyncio.run(executor.execute_batch([_signal(s) for s in symbols]))
    assert [r.success for r in results] == [True, True, False]
    assert results[-1].error == DAILY_LIMIT_REACHED
    assert state.daily_order_count == 2


def test_batch_honours_keep_going():
    executor, gateway, *_ = _setup()
    results = asyncio.run(executor.execute_batch([_signal()], keep_going=lambda: False))
    assert results == []
    assert gateway.mutations() == []


def test_close_position_sends_reduce_only_market():
    executor, gateway, tracker, state, notifier, _ = _setup()
    asyncio.run(executor.place_order(_signal()))

    ticket = asyncio.run(executor.close_position('BTCUSDT', 'LONG'))

    close = gateway.orders[-1]
    assert close.reduce_only
    assert (close.type, close.side, close.quantity) == (MARKET, 'SELL', Decimal('2.000'))
    assert ticket.side == 'SELL'
    assert not tracker.has_position('BTCUSDT')
    assert notifier.kinds()[-1] == 'position_closed'


def test_close_position_validates_side_and_presence():
    executor, gateway, *_ = _setup()
    with pytest.raises(OrderRejected):
        asyncio.run(executor.close_position('BTCUSDT'))

    gateway.positions['BTCUSDT'] = Decimal('-1.5')
    with pytest.raises(OrderRejected):
        asyncio.run(executor.close_position('BTCUSDT', 'LONG'))

    asyncio.run(executor.close_position('BTCUSDT', 'SHORT'))
    assert gateway.orders[-1].side == 'BUY'
    assert gateway.orders[-1].quantity == Decimal('1.5')
