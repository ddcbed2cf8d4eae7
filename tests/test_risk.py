import sys
from decimal import Decimal
from types import SimpleNamespace

sys.path.insert(0, '.')

import pytest

from analytics.regime import Regime
from risk.position_sizer import compute_bracket_prices, compute_quantity, round_to_tick, tick_decimals
from risk.risk_filter import RiskFilter
from strategy.signal_manager import Direction
from strategy.signal_processor import SignalCandidate
from tests.fakes import make_candles


def _candidate(direction=Direction.LONG, strength=70):
    return SignalCandidate(direction=direction, strength=strength, reason='test', regime=Regime.TRENDING)


def test_quantity_floor_to_lot_step():
    assert compute_quantity(10, 20, 100, '0.001') == Decimal('2.000')
    assert compute_quantity(10, 20, 30000, '0.001') == Decimal('0.006')
    assert compute_quantity(10, 20, 7, '1') == Decimal('28')


def test_quantity_zero_when_below_one_lot_or_minimum():
    assert compute_quantity(10, 1, 50000, '0.001') == Decimal('0')
    assert compute_quantity(10, 20, 100, '0.001', min_qty='5') == Decimal('0')
    assert compute_quantity(10, 20, 0, '0.001') == Decimal('0')


def test_round_to_tick_half_up():
    assert round_to_tick(100.25, '0.1') == Decimal('100.3')
    assert round_to_tick(100.24, '0.1') == Decimal('100.2')
    assert round_to_tick('0.123456', '0.0001') == Decimal('0.1235')
    assert tick_decimals('0.0100') == 2
    assert tick_decimals('1') == 0


def test_bracket_prices_long():
    tp, sl = compute_bracket_prices(100, True, 20, 4, 2, '0.1')
    assert tp == Decimal('100.2')
    assert sl == Decimal('99.9')


def test_bracket_prices_short():
    tp, sl = compute_bracket_prices(100, False, 20, 4, 2, '0.1')
    assert tp == Decimal('99.8')
    assert sl == Decimal('100.1')


def test_bracket_prices_forced_off_entry_when_move_below_one_tick():
    tp, sl = compute_bracket_prices(100, True, 125, 0.5, 0.5, '0.1')
    assert tp == Decimal('100.1')
    assert sl == Decimal('99.9')
    tp, sl = compute_bracket_prices('100.05', False, 125, 0.5, 0.5, '0.1')
    assert tp < Decimal('100.05') < sl
    assert tp == Decimal('100.0')
    assert sl == Decimal('100.1')


def test_bracket_prices_are_tick_multiples():
    tick = Decimal('0.01')
    for entry in (1.2345, 17.891, 250.005):
        tp, sl = compute_bracket_prices(entry, True, 10, 4, 2, tick)
        assert tp % tick == 0 and sl % tick == 0
        assert tp > Decimal(str(entry)) > sl


def test_bracket_prices_reject_non_positive():
    with pytest.raises(ValueError):
        compute_bracket_prices(0, True, 20, 4, 2, '0.1')
    with pytest.raises(ValueError):
        compute_bracket_prices('0.1', True, 1, 4, 200, '0.1')


def test_risk_filter_accepts_and_derives_targets():
    candles = make_candles([100.0] * 30, volume=50_000)
    signal = RiskFilter(clock=lambda: 42.0).evaluate('BTCUSDT', _candidate(), candles, SimpleNamespace(atr=3.0))
    assert signal.symbol == 'BTCUSDT'
    assert signal.direction is Direction.LONG
    assert signal.price == 100.0
    assert signal.take_profit == pytest.approx(109.0)
    assert signal.stop_loss == pytest.approx(95.5)
    assert signal.tp_roi == 9.0
    assert signal.sl_roi == -4.5
    assert signal.timestamp == 42.0


def test_risk_filter_short_targets_mirror_long():
    candles = make_candles([100.0] * 30, volume=50_000)
    signal = RiskFilter().evaluate('X', _candidate(Direction.SHORT), candles, SimpleNamespace(atr=3.0))
    assert signal.take_profit == pytest.approx(91.0)
    assert signal.stop_loss == pytest.approx(104.5)
    assert signal.sl_roi < 0


def test_risk_filter_rejections():
    rf = RiskFilter()
    liquid = make_candles([100.0] * 30, volume=50_000)
    thin = make_candles([100.0] * 30, volume=40_000)
    atr = SimpleNamespace(atr=3.0)

    # 24 bars x 40k = 960k
    assert rf.evaluate('X', _candidate(), thin, atr) is None
    assert rf.evaluate('X', _candidate(strength=59), liquid, atr) is None
    # TP ROI 4.5% below the 5% floor
    assert rf.evaluate('X', _candidate(), liquid, SimpleNamespace(atr=1.5)) is None
    assert rf.evaluate('X', None, liquid, atr) is None


def test_risk_filter_volume_window_uses_trailing_bars_only():
    volumes = [1_000_000] * 6 + [10_000] * 24
    candles = make_candles([100.0] * 30, volumes=volumes)
    assert RiskFilter().evaluate('X', _candidate(), candles, SimpleNamespace(atr=3.0)) is None
