import math
import sys

sys.path.insert(0, '.')

import numpy as np

from analytics.indicators import IndicatorSet
from analytics.regime import Regime
from strategy.signal_manager import Direction
from strategy.signal_processor import SignalGenerator, sideway_strength, trending_strength


def _indicators(**overrides):
    values = dict(
        rsi=30.0,
        bb_upper=110.0,
        bb_lower=100.0,
        macd=0.1,
        macd_signal=0.05,
        adx=30.0,
        ema_short=105.0,
        ema_long=100.0,
        atr=3.0,
        volume_avg=1000.0,
        last_close=100.0,
        last_volume=2000.0,
    )
    values.update(overrides)

    def arr(v):
        return np.array([math.nan, v])

    return IndicatorSet(
        rsi=arr(values['rsi']),
        bb_upper=arr(values['bb_upper']),
        bb_middle=arr((values['bb_upper'] + values['bb_lower']) / 2),
        bb_lower=arr(values['bb_lower']),
        macd=arr(values['macd']),
        macd_signal=arr(values['macd_signal']),
        macd_hist=arr(values['macd'] - values['macd_signal']),
        adx=arr(values['adx']),
        ema_short=arr(values['ema_short']),
        ema_long=arr(values['ema_long']),
        atr=values['atr'],
        volatility=values['atr'] / values['last_close'] * 100,
        volume_avg=values['volume_avg'],
        last_close=values['last_close'],
        last_volume=values['last_volume'],
    )


def test_strength_formulas():
    assert sideway_strength(20, Direction.LONG, True) == 70
    assert sideway_strength(80, Direction.SHORT, False) == 40
    # rsi above 30 adds nothing for a long
    assert sideway_strength(33, Direction.LONG, True) == 50
    assert trending_strength(30, 0.1) == 60
    assert trending_strength(80, 2.0) == 100


def test_range_bottom_long():
    gen = SignalGenerator()
    candidate = gen.generate([], _indicators(rsi=20.0, last_close=100.2), Regime.SIDEWAY)
    assert candidate.direction is Direction.LONG
    assert candidate.regime is Regime.SIDEWAY
    assert candidate.strength == 70
    assert 'Range Bottom' in candidate.reason


def test_range_top_short():
    gen = SignalGenerator()
    candidate = gen.generate([], _indicators(rsi=80.0, last_close=109.8), Regime.SIDEWAY)
    assert candidate.direction is Direction.SHORT
    assert candidate.strength == 70


def test_range_needs_volume_spike():
    gen = SignalGenerator()
    assert gen.generate([], _indicators(rsi=20.0, last_volume=1200.0), Regime.SIDEWAY) is None
    assert gen.generate([], _indicators(rsi=20.0, volume_avg=0.0), Regime.SIDEWAY) is None


def test_range_needs_band_touch():
    gen = SignalGenerator()
    assert gen.generate([], _indicators(rsi=20.0, last_close=105.0), Regime.SIDEWAY) is None


def test_trend_following_long_and_short():
    gen = SignalGenerator()
    long_c = gen.generate([], _indicators(last_close=106.0), Regime.TRENDING)
    assert long_c.direction is Direction.LONG
    assert long_c.strength == 60

    short_c = gen.generate(
        [],
        _indicators(ema_short=95.0, ema_long=100.0, last_close=94.0, macd=-0.2, macd_signal=-0.1),
        Regime.TRENDING,
    )
    assert short_c.direction is Direction.SHORT
    assert short_c.strength == 70


def test_trend_needs_price_beyond_short_ema_and_macd_confirmation():
    gen = SignalGenerator()
    assert gen.generate([], _indicators(last_close=104.0), Regime.TRENDING) is None
    assert gen.generate([], _indicators(last_close=106.0, macd=0.01), Regime.TRENDING) is None
    assert gen.generate([], _indicators(last_close=106.0, adx=25.0), Regime.TRENDING) is None


def test_mixed_regime_and_nan_inputs_produce_nothing():
    gen = SignalGenerator()
    assert gen.generate([], _indicators(), Regime.MIXED) is None
    assert gen.generate([], _indicators(rsi=math.nan), Regime.SIDEWAY) is None
