import math
import sys
from types import SimpleNamespace

sys.path.insert(0, '.')

from analytics.regime import Regime, RegimeClassifier, classify_regime


def test_trending_when_all_measures_exceed_thresholds():
    # EMA distance ~4.9%, ATR ~2.94%
    assert classify_regime(30, 105, 100, 3, 102) is Regime.TRENDING


def test_sideway_when_all_measures_below_thresholds():
    assert classify_regime(15, 100.5, 100, 1, 100) is Regime.SIDEWAY


def test_mixed_when_measures_disagree():
    assert classify_regime(30, 100.5, 100, 1, 100) is Regime.MIXED
    assert classify_regime(15, 105, 100, 3, 102) is Regime.MIXED


def test_threshold_values_are_mixed():
    assert classify_regime(25, 105, 100, 3, 102) is Regime.MIXED
    # ATR exactly 2% of price
    assert classify_regime(30, 110, 100, 2, 100) is Regime.MIXED


def test_non_finite_or_bad_price_is_mixed():
    assert classify_regime(math.nan, 105, 100, 3, 102) is Regime.MIXED
    assert classify_regime(30, 105, 100, 3, 0) is Regime.MIXED


def test_every_input_maps_to_exactly_one_regime():
    grid = [
        (adx, es, 100, atr, 100)
        for adx in (10, 25, 40)
        for es in (100.5, 103, 106)
        for atr in (1, 2, 3)
    ]
    for args in grid:
        assert classify_regime(*args) in (Regime.TRENDING, Regime.SIDEWAY, Regime.MIXED)


def test_classifier_reads_latest_indicator_values():
    ind = SimpleNamespace(last_adx=30.0, last_ema_short=105.0, last_ema_long=100.0, atr=3.0, last_close=102.0)
    assert RegimeClassifier().classify_indicators(ind) is Regime.TRENDING
    assert RegimeClassifier(adx_threshold=35).classify_indicators(ind) is Regime.MIXED
