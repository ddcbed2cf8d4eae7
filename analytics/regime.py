import math
from enum import Enum


class Regime(str, Enum):
    TRENDING = 'TRENDING'
    SIDEWAY = 'SIDEWAY'
    MIXED = 'MIXED'


def classify_regime(
    adx: float,
    ema_short: float,
    ema_long: float,
    atr: float,
    price: float,
    adx_threshold: float = 25.0,
    ema_distance_pct: float = 3.0,
    atr_pct: float = 2.0,
) -> Regime:
    """
    Label the market as SIDEWAY, TRENDING or MIXED.

    SIDEWAY needs all three measures strictly below their thresholds and
    TRENDING all three strictly above; anything else, including values sitting
    exactly on a threshold or non-finite inputs, is MIXED.
    """
    values = (adx, ema_short, ema_long, atr, price)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
        return Regime.MIXED
    if price <= 0:
        return Regime.MIXED

    ema_distance = abs(ema_short - ema_long) / price * 100
    atr_percent = atr / price * 100

    if adx < adx_threshold and ema_distance < ema_distance_pct and atr_percent < atr_pct:
        return Regime.SIDEWAY
    if adx > adx_threshold and ema_distance > ema_distance_pct and atr_percent > atr_pct:
        return Regime.TRENDING
    return Regime.MIXED


class RegimeClassifier:
    def __init__(self, adx_threshold: float = 25.0, ema_distance_pct: float = 3.0, atr_pct: float = 2.0):
        self.adx_threshold = adx_threshold
        self.ema_distance_pct = ema_distance_pct
        self.atr_pct = atr_pct

    @classmethod
    def from_settings(cls, settings) -> 'RegimeClassifier':
        return cls(settings.adx_threshold, settings.ema_distance_pct, settings.atr_pct)

    def classify(self, adx: float, ema_short: float, ema_long: float, atr: float, price: float) -> Regime:
        return classify_regime(
            adx,
            ema_short,
            ema_long,
            atr,
            price,
            adx_threshold=self.adx_threshold,
            ema_distance_pct=self.ema_distance_pct,
            atr_pct=self.atr_pct,
        )

    def classify_indicators(self, indicators) -> Regime:
        return self.classify(
            indicators.last_adx,
            indicators.last_ema_short,
            indicators.last_ema_long,
            indicators.atr,
            indicators.last_close,
        )
