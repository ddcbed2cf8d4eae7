import logging
import math
from dataclasses import dataclass
from typing import Optional

from analytics.regime import Regime
from strategy.signal_manager import Direction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalCandidate:
    direction: Direction
    strength: int
    reason: str
    regime: Regime


def sideway_strength(rsi: float, direction: Direction, volume_spike: bool) -> int:
    rsi_score = (30 - rsi) * 2 if direction is Direction.LONG else (rsi - 70) * 2
    strength = min(max(rsi_score, 0), 50)
    if volume_spike:
        strength += 30
    strength += 20
    return min(int(round(strength)), 100)


def trending_strength(adx: float, macd: float) -> int:
    strength = min(adx, 50) + min(abs(macd) * 100, 30) + 20
    return min(int(round(strength)), 100)


class SignalGenerator:
    """Range reversal rules in SIDEWAY markets, trend following in TRENDING ones."""

    def __init__(
        self,
        band_tolerance: float = 0.005,
        rsi_oversold: float = 35.0,
        rsi_overbought: float = 65.0,
        volume_spike_ratio: float = 1.5,
        trend_adx_min: float = 25.0,
    ):
        self.band_tolerance = band_tolerance
        self.rsi_oversold = rsi_oversold
        self.rsi_overbought = rsi_overbought
        self.volume_spike_ratio = volume_spike_ratio
        self.trend_adx_min = trend_adx_min

    @classmethod
    def from_settings(cls, settings) -> 'SignalGenerator':
        return cls(
            band_tolerance=settings.band_tolerance,
            rsi_oversold=settings.rsi_oversold,
            rsi_overbought=settings.rsi_overbought,
            volume_spike_ratio=settings.volume_spike_ratio,
            trend_adx_min=settings.trend_adx_min,
        )

    def generate(self, candles, indicators, regime: Regime) -> Optional[SignalCandidate]:
        if regime is Regime.SIDEWAY:
            return self._sideway(indicators)
        if regime is Regime.TRENDING:
            return self._trending(indicators)
        return None

    def _sideway(self, ind) -> Optional[SignalCandidate]:
        price = ind.last_close
        rsi = ind.last_rsi
        upper = ind.last_bb_upper
        lower = ind.last_bb_lower
        if not all(math.isfinite(v) for v in (price, rsi, upper, lower)):
            return None

        volume_spike = ind.volume_avg > 0 and ind.last_volume > ind.volume_avg * self.volume_spike_ratio

        if price <= lower * (1 + self.band_tolerance) and rsi < self.rsi_oversold and volume_spike:
            return SignalCandidate(
                direction=Direction.LONG,
                strength=sideway_strength(rsi, Direction.LONG, volume_spike),
                reason=f"Range Bottom: RSI {rsi:.1f} + Volume Spike",
                regime=Regime.SIDEWAY,
            )
        if price >= upper * (1 - self.band_tolerance) and rsi > self.rsi_overbought and volume_spike:
            return SignalCandidate(
                direction=Direction.SHORT,
                strength=sideway_strength(rsi, Direction.SHORT, volume_spike),
                reason=f"Range Top: RSI {rsi:.1f} + Volume Spike",
                regime=Regime.SIDEWAY,
            )
        return None

    def _trending(self, ind) -> Optional[SignalCandidate]:
        price = ind.last_close
        ema_short = ind.last_ema_short
        ema_long = ind.last_ema_long
        macd = ind.last_macd
        macd_signal = ind.last_macd_signal
        adx = ind.last_adx
        if not all(math.isfinite(v) for v in (price, ema_short, ema_long, macd, macd_signal, adx)):
            return None
        if adx <= self.trend_adx_min:
            return None

        if ema_short > ema_long and price > ema_short and macd > macd_signal:
            return SignalCandidate(
                direction=Direction.LONG,
                strength=trending_strength(adx, macd),
                reason=f"Trend Following: EMA Bullish + MACD + ADX {adx:.1f}",
                regime=Regime.TRENDING,
            )
        if ema_short < ema_long and price < ema_short and macd < macd_signal:
            return SignalCandidate(
                direction=Direction.SHORT,
                strength=trending_strength(adx, macd),
                reason=f"Trend Following: EMA Bearish + MACD + ADX {adx:.1f}",
                regime=Regime.TRENDING,
            )
        return None
