import logging
import time
from typing import Callable, Optional

import numpy as np

from strategy.signal_manager import Direction, Signal


logger = logging.getLogger(__name__)


class RiskFilter:
    """Volume, confidence and reward gates applied to a candidate before it becomes a Signal."""

    def __init__(
        self,
        min_trade_volume: float = 1_000_000.0,
        min_confidence: float = 60.0,
        min_tp_roi: float = 5.0,
        volume_window: int = 24,
        tp_atr_multiplier: float = 3.0,
        sl_atr_multiplier: float = 1.5,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.min_trade_volume = min_trade_volume
        self.min_confidence = min_confidence
        self.min_tp_roi = min_tp_roi
        self.volume_window = volume_window
        self.tp_atr_multiplier = tp_atr_multiplier
        self.sl_atr_multiplier = sl_atr_multiplier
        self._clock = clock or time.time

    @classmethod
    def from_settings(cls, settings, **kwargs) -> 'RiskFilter':
        return cls(
            min_trade_volume=settings.min_trade_volume,
            min_confidence=settings.min_confidence,
            min_tp_roi=settings.min_tp_roi,
            volume_window=settings.volume_window,
            tp_atr_multiplier=settings.tp_atr_multiplier,
            sl_atr_multiplier=settings.sl_atr_multiplier,
            **kwargs,
        )

    def evaluate(self, symbol: str, candidate, candles, indicators) -> Optional[Signal]:
        if candidate is None or not candles:
            return None

        volumes = np.array([c.volume for c in candles[-self.volume_window:]], dtype=float)
        traded = float(volumes.sum())
        if traded < self.min_trade_volume:
            logger.debug("%s rejected: %s-bar volume %.0f below %.0f", symbol, self.volume_window, traded, self.min_trade_volume)
            return None

        if candidate.strength < self.min_confidence:
            logger.debug("%s rejected: strength %s below %s", symbol, candidate.strength, self.min_confidence)
            return None

        price = float(candles[-1].close)
        if price <= 0:
            return None
        atr = indicators.atr
        if candidate.direction is Direction.LONG:
            take_profit = price + self.tp_atr_multiplier * atr
            stop_loss = price - self.sl_atr_multiplier * atr
        else:
            take_profit = price - self.tp_atr_multiplier * atr
            stop_loss = price + self.sl_atr_multiplier * atr

        tp_roi = round(abs(take_profit - price) / price * 100, 2)
        sl_roi = -round(abs(stop_loss - price) / price * 100, 2)
        if tp_roi < self.min_tp_roi:
            logger.debug("%s rejected: TP ROI %.2f%% below %.2f%%", symbol, tp_roi, self.min_tp_roi)
            return None

        return Signal(
            symbol=symbol,
            direction=candidate.direction,
            price=price,
            strength=candidate.strength,
            tp_roi=tp_roi,
            sl_roi=sl_roi,
            reason=candidate.reason,
            regime=candidate.regime,
            take_profit=take_profit,
            stop_loss=stop_loss,
            timestamp=self._clock(),
        )
