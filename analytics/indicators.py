import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import talib


@dataclass
class IndicatorSet:
    rsi: np.ndarray
    bb_upper: np.ndarray
    bb_middle: np.ndarray
    bb_lower: np.ndarray
    macd: np.ndarray
    macd_signal: np.ndarray
    macd_hist: np.ndarray
    adx: np.ndarray
    ema_short: np.ndarray
    ema_long: np.ndarray
    atr: float
    volatility: float
    volume_avg: float
    last_close: float
    last_volume: float

    @staticmethod
    def latest(series: np.ndarray) -> float:
        if series is None or len(series) == 0:
            return math.nan
        return float(series[-1])

    @property
    def last_rsi(self) -> float:
        return self.latest(self.rsi)

    @property
    def last_adx(self) -> float:
        return self.latest(self.adx)

    @property
    def last_ema_short(self) -> float:
        return self.latest(self.ema_short)

    @property
    def last_ema_long(self) -> float:
        return self.latest(self.ema_long)

    @property
    def last_macd(self) -> float:
        return self.latest(self.macd)

    @property
    def last_macd_signal(self) -> float:
        return self.latest(self.macd_signal)

    @property
    def last_bb_upper(self) -> float:
        return self.latest(self.bb_upper)

    @property
    def last_bb_lower(self) -> float:
        return self.latest(self.bb_lower)


def compute_atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> float:
    """Wilder-smoothed ATR seeded with the first true range sample."""
    highs = np.asarray(highs, dtype=float)
    lows = np.asarray(lows, dtype=float)
    closes = np.asarray(closes, dtype=float)
    if len(closes) < 2:
        return 0.0

    prev_close = closes[:-1]
    tr = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - prev_close),
        np.abs(lows[1:] - prev_close),
    ])

    atr = float(tr[0])
    for sample in tr[1:]:
        atr = (atr * (period - 1) + float(sample)) / period
    return atr


def average_volume(volumes: Sequence[float], window: int = 20) -> float:
    """Mean of the trailing ``window`` volumes; 0 when history is shorter."""
    arr = np.asarray(volumes, dtype=float)
    if window <= 0 or len(arr) < window:
        return 0.0
    return float(arr[-window:].sum() / window)


class IndicatorEngine:
    def __init__(
        self,
        rsi_period: int = 14,
        bb_period: int = 20,
        bb_std_dev: float = 2.0,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        adx_period: int = 14,
        ema_short: int = 20,
        ema_long: int = 50,
        atr_period: int = 14,
        volume_ma_period: int = 20,
    ):
        self.rsi_period = rsi_period
        self.bb_period = bb_period
        self.bb_std_dev = bb_std_dev
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.adx_period = adx_period
        self.ema_short = ema_short
        self.ema_long = ema_long
        self.atr_period = atr_period
        self.volume_ma_period = volume_ma_period

    @classmethod
    def from_settings(cls, settings) -> 'IndicatorEngine':
        return cls(
            rsi_period=settings.rsi_period,
            bb_period=settings.bb_period,
            bb_std_dev=settings.bb_std_dev,
            macd_fast=settings.macd_fast,
            macd_slow=settings.macd_slow,
            macd_signal=settings.macd_signal,
            adx_period=settings.adx_period,
            ema_short=settings.ema_short,
            ema_long=settings.ema_long,
            atr_period=settings.atr_period,
            volume_ma_period=settings.volume_ma_period,
        )

    def compute(self, candles) -> Optional[IndicatorSet]:
        if len(candles) < 2:
            return None

        highs = np.array([c.high for c in candles], dtype=float)
        lows = np.array([c.low for c in candles], dtype=float)
        closes = np.array([c.close for c in candles], dtype=float)
        volumes = np.array([c.volume for c in candles], dtype=float)

        rsi = talib.RSI(closes, timeperiod=self.rsi_period)
        upper, middle, lower = talib.BBANDS(
            closes,
            timeperiod=self.bb_period,
            nbdevup=self.bb_std_dev,
            nbdevdn=self.bb_std_dev,
            matype=0,
        )
        macd, signal, hist = talib.MACD(
            closes,
            fastperiod=self.macd_fast,
            slowperiod=self.macd_slow,
            signalperiod=self.macd_signal,
        )
        adx = talib.ADX(highs, lows, closes, timeperiod=self.adx_period)
        ema_short = talib.EMA(closes, timeperiod=self.ema_short)
        ema_long = talib.EMA(closes, timeperiod=self.ema_long)

        atr = compute_atr(highs, lows, closes, self.atr_period)
        last_close = float(closes[-1])
        volatility = atr / last_close * 100 if last_close > 0 else 0.0

        return IndicatorSet(
            rsi=rsi,
            bb_upper=upper,
            bb_middle=middle,
            bb_lower=lower,
            macd=macd,
            macd_signal=signal,
            macd_hist=hist,
            adx=adx,
            ema_short=ema_short,
            ema_long=ema_long,
            atr=atr,
            volatility=volatility,
            volume_avg=average_volume(volumes, self.volume_ma_period),
            last_close=last_close,
            last_volume=float(volumes[-1]),
        )
