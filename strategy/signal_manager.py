from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Tuple
import threading
import time
import uuid

from analytics.regime import Regime


class Direction(str, Enum):
    LONG = "Long"
    SHORT = "Short"

    @property
    def order_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"

    @property
    def closing_side(self) -> str:
        return "SELL" if self is Direction.LONG else "BUY"

    @classmethod
    def from_side(cls, side: str) -> 'Direction':
        value = (side or "").strip().upper()
        if value in ("BUY", "LONG"):
            return cls.LONG
        if value in ("SELL", "SHORT"):
            return cls.SHORT
        raise ValueError(f"Unknown side {side!r}")


@dataclass
class Signal:
    symbol: str
    direction: Direction
    price: float
    strength: int
    tp_roi: float
    sl_roi: float
    reason: str
    regime: Regime
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    signal_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict:
        return {
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'timestamp': int(self.timestamp * 1000),
            'direction': self.direction.value,
            'price': self.price,
            'strength': self.strength,
            'tp_roi': self.tp_roi,
            'sl_roi': self.sl_roi,
            'take_profit': self.take_profit,
            'stop_loss': self.stop_loss,
            'reason': self.reason,
            'regime': self.regime.value,
        }


RANK_KEYS = {
    'strength': lambda s: s.strength,
    'tp_roi': lambda s: s.tp_roi,
}


def rank_signals(signals: Iterable[Signal], by: str = 'strength') -> List[Signal]:
    key = RANK_KEYS.get(by)
    if key is None:
        raise ValueError(f"Unknown ranking key {by!r}")
    return sorted(signals, key=key, reverse=True)


class SignalBook:
    """
    Current signal batch plus a bounded history.

    Only the scanner replaces the batch. The batch is held as a tuple and swapped
    in one assignment, so readers see either the old batch or the new one.
    """

    def __init__(self, history_size: int = 1000):
        self._batch: Tuple[Signal, ...] = ()
        self._history: Deque[Signal] = deque(maxlen=history_size)
        self._guard = threading.Lock()

    def replace(self, signals: Iterable[Signal]) -> Tuple[Signal, ...]:
        batch = tuple(signals)
        with self._guard:
            self._batch = batch
            self._history.extend(batch)
        return batch

    def clear(self) -> None:
        with self._guard:
            self._batch = ()

    def current(self) -> Tuple[Signal, ...]:
        return self._batch

    def get(self, signal_id: str) -> Optional[Signal]:
        for signal in self._batch:
            if signal.signal_id == signal_id:
                return signal
        return None

    def consume(self, signal_id: str) -> Optional[Signal]:
        """Drop a signal from the batch once it has been traded."""
        with self._guard:
            kept = []
            taken = None
            for signal in self._batch:
                if taken is None and signal.signal_id == signal_id:
                    taken = signal
                    continue
                kept.append(signal)
            if taken is not None:
                self._batch = tuple(kept)
        return taken

    def history(self, limit: int = 100) -> List[Dict]:
        with self._guard:
            items = list(self._history)
        items.reverse()
        return [signal.to_dict() for signal in items[:max(0, limit)]]

    def __len__(self) -> int:
        return len(self._batch)
