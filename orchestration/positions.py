import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)

# ACCOUNT_UPDATE position entries use one-letter keys
STREAM_FIELDS = {
    's': 'symbol',
    'pa': 'positionAmt',
    'up': 'unrealizedPnl',
    'ep': 'entryPrice',
    'mp': 'markPrice',
}

ACTIVE = 'active'
CLOSED = 'closed'


@dataclass
class Position:
    symbol: str
    side: str
    size: float
    entry_price: Optional[float] = None
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    leverage: Optional[int] = None
    status: str = ACTIVE
    updated_at: float = field(default_factory=time.time)

    @property
    def position_amt(self) -> float:
        return self.size if self.side == 'LONG' else -self.size

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def expand_stream_fields(update: Dict[str, Any]) -> Dict[str, Any]:
    """Rename abbreviated push-stream keys; keys already in long form pass through."""
    expanded: Dict[str, Any] = {}
    for key, value in update.items():
        expanded[STREAM_FIELDS.get(key, key)] = value
    return expanded


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class PositionTracker:
    """
    Local view of open positions keyed by symbol.

    Written by the push-stream handler, the poller and the executor. Updates are
    merged per field, so the last writer of each field wins.

    Every local write bumps a revision. A polled snapshot carries the revision
    read before it was fetched, and symbols written since then keep their local
    state instead of being replaced or reported closed.
    """

    def __init__(
        self,
        epsilon: float = 1e-9,
        create_from_stream: bool = True,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.epsilon = epsilon
        self.create_from_stream = create_from_stream
        self._clock = clock or time.time
        self._positions: Dict[str, Position] = {}
        self._guard = threading.Lock()
        self._revision = 0
        self._written: Dict[str, int] = {}

    def get(self, symbol: str) -> Optional[Position]:
        return self._positions.get(symbol)

    def has_position(self, symbol: str) -> bool:
        return symbol in self._positions

    def snapshot(self) -> List[Position]:
        with self._guard:
            return list(self._positions.values())

    def __len__(self) -> int:
        return len(self._positions)

    def mark(self) -> int:
        """Revision to hand to `refresh` for a snapshot fetched after this call."""
        with self._guard:
            return self._revision

    def _touch(self, symbol: str) -> None:
        self._revision += 1
        self._written[symbol] = self._revision

    def upsert(self, position: Position) -> Position:
        with self._guard:
            position.updated_at = self._clock()
            self._touch(position.symbol)
            existing = self._positions.get(position.symbol)
            if existing is not None:
                # keep bracket levels the exchange snapshot does not carry
                if position.stop_loss is None:
                    position.stop_loss = existing.stop_loss
                if position.take_profit is None:
                    position.take_profit = existing.take_profit
                if position.leverage is None:
                    position.leverage = existing.leverage
            self._positions[position.symbol] = position
        return position

    def remove(self, symbol: str) -> Optional[Position]:
        with self._guard:
            position = self._positions.pop(symbol, None)
            if position is not None:
                self._touch(symbol)
        if position is not None:
            position.status = CLOSED
        return position

    def apply_stream_update(self, update: Dict[str, Any]) -> Optional[Position]:
        """
        Merge one push-stream position entry.

        Returns the removed Position when the update brings the size to zero,
        otherwise None.
        """
        data = expand_stream_fields(update)
        symbol = data.get('symbol')
        if not symbol:
            return None
        amount = _as_float(data.get('positionAmt'))

        with self._guard:
            existing = self._positions.get(symbol)
            if amount is not None and abs(amount) < self.epsilon:
                closed = self._positions.pop(symbol, None)
                self._touch(symbol)
                if closed is not None:
                    closed.status = CLOSED
                    pnl = _as_float(data.get('unrealizedPnl'))
                    if pnl is not None:
                        closed.unrealized_pnl = pnl
                    closed.updated_at = self._clock()
                    logger.info("Position %s closed", symbol)
                return closed

            if existing is None:
                if amount is None or not self.create_from_stream:
                    logger.debug("Ignoring stream update for untracked %s", symbol)
                    return None
                existing = Position(symbol=symbol, side='LONG' if amount > 0 else 'SHORT', size=abs(amount))
                self._positions[symbol] = existing
                logger.info("Tracking %s %s from account stream", existing.side, symbol)

            self._touch(symbol)

            if amount is not None:
                existing.size = abs(amount)
                existing.side = 'LONG' if amount > 0 else 'SHORT'
            entry = _as_float(data.get('entryPrice'))
            if entry:
                existing.entry_price = entry
            mark = _as_float(data.get('markPrice'))
            if mark:
                existing.mark_price = mark
            pnl = _as_float(data.get('unrealizedPnl'))
            if pnl is not None:
                existing.unrealized_pnl = pnl
            existing.status = ACTIVE
            existing.updated_at = self._clock()
        return None

    def apply_account_event(self, event: Dict[str, Any]) -> List[Position]:
        """Handle an ``ACCOUNT_UPDATE`` message; returns positions that went flat."""
        if event.get('e') != 'ACCOUNT_UPDATE':
            return []
        account = event.get('a') or {}
        closed: List[Position] = []
        for entry in account.get('P') or []:
            # one-way mode only reports positionSide BOTH
            if entry.get('ps', 'BOTH') != 'BOTH':
                continue
            removed = self.apply_stream_update(entry)
            if removed is not None:
                closed.append(removed)
        return closed

    def refresh(self, snapshot: Iterable[Dict[str, Any]], since: Optional[int] = None) -> List[Position]:
        """
        Replace the store from a polled position list; returns positions no longer open.

        With `since` (from `mark` before the fetch), symbols written locally after
        that point are left as they are.
        """
        fresh: Dict[str, Position] = {}
        for item in snapshot:
            symbol = item.get('symbol')
            amount = _as_float(item.get('positionAmt'))
            if not symbol or amount is None or abs(amount) < self.epsilon:
                continue
            fresh[symbol] = Position(
                symbol=symbol,
                side='LONG' if amount > 0 else 'SHORT',
                size=abs(amount),
                entry_price=_as_float(item.get('entryPrice')),
                mark_price=_as_float(item.get('markPrice')),
                unrealized_pnl=_as_float(item.get('unrealizedPnl')) or 0.0,
                leverage=item.get('leverage'),
                updated_at=self._clock(),
            )

        with self._guard:
            if since is not None:
                newer = {s for s, rev in self._written.items() if rev > since}
                for symbol in newer:
                    fresh.pop(symbol, None)
                    if symbol in self._positions:
                        fresh[symbol] = self._positions[symbol]
                if newer:
                    logger.debug("Snapshot older than local writes for %s", ", ".join(sorted(newer)))
            for symbol, position in fresh.items():
                previous = self._positions.get(symbol)
                if previous is not None and previous is not position:
                    position.stop_loss = previous.stop_loss
                    position.take_profit = previous.take_profit
                    if position.leverage is None:
                        position.leverage = previous.leverage
            gone = [p for s, p in self._positions.items() if s not in fresh]
            self._positions = fresh
            for position in gone:
                self._touch(position.symbol)

        for position in gone:
            position.status = CLOSED
        return gone
