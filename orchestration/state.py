import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional


@dataclass
class BotState:
    running: bool = False
    order_active: bool = False
    daily_order_count: int = 0
    counter_date: Optional[date] = None
    last_scan_time: Optional[float] = None
    scan_count: int = 0
    total_signals: int = 0
    total_errors: int = 0
    total_orders: int = 0
    started_at: Optional[float] = None
    initial_capital: Optional[float] = None
    balance: Optional[float] = None
    today: Callable[[], date] = field(default=date.today, repr=False, compare=False)

    def roll_day(self) -> bool:
        """Reset the daily counter when the calendar day has changed."""
        current = self.today()
        if self.counter_date != current:
            changed = self.counter_date is not None
            self.counter_date = current
            self.daily_order_count = 0
            return changed
        return False

    def can_place_order(self, max_orders_per_day: int) -> bool:
        self.roll_day()
        return self.daily_order_count < max_orders_per_day

    def record_order(self) -> None:
        self.roll_day()
        self.daily_order_count += 1
        self.total_orders += 1

    def record_scan(self, signals: int, errors: int, finished_at: Optional[float] = None) -> None:
        self.scan_count += 1
        self.total_signals += signals
        self.total_errors += errors
        self.last_scan_time = finished_at if finished_at is not None else time.time()

    def as_dict(self) -> Dict[str, Any]:
        def _iso(ts):
            return datetime.fromtimestamp(ts).isoformat() if ts else None

        return {
            'running': self.running,
            'order_active': self.order_active,
            'daily_order_count': self.daily_order_count,
            'counter_date': self.counter_date.isoformat() if self.counter_date else None,
            'last_scan_time': _iso(self.last_scan_time),
            'scan_count': self.scan_count,
            'total_signals': self.total_signals,
            'total_errors': self.total_errors,
            'total_orders': self.total_orders,
            'started_at': _iso(self.started_at),
        }
