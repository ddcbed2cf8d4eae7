import errno
import logging
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    """Prometheus collectors for the scanner, executor and position tracker.

    Pass a private ``CollectorRegistry`` when more than one instance lives in a
    process (tests); the composition root uses the default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry or REGISTRY
        self.registry = registry

        self.scans = Counter('scans_total', 'Total completed scans', registry=registry)
        self.scan_duration = Histogram(
            'scan_duration_seconds',
            'Wall time of one scan cycle',
            buckets=(5, 15, 30, 60, 120, 300, 600, 1200),
            registry=registry,
        )
        self.symbols_scanned = Gauge('symbols_scanned', 'Symbols in the last scan', registry=registry)
        self.signals = Counter('signals_total', 'Accepted signals', ['regime', 'direction'], registry=registry)
        self.scan_errors = Counter('scan_errors_total', 'Per-symbol pipeline failures', registry=registry)
        self.scans_skipped = Counter('scans_skipped_total', 'Scans skipped while another was running', registry=registry)

        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['type'], registry=registry)
        self.orders_failed = Counter('orders_failed_total', 'Total order attempts rejected', ['step'], registry=registry)
        self.bracket_failures = Counter('bracket_leg_failures_total', 'TP/SL legs that could not be placed', ['leg'], registry=registry)
        self.daily_orders = Gauge('daily_order_count', 'Entries placed today', registry=registry)

        self.open_positions = Gauge('open_positions', 'Positions tracked locally', registry=registry)
        self.equity = Gauge('account_equity', 'Current account equity', registry=registry)
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total user-data stream reconnects', registry=registry)

    def record_scan(self, symbols: int, errors: int, duration_s: float):
        self.scans.inc()
        self.symbols_scanned.set(symbols)
        self.scan_duration.observe(duration_s)
        if errors:
            self.scan_errors.inc(errors)

    def record_scan_skipped(self):
        self.scans_skipped.inc()

    def record_signal(self, regime: str, direction: str):
        self.signals.labels(regime=regime, direction=direction).inc()

    def record_order_placed(self, order_type: str):
        self.orders_placed.labels(type=order_type).inc()

    def record_order_failed(self, step: str):
        self.orders_failed.labels(step=step).inc()

    def record_bracket_failure(self, leg: str):
        self.bracket_failures.labels(leg=leg).inc()

    def update_daily_orders(self, count: int):
        self.daily_orders.set(count)

    def update_open_positions(self, count: int):
        self.open_positions.set(count)

    def update_equity(self, equity: float):
        if equity is not None:
            self.equity.set(equity)

    def record_reconnect(self):
        self.reconnect_count.inc()


def start_metrics_server(port: int = 9090, port_scan_limit: int = 0) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None
