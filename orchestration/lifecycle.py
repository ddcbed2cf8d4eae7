import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from prometheus_client import CollectorRegistry

from api.metrics import MetricsCollector
from config.settings import ConfigurationError
from ingest.rest_poller import PositionPoller
from ingest.websocket_client import UserDataStream


logger = logging.getLogger(__name__)


class LifecycleError(Exception):
    """Operator request that is not valid in the current bot state."""


class SignalNotFound(LookupError):
    pass


class LifecycleController:
    """
    Owns the bot's running/auto-order flags and the background tasks behind them.

    Start launches the scan loop plus the position sync (account stream and
    periodic REST reconciliation, when credentials exist). Scans never overlap: a trigger
    that arrives while one is in flight is skipped.
    """

    def __init__(
        self,
        settings,
        gateway,
        scanner,
        executor,
        tracker,
        book,
        state,
        notifier,
        log_buffer=None,
        metrics: Optional[MetricsCollector] = None,
        sync_factory: Optional[Callable[['LifecycleController'], List[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.scanner = scanner
        self.executor = executor
        self.tracker = tracker
        self.book = book
        self.state = state
        self.notifier = notifier
        self.log_buffer = log_buffer
        self.metrics = metrics or MetricsCollector(CollectorRegistry())
        self._sync_factory = sync_factory or _default_sync
        self._clock = clock or time.time

        self._scan_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._scan_task: Optional[asyncio.Task] = None
        self._sync_tasks: List[asyncio.Task] = []
        self._syncs: List[Any] = []
        self._listeners: List[Callable[[str, Dict[str, Any]], Awaitable[None]]] = []

    # -- transitions -------------------------------------------------------

    async def start(self) -> Dict[str, Any]:
        if self.state.running:
            raise LifecycleError("bot is already running")
        self.state.running = True
        self.state.started_at = self._clock()
        self._stop_event.clear()
        self.state.roll_day()

        self._syncs = list(self._sync_factory(self))
        self._sync_tasks = [asyncio.ensure_future(service.run()) for service in self._syncs]
        self._scan_task = asyncio.ensure_future(self._scan_loop())

        logger.info("Bot started (scan every %ss)", self.settings.scan.interval_s)
        await self.notifier.send_message("Bot started", 'success')
        status = self.status()
        await self._publish('lifecycle', status)
        return status

    async def stop(self) -> Dict[str, Any]:
        if not self.state.running:
            raise LifecycleError("bot is not running")
        self.state.running = False
        self.state.order_active = False
        self._stop_event.set()

        for service in self._syncs:
            await service.stop()
        # the in-flight scan and order sequence finish on their own
        tasks = [t for t in [self._scan_task, *self._sync_tasks] if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._scan_task = None
        self._sync_tasks = []
        self._syncs = []

        logger.info("Bot stopped")
        await self.notifier.send_message("Bot stopped", 'warning')
        status = self.status()
        await self._publish('lifecycle', status)
        return status

    async def start_orders(self) -> Dict[str, Any]:
        if not self.state.running:
            raise LifecycleError("bot must be running before auto-order can start")
        if self.state.order_active:
            raise LifecycleError("auto-order is already active")
        self.settings.require_credentials()
        if not self.gateway.has_credentials:
            raise ConfigurationError("exchange client has no API credentials")

        try:
            server_time = await self.gateway.fetch_server_time()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise LifecycleError(f"exchange connection check failed: {e}") from e
        drift_ms = abs(server_time - int(self._clock() * 1000))
        if drift_ms > self.settings.exchange.recv_window:
            logger.warning("Local clock is %sms away from exchange time", drift_ms)

        if not self.state.running:
            raise LifecycleError("bot stopped while enabling auto-order")
        self.state.order_active = True
        await self._refresh_balance()

        logger.info(
            "Auto-order enabled: %sx %s margin, %s USDT per order, %s/day",
            self.settings.orders.leverage,
            self.settings.orders.margin_type,
            self.settings.orders.capital_per_order,
            self.settings.orders.max_orders_per_day,
        )
        await self.notifier.send_message("Auto-order enabled", 'success')
        return self.status()

    async def stop_orders(self) -> Dict[str, Any]:
        if not self.state.running:
            raise LifecycleError("bot is not running")
        if not self.state.order_active:
            raise LifecycleError("auto-order is not active")
        self.state.order_active = False
        logger.info("Auto-order disabled")
        await self.notifier.send_message("Auto-order disabled", 'warning')
        return self.status()

    # -- scanning ----------------------------------------------------------

    async def run_scan(self):
        """Run one scan unless another is in flight. Never raises."""
        if self._scan_lock.locked():
            logger.warning("Scan trigger skipped: previous scan still running")
            self.metrics.record_scan_skipped()
            return None
        async with self._scan_lock:
            if self.state.roll_day():
                logger.info("New trading day, daily order counter reset")
            self.metrics.update_daily_orders(self.state.daily_order_count)
            try:
                result = await self.scanner.scan(on_signals=self._auto_order)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Scan failed")
                self.state.total_errors += 1
                await self.notifier.send_error(f"Scan failed: {e}", {'stage': 'scan'})
                return None
        await self._publish('scan', {'summary': result.summary.as_dict(), 'signals': self.signals()})
        return result

    async def _auto_order(self, signals):
        if not self.state.order_active:
            return []
        results = await self.executor.execute_batch(signals, keep_going=lambda: self.state.order_active)
        if results:
            await self._publish('orders', {'results': [r.as_dict() for r in results]})
        return results

    async def _scan_loop(self) -> None:
        interval = self.settings.scan.interval_s
        next_run = time.monotonic()
        if not self.settings.scan.run_on_start:
            next_run += interval
        while self.state.running:
            delay = next_run - time.monotonic()
            if delay > 0 and await self._wait_stopped(delay):
                break
            if not self.state.running:
                break
            next_run += interval
            await self.run_scan()
            # an overlong scan pushes the schedule instead of stacking triggers
            now = time.monotonic()
            if next_run < now:
                next_run = now

    async def _wait_stopped(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # -- manual operations -------------------------------------------------

    async def execute_signal(self, signal_id: str):
        signal = self.book.get(signal_id)
        if signal is None:
            raise SignalNotFound(signal_id)
        self.settings.require_credentials()
        return await self.executor.place_order(signal)

    async def close_position(self, symbol: str, side: Optional[str] = None):
        self.settings.require_credentials()
        return await self.executor.close_position(symbol.upper(), side)

    async def refresh_positions(self) -> List[Dict[str, Any]]:
        since = self.tracker.mark()
        snapshot = await self.gateway.fetch_positions()
        await self._on_position_snapshot(snapshot, since)
        return self.positions()

    # -- position sync -----------------------------------------------------

    async def _on_account_event(self, event: Dict[str, Any]) -> None:
        if event.get('e') != 'ACCOUNT_UPDATE':
            return
        for balance in (event.get('a') or {}).get('B') or []:
            if balance.get('a') == 'USDT':
                try:
                    self.state.balance = float(balance.get('wb'))
                except (TypeError, ValueError):
                    pass
        closed = self.tracker.apply_account_event(event)
        await self._after_sync(closed)

    async def _on_position_snapshot(self, snapshot: List[Dict[str, Any]], since: Optional[int] = None) -> None:
        closed = self.tracker.refresh(snapshot, since)
        await self._after_sync(closed)

    async def _after_sync(self, closed) -> None:
        self.metrics.update_open_positions(len(self.tracker))
        for position in closed:
            logger.info("Position %s %s closed on exchange", position.side, position.symbol)
            await self.notifier.send_position_closed(position)
            await self._publish('position_closed', position.to_dict())

    async def _refresh_balance(self) -> Optional[Dict[str, float]]:
        if not self.gateway.has_credentials:
            return None
        try:
            balance = await self.gateway.fetch_balance()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Balance lookup failed: %s", e)
            return None
        equity = balance['total'] + balance.get('unrealized_pnl', 0.0)
        self.state.balance = balance['total']
        if self.state.initial_capital is None:
            self.state.initial_capital = equity
            logger.info("Initial capital recorded: %.2f USDT", equity)
        self.metrics.update_equity(equity)
        return balance

    # -- events --------------------------------------------------------------

    def add_listener(self, listener: Callable[[str, Dict[str, Any]], Awaitable[None]]) -> None:
        """Register a coroutine called with (event_type, payload) for status, scan, order and close events."""
        self._listeners.append(listener)

    async def _publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event_type, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Event listener failed for %s", event_type)

    # -- queries -----------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        data = self.state.as_dict()
        data.update({
            'scan_in_progress': self._scan_lock.locked(),
            'scan_interval_s': self.settings.scan.interval_s,
            'max_orders_per_day': self.settings.orders.max_orders_per_day,
            'order_limit_per_scan': self.settings.orders.order_limit_per_scan,
            'open_positions': len(self.tracker),
            'current_signals': len(self.book),
            'position_sync': self._sync_mode(),
            'credentials': self.gateway.has_credentials,
        })
        return data

    def positions(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.tracker.snapshot()]

    def signals(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.book.current()]

    def signal_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.book.history(limit)

    def recent_logs(self, limit: int = 100, level: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.log_buffer is None:
            return []
        return self.log_buffer.recent(limit, level)

    def notification_status(self) -> Dict[str, Dict[str, Any]]:
        return self.notifier.connection_status()

    async def test_notifications(self) -> Dict[str, Dict[str, Any]]:
        results = await self.notifier.test_connections()
        failed = [name for name, outcome in results.items() if not outcome['success']]
        if failed:
            logger.warning("Notification test failed for %s", ", ".join(failed))
        return results

    async def stats(self) -> Dict[str, Any]:
        balance = await self._refresh_balance()
        data: Dict[str, Any] = {
            'scan_count': self.state.scan_count,
            'total_signals': self.state.total_signals,
            'total_errors': self.state.total_errors,
            'total_orders': self.state.total_orders,
            'daily_order_count': self.state.daily_order_count,
            'open_positions': len(self.tracker),
            'initial_capital': self.state.initial_capital,
            'balance': None,
            'available': None,
            'unrealized_pnl': None,
            'profit': None,
            'profit_pct': None,
        }
        if balance is None:
            return data
        equity = balance['total'] + balance.get('unrealized_pnl', 0.0)
        data.update({
            'balance': balance['total'],
            'available': balance.get('available'),
            'unrealized_pnl': balance.get('unrealized_pnl'),
        })
        initial = self.state.initial_capital
        if initial:
            profit = equity - initial
            data['profit'] = round(profit, 2)
            data['profit_pct'] = round(profit / initial * 100, 2)
        return data

    def _sync_mode(self) -> List[str]:
        modes = []
        for service in self._syncs:
            if isinstance(service, UserDataStream):
                modes.append('stream' if service.connected else 'stream (connecting)')
            elif isinstance(service, PositionPoller):
                modes.append('polling')
        return modes


def _default_sync(controller: LifecycleController) -> List[Any]:
    """Account stream plus periodic reconciliation; nothing to sync without API keys."""
    if not controller.gateway.has_credentials:
        logger.info("No API credentials, position sync disabled")
        return []
    return [
        UserDataStream(
            controller.gateway,
            controller._on_account_event,
            metrics=controller.metrics,
        ),
        PositionPoller(
            controller.gateway,
            controller._on_position_snapshot,
            interval_s=controller.settings.positions.poll_interval_s,
            mark=controller.tracker.mark,
        ),
    ]
