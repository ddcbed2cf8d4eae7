import asyncio
import logging
from decimal import Decimal
from typing import Callable, List, Optional

from prometheus_client import CollectorRegistry

from api.metrics import MetricsCollector
from ingest.binance_rest import BinanceAPIError, is_transient_error
from orchestration.positions import Position
from risk.position_sizer import compute_bracket_prices, compute_quantity
from strategy.execution_types import (
    MARKET,
    STOP_MARKET,
    TAKE_PROFIT_MARKET,
    ExecutionResult,
    OrderIntent,
    OrderRejected,
    OrderTicket,
)
from strategy.signal_manager import Direction, Signal, rank_signals


logger = logging.getLogger(__name__)

DAILY_LIMIT_REACHED = 'daily order limit reached'


class OrderExecutor:
    """Turn accepted signals into isolated-margin market entries with TP/SL closing legs.

    Attempts run one at a time. Every exchange mutation for a signal happens
    after the daily limit, open-position and quantity checks have passed.
    """

    def __init__(
        self,
        gateway,
        tracker,
        state,
        notifier,
        settings,
        book=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.gateway = gateway
        self.tracker = tracker
        self.state = state
        self.notifier = notifier
        self.settings = settings
        self.book = book
        self.metrics = metrics or MetricsCollector(CollectorRegistry())
        self._sequence = asyncio.Lock()

    async def execute_batch(
        self,
        signals: List[Signal],
        keep_going: Optional[Callable[[], bool]] = None,
    ) -> List[ExecutionResult]:
        """Rank one scan's signals and attempt the top ``order_limit_per_scan`` sequentially.

        ``keep_going`` is checked before each attempt so auto-ordering can be
        switched off between orders without interrupting one in progress.
        """
        candidates = []
        for signal in signals:
            if self.tracker.has_position(signal.symbol):
                logger.info("Skipping %s: position already open", signal.symbol)
                continue
            candidates.append(signal)

        ranked = rank_signals(candidates, self.settings.rank_by)
        limit = self.settings.order_limit_per_scan
        selected, overflow = ranked[:limit], ranked[limit:]

        results: List[ExecutionResult] = []
        for signal in selected:
            if keep_going is not None and not keep_going():
                logger.info("Auto-order stopped, leaving remaining signals untraded")
                break
            logger.info("Placing order for %s (%s, strength %s)", signal.symbol, signal.direction.value, signal.strength)
            result = await self.place_order(signal)
            results.append(result)
            if result.error == DAILY_LIMIT_REACHED:
                break

        if overflow:
            skipped = ', '.join(s.symbol for s in overflow)
            logger.info("Per-scan order limit %s reached, skipped: %s", limit, skipped)
            await self.notifier.send_message(f"Per-scan order limit {limit} reached, skipped: {skipped}", 'warning')
        return results

    async def place_order(self, signal: Signal) -> ExecutionResult:
        async with self._sequence:
            try:
                return await self._place(signal)
            except OrderRejected as rejected:
                logger.error("Order for %s rejected at %s: %s", signal.symbol, rejected.step, rejected.reason)
                self.metrics.record_order_failed(rejected.step)
                await self.notifier.send_order_failed(signal.symbol, rejected.reason, signal.direction.value)
                return ExecutionResult(
                    symbol=signal.symbol,
                    success=False,
                    direction=signal.direction.value,
                    leverage=self.settings.leverage,
                    error=rejected.reason,
                )

    async def _place(self, signal: Signal) -> ExecutionResult:
        symbol = signal.symbol
        leverage = self.settings.leverage

        if not self.state.can_place_order(self.settings.max_orders_per_day):
            message = f"Daily order limit {self.settings.max_orders_per_day} reached, {symbol} not traded"
            logger.warning(message)
            await self.notifier.send_message(message, 'warning')
            return ExecutionResult(symbol=symbol, success=False, skipped=True, error=DAILY_LIMIT_REACHED)

        if await self._has_open_position(symbol):
            logger.info("Skipping %s: position already open", symbol)
            return ExecutionResult(symbol=symbol, success=False, skipped=True, error='position already open')

        spec = await self._load_spec(symbol)
        quantity = compute_quantity(
            self.settings.capital_per_order,
            leverage,
            signal.price,
            spec.lot_step,
            spec.min_qty,
        )
        if quantity <= 0:
            raise OrderRejected(
                symbol,
                f"capital {self.settings.capital_per_order} x{leverage} buys less than one lot ({spec.lot_step})",
                step='quantity',
            )

        await self._soft_step(symbol, 'margin', self.gateway.set_margin_type(symbol, self.settings.margin_type))
        await self._soft_step(symbol, 'leverage', self.gateway.set_leverage(symbol, leverage))

        direction = signal.direction
        try:
            entry_ticket = await self.gateway.place_order(
                OrderIntent(symbol=symbol, side=direction.order_side, type=MARKET, quantity=quantity)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise OrderRejected(symbol, f"market entry failed: {e}", step='entry') from e
        self.metrics.record_order_placed(MARKET)

        entry_price = await self._entry_price(symbol, entry_ticket, signal.price)
        result = ExecutionResult(
            symbol=symbol,
            success=True,
            direction=direction.value,
            quantity=quantity,
            entry_price=entry_price,
            leverage=leverage,
            entry_order=entry_ticket,
        )
        await self._place_brackets(result, direction, spec.tick_size)

        self.tracker.upsert(
            Position(
                symbol=symbol,
                side='LONG' if direction is Direction.LONG else 'SHORT',
                size=float(quantity),
                entry_price=entry_price,
                mark_price=entry_price,
                stop_loss=result.stop_loss,
                take_profit=result.take_profit,
                leverage=leverage,
            )
        )
        self.state.record_order()
        self.metrics.update_daily_orders(self.state.daily_order_count)
        self.metrics.update_open_positions(len(self.tracker))
        if self.book is not None:
            self.book.consume(signal.signal_id)

        logger.info(
            "Opened %s %s qty=%s entry=%s tp=%s sl=%s",
            direction.value,
            symbol,
            quantity,
            entry_price,
            result.take_profit,
            result.stop_loss,
        )
        await self.notifier.send_order(result)
        return result

    async def close_position(self, symbol: str, side: Optional[str] = None) -> OrderTicket:
        """Flatten a position with a reduce-only market order."""
        async with self._sequence:
            tracked = self.tracker.get(symbol)
            amount = await self._exchange_amount(symbol)
            if amount is None and tracked is not None:
                amount = Decimal(str(tracked.position_amt))
            if not amount:
                raise OrderRejected(symbol, 'no open position', step='close')

            direction = Direction.LONG if amount > 0 else Direction.SHORT
            if side is not None and Direction.from_side(side) is not direction:
                raise OrderRejected(symbol, f"open position is {direction.value}, not {side}", step='close')

            try:
                ticket = await self.gateway.place_order(
                    OrderIntent(
                        symbol=symbol,
                        side=direction.closing_side,
                        type=MARKET,
                        quantity=abs(amount),
                        reduce_only=True,
                    )
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metrics.record_order_failed('close')
                raise OrderRejected(symbol, f"close failed: {e}", step='close') from e

            closed = self.tracker.remove(symbol)
            if closed is None:
                closed = Position(
                    symbol=symbol,
                    side='LONG' if direction is Direction.LONG else 'SHORT',
                    size=float(abs(amount)),
                    status='closed',
                )
            self.metrics.record_order_placed('CLOSE')
            self.metrics.update_open_positions(len(self.tracker))
            logger.info("Closed %s %s qty=%s", closed.side, symbol, abs(amount))
            await self.notifier.send_position_closed(closed)
            return ticket

    async def _has_open_position(self, symbol: str) -> bool:
        if self.tracker.has_position(symbol):
            return True
        try:
            amount = await self.gateway.fetch_position_amount(symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # without a definitive answer the order would risk doubling a position
            raise OrderRejected(symbol, f"position check failed: {e}", step='position_check') from e
        return bool(amount)

    async def _load_spec(self, symbol: str):
        try:
            spec = await self.gateway.fetch_symbol_spec(symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise OrderRejected(symbol, f"symbol metadata unavailable: {e}", step='quantity') from e
        if spec is None:
            raise OrderRejected(symbol, 'unknown symbol', step='quantity')
        return spec

    async def _soft_step(self, symbol: str, step: str, call) -> None:
        """Margin and leverage setup: transient failures are logged, the rest abort the order."""
        try:
            await call
        except asyncio.CancelledError:
            raise
        except BinanceAPIError as e:
            if e.is_already_set:
                return
            if is_transient_error(e):
                logger.warning("%s %s setup failed transiently, continuing: %s", symbol, step, e)
                return
            raise OrderRejected(symbol, f"{step} setup failed: {e}", step=step) from e
        except Exception as e:
            if is_transient_error(e):
                logger.warning("%s %s setup timed out, continuing: %s", symbol, step, e)
                return
            raise OrderRejected(symbol, f"{step} setup failed: {e}", step=step) from e

    async def _entry_price(self, symbol: str, ticket: OrderTicket, fallback: float) -> float:
        if ticket.avg_price:
            return ticket.avg_price
        try:
            entry = await self.gateway.fetch_position_entry(symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Could not read entry price for %s, using signal price: %s", symbol, e)
            entry = None
        return entry or fallback

    async def _place_brackets(self, result: ExecutionResult, direction: Direction, tick_size: Decimal) -> None:
        symbol = result.symbol
        try:
            tp, sl = compute_bracket_prices(
                result.entry_price,
                direction is Direction.LONG,
                result.leverage,
                self.settings.tp_roi_pct,
                self.settings.sl_roi_pct,
                tick_size,
            )
        except ValueError as e:
            await self._bracket_failed(result, 'both', str(e))
            return
        result.take_profit = float(tp)
        result.stop_loss = float(sl)

        legs = (
            ('take_profit', TAKE_PROFIT_MARKET, tp),
            ('stop_loss', STOP_MARKET, sl),
        )
        for leg, order_type, trigger in legs:
            intent = OrderIntent(
                symbol=symbol,
                side=direction.closing_side,
                type=order_type,
                stop_price=trigger,
                close_position=True,
                working_type=self.settings.working_type,
            )
            try:
                ticket = await self.gateway.place_order(intent)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._bracket_failed(result, leg, str(e))
                continue
            setattr(result, f"{leg}_order", ticket)
            self.metrics.record_order_placed(order_type)

    async def _bracket_failed(self, result: ExecutionResult, leg: str, reason: str) -> None:
        message = f"{result.symbol} {leg} leg not placed, position is not fully protected: {reason}"
        logger.error(message)
        result.warnings.append(message)
        self.metrics.record_bracket_failure(leg)
        await self.notifier.send_error(message, {'symbol': result.symbol, 'leg': leg})

    async def _exchange_amount(self, symbol: str) -> Optional[Decimal]:
        try:
            return await self.gateway.fetch_position_amount(symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Position amount lookup for %s failed, using local view: %s", symbol, e)
            return None
