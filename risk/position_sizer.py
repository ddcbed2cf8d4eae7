from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Tuple, Union
import logging


logger = logging.getLogger(__name__)

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of the binary float expansion
    return Decimal(str(value))


def tick_decimals(tick_size: Number) -> int:
    exponent = to_decimal(tick_size).normalize().as_tuple().exponent
    return max(0, -int(exponent))


def _to_step(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    units = (value / step).to_integral_value(rounding=rounding)
    return (units * step).quantize(Decimal(1).scaleb(-tick_decimals(step)))


def round_to_tick(price: Number, tick_size: Number) -> Decimal:
    """Nearest multiple of ``tick_size``, halves rounded up."""
    tick = to_decimal(tick_size)
    if tick <= 0:
        raise ValueError("tick_size must be positive")
    return _to_step(to_decimal(price), tick, ROUND_HALF_UP)


def compute_quantity(
    capital: Number,
    leverage: Number,
    price: Number,
    lot_step: Number,
    min_qty: Number = 0,
) -> Decimal:
    """
    Contract quantity for a fixed margin allocation.

    floor(capital * leverage / price / lot_step) * lot_step. Returns zero when the
    notional cannot buy one lot or falls under the exchange minimum.
    """
    step = to_decimal(lot_step)
    price = to_decimal(price)
    if step <= 0:
        raise ValueError("lot_step must be positive")
    if price <= 0:
        return Decimal(0)

    raw = to_decimal(capital) * to_decimal(leverage) / price
    qty = _to_step(raw, step, ROUND_FLOOR)
    if qty <= 0 or qty < to_decimal(min_qty):
        logger.debug("Quantity %s below minimum (raw %s, step %s, min %s)", qty, raw, step, min_qty)
        return Decimal(0)
    return qty


def compute_bracket_prices(
    entry: Number,
    is_long: bool,
    leverage: Number,
    tp_roi_pct: Number,
    sl_roi_pct: Number,
    tick_size: Number,
) -> Tuple[Decimal, Decimal]:
    """
    Take-profit and stop-loss trigger prices for an entry.

    ROI is measured on margin, so the price move is roi / leverage / 100. Both
    prices are tick-aligned and kept strictly on their side of the entry.
    """
    entry = to_decimal(entry)
    tick = to_decimal(tick_size)
    if entry <= 0:
        raise ValueError("entry price must be positive")
    lev = to_decimal(leverage)
    tp_move = to_decimal(tp_roi_pct) / lev / 100
    sl_move = to_decimal(sl_roi_pct) / lev / 100

    if is_long:
        tp = round_to_tick(entry * (1 + tp_move), tick)
        sl = round_to_tick(entry * (1 - sl_move), tick)
        if tp <= entry:
            tp = _to_step(entry, tick, ROUND_FLOOR) + tick
        if sl >= entry:
            sl = _to_step(entry, tick, ROUND_CEILING) - tick
    else:
        tp = round_to_tick(entry * (1 - tp_move), tick)
        sl = round_to_tick(entry * (1 + sl_move), tick)
        if tp >= entry:
            tp = _to_step(entry, tick, ROUND_CEILING) - tick
        if sl <= entry:
            sl = _to_step(entry, tick, ROUND_FLOOR) + tick

    if tp <= 0 or sl <= 0:
        raise ValueError(f"bracket prices not positive for entry {entry} (tp={tp}, sl={sl})")
    return tp, sl
