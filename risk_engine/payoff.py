"""Expiry payoff, extrema, break-evens and the time-decayed "today" curve.

PnL convention throughout: ``PnL(S) = net_entry - Σ cash_sign · value(S) · qty``
where ``cash_sign`` is +1 for short legs and -1 for long legs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from core.quote_store import QuoteSnapshotStore
from models.market import OptionType
from models.position import Leg, Position, SettledState, now_ms as _now_ms
from risk_engine.option_pricing import DAY_MS, YEAR_MS, bs_price, intrinsic_value

FAR_PROBE_MULTIPLE = 10.0
ZERO_SLOPE_EPS = 1e-12
CROSSING_EPS = 1e-9
ANCHOR_DECAY_WINDOW = 0.05
DEFAULT_IV_PCT = 60.0
MIN_SIGMA = 1e-4


def net_entry_of(legs: Iterable[Leg]) -> float:
    return sum(leg.side.cash_sign * leg.entry_price * leg.qty for leg in legs)


def leg_value_at_expiry(leg: Leg, S: float) -> float:
    state = leg.state
    if isinstance(state, SettledState):
        return state.price if leg.is_underlying else intrinsic_value(leg.option_type, state.price, leg.strike)
    if leg.is_exited:
        return state.price
    if leg.is_underlying:
        return S
    return intrinsic_value(leg.option_type, S, leg.strike)


def expiry_pnl(legs: Sequence[Leg], S: float, net_entry: float | None = None) -> float:
    entry = net_entry_of(legs) if net_entry is None else net_entry
    return entry - sum(leg.side.cash_sign * leg_value_at_expiry(leg, S) * leg.qty for leg in legs)


def right_slope(legs: Iterable[Leg]) -> float:
    """dPnL/dS beyond the highest strike: long calls/underlying minus short ones."""
    slope = 0.0
    for leg in legs:
        if not leg.is_live:
            continue
        if leg.is_underlying or leg.option_type is OptionType.CALL:
            slope += leg.side.exposure_sign * leg.qty
    return slope


def price_nodes(legs: Sequence[Leg]) -> list[float]:
    """S = 0, every distinct strike, and a far probe past the largest one."""
    strikes = sorted({leg.strike for leg in legs if not leg.is_underlying and leg.strike > 0})
    anchor = max(strikes) if strikes else max((leg.entry_price for leg in legs), default=0.0)
    far = FAR_PROBE_MULTIPLE * max(anchor, 1.0)
    return [0.0, *strikes, far]


@dataclass(slots=True)
class PayoffExtrema:
    max_profit: Optional[float]
    max_loss: Optional[float]
    profit_unbounded: bool = False
    loss_unbounded: bool = False
    max_profit_at: Optional[float] = None
    max_loss_at: Optional[float] = None


def payoff_extrema(legs: Sequence[Leg], net_entry: float | None = None) -> PayoffExtrema:
    """Max profit / max loss at expiry; ``None`` on the side that is unbounded.

    ``max_loss`` is reported as a non-negative magnitude.
    """
    if not legs:
        return PayoffExtrema(max_profit=None, max_loss=None)
    entry = net_entry_of(legs) if net_entry is None else net_entry
    nodes = price_nodes(legs)
    values = [expiry_pnl(legs, s, entry) for s in nodes]

    slope = right_slope(legs)
    profit_unbounded = slope > ZERO_SLOPE_EPS
    loss_unbounded = slope < -ZERO_SLOPE_EPS

    best = max(range(len(nodes)), key=values.__getitem__)
    worst = min(range(len(nodes)), key=values.__getitem__)
    return PayoffExtrema(
        max_profit=None if profit_unbounded else values[best],
        max_loss=None if loss_unbounded else max(0.0, -values[worst]),
        profit_unbounded=profit_unbounded,
        loss_unbounded=loss_unbounded,
        max_profit_at=None if profit_unbounded else nodes[best],
        max_loss_at=None if loss_unbounded else nodes[worst],
    )


def _crossings(xs: Sequence[float], ys: Sequence[float]) -> list[float]:
    found: list[float] = []
    for i in range(1, len(xs)):
        y1, y2 = ys[i - 1], ys[i]
        if (y1 <= 0 <= y2) or (y1 >= 0 >= y2):
            dy = y2 - y1
            if abs(dy) <= CROSSING_EPS:
                continue
            x = xs[i - 1] + (0 - y1) / dy * (xs[i] - xs[i - 1])
            if not found or abs(found[-1] - x) > CROSSING_EPS:
                found.append(x)
    return found


def break_evens(legs: Sequence[Leg], net_entry: float | None = None) -> list[float]:
    """Underlying prices where the expiry PnL crosses zero."""
    if not legs:
        return []
    entry = net_entry_of(legs) if net_entry is None else net_entry
    nodes = price_nodes(legs)
    values = [expiry_pnl(legs, s, entry) for s in nodes]
    found = _crossings(nodes, values)

    slope = right_slope(legs)
    last_x, last_y = nodes[-1], values[-1]
    if abs(slope) > ZERO_SLOPE_EPS and abs(last_y) > CROSSING_EPS and (last_y > 0) != (slope > 0):
        found.append(last_x - last_y / slope)
    return found


def sample_curve(legs: Sequence[Leg], lo: float, hi: float, points: int = 120) -> list[tuple[float, float]]:
    entry = net_entry_of(legs)
    step = (hi - lo) / max(1, points)
    return [(lo + i * step, expiry_pnl(legs, lo + i * step, entry)) for i in range(points + 1)]


# ---------------------------------------------------------------------------
# "Today" curve
# ---------------------------------------------------------------------------


def latest_expiry(legs: Iterable[Leg]) -> Optional[int]:
    expiries = [leg.expiry_ms for leg in legs if not leg.is_underlying and leg.expiry_ms > 0]
    return max(expiries) if expiries else None


def min_time_position(legs: Sequence[Leg], created_at: int, now_ms: int | None = None) -> float:
    """Fraction of the creation→latest-expiry window already elapsed; the slider cannot go below it."""
    latest = latest_expiry(legs)
    if latest is None:
        return 0.0
    now = now_ms if now_ms is not None else _now_ms()
    start = min(created_at or now, latest)
    total = max(1, latest - start)
    elapsed = max(0, min(now - start, total))
    return max(0.0, min(1.0, elapsed / total))


def is_zero_dte(legs: Sequence[Leg], now_ms: int | None = None) -> bool:
    latest = latest_expiry(legs)
    if latest is None:
        return False
    now = now_ms if now_ms is not None else _now_ms()
    return math.floor((latest - now) / DAY_MS) <= 0


def effective_time_position(
    legs: Sequence[Leg], created_at: int, time_pos: float, now_ms: int | None = None
) -> float:
    if is_zero_dte(legs, now_ms):
        return 1.0
    return max(min_time_position(legs, created_at, now_ms), max(0.0, min(1.0, time_pos)))


def target_time_ms(legs: Sequence[Leg], created_at: int, position: float, now_ms: int | None = None) -> int:
    latest = latest_expiry(legs)
    now = now_ms if now_ms is not None else _now_ms()
    if latest is None:
        return now
    start = min(created_at or now, latest)
    return int(start + position * (latest - start))


def time_progress(effective: float, minimum: float) -> float:
    """How far the slider sits from "now", as a fraction of the remaining window."""
    remaining = 1.0 - minimum
    if remaining <= 0:
        return 1.0
    return max(0.0, min(1.0, (effective - minimum) / remaining))


def anchor_offset(model_at_spot: float, actual_pnl: float, progress: float) -> float:
    """Additive shift pulling the model onto live PnL near "now", fading out by ``ANCHOR_DECAY_WINDOW``."""
    if not (math.isfinite(model_at_spot) and math.isfinite(actual_pnl)):
        return 0.0
    weight = max(0.0, 1.0 - max(0.0, progress) / ANCHOR_DECAY_WINDOW)
    return (actual_pnl - model_at_spot) * weight


def leg_sigma(
    leg: Leg,
    store: QuoteSnapshotStore | None,
    hv30_pct: float | None = None,
    iv_shift: float = 0.0,
    default_iv_pct: float = DEFAULT_IV_PCT,
) -> float:
    quote = store.get(leg.symbol) if store is not None else None
    if quote is not None and quote.mark_iv is not None:
        base_pct = quote.mark_iv
    elif hv30_pct is not None:
        base_pct = hv30_pct
    else:
        base_pct = default_iv_pct
    return max(MIN_SIGMA, base_pct * (1.0 + iv_shift) / 100.0)


def leg_model_value(
    leg: Leg,
    S: float,
    at_ms: int,
    store: QuoteSnapshotStore | None = None,
    *,
    hv30_pct: float | None = None,
    iv_shift: float = 0.0,
    default_iv_pct: float = DEFAULT_IV_PCT,
    rate: float = 0.0,
) -> float:
    if not leg.is_live or leg.is_underlying:
        return leg_value_at_expiry(leg, S)
    years = max(0.0, (leg.expiry_ms - at_ms) / YEAR_MS)
    sigma = leg_sigma(leg, store, hv30_pct, iv_shift, default_iv_pct)
    return bs_price(leg.option_type, S, leg.strike, years, sigma, rate)


def today_pnl(
    legs: Sequence[Leg],
    S: float,
    at_ms: int,
    store: QuoteSnapshotStore | None = None,
    *,
    net_entry: float | None = None,
    hv30_pct: float | None = None,
    iv_shift: float = 0.0,
    default_iv_pct: float = DEFAULT_IV_PCT,
    rate: float = 0.0,
    offset: float = 0.0,
) -> float:
    entry = net_entry_of(legs) if net_entry is None else net_entry
    value = sum(
        leg.side.cash_sign
        * leg_model_value(
            leg, S, at_ms, store, hv30_pct=hv30_pct, iv_shift=iv_shift, default_iv_pct=default_iv_pct, rate=rate
        )
        * leg.qty
        for leg in legs
    )
    return entry - value + offset


def today_curve(
    position: Position,
    store: QuoteSnapshotStore | None,
    xs: Sequence[float],
    *,
    time_pos: float = 0.0,
    now_ms: int | None = None,
    hv30_pct: float | None = None,
    iv_shift: float = 0.0,
    default_iv_pct: float = DEFAULT_IV_PCT,
    rate: float = 0.0,
    spot: float | None = None,
    actual_pnl: float | None = None,
) -> list[tuple[float, float]]:
    """Model PnL at the slider's target time for each S in *xs*; ``[]`` once nothing is left to decay."""
    legs = position.active_legs
    now = now_ms if now_ms is not None else _now_ms()
    latest = latest_expiry(legs)
    if latest is None or is_zero_dte(legs, now):
        return []

    minimum = min_time_position(legs, position.created_at, now)
    effective = effective_time_position(legs, position.created_at, time_pos, now)
    at_ms = target_time_ms(legs, position.created_at, effective, now)
    entry = net_entry_of(legs)
    options = dict(hv30_pct=hv30_pct, iv_shift=iv_shift, default_iv_pct=default_iv_pct, rate=rate)

    offset = 0.0
    if spot is not None and actual_pnl is not None and math.isfinite(spot) and now < latest:
        model = today_pnl(legs, spot, at_ms, store, net_entry=entry, **options)
        offset = anchor_offset(model, actual_pnl, time_progress(effective, minimum))

    return [(s, today_pnl(legs, s, at_ms, store, net_entry=entry, offset=offset, **options)) for s in xs]
