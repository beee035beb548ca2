"""Live valuation of positions from quote snapshots.

Per leg there are three regimes, in priority order:

* settled  - terminal; valued at intrinsic against the recorded settlement price
* exited   - frozen at the manual exit price, no Greeks, excluded from IV/Δσ
* live     - read from the quote store (order book preferred, mark fallback)

A live leg whose quote has not arrived yet is valued at its entry price and
flagged ``fetching`` so callers can render a gap instead of a bogus PnL.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from core.quote_store import QuoteSnapshotStore
from core.symbols import infer_underlying_spot_symbol, leg_key
from logging_config import get_valuation_logger
from models.position import CloseSnapshot, Leg, Position, SettledState, Side, now_ms as _now_ms
from risk_engine.option_pricing import DAY_MS, YEAR_MS, implied_vol, intrinsic_value
from risk_engine.payoff import break_evens, payoff_extrema
from risk_engine.strategy_classifier import classify_position

LOGGER = get_valuation_logger()

# (max spread %, min open interest) per grade, best first.
LIQUIDITY_GRADES: tuple[tuple[str, float, float], ...] = (
    ("A", 1.0, 2000.0),
    ("B", 2.0, 1000.0),
    ("C", 3.0, 300.0),
)


@dataclass(slots=True)
class LegSnapshot:
    leg: Leg
    key: str
    bid: Optional[float] = None
    ask: Optional[float] = None
    mid: float = 0.0
    exec_price: float = 0.0
    spread: Optional[float] = None
    spread_pct: Optional[float] = None
    open_interest: Optional[float] = None
    delta: float = 0.0
    gamma: float = 0.0
    vega: float = 0.0
    theta: float = 0.0
    mark_iv_pct: Optional[float] = None
    exec_iv_pct: Optional[float] = None
    delta_sigma_pct: Optional[float] = None
    index_price: Optional[float] = None
    pnl_mid: float = 0.0
    pnl_exec: float = 0.0
    settled: bool = False
    exited: bool = False
    fetching: bool = False

    @property
    def cash_sign(self) -> int:
        return self.leg.side.cash_sign


@dataclass(slots=True)
class PositionGreeks:
    delta: float = 0.0
    gamma: float = 0.0
    vega: float = 0.0
    theta: float = 0.0

    def add(self, snap: LegSnapshot) -> None:
        weight = snap.leg.side.exposure_sign * snap.leg.qty
        self.delta += weight * snap.delta
        self.gamma += weight * snap.gamma
        self.vega += weight * snap.vega
        self.theta += weight * snap.theta


@dataclass(slots=True)
class LiquiditySummary:
    """Worst-leg liquidity: a combo only fills as well as its thinnest leg."""

    max_spread: Optional[float] = None
    min_open_interest: Optional[float] = None
    max_spread_pct: Optional[float] = None

    @property
    def grade(self) -> str:
        spread_pct, oi = self.max_spread_pct, self.min_open_interest
        if spread_pct is None or oi is None:
            return "D"
        for label, max_pct, min_oi in LIQUIDITY_GRADES:
            if spread_pct < max_pct and oi >= min_oi:
                return label
        return "D"

    @classmethod
    def from_legs(cls, snaps: list[LegSnapshot]) -> "LiquiditySummary":
        spreads = [s.spread for s in snaps if s.spread is not None]
        ois = [s.open_interest for s in snaps if s.open_interest is not None]
        pcts = [s.spread_pct for s in snaps if s.spread_pct is not None]
        return cls(
            max_spread=max(spreads) if spreads else None,
            min_open_interest=min(ois) if ois else None,
            max_spread_pct=max(pcts) if pcts else None,
        )


@dataclass(slots=True)
class PositionValuation:
    position_id: str
    legs: list[LegSnapshot]
    net_entry: float
    net_mid: float
    net_exec: float
    greeks: PositionGreeks
    liquidity: LiquiditySummary
    spot: Optional[float] = None
    width: Optional[float] = None
    max_loss: Optional[float] = None
    dte: Optional[int] = None
    expiries: list[int] = field(default_factory=list)

    @property
    def pnl_mid(self) -> float:
        return self.net_entry - self.net_mid

    @property
    def pnl_exec(self) -> float:
        return self.net_entry - self.net_exec

    @property
    def fetching(self) -> bool:
        return any(s.fetching for s in self.legs)


def _settlement_price(position: Position, leg: Leg) -> Optional[float]:
    if isinstance(leg.state, SettledState):
        return leg.state.price
    if not leg.is_underlying:
        settlement = position.settlements.get(leg.expiry_ms)
        if settlement is not None:
            return settlement.price
    return None


def _leg_pnl(leg: Leg, price: float) -> float:
    return leg.side.cash_sign * (leg.entry_price - price) * leg.qty


def compute_leg_snapshot(
    position: Position,
    leg: Leg,
    store: QuoteSnapshotStore,
    now_ms: int | None = None,
    *,
    index: int = 0,
    rate: float = 0.0,
) -> LegSnapshot:
    key = leg_key(leg, index)

    settle_price = _settlement_price(position, leg)
    if settle_price is not None:
        value = settle_price if leg.is_underlying else intrinsic_value(leg.option_type, settle_price, leg.strike)
        return LegSnapshot(
            leg=leg,
            key=key,
            mid=value,
            exec_price=value,
            index_price=settle_price,
            pnl_mid=_leg_pnl(leg, value),
            pnl_exec=_leg_pnl(leg, value),
            settled=True,
        )

    if leg.is_exited:
        price = leg.state.price
        return LegSnapshot(
            leg=leg,
            key=key,
            bid=price,
            ask=price,
            mid=price,
            exec_price=price,
            spread=0.0,
            pnl_mid=_leg_pnl(leg, price),
            pnl_exec=_leg_pnl(leg, price),
            exited=True,
        )

    quote = store.get_or_empty(leg.symbol)
    bid, ask, mid = quote.best_bid, quote.best_ask, quote.mid
    fetching = mid is None
    if mid is None:
        mid = leg.entry_price
    if leg.side is Side.SHORT:
        exec_price = ask if ask is not None else mid
    else:
        exec_price = bid if bid is not None else mid

    spread = quote.spread
    spread_pct = spread / mid * 100.0 if spread is not None and mid > 0 else None

    snap = LegSnapshot(
        leg=leg,
        key=key,
        bid=bid,
        ask=ask,
        mid=mid,
        exec_price=exec_price,
        spread=spread,
        spread_pct=spread_pct,
        open_interest=quote.open_interest,
        delta=quote.delta if quote.delta is not None else (1.0 if leg.is_underlying else 0.0),
        gamma=quote.gamma or 0.0,
        vega=quote.vega or 0.0,
        theta=quote.theta or 0.0,
        index_price=quote.index_price,
        pnl_mid=_leg_pnl(leg, mid),
        pnl_exec=_leg_pnl(leg, exec_price),
        fetching=fetching,
    )

    if not leg.is_underlying:
        snap.mark_iv_pct = quote.mark_iv
        now = now_ms if now_ms is not None else _now_ms()
        years = (leg.expiry_ms - now) / YEAR_MS
        spot = quote.index_price
        if not fetching and spot and years > 0:
            sigma = implied_vol(leg.option_type, spot, leg.strike, years, exec_price, rate)
            if sigma is not None:
                snap.exec_iv_pct = sigma * 100.0
                if snap.mark_iv_pct is not None:
                    snap.delta_sigma_pct = snap.exec_iv_pct - snap.mark_iv_pct
    return snap


def detect_spot(position: Position, store: QuoteSnapshotStore) -> Optional[float]:
    """Index price from the first quoted leg, else the underlying spot/perp quote."""
    for leg in position.legs:
        quote = store.get(leg.symbol)
        if quote is not None and quote.index_price:
            return quote.index_price
    for leg in position.legs:
        spot_symbol = infer_underlying_spot_symbol(leg.symbol)
        quote = store.get(spot_symbol) if spot_symbol else None
        if quote is None:
            continue
        price = quote.mark_price or quote.last_price or quote.mid
        if price:
            return price
    return None


def value_position(
    position: Position,
    store: QuoteSnapshotStore,
    now_ms: int | None = None,
    *,
    rate: float = 0.0,
) -> PositionValuation:
    now = now_ms if now_ms is not None else _now_ms()
    snaps = [
        compute_leg_snapshot(position, leg, store, now, index=i, rate=rate)
        for i, leg in enumerate(position.legs)
        if not leg.hidden
    ]

    net_entry = sum(s.cash_sign * s.leg.entry_price * s.leg.qty for s in snaps)
    net_mid = sum(s.cash_sign * s.mid * s.leg.qty for s in snaps)
    net_exec = sum(s.cash_sign * s.exec_price * s.leg.qty for s in snaps)

    greeks = PositionGreeks()
    for snap in snaps:
        if not snap.settled:
            greeks.add(snap)

    expiries = sorted({s.leg.expiry_ms for s in snaps if not s.leg.is_underlying})
    valuation = PositionValuation(
        position_id=position.id,
        legs=snaps,
        net_entry=net_entry,
        net_mid=net_mid,
        net_exec=net_exec,
        greeks=greeks,
        liquidity=LiquiditySummary.from_legs(snaps),
        spot=detect_spot(position, store),
        expiries=expiries,
    )

    short, long = position.short_leg, position.long_leg
    if position.kind == "vertical" and short is not None and long is not None and short.expiry_ms == long.expiry_ms:
        valuation.width = abs(short.strike - long.strike)
        valuation.max_loss = max(0.0, (valuation.width - (position.c_enter or 0.0)) * short.qty)
        valuation.dte = max(0, round((short.expiry_ms - now) / DAY_MS))

    if valuation.fetching:
        LOGGER.debug("Position %s valued with missing quotes", position.id)
    return valuation


def build_close_snapshot(
    position: Position,
    store: QuoteSnapshotStore,
    spot_price: float | None = None,
    now_ms: int | None = None,
) -> CloseSnapshot:
    """Freeze the current valuation as the position's realised outcome."""
    now = now_ms if now_ms is not None else _now_ms()
    valuation = value_position(position, store, now)
    return CloseSnapshot(
        timestamp=now,
        index_price=valuation.spot,
        spot_price=spot_price if spot_price is not None and math.isfinite(spot_price) else None,
        pnl_mid=valuation.pnl_mid,
        pnl_exec=valuation.pnl_exec,
    )


@dataclass(slots=True)
class PositionRow:
    valuation: PositionValuation
    strategy: str
    max_profit: Optional[float]
    max_loss: Optional[float]
    profit_unbounded: bool
    loss_unbounded: bool
    break_evens: list[float]


def compute_position_row(
    position: Position,
    store: QuoteSnapshotStore,
    now_ms: int | None = None,
    *,
    rate: float = 0.0,
) -> PositionRow:
    """Valuation + expiry extrema + strategy label for one displayed row."""
    valuation = value_position(position, store, now_ms, rate=rate)
    extrema = payoff_extrema(position.active_legs)
    return PositionRow(
        valuation=valuation,
        strategy=classify_position(position),
        max_profit=extrema.max_profit,
        max_loss=extrema.max_loss,
        profit_unbounded=extrema.profit_unbounded,
        loss_unbounded=extrema.loss_unbounded,
        break_evens=break_evens(position.active_legs),
    )
