"""Name multi-leg option structures from their shape.

``classify_strategy`` is a pure function over a leg list and the net entry
credit (positive = credit received).  Rules are tried most specific first and
always fall back to a generic label, never an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from models.market import OptionType
from models.position import Leg, Position, Side

STRIKE_TOL = 1e-6
APPROX_ABS = 0.01
APPROX_REL = 0.02
COVERAGE_ABS = 0.01
COVERAGE_REL = 0.05

EMPTY_LABEL = "Empty"


@dataclass(slots=True, frozen=True)
class StrategyLeg:
    side: Side
    option_type: OptionType
    expiry_ms: int
    strike: float
    qty: float
    symbol: str = ""
    is_underlying: bool = False

    @classmethod
    def from_leg(cls, leg: Leg) -> "StrategyLeg":
        return cls(
            side=leg.side,
            option_type=leg.option_type,
            expiry_ms=leg.expiry_ms,
            strike=leg.strike,
            qty=leg.qty,
            symbol=leg.symbol,
            is_underlying=leg.is_underlying,
        )

    @property
    def is_long(self) -> bool:
        return self.side is Side.LONG

    @property
    def is_call(self) -> bool:
        return self.option_type is OptionType.CALL

    @property
    def signed_qty(self) -> float:
        return self.qty if self.is_long else -self.qty


def same(a: float, b: float) -> bool:
    return abs(a - b) <= STRIKE_TOL


def approx(a: float, b: float) -> bool:
    return abs(a - b) <= max(APPROX_ABS, APPROX_REL * max(abs(a), abs(b)))


def coverage_ok(cover_qty: float, option_qty: float) -> bool:
    """Whether *cover_qty* of underlying covers *option_qty* contracts, within 5 % slack."""
    if option_qty <= 0:
        return True
    slack = max(COVERAGE_ABS, COVERAGE_REL * option_qty)
    return cover_qty + slack >= option_qty


def _total(legs: Iterable[StrategyLeg]) -> float:
    return sum(abs(leg.qty) for leg in legs)


def _type_name(leg: StrategyLeg) -> str:
    return "Call" if leg.is_call else "Put"


def _pick(legs: Sequence[StrategyLeg], option_type: OptionType, side: Side) -> list[StrategyLeg]:
    return [leg for leg in legs if leg.option_type is option_type and leg.side is side]


def _by_strike(legs: Iterable[StrategyLeg]) -> list[StrategyLeg]:
    return sorted(legs, key=lambda leg: leg.strike)


def _all_covered(legs: Iterable[StrategyLeg], cover: float) -> bool:
    return all(coverage_ok(cover, leg.qty) for leg in legs)


def _strictly_less(a: float, b: float) -> bool:
    return a + STRIKE_TOL < b


# ---------------------------------------------------------------------------
# Underlying-bearing structures
# ---------------------------------------------------------------------------


def _classify_underlying_only(under: Sequence[StrategyLeg]) -> str:
    if len(under) == 1:
        return "Long Underlying" if under[0].is_long else "Short Underlying"
    long_qty = _total(leg for leg in under if leg.is_long)
    short_qty = _total(leg for leg in under if not leg.is_long)
    if long_qty > 0 and approx(long_qty, short_qty):
        return "Hedged Underlying Pair"
    return "Underlying Combo"


def _covered_long(options: Sequence[StrategyLeg], cover: float) -> str | None:
    short_calls = _pick(options, OptionType.CALL, Side.SHORT)
    if short_calls and len(short_calls) == len(options) and coverage_ok(cover, _total(short_calls)):
        return "Covered Call" if len(short_calls) == 1 else "Covered Calls"

    if len(options) == 1:
        opt = options[0]
        if coverage_ok(cover, opt.qty) and opt.option_type is OptionType.PUT and opt.is_long:
            return "Protective Put"

    if len(options) == 2:
        s_calls = _pick(options, OptionType.CALL, Side.SHORT)
        l_puts = _pick(options, OptionType.PUT, Side.LONG)
        s_puts = _pick(options, OptionType.PUT, Side.SHORT)
        l_calls = _pick(options, OptionType.CALL, Side.LONG)
        if len(s_calls) == 1 and len(l_puts) == 1 and _all_covered(s_calls + l_puts, cover):
            return "Collar" if same(s_calls[0].expiry_ms, l_puts[0].expiry_ms) else "Diagonal Collar"
        if len(s_calls) == 1 and len(s_puts) == 1 and _all_covered(s_calls + s_puts, cover):
            return "Covered Strangle"
        if len(l_calls) == 1 and len(l_puts) == 1 and _all_covered(l_calls + l_puts, cover):
            return "Protective Strangle"
    return None


def _covered_short(options: Sequence[StrategyLeg], cover: float) -> str | None:
    short_puts = _pick(options, OptionType.PUT, Side.SHORT)
    if short_puts and len(short_puts) == len(options) and coverage_ok(cover, _total(short_puts)):
        return "Covered Put" if len(short_puts) == 1 else "Covered Puts"

    if len(options) == 1:
        opt = options[0]
        if coverage_ok(cover, opt.qty) and opt.is_call and opt.is_long:
            return "Protective Call"

    if len(options) == 2:
        l_calls = _pick(options, OptionType.CALL, Side.LONG)
        s_puts = _pick(options, OptionType.PUT, Side.SHORT)
        l_puts = _pick(options, OptionType.PUT, Side.LONG)
        s_calls = _pick(options, OptionType.CALL, Side.SHORT)
        if len(l_calls) == 1 and len(s_puts) == 1 and _all_covered(l_calls + s_puts, cover):
            return "Reverse Collar" if same(l_calls[0].expiry_ms, s_puts[0].expiry_ms) else "Reverse Diagonal Collar"
        if len(s_calls) == 1 and len(s_puts) == 1 and _all_covered(s_calls + s_puts, cover):
            return "Covered Short Strangle"
        if len(l_calls) == 1 and len(l_puts) == 1 and _all_covered(l_calls + l_puts, cover):
            return "Protective Short Strangle"
    return None


def _classify_with_underlying(options: Sequence[StrategyLeg], under: Sequence[StrategyLeg]) -> str:
    long_under = _total(leg for leg in under if leg.is_long)
    short_under = _total(leg for leg in under if not leg.is_long)

    label = None
    if long_under > 0 and not short_under:
        label = _covered_long(options, long_under)
    elif short_under > 0 and not long_under:
        label = _covered_short(options, short_under)
    if label:
        return label

    if long_under > 0 and approx(long_under, short_under):
        return "Delta-Neutral Stock Hedge"
    return "Stock & Options Combo"


# ---------------------------------------------------------------------------
# Pure option structures
# ---------------------------------------------------------------------------


def _classify_two(a: StrategyLeg, b: StrategyLeg, net_credit: float) -> str:
    same_exp = same(a.expiry_ms, b.expiry_ms)
    same_strike = same(a.strike, b.strike)

    if a.option_type is not b.option_type and same_exp and a.side is b.side:
        shape = "Straddle" if same_strike else "Strangle"
        return f"{'Long' if a.is_long else 'Short'} {shape}"

    if a.option_type is b.option_type and a.side is not b.side:
        typ = _type_name(a)
        long_leg, short_leg = (a, b) if a.is_long else (b, a)
        if not same_exp:
            direction = "Long" if long_leg.expiry_ms > short_leg.expiry_ms else "Short"
            return f"{direction} {typ} {'Calendar' if same_strike else 'Diagonal'}"
        if not same_strike:
            kind = "Credit" if net_credit > 0 else "Debit"
            if a.is_call:
                bull = long_leg.strike < short_leg.strike
            else:
                bull = short_leg.strike > long_leg.strike
            return f"{'Bull' if bull else 'Bear'} {typ} {kind} Spread"

    return "Two-leg Combo"


def _classify_three(options: Sequence[StrategyLeg], same_exp: bool, same_type: bool) -> str:
    if not (same_exp and same_type):
        return "Three-leg Combo"

    typ = _type_name(options[0])
    ordered = _by_strike(options)
    q = [leg.signed_qty for leg in ordered]
    if same(abs(q[0]), abs(q[2])) and same(abs(q[1]), abs(q[0] + q[2])):
        broken = "" if same(ordered[1].strike - ordered[0].strike, ordered[2].strike - ordered[1].strike) else "Broken Wing "
        if q[0] > 0 and q[2] > 0 and q[1] < 0:
            return f"{broken}Long {typ} Butterfly"
        if q[0] < 0 and q[2] < 0 and q[1] > 0:
            return f"{broken}Short {typ} Butterfly"

    longs = [leg for leg in options if leg.is_long]
    shorts = [leg for leg in options if not leg.is_long]
    if sorted((len(longs), len(shorts))) == [1, 2]:
        ratio = f"{round(_total(longs))}x{round(_total(shorts))}"
        return f"Ratio {typ} Spread ({ratio})"
    return "Three-leg Combo"


def _iron_shape(calls: Sequence[StrategyLeg], puts: Sequence[StrategyLeg], options: Sequence[StrategyLeg]) -> str | None:
    put_strikes = [leg.strike for leg in puts]
    mid_k = next((leg.strike for leg in _by_strike(calls) if any(same(leg.strike, k) for k in put_strikes)), None)
    if mid_k is not None:
        c_mid = next((leg for leg in calls if same(leg.strike, mid_k)), None)
        p_mid = next((leg for leg in puts if same(leg.strike, mid_k)), None)
        wings = [leg for leg in options if not same(leg.strike, mid_k)]
        if c_mid and p_mid and len(wings) == 2:
            if not c_mid.is_long and not p_mid.is_long:
                return "Short Iron Butterfly"
            if c_mid.is_long and p_mid.is_long:
                return "Long Iron Butterfly"

    c, p = _by_strike(calls), _by_strike(puts)
    if (
        _strictly_less(p[0].strike, p[1].strike)
        and _strictly_less(c[0].strike, c[1].strike)
        and _strictly_less(p[1].strike, c[0].strike)
    ):
        sides = (c[0].is_long, c[1].is_long, p[0].is_long, p[1].is_long)
        if sides == (False, True, True, False):
            return "Short Iron Condor"
        if sides == (True, False, False, True):
            return "Long Iron Condor"
    return None


def _box_shape(calls: Sequence[StrategyLeg], puts: Sequence[StrategyLeg]) -> str | None:
    strikes = sorted({leg.strike for leg in (*calls, *puts)})
    if len(strikes) != 2:
        return None
    k1, k2 = strikes

    def has(legs: Sequence[StrategyLeg], strike: float, long: bool) -> bool:
        return any(same(leg.strike, strike) and leg.is_long is long for leg in legs)

    if has(calls, k1, True) and has(calls, k2, False) and has(puts, k2, True) and has(puts, k1, False):
        return "Long Box Spread"
    if has(calls, k1, False) and has(calls, k2, True) and has(puts, k2, False) and has(puts, k1, True):
        return "Short Box Spread"
    return None


def _classify_four(options: Sequence[StrategyLeg], same_exp: bool, same_type: bool) -> str:
    calls = [leg for leg in options if leg.is_call]
    puts = [leg for leg in options if not leg.is_call]
    balanced = len(calls) == 2 and len(puts) == 2

    if same_exp:
        if balanced:
            label = _iron_shape(calls, puts, options)
            if label:
                return label
        if same_type:
            ordered = _by_strike(options)
            wings = (ordered[0].is_long, ordered[1].is_long, ordered[2].is_long, ordered[3].is_long)
            typ = _type_name(options[0])
            if wings == (True, False, False, True):
                return f"Long {typ} Condor"
            if wings == (False, True, True, False):
                return f"Short {typ} Condor"
        if balanced:
            label = _box_shape(calls, puts)
            if label:
                return label
    elif balanced and len({leg.expiry_ms for leg in options}) == 2:
        call_strike_same = same(calls[0].strike, calls[1].strike)
        put_strike_same = same(puts[0].strike, puts[1].strike)
        opposite = calls[0].side is not calls[1].side and puts[0].side is not puts[1].side
        if opposite and call_strike_same and put_strike_same:
            return "Double Calendar (Straddle)"
        if opposite and not call_strike_same and not put_strike_same:
            return "Double Diagonal"
    return "Four-leg Combo"


def classify_strategy(legs: Sequence[StrategyLeg | Leg], net_credit: float = 0.0) -> str:
    active = [leg if isinstance(leg, StrategyLeg) else StrategyLeg.from_leg(leg) for leg in legs]
    active = [leg for leg in active if abs(leg.qty) > 0]
    if not active:
        return EMPTY_LABEL

    options = [leg for leg in active if not leg.is_underlying]
    under = [leg for leg in active if leg.is_underlying]
    if not options:
        return _classify_underlying_only(under)
    if under:
        return _classify_with_underlying(options, under)

    count = len(options)
    same_exp = all(same(leg.expiry_ms, options[0].expiry_ms) for leg in options)
    same_type = all(leg.option_type is options[0].option_type for leg in options)

    if count == 1:
        leg = options[0]
        return f"{'Long' if leg.is_long else 'Short'} {_type_name(leg)}"
    if count == 2:
        return _classify_two(options[0], options[1], net_credit)
    if count == 3:
        return _classify_three(options, same_exp, same_type)
    if count == 4:
        return _classify_four(options, same_exp, same_type)
    return f"Complex ({count} legs)"


def classify_position(position: Position) -> str:
    return classify_strategy(position.active_legs, position.net_entry)
