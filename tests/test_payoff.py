from __future__ import annotations

import math

import pytest

from core.quote_store import QuoteSnapshotStore
from models.position import Position
from risk_engine.payoff import (
    MIN_SIGMA,
    anchor_offset,
    break_evens,
    effective_time_position,
    expiry_pnl,
    is_zero_dte,
    leg_sigma,
    min_time_position,
    payoff_extrema,
    sample_curve,
    target_time_ms,
    time_progress,
    today_curve,
)
from tests.factories import DAY_MS, EXPIRY_MS, NOW_MS, make_leg, make_perp


def bull_call_debit(qty: float = 2.0) -> list:
    return [
        make_leg("long", 2000, "C", qty=qty, entry=60.0),
        make_leg("short", 2100, "C", qty=qty, entry=20.0),
    ]


class TestExpiryPayoff:
    def test_bull_call_debit_spread_extrema(self) -> None:
        extrema = payoff_extrema(bull_call_debit())

        assert extrema.max_profit == pytest.approx((100.0 - 40.0) * 2)
        assert extrema.max_loss == pytest.approx(40.0 * 2)
        assert extrema.profit_unbounded is False
        assert extrema.loss_unbounded is False
        assert extrema.max_loss_at == 0.0

    def test_bull_call_debit_spread_break_even(self) -> None:
        assert break_evens(bull_call_debit()) == [pytest.approx(2040.0)]

    def test_naked_short_call_has_unbounded_loss(self) -> None:
        legs = [make_leg("short", 2100, "C", entry=30.0)]

        extrema = payoff_extrema(legs)

        assert extrema.loss_unbounded is True
        assert extrema.max_loss is None
        assert extrema.max_profit == pytest.approx(30.0)
        assert break_evens(legs) == [pytest.approx(2130.0)]

    def test_long_call_has_unbounded_profit(self) -> None:
        legs = [make_leg("long", 2000, "C", entry=50.0)]

        extrema = payoff_extrema(legs)

        assert extrema.profit_unbounded is True
        assert extrema.max_profit is None
        assert extrema.max_loss == pytest.approx(50.0)

    def test_long_put_profit_is_capped_at_zero_underlying(self) -> None:
        extrema = payoff_extrema([make_leg("long", 2000, "P", entry=50.0)])

        assert extrema.max_profit == pytest.approx(1950.0)
        assert extrema.max_profit_at == 0.0
        assert extrema.profit_unbounded is False

    def test_long_straddle_has_two_break_evens(self) -> None:
        legs = [make_leg("long", 2000, "C", entry=60.0), make_leg("long", 2000, "P", entry=40.0)]

        assert break_evens(legs) == [pytest.approx(1900.0), pytest.approx(2100.0)]

    def test_covered_call_caps_upside(self) -> None:
        legs = [make_perp("long", entry=2000.0), make_leg("short", 2200, "C", entry=50.0)]

        extrema = payoff_extrema(legs)

        assert extrema.profit_unbounded is False
        assert extrema.max_profit == pytest.approx(250.0)
        assert break_evens(legs) == [pytest.approx(1950.0)]

    def test_settled_and_exited_legs_contribute_constant_value(self) -> None:
        settled = make_leg("short", 2100, "C", entry=30.0)
        settled.mark_settled(2150.0, timestamp=EXPIRY_MS)
        exited = make_leg("long", 2200, "C", entry=10.0)
        exited.mark_exited(4.0, timestamp=NOW_MS)
        legs = [settled, exited]

        assert expiry_pnl(legs, 1000.0) == pytest.approx(expiry_pnl(legs, 5000.0))
        assert expiry_pnl(legs, 1000.0) == pytest.approx((30.0 - 50.0) + (4.0 - 10.0))
        assert payoff_extrema(legs).loss_unbounded is False

    def test_empty_legs(self) -> None:
        assert payoff_extrema([]).max_profit is None
        assert break_evens([]) == []

    def test_sample_curve_spans_requested_range(self) -> None:
        curve = sample_curve(bull_call_debit(qty=1), 1800.0, 2300.0, points=5)

        assert [x for x, _ in curve] == pytest.approx([1800.0, 1900.0, 2000.0, 2100.0, 2200.0, 2300.0])
        assert curve[0][1] == pytest.approx(-40.0)
        assert curve[-1][1] == pytest.approx(60.0)


class TestTimeSlider:
    legs = [make_leg("long", 2000, "C", entry=50.0)]
    created = NOW_MS - 10 * DAY_MS

    def test_min_position_tracks_elapsed_fraction(self) -> None:
        assert min_time_position(self.legs, self.created, NOW_MS) == pytest.approx(0.25)
        assert min_time_position(self.legs, self.created, EXPIRY_MS + DAY_MS) == 1.0
        assert min_time_position([make_perp("long")], self.created, NOW_MS) == 0.0

    def test_slider_cannot_move_into_the_past(self) -> None:
        assert effective_time_position(self.legs, self.created, 0.1, NOW_MS) == pytest.approx(0.25)
        assert effective_time_position(self.legs, self.created, 0.5, NOW_MS) == pytest.approx(0.5)
        assert effective_time_position(self.legs, self.created, 3.0, NOW_MS) == 1.0

    def test_zero_dte_pins_slider_to_expiry(self) -> None:
        late = EXPIRY_MS - 12 * 3_600_000

        assert is_zero_dte(self.legs, late) is True
        assert is_zero_dte(self.legs, NOW_MS) is False
        assert effective_time_position(self.legs, self.created, 0.0, late) == 1.0

    def test_target_time_interpolates_creation_to_expiry(self) -> None:
        assert target_time_ms(self.legs, self.created, 0.5, NOW_MS) == NOW_MS + 10 * DAY_MS
        assert target_time_ms(self.legs, self.created, 1.0, NOW_MS) == EXPIRY_MS

    def test_time_progress(self) -> None:
        assert time_progress(0.25, 0.25) == 0.0
        assert time_progress(0.625, 0.25) == pytest.approx(0.5)
        assert time_progress(1.0, 1.0) == 1.0


@pytest.mark.parametrize("progress,expected", [(0.0, 5.0), (0.025, 2.5), (0.05, 0.0), (0.5, 0.0)])
def test_anchor_offset_fades_out(progress: float, expected: float) -> None:
    assert anchor_offset(10.0, 15.0, progress) == pytest.approx(expected)


def test_anchor_offset_ignores_non_finite_inputs() -> None:
    assert anchor_offset(math.nan, 15.0, 0.0) == 0.0


def test_leg_sigma_fallback_chain(store: QuoteSnapshotStore) -> None:
    quoted = make_leg("long", 2000, "C")
    unquoted = make_leg("long", 2500, "C")
    store.merge(quoted.symbol, {"mark_iv": 80.0})

    assert leg_sigma(quoted, store, iv_shift=0.1) == pytest.approx(0.88)
    assert leg_sigma(unquoted, store, hv30_pct=50.0) == pytest.approx(0.5)
    assert leg_sigma(unquoted, store) == pytest.approx(0.6)
    assert leg_sigma(quoted, store, iv_shift=-1.0) == MIN_SIGMA


class TestTodayCurve:
    @pytest.fixture
    def position(self, store: QuoteSnapshotStore) -> Position:
        leg = make_leg("long", 2000, "C", entry=50.0)
        store.merge(leg.symbol, {"mark_iv": 60.0})
        return Position(legs=[leg], created_at=NOW_MS - 10 * DAY_MS)

    def test_curve_is_anchored_to_live_pnl_at_now(self, position: Position, store: QuoteSnapshotStore) -> None:
        curve = today_curve(position, store, [2000.0, 2200.0], now_ms=NOW_MS, spot=2000.0, actual_pnl=12.5)

        assert curve[0] == (2000.0, pytest.approx(12.5))
        assert curve[1][1] > curve[0][1]

    def test_curve_at_expiry_matches_expiry_payoff(self, position: Position, store: QuoteSnapshotStore) -> None:
        xs = [1800.0, 2000.0, 2300.0]

        curve = today_curve(position, store, xs, time_pos=1.0, now_ms=NOW_MS, spot=2000.0, actual_pnl=12.5)

        assert [pnl for _, pnl in curve] == pytest.approx([expiry_pnl(position.legs, s) for s in xs])

    def test_curve_is_empty_for_zero_dte(self, position: Position, store: QuoteSnapshotStore) -> None:
        assert today_curve(position, store, [2000.0], now_ms=EXPIRY_MS - 3_600_000) == []

    def test_curve_is_empty_without_options(self, store: QuoteSnapshotStore) -> None:
        assert today_curve(Position(legs=[make_perp("long")]), store, [2000.0], now_ms=NOW_MS) == []
