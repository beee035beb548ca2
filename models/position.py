from __future__ import annotations

import math
import time
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from models.market import Instrument, OptionType


def now_ms() -> int:
    return int(time.time() * 1000)


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def cash_sign(self) -> int:
        """+1 for short (premium received), -1 for long (premium paid)."""
        return 1 if self is Side.SHORT else -1

    @property
    def exposure_sign(self) -> int:
        """+1 for long, -1 for short; used when aggregating Greeks."""
        return -self.cash_sign


def validate_settlement_price(price: float) -> float:
    value = float(price)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"Settlement price must be a positive finite number, got {price!r}")
    return value


def validate_exit_price(price: float) -> float:
    value = float(price)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"Exit price must be a non-negative finite number, got {price!r}")
    return value


class LiveState(BaseModel):
    kind: Literal["live"] = "live"


class ExitedState(BaseModel):
    """Leg closed manually at a fixed price while the position stays open."""

    kind: Literal["exited"] = "exited"
    price: float
    timestamp: int


class SettledState(BaseModel):
    """Contract expired and settled against the underlying. Terminal."""

    kind: Literal["settled"] = "settled"
    price: float
    timestamp: int


LegState = Annotated[Union[LiveState, ExitedState, SettledState], Field(discriminator="kind")]


class Leg(BaseModel):
    """One side of one instrument inside a position."""

    symbol: str
    strike: float = 0.0
    option_type: OptionType = OptionType.CALL
    expiry_ms: int = 0
    side: Side
    qty: float = Field(gt=0)
    entry_price: float = 0.0
    created_at: int | None = None
    hidden: bool = False
    state: LegState = Field(default_factory=LiveState)

    @property
    def is_underlying(self) -> bool:
        return self.expiry_ms <= 0 or "-" not in self.symbol

    @property
    def is_settled(self) -> bool:
        return isinstance(self.state, SettledState)

    @property
    def is_exited(self) -> bool:
        return isinstance(self.state, ExitedState)

    @property
    def is_live(self) -> bool:
        return isinstance(self.state, LiveState)

    def mark_exited(self, price: float, timestamp: int | None = None) -> None:
        if self.is_settled:
            raise ValueError(f"Leg {self.symbol} is settled and can no longer be exited")
        self.state = ExitedState(price=validate_exit_price(price), timestamp=timestamp or now_ms())

    def mark_settled(self, price: float, timestamp: int | None = None) -> None:
        if self.is_settled:
            return
        self.state = SettledState(price=validate_settlement_price(price), timestamp=timestamp or now_ms())

    @classmethod
    def from_instrument(
        cls,
        instrument: Instrument,
        *,
        side: Side,
        qty: float,
        entry_price: float,
        created_at: int | None = None,
    ) -> "Leg":
        return cls(
            symbol=instrument.symbol,
            strike=instrument.strike,
            option_type=instrument.option_type,
            expiry_ms=instrument.expiry_ms,
            side=side,
            qty=qty,
            entry_price=entry_price,
            created_at=created_at,
        )


class Settlement(BaseModel):
    price: float
    timestamp: int


class CloseSnapshot(BaseModel):
    timestamp: int
    index_price: float | None = None
    spot_price: float | None = None
    pnl_mid: float | None = None
    pnl_exec: float | None = None


class Position(BaseModel):
    """Ordered set of legs forming one logical construct."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: Literal["vertical", "multi"] = "multi"
    legs: list[Leg]
    created_at: int = Field(default_factory=now_ms)
    c_enter: float | None = None  # vertical only: net entry credit per contract
    close_snapshot: CloseSnapshot | None = None
    favorite: bool = False
    note: str | None = None
    settlements: dict[int, Settlement] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_shape(self) -> "Position":
        if not self.legs:
            raise ValueError("Position requires at least one leg")
        if self.kind == "vertical":
            sides = sorted(leg.side.value for leg in self.legs)
            if sides != ["long", "short"]:
                raise ValueError("Vertical positions require exactly one short and one long leg")
        return self

    @classmethod
    def vertical(
        cls,
        short: Instrument,
        long: Instrument,
        *,
        c_enter: float,
        qty: float = 1.0,
        entry_short: float | None = None,
        entry_long: float | None = None,
        created_at: int | None = None,
        note: str | None = None,
    ) -> "Position":
        """Build the 2-leg fast path, deriving missing per-leg entries so short - long == c_enter."""
        if entry_short is None:
            entry_short = c_enter + entry_long if entry_long is not None else c_enter
        if entry_long is None:
            entry_long = entry_short - c_enter if entry_short is not None else 0.0
        created = created_at or now_ms()
        return cls(
            kind="vertical",
            c_enter=c_enter,
            created_at=created,
            note=note,
            legs=[
                Leg.from_instrument(short, side=Side.SHORT, qty=qty, entry_price=entry_short, created_at=created),
                Leg.from_instrument(long, side=Side.LONG, qty=qty, entry_price=entry_long, created_at=created),
            ],
        )

    @property
    def closed_at(self) -> int | None:
        return self.close_snapshot.timestamp if self.close_snapshot else None

    @property
    def is_closed(self) -> bool:
        return self.close_snapshot is not None

    @property
    def active_legs(self) -> list[Leg]:
        return [leg for leg in self.legs if not leg.hidden]

    @property
    def option_expiries(self) -> list[int]:
        return sorted({leg.expiry_ms for leg in self.legs if not leg.is_underlying})

    @property
    def net_entry(self) -> float:
        return sum(leg.side.cash_sign * leg.entry_price * leg.qty for leg in self.active_legs)

    @property
    def short_leg(self) -> Leg | None:
        return next((leg for leg in self.legs if leg.side is Side.SHORT), None)

    @property
    def long_leg(self) -> Leg | None:
        return next((leg for leg in self.legs if leg.side is Side.LONG), None)

    def settle_expiry(self, expiry_ms: int, price: float, timestamp: int | None = None) -> Settlement:
        """Record the settlement for one expiry and freeze every leg expiring then."""
        settlement = Settlement(price=validate_settlement_price(price), timestamp=timestamp or now_ms())
        self.settlements[int(expiry_ms)] = settlement
        for leg in self.legs:
            if not leg.is_underlying and leg.expiry_ms == int(expiry_ms):
                leg.mark_settled(settlement.price, settlement.timestamp)
        return settlement

    def unsettled_expiries(self, now: int | None = None) -> list[int]:
        current = now if now is not None else now_ms()
        return [exp for exp in self.option_expiries if 0 < exp <= current and exp not in self.settlements]

    def close(self, snapshot: CloseSnapshot) -> None:
        self.close_snapshot = snapshot

    def toggle_favorite(self) -> bool:
        self.favorite = not self.favorite
        return self.favorite

    def set_leg_hidden(self, index: int, hidden: bool) -> None:
        self.legs[index].hidden = hidden
