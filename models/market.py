from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict


class OptionType(str, Enum):
    """Contract right. Underlying legs carry ``CALL`` by convention and are never priced as options."""

    CALL = "C"
    PUT = "P"

    @classmethod
    def parse(cls, raw: Any) -> "OptionType":
        text = str(raw or "").strip().upper()
        return cls.PUT if text.startswith("P") else cls.CALL


class Instrument(BaseModel):
    """Listed option contract as reported by the instrument-list endpoint."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    strike: float
    option_type: OptionType
    expiry_ms: int
    settle_coin: str = "USDT"
    status: str | None = None


# Fields a Quote carries; also the keys accepted by QuoteSnapshotStore.merge().
QUOTE_FIELDS: tuple[str, ...] = (
    "bid",
    "ask",
    "ob_bid",
    "ob_ask",
    "mark_price",
    "last_price",
    "change_24h",
    "mark_iv",
    "index_price",
    "delta",
    "gamma",
    "vega",
    "theta",
    "open_interest",
)


def finite_or_none(value: Any) -> Optional[float]:
    """Coerce *value* to a finite float, or ``None`` when absent/NaN/inf/garbage."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass(slots=True)
class Quote:
    """Last-known-good market state for one symbol."""

    symbol: str
    bid: Optional[float] = None
    ask: Optional[float] = None
    ob_bid: Optional[float] = None  # level-1 order book
    ob_ask: Optional[float] = None
    mark_price: Optional[float] = None
    last_price: Optional[float] = None
    change_24h: Optional[float] = None  # proportion, 0.0123 => 1.23%
    mark_iv: Optional[float] = None  # percent, 65.0 => 65%
    index_price: Optional[float] = None
    delta: Optional[float] = None
    gamma: Optional[float] = None
    vega: Optional[float] = None
    theta: Optional[float] = None
    open_interest: Optional[float] = None
    updated_at: Optional[datetime] = None

    def _book_pair(self) -> tuple[Optional[float], Optional[float]]:
        ob_bid, ob_ask = self.ob_bid, self.ob_ask
        if ob_bid is not None and ob_ask is not None and ob_bid > 0 and ob_ask > 0 and ob_bid <= ob_ask:
            return ob_bid, ob_ask
        return self.bid, self.ask

    @property
    def best_bid(self) -> Optional[float]:
        return self._book_pair()[0]

    @property
    def best_ask(self) -> Optional[float]:
        return self._book_pair()[1]

    @property
    def mid(self) -> Optional[float]:
        bid, ask = self._book_pair()
        if bid is not None and ask is not None:
            return (bid + ask) / 2.0
        return self.mark_price

    @property
    def spread(self) -> Optional[float]:
        bid, ask = self._book_pair()
        if bid is not None and ask is not None and bid > 0 and ask > 0:
            return max(0.0, ask - bid)
        return None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in QUOTE_FIELDS)

    def as_dict(self) -> dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in QUOTE_FIELDS}


@dataclass(slots=True)
class TickerUpdate:
    """One normalised push frame for a single symbol."""

    symbol: str
    kind: Literal["ticker", "orderbook"]
    fields: dict[str, float]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
