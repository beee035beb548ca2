"""core/quote_store.py - Last-known-good quote snapshots keyed by symbol.

Every feed (websocket ticks, order-book level 1, REST backfills) funnels into
one ``QuoteSnapshotStore``.  A field is only ever overwritten by a present,
finite value, so a partial or NaN-laden update never erases data we already
have.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional

from models.market import QUOTE_FIELDS, Quote, finite_or_none

logger = logging.getLogger(__name__)

QuoteListener = Callable[[Quote], None]


class QuoteSnapshotStore:
    def __init__(self) -> None:
        self._quotes: dict[str, Quote] = {}
        self._listeners: dict[str, set[QuoteListener]] = {}

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._quotes

    def __len__(self) -> int:
        return len(self._quotes)

    @property
    def symbols(self) -> list[str]:
        return list(self._quotes.keys())

    def get(self, symbol: str) -> Optional[Quote]:
        return self._quotes.get(symbol)

    def get_or_empty(self, symbol: str) -> Quote:
        """Return the stored quote, or a detached empty record for unknown symbols."""
        return self._quotes.get(symbol) or Quote(symbol=symbol)

    def merge(self, symbol: str, fields: Mapping[str, Any]) -> bool:
        """Overwrite each field that arrives present and finite; return whether anything changed."""
        if not symbol:
            return False
        cleaned = self._clean(fields)
        if not cleaned:
            return False

        quote = self._quotes.get(symbol)
        if quote is None:
            quote = Quote(symbol=symbol)
            self._quotes[symbol] = quote

        changed = False
        for name, value in cleaned.items():
            if getattr(quote, name) != value:
                setattr(quote, name, value)
                changed = True
        if changed:
            quote.updated_at = datetime.now(timezone.utc)
            self._notify(quote)
        return changed

    def backfill(self, symbol: str, fields: Mapping[str, Any]) -> bool:
        """Fill only fields that are still missing; streamed values always win."""
        current = self._quotes.get(symbol)
        if current is None:
            return self.merge(symbol, fields)
        missing = {name: value for name, value in fields.items() if name in QUOTE_FIELDS and getattr(current, name) is None}
        return self.merge(symbol, missing)

    def merge_many(self, updates: Iterable[tuple[str, Mapping[str, Any]]]) -> int:
        return sum(1 for symbol, fields in updates if self.merge(symbol, fields))

    def add_listener(self, symbol: str, listener: QuoteListener) -> Callable[[], None]:
        self._listeners.setdefault(symbol, set()).add(listener)

        def remove() -> None:
            bucket = self._listeners.get(symbol)
            if not bucket:
                return
            bucket.discard(listener)
            if not bucket:
                self._listeners.pop(symbol, None)

        return remove

    def clear(self) -> None:
        self._quotes.clear()

    @staticmethod
    def _clean(fields: Mapping[str, Any]) -> dict[str, float]:
        cleaned: dict[str, float] = {}
        for name, raw in fields.items():
            if name not in QUOTE_FIELDS:
                continue
            value = finite_or_none(raw)
            if value is not None:
                cleaned[name] = value
        return cleaned

    def _notify(self, quote: Quote) -> None:
        for listener in list(self._listeners.get(quote.symbol, ())):
            try:
                listener(quote)
            except Exception as exc:
                logger.warning("Quote listener for %s failed: %s", quote.symbol, exc)
