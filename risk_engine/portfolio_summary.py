"""Portfolio-level roll-up: counts, open risk, realised PnL, settlement backlog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from models.position import CloseSnapshot, Position, now_ms as _now_ms


@dataclass(slots=True)
class PortfolioSummary:
    open_count: int = 0
    closed_count: int = 0
    open_risk: float = 0.0
    risk_share_pct: float = 0.0
    realized_pnl: float = 0.0
    unsettled_expiries: int = 0
    last_close: Optional[CloseSnapshot] = None


def vertical_max_loss(position: Position) -> Optional[float]:
    """Defined risk of a same-expiry vertical: ``max(0, width - c_enter) * qty``."""
    if position.kind != "vertical":
        return None
    short, long = position.short_leg, position.long_leg
    if short is None or long is None or short.expiry_ms != long.expiry_ms:
        return None
    width = abs(short.strike - long.strike)
    return max(0.0, width - (position.c_enter or 0.0)) * short.qty


def summarize_portfolio(
    positions: Iterable[Position], deposit: float = 0.0, now_ms: int | None = None
) -> PortfolioSummary:
    now = now_ms if now_ms is not None else _now_ms()
    summary = PortfolioSummary()

    for position in positions:
        if position.is_closed:
            summary.closed_count += 1
            snap = position.close_snapshot
            if snap.pnl_exec is not None:
                summary.realized_pnl += snap.pnl_exec
            if snap.timestamp > 0 and (summary.last_close is None or snap.timestamp > summary.last_close.timestamp):
                summary.last_close = snap
        else:
            summary.open_count += 1
            max_loss = vertical_max_loss(position)
            if max_loss is not None:
                summary.open_risk += max_loss
        summary.unsettled_expiries += len(position.unsettled_expiries(now))

    if deposit > 0:
        summary.risk_share_pct = summary.open_risk / deposit * 100.0
    return summary
