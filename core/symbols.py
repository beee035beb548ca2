"""Helpers for Bybit option / spot symbol strings.

Option symbols look like ``ETH-27DEC24-3000-C-USDT`` (older listings omit the
settle coin suffix); spot and perpetual symbols look like ``ETHUSDT``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from models.market import OptionType
from models.position import Leg


_EXPIRY_CODE = re.compile(r"^(\d{1,2})([A-Z]{3})(\d{2})$")
_MONTHS = {m: i for i, m in enumerate(
    ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"], start=1
)}
# Bybit options deliver at 08:00 UTC.
_DELIVERY_HOUR_UTC = 8


def is_option_symbol(symbol: str) -> bool:
    return str(symbol or "").count("-") >= 3


def ensure_usdt_symbol(raw: str) -> str:
    sym = str(raw or "").strip()
    if not sym:
        return sym

    parts = sym.split("-")
    if len(parts) >= 5:
        settle = parts[4].upper()
        if settle == "USDC":
            parts[4] = "USDT"
            return "-".join(parts)
        return sym

    if len(parts) >= 4:
        opt = parts[3].upper()
        if opt.startswith("P") or opt.startswith("C"):
            return "-".join(parts[:4]) + "-USDT"

    upper = sym.upper()
    if upper.endswith("-USDT"):
        return sym
    if upper.endswith("-USDC"):
        return sym[:-5] + "-USDT"
    return sym


def infer_underlying_spot_symbol(raw: str | None) -> str | None:
    sym = str(raw or "").strip()
    if not sym:
        return None
    upper = sym.upper()

    if "-" in upper:
        base = re.sub(r"[^A-Z0-9]", "", upper.split("-")[0])
        if base:
            return f"{base}USDT"

    if upper.endswith("USDT"):
        return upper
    if upper.endswith("USDC"):
        return f"{upper[:-4]}USDT"
    if upper.endswith("USD"):
        return f"{upper[:-3]}USDT"

    cleaned = re.sub(r"[^A-Z0-9]", "", upper)
    return f"{cleaned}USDT" if cleaned else None


def parse_expiry_code(code: str) -> Optional[int]:
    """``27DEC24`` -> delivery timestamp in ms (08:00 UTC)."""
    match = _EXPIRY_CODE.match(str(code or "").upper())
    if not match:
        return None
    day, month_name, year = match.groups()
    month = _MONTHS.get(month_name)
    if month is None:
        return None
    try:
        delivery = datetime(2000 + int(year), month, int(day), _DELIVERY_HOUR_UTC, tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(delivery.timestamp() * 1000)


def parse_option_symbol(symbol: str) -> Optional[dict]:
    """Split an option symbol into ``base``, ``expiry_ms``, ``strike``, ``option_type``, ``settle_coin``."""
    parts = str(symbol or "").strip().split("-")
    if len(parts) < 4:
        return None
    try:
        strike = float(parts[2])
    except ValueError:
        return None
    return {
        "base": parts[0].upper(),
        "expiry_ms": parse_expiry_code(parts[1]),
        "strike": strike,
        "option_type": OptionType.parse(parts[3]),
        "settle_coin": parts[4].upper() if len(parts) >= 5 and parts[4] else "USDT",
    }


def leg_key(leg: Leg, index: int) -> str:
    """Stable identifier for one leg, even when several legs share a symbol (e.g. two perps)."""
    base = f"t{leg.created_at}" if leg.created_at is not None else f"i{index}"
    return f"{base}:{leg.symbol}"
