from __future__ import annotations

from datetime import datetime, timezone

import pytest

from core.symbols import (
    ensure_usdt_symbol,
    infer_underlying_spot_symbol,
    is_option_symbol,
    leg_key,
    parse_expiry_code,
    parse_option_symbol,
)
from models.market import OptionType
from tests.factories import make_leg


def test_parse_expiry_code_uses_delivery_hour() -> None:
    expected = datetime(2024, 12, 27, 8, tzinfo=timezone.utc)

    assert parse_expiry_code("27DEC24") == int(expected.timestamp() * 1000)
    assert parse_expiry_code("3jan25") == int(datetime(2025, 1, 3, 8, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.mark.parametrize("code", ["", "27XYZ24", "31FEB24", "DEC24"])
def test_parse_expiry_code_rejects_garbage(code: str) -> None:
    assert parse_expiry_code(code) is None


def test_parse_option_symbol() -> None:
    parsed = parse_option_symbol("ETH-27DEC24-3000-P-USDT")

    assert parsed["base"] == "ETH"
    assert parsed["strike"] == 3000.0
    assert parsed["option_type"] is OptionType.PUT
    assert parsed["settle_coin"] == "USDT"
    assert parsed["expiry_ms"] == parse_expiry_code("27DEC24")


def test_parse_option_symbol_without_settle_coin() -> None:
    assert parse_option_symbol("ETH-27DEC24-3000-C")["settle_coin"] == "USDT"
    assert parse_option_symbol("ETHUSDT") is None
    assert parse_option_symbol("ETH-27DEC24-abc-C") is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ETH-27DEC24-3000-C", "ETH-27DEC24-3000-C-USDT"),
        ("ETH-27DEC24-3000-C-USDC", "ETH-27DEC24-3000-C-USDT"),
        ("ETH-27DEC24-3000-P-USDT", "ETH-27DEC24-3000-P-USDT"),
        ("ETHUSDT", "ETHUSDT"),
        ("", ""),
    ],
)
def test_ensure_usdt_symbol(raw: str, expected: str) -> None:
    assert ensure_usdt_symbol(raw) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ETH-27DEC24-3000-C-USDT", "ETHUSDT"),
        ("ethusdc", "ETHUSDT"),
        ("ETHUSD", "ETHUSDT"),
        ("ETHUSDT", "ETHUSDT"),
        ("", None),
        (None, None),
    ],
)
def test_infer_underlying_spot_symbol(raw: str | None, expected: str | None) -> None:
    assert infer_underlying_spot_symbol(raw) == expected


def test_is_option_symbol() -> None:
    assert is_option_symbol("ETH-27DEC24-3000-C")
    assert not is_option_symbol("ETHUSDT")


def test_leg_key_prefers_creation_time() -> None:
    leg = make_leg("long", 2000, "C")

    assert leg_key(leg, 3) == f"i3:{leg.symbol}"

    leg.created_at = 123
    assert leg_key(leg, 3) == f"t123:{leg.symbol}"
