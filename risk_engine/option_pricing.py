"""Closed-form European option pricing and implied-volatility inversion.

Prices are decision-support values: the cumulative normal below is the
Abramowitz & Stegun 26.2.17 polynomial approximation (|error| < 7.5e-8).
"""

from __future__ import annotations

import math
from typing import Callable, Optional

from models.market import OptionType

EPS = 1e-12
DAY_MS = 24 * 60 * 60 * 1000
YEAR_MS = 365 * DAY_MS
NO_ARBITRAGE_EPS = 1e-9

SIGMA_LOW = 1e-4
SIGMA_HIGH = 5.0
SIGMA_EXPAND_FACTOR = 1.8
SIGMA_MAX_EXPANSIONS = 20
BISECTION_STEPS = 80
BISECTION_TOL = 1e-6
NEWTON_STEPS = 8
NEWTON_TOL = 1e-6
NEWTON_BUMP = 1e-4
NEWTON_MIN_SLOPE = 1e-10

_INV_SQRT_2PI = 1.0 / math.sqrt(2.0 * math.pi)
_AS_P = 0.2316419
_AS_COEFFS = (0.319381530, -0.356563782, 1.781477937, -1.821255978, 1.330274429)


def norm_pdf(x: float) -> float:
    return _INV_SQRT_2PI * math.exp(-0.5 * x * x)


def norm_cdf(x: float) -> float:
    k = 1.0 / (1.0 + _AS_P * abs(x))
    a1, a2, a3, a4, a5 = _AS_COEFFS
    poly = (((a5 * k + a4) * k + a3) * k + a2) * k + a1
    upper = 1.0 - norm_pdf(x) * poly * k
    return upper if x >= 0 else 1.0 - upper


def intrinsic_value(option_type: OptionType, S: float, K: float) -> float:
    if OptionType(option_type) is OptionType.CALL:
        return max(0.0, S - K)
    return max(0.0, K - S)


def bs_price(option_type: OptionType, S: float, K: float, T: float, sigma: float, r: float = 0.0) -> float:
    """Black-Scholes price, floored at 0; collapses to intrinsic value when T or sigma is ~0."""
    if T <= EPS or sigma <= EPS:
        return intrinsic_value(option_type, S, K)
    vol = sigma * math.sqrt(T)
    d1 = (math.log(max(S, EPS) / max(K, EPS)) + (r + 0.5 * sigma * sigma) * T) / vol
    d2 = d1 - vol
    discount = math.exp(-r * T)
    if OptionType(option_type) is OptionType.CALL:
        return max(0.0, S * norm_cdf(d1) - K * discount * norm_cdf(d2))
    return max(0.0, K * discount * norm_cdf(-d2) - S * norm_cdf(-d1))


def _bisection_solve(residual: Callable[[float], float]) -> Optional[float]:
    lo, hi = SIGMA_LOW, SIGMA_HIGH
    f_lo, f_hi = residual(lo), residual(hi)
    expansions = 0
    while f_hi < 0 and expansions < SIGMA_MAX_EXPANSIONS:
        hi *= SIGMA_EXPAND_FACTOR
        f_hi = residual(hi)
        expansions += 1

    if abs(f_lo) < BISECTION_TOL:
        return lo
    if abs(f_hi) < BISECTION_TOL:
        return hi
    if f_lo * f_hi > 0:
        return None

    for _ in range(BISECTION_STEPS):
        mid = 0.5 * (lo + hi)
        f_mid = residual(mid)
        if abs(f_mid) < BISECTION_TOL or (hi - lo) < BISECTION_TOL:
            return mid
        if f_lo * f_mid <= 0:
            hi, f_hi = mid, f_mid
        else:
            lo, f_lo = mid, f_mid
    return 0.5 * (lo + hi)


def _newton_solve(residual: Callable[[float], float]) -> Optional[float]:
    sigma = 0.5 * (SIGMA_LOW + SIGMA_HIGH)
    for _ in range(NEWTON_STEPS):
        f = residual(sigma)
        if abs(f) < NEWTON_TOL:
            return sigma
        bump = min(NEWTON_BUMP, sigma / 2.0)
        slope = (residual(sigma + bump) - residual(sigma - bump)) / (2.0 * bump)
        if not math.isfinite(slope) or abs(slope) < NEWTON_MIN_SLOPE:
            return None
        sigma = sigma - f / slope
        if not math.isfinite(sigma):
            return None
        sigma = max(SIGMA_LOW, sigma)
    return sigma


_SOLVERS: tuple[Callable[[Callable[[float], float]], Optional[float]], ...] = (_bisection_solve, _newton_solve)


def implied_vol(
    option_type: OptionType, S: float, K: float, T: float, price: float, r: float = 0.0
) -> Optional[float]:
    """Annualised volatility (fraction) that reproduces *price*, or ``None`` if unsolvable."""
    values = (S, K, T, price, r)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
        return None
    if S <= 0 or K <= 0 or T <= EPS or price < 0:
        return None
    if price < intrinsic_value(option_type, S, K) - NO_ARBITRAGE_EPS:
        return None

    def residual(sigma: float) -> float:
        return bs_price(option_type, S, K, T, sigma, r) - price

    for solver in _SOLVERS:
        sigma = solver(residual)
        if sigma is not None and math.isfinite(sigma):
            return sigma
    return None
