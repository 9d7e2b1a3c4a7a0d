"""
dynamic_fee.py - Volatility-driven exchange fees

ARCHITECTURE (Pure Function Pattern):
=====================================

1. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take rates and FeeConfig values explicitly
   - No oracle, no settings object
   - Example: calculate_dynamic_fee([Decimal("1.05"), Decimal("1")], threshold, decay)

2. MODEL (DynamicFeeModel):
   - Loads round history from the PriceOracle and FeeConfig from SystemSettings
   - Combines per-asset legs into exchange fee rates
   - The ONLY place in this module that reads the oracle

Key Formulas:
    deviation_i  = max(0, |p_i / p_{i+1} - 1| - threshold)     (p_0 = latest round)
    dynamic_fee  = sum(deviation_i * decay ** i)
    asset leg    = (min(dynamic_fee, max_rate), dynamic_fee > max_rate)
    exchange     = base(src) + base(dest) + min(dyn(src) + dyn(dest), max_rate)

A single spike of size s therefore costs (s - threshold) in the round it
appears and decays by ``decay`` every following round until it leaves the
window of ``dynamic_fee_rounds`` observations.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence, Tuple

from .core import TooVolatile
from .oracle import PriceOracle
from .settings import FeeConfig, SystemSettings

ZERO = Decimal("0")


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class DynamicFee:
    """Dynamic fee of one asset or one exchange pair."""
    rate: Decimal
    too_volatile: bool

    def __iter__(self):
        # Unpacks as (rate, too_volatile).
        yield self.rate
        yield self.too_volatile


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_thresholded_deviation(price: Decimal, previous_price: Decimal, threshold: Decimal) -> Decimal:
    """
    Fractional move from previous_price to price above the threshold.

    PURE FUNCTION. A zero previous price contributes nothing.
    """
    if previous_price == 0:
        return ZERO
    abs_delta = abs(price / previous_price - 1)
    return abs_delta - threshold if abs_delta > threshold else ZERO


def calculate_dynamic_fee(rates: Sequence[Decimal], threshold: Decimal, weight_decay: Decimal) -> Decimal:
    """
    Weighted sum of thresholded round-to-round deviations.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Args:
        rates: Observed rates, most recent first
        threshold: Per-round move tolerated for free
        weight_decay: Weight multiplier per round of age

    Returns:
        Uncapped dynamic fee (zero with fewer than two rates).

    Example:
        # one 5% spike in the latest round, threshold 0.4%
        calculate_dynamic_fee([Decimal("105"), Decimal("100"), Decimal("100")],
                              Decimal("0.004"), Decimal("0.95"))  # -> 0.046
    """
    fee = ZERO
    # Oldest pair first, decaying what has accumulated at every step.
    for i in range(len(rates) - 1, 0, -1):
        fee = fee * weight_decay
        fee += calculate_thresholded_deviation(rates[i - 1], rates[i], threshold)
    return fee


def calculate_capped_fee(fee: Decimal, max_rate: Decimal) -> DynamicFee:
    """Cap a dynamic fee, flagging it too volatile when the cap binds."""
    if fee > max_rate:
        return DynamicFee(max_rate, True)
    return DynamicFee(fee, False)


def calculate_exchange_dynamic_fee(src: DynamicFee, dest: DynamicFee, max_rate: Decimal) -> DynamicFee:
    """
    Sum two asset legs and cap the total.

    PURE FUNCTION. Too volatile if either leg is, or the sum exceeds max_rate.
    """
    total = src.rate + dest.rate
    if total > max_rate:
        return DynamicFee(max_rate, True)
    return DynamicFee(total, src.too_volatile or dest.too_volatile)


# ============================================================================
# MODEL
# ============================================================================

class DynamicFeeModel:
    """
    Exchange fee rates from FeeConfig and oracle round history.

    The base currency never carries a dynamic fee. Fee-rate queries raise
    TooVolatile (loud failure); the ``dynamic_fee_rate*`` views report the
    flag instead.
    """

    def __init__(self, price_oracle: PriceOracle, settings: SystemSettings):
        self.price_oracle = price_oracle
        self.settings = settings

    @property
    def base_currency(self) -> str:
        return self.price_oracle.base_currency

    def fee_config(self, asset: str) -> FeeConfig:
        return self.settings.fee_config(asset)

    def base_fee_rate(self, asset: str) -> Decimal:
        return self.fee_config(asset).base_fee_rate

    def dynamic_fee_rate(self, asset: str) -> DynamicFee:
        """(rate, too_volatile) for one asset from its last ``dynamic_fee_rounds`` rounds."""
        if asset == self.base_currency:
            return DynamicFee(ZERO, False)
        config = self.fee_config(asset)
        if config.dynamic_fee_rounds <= 1:
            return DynamicFee(ZERO, False)
        rounds = self.price_oracle.rates_and_round_ids_for_period(asset, config.dynamic_fee_rounds)
        fee = calculate_dynamic_fee(
            [r.rate for r in rounds],
            config.dynamic_fee_threshold,
            config.dynamic_fee_weight_decay,
        )
        return calculate_capped_fee(fee, config.dynamic_fee_max_rate)

    def dynamic_fee_rate_for_exchange(self, src: str, dest: str) -> DynamicFee:
        """Both legs summed, capped at the destination's max dynamic rate."""
        return calculate_exchange_dynamic_fee(
            self.dynamic_fee_rate(src),
            self.dynamic_fee_rate(dest),
            self.fee_config(dest).dynamic_fee_max_rate,
        )

    def fee_rate_and_volatility(self, src: str, dest: str) -> Tuple[Decimal, bool]:
        """Total standard exchange fee rate and the too-volatile flag, without raising."""
        dynamic = self.dynamic_fee_rate_for_exchange(src, dest)
        return self.base_fee_rate(src) + self.base_fee_rate(dest) + dynamic.rate, dynamic.too_volatile

    def atomic_fee_rate_and_volatility(self, src: str, dest: str) -> Tuple[Decimal, bool]:
        """
        Atomic exchange fee rate and too-volatile flag, without raising.

        When the destination has an atomic override it replaces that leg's
        base and dynamic fee. The source leg is priced as usual.
        """
        override = self.fee_config(dest).atomic_fee_rate_override
        if override is None:
            return self.fee_rate_and_volatility(src, dest)
        src_dynamic = self.dynamic_fee_rate(src)
        return self.base_fee_rate(src) + src_dynamic.rate + override, src_dynamic.too_volatile

    def fee_rate_for_exchange(self, src: str, dest: str) -> Decimal:
        """
        Total fee rate for a standard exchange.

        Raises:
            TooVolatile: If the dynamic fee of either leg, or their sum, hits its cap.
        """
        rate, too_volatile = self.fee_rate_and_volatility(src, dest)
        if too_volatile:
            raise TooVolatile(f"Price movement of {src}/{dest} is too volatile to exchange")
        return rate

    def fee_rate_for_atomic_exchange(self, src: str, dest: str) -> Decimal:
        """
        Total fee rate for an atomic exchange.

        Raises:
            TooVolatile: If a dynamically priced leg is too volatile.
        """
        rate, too_volatile = self.atomic_fee_rate_and_volatility(src, dest)
        if too_volatile:
            raise TooVolatile(f"Price movement of {src}/{dest} is too volatile to exchange atomically")
        return rate
