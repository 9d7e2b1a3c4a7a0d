"""
circuit_breaker.py - Per-asset rate sanity guard

The breaker keeps the last rate it trusted for each asset. A new observation
that moves more than ``factor`` times away from it (in either direction) is
rejected for the current call, and the cached rate is left untouched so the
next observation is judged against the same baseline. A zero or missing rate
is always rejected.

Tripping is the silent failure path of the system: the exchange engine turns a
trip into a SKIPPED outcome rather than an error.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple
import logging

from .core import to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    """Last trusted rate of an asset and the factor it is judged with."""
    last_good_rate: Decimal
    deviation_threshold_factor: Decimal


def is_deviation_above_threshold(base: Decimal, comparison: Decimal, factor: Decimal) -> bool:
    """
    True if ``comparison`` lies more than ``factor`` times away from ``base``.

    A zero on either side counts as a deviation. Equality at exactly
    ``factor`` times is still within bounds.
    """
    if base == 0 or comparison == 0:
        return True
    return comparison > base * factor or comparison * factor < base


class CircuitBreaker:
    """
    Per-asset deviation guard.

    Args:
        factor: Default deviation threshold factor, or a zero-argument callable
            returning it (so the breaker follows live settings).
        on_trip: Optional callback ``(asset, last_good_rate, observed_rate)``.

    Example:
        breaker = CircuitBreaker(Decimal("3"))
        breaker.check_and_trip("sETH", Decimal("2000"))   # False, baseline set
        breaker.check_and_trip("sETH", Decimal("20000"))  # True, baseline kept
    """

    def __init__(
        self,
        factor=Decimal("3"),
        on_trip: Optional[Callable[[str, Decimal, Decimal], None]] = None,
    ):
        self._factor = factor
        self.last_good_rates: Dict[str, Decimal] = {}
        self.asset_factors: Dict[str, Decimal] = {}
        self.on_trip = on_trip

    def factor_for(self, asset: str) -> Decimal:
        if asset in self.asset_factors:
            return self.asset_factors[asset]
        factor = self._factor() if callable(self._factor) else self._factor
        return to_decimal(factor)

    def set_asset_factor(self, asset: str, factor) -> None:
        factor = to_decimal(factor)
        if factor <= 1:
            raise ValueError(f"Deviation factor must be greater than 1, got {factor}")
        self.asset_factors[asset] = factor

    def state(self, asset: str) -> Optional[CircuitBreakerState]:
        """Current breaker state for an asset (None before the first observation)."""
        last = self.last_good_rates.get(asset)
        if last is None:
            return None
        return CircuitBreakerState(last, self.factor_for(asset))

    def is_rate_out_of_bounds(self, asset: str, observed_rate: Optional[Decimal]) -> bool:
        """Whether ``observed_rate`` would trip, without updating anything."""
        if observed_rate is None or observed_rate <= 0:
            return True
        last = self.last_good_rates.get(asset)
        if last is None:
            return False
        return is_deviation_above_threshold(last, observed_rate, self.factor_for(asset))

    def check_and_trip(self, asset: str, observed_rate: Optional[Decimal]) -> bool:
        """
        Judge an observed rate and return True if it trips the breaker.

        A healthy observation becomes the new last good rate. A trip never
        touches the last good rate. The first healthy observation of an asset
        sets its baseline.
        """
        tripped = self.is_rate_out_of_bounds(asset, observed_rate)
        if tripped:
            last = self.last_good_rates.get(asset, Decimal("0"))
            logger.warning(
                "circuit breaker tripped for %s: observed=%s last_good=%s factor=%s",
                asset, observed_rate, last, self.factor_for(asset),
            )
            if self.on_trip is not None:
                self.on_trip(asset, last, observed_rate if observed_rate is not None else Decimal("0"))
            return True
        self.last_good_rates[asset] = observed_rate
        return False

    def rate_with_invalid(self, asset: str, observed_rate: Optional[Decimal]) -> Tuple[Decimal, bool]:
        """Return (observed_rate or 0, would_trip) without updating the baseline."""
        rate = observed_rate if observed_rate is not None else Decimal("0")
        return rate, self.is_rate_out_of_bounds(asset, observed_rate)

    def reset_last_value(self, asset: str, value) -> None:
        """Administrative re-baseline after a legitimate large move."""
        value = to_decimal(value)
        if value <= 0:
            raise ValueError(f"Last good rate must be positive, got {value}")
        logger.info("circuit breaker re-baselined %s at %s", asset, value)
        self.last_good_rates[asset] = value

    def __repr__(self):
        return f"CircuitBreaker({len(self.last_good_rates)} assets)"
