"""
oracle.py - Price, debt-ratio and escrow feeds consumed by the engine

The price oracle is an external collaborator: the engine only reads it. This
module defines the protocols the engine depends on and in-memory feeds used by
tests, examples and the simulation.

Classes:
- RoundData: One oracle observation (rate, round id, timestamp)
- PriceOracle: Protocol for per-asset rates with round history and staleness
- MockPriceOracle: In-memory round-based feed driven by a clock
- DebtRatioOracle: Protocol for the system debt ratio
- MockDebtRatioOracle: Settable debt ratio with a timestamp
- PooledDebtRatioOracle: Debt ratio derived from ledger supplies and rates
- EscrowSource: Protocol for escrowed collateral balances
- StaticEscrowSource: Dictionary-backed escrow balances

All rates are quoted in the base synth. The base synth always has rate 1.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple, runtime_checkable

from .core import (
    DEFAULT_BASE_SYNTH, SYSTEM_WALLET, UNIT_TYPE_SYNTH, LedgerView,
)

EPOCH = datetime(1970, 1, 1)
DEFAULT_STALE_PERIOD = timedelta(hours=25)

Clock = Callable[[], datetime]


@dataclass(frozen=True, slots=True)
class RoundData:
    """A single oracle observation. A zero rate means no data."""
    rate: Decimal
    round_id: int
    timestamp: datetime


# ============================================================================
# PRICE ORACLE
# ============================================================================

@runtime_checkable
class PriceOracle(Protocol):
    """
    Per-asset rate feed with round history.

    Round ids are per asset and increase by one with every observation.
    """
    base_currency: str

    def current_rate(self, asset: str) -> Tuple[Decimal, bool]:
        """Return (rate, is_stale). A missing asset is (0, True)."""
        ...

    def rate_and_round_id(self, asset: str) -> RoundData:
        """Return the latest observation."""
        ...

    def rate_at_round(self, asset: str, round_id: int) -> RoundData:
        """Return the observation for a specific round."""
        ...

    def rates_and_round_ids_for_period(self, asset: str, num_rounds: int) -> List[RoundData]:
        """Return up to num_rounds observations, most recent first."""
        ...


class MockPriceOracle:
    """
    In-memory round-based price feed.

    Every update appends a new round for the asset. Staleness is judged
    against the supplied clock, usually ``lambda: ledger.current_time``.

    Example:
        oracle = MockPriceOracle(lambda: ledger.current_time)
        oracle.update_rates({"sETH": Decimal("2000"), "SNX": Decimal("2")})
        rate, stale = oracle.current_rate("sETH")
    """

    def __init__(
        self,
        clock: Clock,
        base_currency: str = DEFAULT_BASE_SYNTH,
        stale_period: timedelta = DEFAULT_STALE_PERIOD,
    ):
        self.clock = clock
        self.base_currency = base_currency
        self.stale_period = stale_period
        self.rounds: Dict[str, List[RoundData]] = {}
        self.flagged: Set[str] = set()

    # ------------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------------

    def update_rate(self, asset: str, rate, timestamp: Optional[datetime] = None) -> RoundData:
        """
        Append a new round for an asset.

        Args:
            asset: Currency key
            rate: New rate in the base currency (0 records a missing price)
            timestamp: Observation time (default: now per the clock)
        """
        if asset == self.base_currency:
            raise ValueError(f"Rate of base currency {asset} is fixed at 1")
        rate = rate if isinstance(rate, Decimal) else Decimal(str(rate))
        if rate < 0:
            raise ValueError(f"Rate cannot be negative: {asset}={rate}")
        timestamp = timestamp or self.clock()
        history = self.rounds.setdefault(asset, [])
        if history and timestamp < history[-1].timestamp:
            raise ValueError(f"Round for {asset} at {timestamp} predates the latest round")
        observation = RoundData(rate=rate, round_id=len(history) + 1, timestamp=timestamp)
        history.append(observation)
        return observation

    def update_rates(self, rates: Dict[str, Decimal], timestamp: Optional[datetime] = None) -> None:
        """Append one round for each asset in the mapping."""
        for asset, rate in rates.items():
            self.update_rate(asset, rate, timestamp)

    def set_flagged(self, asset: str, flagged: bool = True) -> None:
        """Mark an asset's feed as invalid regardless of its data."""
        if flagged:
            self.flagged.add(asset)
        else:
            self.flagged.discard(asset)

    # ------------------------------------------------------------------------
    # PriceOracle protocol
    # ------------------------------------------------------------------------

    def rate_and_round_id(self, asset: str) -> RoundData:
        if asset == self.base_currency:
            return RoundData(Decimal("1"), 0, self.clock())
        history = self.rounds.get(asset)
        if not history:
            return RoundData(Decimal("0"), 0, EPOCH)
        return history[-1]

    def rate_at_round(self, asset: str, round_id: int) -> RoundData:
        if asset == self.base_currency:
            return RoundData(Decimal("1"), round_id, self.clock())
        history = self.rounds.get(asset, [])
        if 1 <= round_id <= len(history):
            return history[round_id - 1]
        return RoundData(Decimal("0"), round_id, EPOCH)

    def round_at(self, asset: str, timestamp: datetime) -> RoundData:
        """Return the last round at or before timestamp (zero rate if none)."""
        if asset == self.base_currency:
            return RoundData(Decimal("1"), 0, timestamp)
        history = self.rounds.get(asset, [])
        idx = bisect_right([r.timestamp for r in history], timestamp)
        if idx == 0:
            return RoundData(Decimal("0"), 0, EPOCH)
        return history[idx - 1]

    def rates_and_round_ids_for_period(self, asset: str, num_rounds: int) -> List[RoundData]:
        if num_rounds <= 0:
            return []
        if asset == self.base_currency:
            return [RoundData(Decimal("1"), 0, self.clock())]
        history = self.rounds.get(asset, [])
        return list(reversed(history[-num_rounds:]))

    def rate_is_stale(self, asset: str) -> bool:
        if asset == self.base_currency:
            return False
        history = self.rounds.get(asset)
        if not history:
            return True
        return self.clock() - history[-1].timestamp > self.stale_period

    def rate_is_invalid(self, asset: str) -> bool:
        """Stale, flagged or zero."""
        if asset == self.base_currency:
            return False
        return (
            asset in self.flagged
            or self.rate_is_stale(asset)
            or self.rate_and_round_id(asset).rate == 0
        )

    def any_rate_is_invalid(self, assets: Iterable[str]) -> bool:
        return any(self.rate_is_invalid(a) for a in assets)

    def current_rate(self, asset: str) -> Tuple[Decimal, bool]:
        return self.rate_and_round_id(asset).rate, self.rate_is_invalid(asset)

    def __repr__(self):
        total = sum(len(h) for h in self.rounds.values())
        return f"MockPriceOracle({len(self.rounds)} assets, {total} rounds, base={self.base_currency})"


# ============================================================================
# DEBT RATIO ORACLE
# ============================================================================

@runtime_checkable
class DebtRatioOracle(Protocol):
    """Supplies the value of one debt share in the base currency."""

    def debt_ratio(self) -> Tuple[Decimal, bool]:
        """Return (ratio, is_stale)."""
        ...


class MockDebtRatioOracle:
    """Settable debt ratio feed. The ratio goes stale like any other round."""

    def __init__(
        self,
        clock: Clock,
        ratio=Decimal("1"),
        stale_period: timedelta = DEFAULT_STALE_PERIOD,
    ):
        self.clock = clock
        self.stale_period = stale_period
        self.ratio = Decimal("0")
        self.updated_at = EPOCH
        self.set_debt_ratio(ratio)

    def set_debt_ratio(self, ratio, timestamp: Optional[datetime] = None) -> None:
        ratio = ratio if isinstance(ratio, Decimal) else Decimal(str(ratio))
        if ratio < 0:
            raise ValueError(f"Debt ratio cannot be negative: {ratio}")
        self.ratio = ratio
        self.updated_at = timestamp or self.clock()

    def debt_ratio(self) -> Tuple[Decimal, bool]:
        is_stale = self.clock() - self.updated_at > self.stale_period
        return self.ratio, is_stale

    def __repr__(self):
        return f"MockDebtRatioOracle(ratio={self.ratio}, updated_at={self.updated_at})"


class PooledDebtRatioOracle:
    """
    Debt ratio computed from the ledger itself.

        ratio = (sum of synth supply * rate - excluded debt) / total debt shares

    Synth supply is the circulating supply issued out of SYSTEM_WALLET.
    Excluded debt covers synths minted without debt (wrappers); it is a
    mapping of currency key to amount shared with the DebtPool. With no
    shares outstanding the ratio is 1. The ratio is stale whenever any synth
    rate it depends on is invalid.
    """

    def __init__(
        self,
        view: LedgerView,
        price_oracle: PriceOracle,
        share_symbol: str,
        excluded_debt: Optional[Dict[str, Decimal]] = None,
    ):
        self.view = view
        self.price_oracle = price_oracle
        self.share_symbol = share_symbol
        self.excluded_debt = excluded_debt if excluded_debt is not None else {}

    def system_debt(self) -> Tuple[Decimal, bool]:
        """Return (total debt in base currency, any_rate_invalid)."""
        total = Decimal("0")
        any_invalid = False
        for currency in self.view.list_units(UNIT_TYPE_SYNTH):
            supply = -self.view.get_balance(SYSTEM_WALLET, currency)
            excluded = self.excluded_debt.get(currency, Decimal("0"))
            if supply == 0 and excluded == 0:
                continue
            rate, invalid = self.price_oracle.current_rate(currency)
            any_invalid = any_invalid or invalid
            total += (supply - excluded) * rate
        return max(total, Decimal("0")), any_invalid

    def debt_ratio(self) -> Tuple[Decimal, bool]:
        total_shares = -self.view.get_balance(SYSTEM_WALLET, self.share_symbol)
        debt, any_invalid = self.system_debt()
        if total_shares <= 0:
            return Decimal("1"), any_invalid
        return debt / total_shares, any_invalid


# ============================================================================
# ESCROW
# ============================================================================

@runtime_checkable
class EscrowSource(Protocol):
    """Escrowed collateral balances, by category, held outside the ledger."""

    def escrowed_balance(self, account: str, category: str) -> Decimal:
        ...


class StaticEscrowSource:
    """Dictionary-backed escrow balances."""

    def __init__(self, balances: Optional[Dict[Tuple[str, str], Decimal]] = None):
        self.balances: Dict[Tuple[str, str], Decimal] = dict(balances or {})

    def set_balance(self, account: str, category: str, amount) -> None:
        amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        if amount < 0:
            raise ValueError(f"Escrow balance cannot be negative: {amount}")
        self.balances[(account, category)] = amount

    def escrowed_balance(self, account: str, category: str) -> Decimal:
        return self.balances.get((account, category), Decimal("0"))

    def __repr__(self):
        return f"StaticEscrowSource({len(self.balances)} balances)"
