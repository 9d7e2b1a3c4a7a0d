"""
debt_pool.py - Pooled debt share accounting

Every staker owes a slice of one global debt. The slice is tracked in debt
shares, a non-transferable unit in the Ledger that is only ever minted out of
or burned back into SYSTEM_WALLET. Because the ledger is double-entry:

    total_debt_shares = -balance(SYSTEM_WALLET, shares)
                      = sum(balance(account, shares) for every account)

so the pool invariant holds by construction after every executed transaction.

An account's debt in the base currency is its shares times the debt ratio
supplied by a DebtRatioOracle:

    debt_balance_of(account) = shares(account) * debt_ratio

Mutating operations use ``current_debt_ratio()``, which fails with InvalidRate
when the ratio is zero or stale. Views read the raw ratio.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .core import (
    DEFAULT_DEBT_SHARE, SYSTEM_WALLET, UNIT_TYPE_SYNTH,
    InsufficientFunds, InvalidRate, Move, to_decimal,
)
from .ledger import Ledger
from .oracle import DebtRatioOracle, PriceOracle


@dataclass(frozen=True, slots=True)
class DebtInfo:
    """Snapshot of the system-wide debt."""
    total_debt: Decimal
    total_debt_shares: Decimal
    debt_ratio: Decimal
    is_stale: bool


class DebtPool:
    """
    Global debt share register backed by the Ledger.

    The pool never executes transactions itself. It reads shares and ratios
    and builds the share moves that IssuanceLedger folds into its own
    single-transaction issue, burn and migration operations.

    Args:
        ledger: Ledger holding the debt share unit
        debt_ratio_oracle: Source of the share-to-debt ratio
        price_oracle: Rates used to express debt in other currencies
        share_symbol: Symbol of the debt share unit
        excluded_debt: Currency -> amount of synths minted without debt
    """

    def __init__(
        self,
        ledger: Ledger,
        debt_ratio_oracle: DebtRatioOracle,
        price_oracle: PriceOracle,
        share_symbol: str = DEFAULT_DEBT_SHARE,
        excluded_debt: Optional[Dict[str, Decimal]] = None,
    ):
        self.ledger = ledger
        self.debt_ratio_oracle = debt_ratio_oracle
        self.price_oracle = price_oracle
        self.share_symbol = share_symbol
        self.excluded_debt = excluded_debt if excluded_debt is not None else {}

    @property
    def base_currency(self) -> str:
        return self.price_oracle.base_currency

    # ------------------------------------------------------------------------
    # Shares
    # ------------------------------------------------------------------------

    @property
    def total_debt_shares(self) -> Decimal:
        return -self.ledger.get_balance(SYSTEM_WALLET, self.share_symbol)

    def shares_of(self, account: str) -> Decimal:
        if not self.ledger.is_registered(account):
            return Decimal("0")
        return self.ledger.get_balance(account, self.share_symbol)

    def share_holders(self) -> Dict[str, Decimal]:
        """All accounts with a non-zero share balance."""
        positions = self.ledger.get_positions(self.share_symbol)
        positions.pop(SYSTEM_WALLET, None)
        return positions

    def sum_of_account_shares(self) -> Decimal:
        return sum((q for _, q in sorted(self.share_holders().items())), Decimal("0"))

    # ------------------------------------------------------------------------
    # Ratio
    # ------------------------------------------------------------------------

    def debt_ratio(self) -> Tuple[Decimal, bool]:
        """Raw (ratio, is_stale) from the debt-ratio oracle."""
        return self.debt_ratio_oracle.debt_ratio()

    def current_debt_ratio(self) -> Decimal:
        """
        Debt ratio usable for a mutation.

        Raises:
            InvalidRate: If the ratio is zero, negative or stale.
        """
        ratio, is_stale = self.debt_ratio()
        if is_stale:
            raise InvalidRate("Debt ratio is stale")
        if ratio <= 0:
            raise InvalidRate(f"Debt ratio is invalid: {ratio}")
        return ratio

    def debt_balance_of(self, account: str, ratio: Optional[Decimal] = None) -> Decimal:
        """Debt of an account in the base currency: shares * ratio."""
        if ratio is None:
            ratio, _ = self.debt_ratio()
        return self.shares_of(account) * ratio

    def debt_balance_in(self, account: str, currency: str) -> Decimal:
        """Debt of an account expressed in another currency."""
        debt = self.debt_balance_of(account)
        if currency == self.base_currency:
            return debt
        rate, _ = self.price_oracle.current_rate(currency)
        if rate == 0:
            raise InvalidRate(f"No rate for {currency}")
        return debt / rate

    def shares_for_amount(self, amount: Decimal, ratio: Decimal) -> Decimal:
        """Shares corresponding to an amount of debt at ``ratio``, rounded to the share unit."""
        return self.ledger.get_unit(self.share_symbol).round(amount / ratio)

    # ------------------------------------------------------------------------
    # System debt
    # ------------------------------------------------------------------------

    def total_debt(self) -> Decimal:
        """Total system debt in the base currency: shares * ratio."""
        ratio, _ = self.debt_ratio()
        return self.total_debt_shares * ratio

    def debt_info(self) -> DebtInfo:
        ratio, is_stale = self.debt_ratio()
        shares = self.total_debt_shares
        return DebtInfo(
            total_debt=shares * ratio,
            total_debt_shares=shares,
            debt_ratio=ratio,
            is_stale=is_stale,
        )

    def total_issued_synths(self, currency: Optional[str] = None, exclude_excluded_debt: bool = True) -> Decimal:
        """
        Value of every synth in circulation, expressed in ``currency``.

        Synths minted without debt are subtracted unless exclude_excluded_debt
        is False.

        Raises:
            InvalidRate: If a rate needed for the valuation is invalid.
        """
        currency = currency or self.base_currency
        total = Decimal("0")
        for symbol in self.ledger.list_units(UNIT_TYPE_SYNTH):
            supply = self.ledger.circulating_supply(symbol)
            if exclude_excluded_debt:
                supply -= self.excluded_debt.get(symbol, Decimal("0"))
            if supply == 0:
                continue
            rate, invalid = self.price_oracle.current_rate(symbol)
            if invalid:
                raise InvalidRate(f"Rate for {symbol} is invalid")
            total += supply * rate
        if currency == self.base_currency:
            return total
        rate, invalid = self.price_oracle.current_rate(currency)
        if invalid:
            raise InvalidRate(f"Rate for {currency} is invalid")
        return total / rate

    def add_excluded_debt(self, currency: str, amount: Decimal) -> None:
        self.excluded_debt[currency] = self.excluded_debt.get(currency, Decimal("0")) + amount

    def remove_excluded_debt(self, currency: str, amount: Decimal) -> None:
        remaining = self.excluded_debt.get(currency, Decimal("0")) - amount
        self.excluded_debt[currency] = max(remaining, Decimal("0"))

    # ------------------------------------------------------------------------
    # Share moves
    # ------------------------------------------------------------------------

    def mint_moves(self, account: str, shares: Decimal, reference: str) -> List[Move]:
        """Moves minting ``shares`` to ``account`` (empty for zero)."""
        shares = to_decimal(shares)
        if shares <= 0:
            return []
        return [Move(shares, self.share_symbol, SYSTEM_WALLET, account, reference)]

    def burn_moves(self, account: str, shares: Decimal, reference: str) -> List[Move]:
        """
        Moves burning ``shares`` from ``account`` (empty for zero).

        Raises:
            InsufficientFunds: If the account holds fewer shares.
        """
        shares = to_decimal(shares)
        if shares <= 0:
            return []
        held = self.shares_of(account)
        if shares > held:
            raise InsufficientFunds(
                f"{account} holds {held} {self.share_symbol}, cannot burn {shares}"
            )
        return [Move(shares, self.share_symbol, account, SYSTEM_WALLET, reference)]

    def __repr__(self):
        return f"DebtPool(shares={self.total_debt_shares}, unit={self.share_symbol})"
