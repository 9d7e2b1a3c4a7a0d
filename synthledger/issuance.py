"""
issuance.py - Issuing and burning base synths against the debt pool

Stakers lock collateral and mint the base synth against it. Minting adds debt
shares at the current debt ratio, burning removes them:

    issue:  shares = amount / debt_ratio
    burn:   shares = min(amount, debt) / debt_ratio   (all shares when the whole debt is burned)

Collateral rules:

    collateral_value   = (collateral balance + counted escrow) * rate(collateral)
    max_issuable       = max(0, collateral_value * issuance_ratio - debt)
    burn_to_target     burns debt - collateral_value * issuance_ratio

Each issue or burn is one Ledger transaction containing both the base synth
move and the debt share move, executed under the ledger lock after the debt
ratio has been read, so the ratio used always matches the shares mutated.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional, Tuple
import logging

from .core import (
    DEFAULT_COLLATERAL, SYSTEM_WALLET,
    AmountTooLarge, InsufficientFunds, InvalidRate, MinimumStakeTimeNotElapsed, Move,
    NoDebtToBurn, OriginType, TransactionOrigin, Unauthorized, ZeroAmount,
    build_transaction, to_decimal,
)
from .debt_pool import DebtPool
from .events import BURNED, DEBT_SHARES_MIGRATED, ISSUED, Event, EventLog
from .exchanger import ExchangeEngine
from .ledger import Ledger
from .oracle import EscrowSource, PriceOracle
from .settings import SystemSettings

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class Account:
    """Point-in-time view of a staker."""
    address: str
    debt_shares: Decimal
    debt_balance: Decimal
    last_issue_or_burn: Optional[datetime]


@dataclass(frozen=True, slots=True)
class IssuanceResult:
    """Base synth amount issued or burned and the debt shares it moved."""
    amount: Decimal
    shares: Decimal


class IssuanceLedger:
    """
    Issue and burn orchestration over the DebtPool.

    Args:
        ledger: Ledger holding synths, collateral and shares
        pool: Debt share register
        price_oracle: Rate feed (collateral valuation)
        settings: Live system settings
        exchanger: Used to settle base synth entries before a burn
        events: Event sink
        escrow: Source of escrowed collateral balances
        collateral_symbol: Collateral unit
    """

    def __init__(
        self,
        ledger: Ledger,
        pool: DebtPool,
        price_oracle: PriceOracle,
        settings: SystemSettings,
        exchanger: Optional[ExchangeEngine] = None,
        events: Optional[EventLog] = None,
        escrow: Optional[EscrowSource] = None,
        collateral_symbol: str = DEFAULT_COLLATERAL,
    ):
        self.ledger = ledger
        self.pool = pool
        self.price_oracle = price_oracle
        self.settings = settings
        self.exchanger = exchanger
        self.events = events if events is not None else EventLog()
        self.escrow = escrow
        self.collateral_symbol = collateral_symbol
        self.last_issue_or_burn: Dict[str, datetime] = {}

    @property
    def base_currency(self) -> str:
        return self.price_oracle.base_currency

    # ========================================================================
    # VIEWS
    # ========================================================================

    def account(self, address: str) -> Account:
        return Account(
            address=address,
            debt_shares=self.pool.shares_of(address),
            debt_balance=self.pool.debt_balance_of(address),
            last_issue_or_burn=self.last_issue_or_burn.get(address),
        )

    def debt_balance_of(self, address: str) -> Decimal:
        return self.pool.debt_balance_of(address)

    def last_issue_event(self, address: str) -> Optional[datetime]:
        return self.last_issue_or_burn.get(address)

    def can_burn(self, address: str) -> bool:
        last = self.last_issue_or_burn.get(address)
        if last is None:
            return True
        return self.ledger.current_time - last >= self.settings.minimum_stake_time

    def collateral(self, address: str) -> Decimal:
        """Collateral quantity: unlocked balance plus the counted escrow categories."""
        held = ZERO
        if self.ledger.is_registered(address):
            held = self.ledger.get_balance(address, self.collateral_symbol)
        if self.escrow is not None:
            for category in self.settings.collateral_escrow_categories:
                held += self.escrow.escrowed_balance(address, category)
        return held

    def _collateral_value_and_invalid(self, address: str) -> Tuple[Decimal, bool]:
        rate, invalid = self.price_oracle.current_rate(self.collateral_symbol)
        return self.collateral(address) * rate, invalid

    def collateral_value(self, address: str) -> Decimal:
        """Collateral valued in the base currency at the current rate."""
        value, _ = self._collateral_value_and_invalid(address)
        return value

    def max_debt(self, address: str) -> Decimal:
        """Debt the collateral supports at the issuance ratio."""
        return self.collateral_value(address) * self.settings.issuance_ratio

    def _valid_max_debt(self, address: str) -> Decimal:
        """max_debt, refusing a stale, flagged or zero collateral rate."""
        value, invalid = self._collateral_value_and_invalid(address)
        if invalid:
            raise InvalidRate(f"Rate for {self.collateral_symbol} is invalid")
        return value * self.settings.issuance_ratio

    def max_issuable(self, address: str) -> Decimal:
        """Base synth the account can still issue (never negative)."""
        remaining = self.max_debt(address) - self.pool.debt_balance_of(address)
        return max(remaining, ZERO)

    remaining_issuable = max_issuable

    def collateralisation_ratio(self, address: str) -> Decimal:
        """Debt over collateral value (0 without collateral)."""
        value = self.collateral_value(address)
        if value == 0:
            return ZERO
        return self.pool.debt_balance_of(address) / value

    def transferable_collateral(self, address: str) -> Decimal:
        """Unlocked collateral not needed to back the current debt."""
        if not self.ledger.is_registered(address):
            return ZERO
        balance = self.ledger.get_balance(address, self.collateral_symbol)
        rate, _ = self.price_oracle.current_rate(self.collateral_symbol)
        if rate == 0:
            return ZERO
        locked = self.pool.debt_balance_of(address) / self.settings.issuance_ratio / rate
        unlocked = self.collateral(address) - locked
        return max(min(unlocked, balance), ZERO)

    # ========================================================================
    # ISSUE
    # ========================================================================

    def issue(self, address: str, amount) -> IssuanceResult:
        """
        Mint ``amount`` of the base synth and the matching debt shares.

        Raises:
            ZeroAmount: amount is zero
            InvalidRate: debt ratio or collateral rate is stale or zero
            AmountTooLarge: amount exceeds max_issuable
        """
        amount = self._base_round(to_decimal(amount))
        if amount <= 0:
            raise ZeroAmount("Issue amount must be positive")
        with self.ledger.lock:
            self.ledger.ensure_wallet(address)
            ratio = self.pool.current_debt_ratio()
            _, collateral_invalid = self._collateral_value_and_invalid(address)
            if collateral_invalid:
                raise InvalidRate(f"Rate for {self.collateral_symbol} is invalid")
            remaining = self.max_issuable(address)
            if amount > remaining:
                raise AmountTooLarge(f"Amount {amount} exceeds issuable {remaining} for {address}")
            return self._issue(address, amount, ratio)

    def issue_max(self, address: str) -> IssuanceResult:
        """Issue everything the account can (ZeroAmount when nothing is issuable)."""
        with self.ledger.lock:
            self._valid_max_debt(address)
            return self.issue(address, self._base_floor(self.max_issuable(address)))

    def _issue(self, address: str, amount: Decimal, ratio: Decimal) -> IssuanceResult:
        shares = self.pool.shares_for_amount(amount, ratio)
        reference = self.ledger.next_reference("issue")
        moves = [Move(amount, self.base_currency, SYSTEM_WALLET, address, reference)]
        moves += self.pool.mint_moves(address, shares, reference)
        origin = TransactionOrigin(OriginType.ISSUANCE, reference, address, "ISSUE")
        self.ledger.execute_or_raise(build_transaction(self.ledger, moves, origin))

        self.last_issue_or_burn[address] = self.ledger.current_time
        self.events.add(Event(
            ISSUED, self.ledger.current_time, address, self.base_currency, amount,
            meta={'shares': shares, 'debt_ratio': ratio},
        ))
        logger.info("issued %s %s to %s (%s shares at ratio %s)", amount, self.base_currency, address, shares, ratio)
        return IssuanceResult(amount, shares)

    # ========================================================================
    # BURN
    # ========================================================================

    def burn(self, address: str, amount) -> IssuanceResult:
        """
        Burn up to ``amount`` of the base synth against the account's debt.

        Matured base synth entries are settled first. At most the debt is
        burned; burning all of it removes every share. Does not reset the
        minimum stake timer.

        Raises:
            ZeroAmount: amount is zero
            MinimumStakeTimeNotElapsed: burning too soon after an issue
            CannotSettleDuringWaitingPeriod: base synth entries not yet matured
            InvalidRate: debt ratio is stale or zero
            NoDebtToBurn: the account has no debt
            InsufficientFunds: the account does not hold the base synth to burn
        """
        amount = self._base_round(to_decimal(amount))
        if amount <= 0:
            raise ZeroAmount("Burn amount must be positive")
        with self.ledger.lock:
            if not self.can_burn(address):
                raise MinimumStakeTimeNotElapsed(
                    f"{address} issued at {self.last_issue_or_burn[address]}; "
                    f"minimum stake time is {self.settings.minimum_stake_time}"
                )
            return self._burn(address, amount)

    def burn_to_target(self, address: str) -> IssuanceResult:
        """
        Burn exactly enough to bring the debt back to collateral_value * issuance_ratio.

        A no-op when already at or below target. Ignores the minimum stake time.

        Raises:
            InvalidRate: debt ratio or collateral rate is stale, flagged or zero
        """
        with self.ledger.lock:
            debt = self.pool.debt_balance_of(address, self.pool.current_debt_ratio())
            if debt <= self._valid_max_debt(address):
                return IssuanceResult(ZERO, ZERO)
            return self._burn(address, None)

    def _settle_base(self, address: str) -> int:
        """Settle matured base synth entries. Returns the number settled."""
        if self.exchanger is None or not self.ledger.is_registered(address):
            return 0
        owing_count = self.exchanger.queue.length(address, self.base_currency)
        if owing_count == 0:
            return 0
        return self.exchanger.settle(address, self.base_currency).num_entries_settled

    def _burn(self, address: str, amount: Optional[Decimal]) -> IssuanceResult:
        """Burn ``amount``, or down to the target debt when amount is None."""
        settled = self._settle_base(address)
        ratio = self.pool.current_debt_ratio()
        shares_held = self.pool.shares_of(address)
        debt = self.pool.debt_balance_of(address, ratio)
        if debt <= 0:
            raise NoDebtToBurn(f"{address} has no debt to burn")
        if amount is None:
            amount = self._base_round(debt - self._valid_max_debt(address))
            if amount <= 0:
                return IssuanceResult(ZERO, ZERO)

        balance = self.ledger.get_balance(address, self.base_currency)
        if settled and amount > balance:
            amount = balance
        burn_amount = min(amount, self._base_round(debt))
        if burn_amount <= 0 or burn_amount > balance:
            raise InsufficientFunds(
                f"{address} holds {balance} {self.base_currency}, cannot burn {burn_amount}"
            )

        if burn_amount >= self._base_round(debt):
            shares = shares_held
        else:
            shares = min(self.pool.shares_for_amount(burn_amount, ratio), shares_held)

        reference = self.ledger.next_reference("burn")
        moves = [Move(burn_amount, self.base_currency, address, SYSTEM_WALLET, reference)]
        moves += self.pool.burn_moves(address, shares, reference)
        origin = TransactionOrigin(OriginType.ISSUANCE, reference, address, "BURN")
        self.ledger.execute_or_raise(build_transaction(self.ledger, moves, origin))

        self.events.add(Event(
            BURNED, self.ledger.current_time, address, self.base_currency, burn_amount,
            meta={'shares': shares, 'debt_ratio': ratio},
        ))
        logger.info("burned %s %s from %s (%s shares at ratio %s)", burn_amount, self.base_currency, address, shares, ratio)
        return IssuanceResult(burn_amount, shares)

    # ========================================================================
    # PRIVILEGED ENTRY POINTS
    # ========================================================================

    def modify_debt_shares_for_migration(self, caller: str, address: str, delta) -> Decimal:
        """
        Adjust an account's debt shares directly (moving debt between domains).

        Positive delta mints shares, negative delta burns them. Returns the
        account's new share balance.

        Raises:
            Unauthorized: caller is not an allow-listed migrator
            InsufficientFunds: burning more shares than the account holds
        """
        if caller not in self.settings.migrators:
            raise Unauthorized(f"{caller} is not an allowed debt migrator")
        delta = to_decimal(delta)
        if delta == 0:
            raise ZeroAmount("Migration delta must be non-zero")
        with self.ledger.lock:
            self.ledger.ensure_wallet(address)
            reference = self.ledger.next_reference("migration")
            if delta > 0:
                moves = self.pool.mint_moves(address, delta, reference)
            else:
                moves = self.pool.burn_moves(address, -delta, reference)
            origin = TransactionOrigin(OriginType.MIGRATION, reference, address, "MIGRATE")
            self.ledger.execute_or_raise(build_transaction(self.ledger, moves, origin))
            self.events.add(Event(
                DEBT_SHARES_MIGRATED, self.ledger.current_time, address, self.pool.share_symbol, delta,
                meta={'caller': caller},
            ))
            return self.pool.shares_of(address)

    def issue_without_debt(self, caller: str, currency: str, address: str, amount) -> None:
        """
        Mint a synth without creating debt (wrappers backed elsewhere).

        The amount is recorded as excluded debt so the pool does not count it.

        Raises:
            Unauthorized: caller is not an allow-listed wrapper
        """
        if caller not in self.settings.wrappers:
            raise Unauthorized(f"{caller} is not an allowed wrapper")
        amount = self.ledger.get_unit(currency).round(to_decimal(amount))
        if amount <= 0:
            raise ZeroAmount("Issue amount must be positive")
        with self.ledger.lock:
            self.ledger.ensure_wallet(address)
            self._mint_or_burn_without_debt(currency, address, amount, issue=True)
            self.pool.add_excluded_debt(currency, amount)

    def burn_without_debt(self, caller: str, currency: str, address: str, amount) -> None:
        """
        Burn a synth minted without debt.

        Raises:
            Unauthorized: caller is not an allow-listed wrapper
            InsufficientFunds: the account does not hold the amount
        """
        if caller not in self.settings.wrappers:
            raise Unauthorized(f"{caller} is not an allowed wrapper")
        amount = self.ledger.get_unit(currency).round(to_decimal(amount))
        if amount <= 0:
            raise ZeroAmount("Burn amount must be positive")
        with self.ledger.lock:
            balance = self.ledger.get_balance(address, currency)
            if amount > balance:
                raise InsufficientFunds(f"{address} holds {balance} {currency}, cannot burn {amount}")
            self._mint_or_burn_without_debt(currency, address, amount, issue=False)
            self.pool.remove_excluded_debt(currency, amount)

    def _mint_or_burn_without_debt(self, currency: str, address: str, amount: Decimal, issue: bool) -> None:
        reference = self.ledger.next_reference("wrapper")
        if issue:
            moves: List[Move] = [Move(amount, currency, SYSTEM_WALLET, address, reference)]
        else:
            moves = [Move(amount, currency, address, SYSTEM_WALLET, reference)]
        event_type = "ISSUE_WITHOUT_DEBT" if issue else "BURN_WITHOUT_DEBT"
        origin = TransactionOrigin(OriginType.SYSTEM, reference, address, event_type)
        self.ledger.execute_or_raise(build_transaction(self.ledger, moves, origin))
        self.events.add(Event(
            ISSUED if issue else BURNED, self.ledger.current_time, address, currency, amount,
            meta={'without_debt': True},
        ))

    # ------------------------------------------------------------------------

    def _base_round(self, value: Decimal) -> Decimal:
        return self.ledger.get_unit(self.base_currency).round(value)

    def _base_floor(self, value: Decimal) -> Decimal:
        """Round down to the base synth precision, so the result never exceeds value."""
        places = self.ledger.get_unit(self.base_currency).decimal_places
        if places is None:
            return value
        return value.quantize(Decimal(10) ** -places, rounding=ROUND_DOWN)
