"""
system.py - Wiring of the debt pool, exchange engine and feeds

SynthSystem builds one Ledger with the base synth, the collateral and the
debt share units registered, and connects every component to it:

    MockPriceOracle ──┬── CircuitBreaker
                      ├── DynamicFeeModel
                      ├── DebtRatioOracle (pooled or mock)
                      │
    Ledger ───────────┼── DebtPool ── IssuanceLedger
                      └── SettlementQueue ── ExchangeEngine

Components read the shared SystemSettings on every call, so administrator
changes take effect immediately.

Example:
    system = SynthSystem()
    system.add_synth("sETH", "Synth Ether", rate=Decimal("2000"))
    system.update_rate("SNX", Decimal("2"))
    system.fund_collateral("alice", Decimal("10000"))
    system.issue("alice", Decimal("500"))
    result = system.exchange("alice", "sUSD", Decimal("100"), "sETH")
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from .circuit_breaker import CircuitBreaker
from .core import (
    DEFAULT_BASE_SYNTH, DEFAULT_COLLATERAL, DEFAULT_DEBT_SHARE, FEE_WALLET, SYSTEM_WALLET,
    Move, OriginType, TransactionOrigin, Unit,
    build_transaction, collateral, debt_share, synth, to_decimal,
)
from .debt_pool import DebtInfo, DebtPool
from .dynamic_fee import DynamicFeeModel
from .events import EventLog
from .exchanger import ExchangeEngine, ExchangeResult, SettlementResult
from .issuance import Account, IssuanceLedger, IssuanceResult
from .ledger import Ledger
from .oracle import (
    EscrowSource, MockDebtRatioOracle, MockPriceOracle, PooledDebtRatioOracle, RoundData,
    StaticEscrowSource,
)
from .settings import FeeConfig, SystemSettings
from .settlement import SettlementQueue

Timeish = Union[datetime, timedelta, int, float]


class SynthSystem:
    """
    Facade over one synth system.

    Args:
        settings: System settings (default: SystemSettings())
        name: Ledger name
        initial_time: Starting time of the ledger clock
        verbose: Print every ledger transaction
        pooled_debt_ratio: Derive the debt ratio from ledger supplies and
            rates (True) or use a settable MockDebtRatioOracle (False)
        escrow: Escrowed collateral source (default: empty StaticEscrowSource)
        event_maxlen: Bound on retained events (None: unbounded)
    """

    def __init__(
        self,
        settings: Optional[SystemSettings] = None,
        name: str = "synths",
        initial_time: Optional[datetime] = None,
        verbose: bool = False,
        pooled_debt_ratio: bool = True,
        escrow: Optional[EscrowSource] = None,
        event_maxlen: Optional[int] = None,
        base_currency: str = DEFAULT_BASE_SYNTH,
        collateral_symbol: str = DEFAULT_COLLATERAL,
        share_symbol: str = DEFAULT_DEBT_SHARE,
    ):
        self.settings = settings or SystemSettings()
        self.ledger = Ledger(name, initial_time=initial_time, verbose=verbose)
        self.events = EventLog(maxlen=event_maxlen)
        self.escrow = escrow if escrow is not None else StaticEscrowSource()

        self.ledger.register_unit(synth(base_currency, "Synth USD", is_base=True))
        self.ledger.register_unit(collateral(collateral_symbol, "Collateral"))
        self.ledger.register_unit(debt_share(share_symbol))

        clock = lambda: self.ledger.current_time
        self.oracle = MockPriceOracle(clock, base_currency, self.settings.rate_stale_period)

        self.excluded_debt: Dict[str, Decimal] = {}
        if pooled_debt_ratio:
            self.debt_ratio_oracle = PooledDebtRatioOracle(
                self.ledger, self.oracle, share_symbol, self.excluded_debt
            )
        else:
            self.debt_ratio_oracle = MockDebtRatioOracle(clock, stale_period=self.settings.rate_stale_period)

        self.pool = DebtPool(self.ledger, self.debt_ratio_oracle, self.oracle, share_symbol, self.excluded_debt)
        self.circuit_breaker = CircuitBreaker(lambda: self.settings.price_deviation_threshold_factor)
        self.fee_model = DynamicFeeModel(self.oracle, self.settings)
        self.queue = SettlementQueue(lambda: self.settings.max_entries_in_queue)
        self.exchanger = ExchangeEngine(
            self.ledger, self.oracle, self.settings, self.fee_model,
            self.circuit_breaker, self.queue, self.events,
        )
        self.issuance = IssuanceLedger(
            self.ledger, self.pool, self.oracle, self.settings,
            exchanger=self.exchanger, events=self.events,
            escrow=self.escrow, collateral_symbol=collateral_symbol,
        )

    @property
    def base_currency(self) -> str:
        return self.oracle.base_currency

    @property
    def collateral_symbol(self) -> str:
        return self.issuance.collateral_symbol

    @property
    def current_time(self) -> datetime:
        return self.ledger.current_time

    # ========================================================================
    # SETUP AND ADMINISTRATION
    # ========================================================================

    def add_synth(
        self,
        symbol: str,
        name: str,
        rate=None,
        volatile: bool = False,
        fee_config: Optional[FeeConfig] = None,
    ) -> Unit:
        """
        Register a synth, optionally publishing its first rate.

        The first rate also becomes the circuit breaker's baseline.
        """
        unit = synth(symbol, name, volatile=volatile)
        self.ledger.register_unit(unit)
        if fee_config is not None:
            self.settings.set_fee_config(symbol, fee_config)
        if rate is not None:
            self.update_rate(symbol, rate)
            self.circuit_breaker.reset_last_value(symbol, rate)
        return unit

    def update_rate(self, asset: str, rate) -> RoundData:
        return self.oracle.update_rate(asset, to_decimal(rate))

    def update_rates(self, rates: Dict[str, Any]) -> None:
        for asset, rate in rates.items():
            self.update_rate(asset, rate)

    def set_debt_ratio(self, ratio) -> None:
        """Set the ratio of a mock debt-ratio feed."""
        if not isinstance(self.debt_ratio_oracle, MockDebtRatioOracle):
            raise TypeError("Debt ratio is derived from the pool; use a mock feed to set it")
        self.debt_ratio_oracle.set_debt_ratio(to_decimal(ratio))

    def update_settings(self, **changes) -> None:
        """Apply settings changes atomically and push the staleness window to the feeds."""
        with self.ledger.lock:
            self.settings.update(**changes)
            self.oracle.stale_period = self.settings.rate_stale_period
            if isinstance(self.debt_ratio_oracle, MockDebtRatioOracle):
                self.debt_ratio_oracle.stale_period = self.settings.rate_stale_period

    def advance_time(self, to: Timeish) -> datetime:
        """
        Move the clock forward.

        Accepts an absolute datetime, a timedelta or a number of seconds.
        """
        if isinstance(to, datetime):
            target = to
        elif isinstance(to, timedelta):
            target = self.ledger.current_time + to
        else:
            target = self.ledger.current_time + timedelta(seconds=to)
        with self.ledger.lock:
            self.ledger.advance_time(target)
        return self.ledger.current_time

    def fund_collateral(self, account: str, amount) -> None:
        """Mint collateral into an account (the collateral token lives outside the pool)."""
        amount = to_decimal(amount)
        with self.ledger.lock:
            self.ledger.ensure_wallet(account)
            reference = self.ledger.next_reference("collateral")
            origin = TransactionOrigin(OriginType.SYSTEM, reference, account, "FUND")
            move = Move(amount, self.collateral_symbol, SYSTEM_WALLET, account, reference)
            self.ledger.execute_or_raise(build_transaction(self.ledger, [move], origin))

    def set_escrow(self, account: str, category: str, amount) -> None:
        if not isinstance(self.escrow, StaticEscrowSource):
            raise TypeError("Escrow balances come from an external source")
        self.escrow.set_balance(account, category, amount)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def issue(self, account: str, amount) -> IssuanceResult:
        return self.issuance.issue(account, amount)

    def issue_max(self, account: str) -> IssuanceResult:
        return self.issuance.issue_max(account)

    def burn(self, account: str, amount) -> IssuanceResult:
        return self.issuance.burn(account, amount)

    def burn_to_target(self, account: str) -> IssuanceResult:
        return self.issuance.burn_to_target(account)

    def exchange(self, account: str, src: str, amount, dest: str) -> ExchangeResult:
        return self.exchanger.exchange(account, src, amount, dest)

    def exchange_atomically(self, account: str, src: str, amount, dest: str, min_amount) -> ExchangeResult:
        return self.exchanger.exchange_atomically(account, src, amount, dest, min_amount)

    def settle(self, account: str, asset: str) -> SettlementResult:
        return self.exchanger.settle(account, asset)

    def modify_debt_shares_for_migration(self, caller: str, account: str, delta) -> Decimal:
        return self.issuance.modify_debt_shares_for_migration(caller, account, delta)

    def issue_without_debt(self, caller: str, currency: str, account: str, amount) -> None:
        self.issuance.issue_without_debt(caller, currency, account, amount)

    def burn_without_debt(self, caller: str, currency: str, account: str, amount) -> None:
        self.issuance.burn_without_debt(caller, currency, account, amount)

    # ========================================================================
    # VIEWS
    # ========================================================================

    def balance_of(self, account: str, asset: str) -> Decimal:
        if not self.ledger.is_registered(account):
            return Decimal("0")
        return self.ledger.get_balance(account, asset)

    def account(self, address: str) -> Account:
        return self.issuance.account(address)

    def debt_balance_of(self, account: str) -> Decimal:
        return self.pool.debt_balance_of(account)

    def collateralisation_ratio(self, account: str) -> Decimal:
        return self.issuance.collateralisation_ratio(account)

    def max_issuable(self, account: str) -> Decimal:
        return self.issuance.max_issuable(account)

    def total_debt(self) -> Decimal:
        return self.pool.total_debt()

    def debt_info(self) -> DebtInfo:
        return self.pool.debt_info()

    def fees_collected(self) -> Decimal:
        return self.balance_of(FEE_WALLET, self.base_currency)

    def check_invariants(self) -> Dict[str, Any]:
        """
        Check the pool invariant and double-entry conservation.

        Returns:
            Dict with 'valid', 'total_debt_shares', 'sum_of_account_shares'
            and the ledger's 'double_entry' report.
        """
        with self.ledger.lock:
            total = self.pool.total_debt_shares
            summed = self.pool.sum_of_account_shares()
            double_entry = self.ledger.verify_double_entry()
            return {
                'valid': total == summed and double_entry['valid'],
                'total_debt_shares': total,
                'sum_of_account_shares': summed,
                'double_entry': double_entry,
            }

    def __repr__(self):
        return f"SynthSystem({self.ledger!r}, {self.queue!r})"
