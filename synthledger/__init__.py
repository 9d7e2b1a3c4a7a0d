"""
synthledger - Debt pool accounting and synth exchange settlement

Stakers lock collateral and issue the base synth against a shared debt pool.
Synths are exchanged at oracle rates; standard exchanges are reconciled after
a waiting period (reclaim or rebate), atomic exchanges are final.

Usage:
    from decimal import Decimal
    from synthledger import SynthSystem

    system = SynthSystem()
    system.add_synth("sETH", "Synth Ether", rate=Decimal("2000"))
    system.update_rate("SNX", Decimal("2"))
    system.fund_collateral("alice", Decimal("10000"))

    system.issue("alice", Decimal("1000"))
    result = system.exchange("alice", "sUSD", Decimal("500"), "sETH")
    system.advance_time(system.settings.waiting_period_secs)
    system.settle("alice", "sETH")
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    ExecuteResult,
    LedgerError,
    InsufficientFunds,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    ZeroAmount,
    SameAsset,
    InvalidRate,
    TooVolatile,
    SlippageExceeded,
    VolumeLimitExceeded,
    MaxQueueLengthReached,
    CannotSettleDuringWaitingPeriod,
    MinimumStakeTimeNotElapsed,
    NoDebtToBurn,
    AmountTooLarge,
    Unauthorized,
    issuance_only_transfer_rule,
    synth,
    collateral,
    debt_share,
    to_decimal,
    SYSTEM_WALLET,
    FEE_WALLET,
    UNIT_TYPE_SYNTH,
    UNIT_TYPE_COLLATERAL,
    UNIT_TYPE_DEBT_SHARE,
    DEFAULT_BASE_SYNTH,
    DEFAULT_COLLATERAL,
    DEFAULT_DEBT_SHARE,
)

# Ledger
from .ledger import Ledger

# Configuration
from .settings import FeeConfig, SystemSettings

# Feeds
from .oracle import (
    RoundData,
    PriceOracle,
    MockPriceOracle,
    DebtRatioOracle,
    MockDebtRatioOracle,
    PooledDebtRatioOracle,
    EscrowSource,
    StaticEscrowSource,
)

# Events
from .events import Event, EventLog

# Circuit breaker
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    is_deviation_above_threshold,
)

# Dynamic fees
from .dynamic_fee import (
    DynamicFee,
    DynamicFeeModel,
    calculate_thresholded_deviation,
    calculate_dynamic_fee,
    calculate_capped_fee,
    calculate_exchange_dynamic_fee,
)

# Debt pool and issuance
from .debt_pool import DebtInfo, DebtPool
from .issuance import Account, IssuanceLedger, IssuanceResult

# Settlement
from .settlement import (
    ExchangeEntry,
    EntrySettlement,
    SettlementOwing,
    SettlementPlan,
    SettlementQueue,
    calculate_amount_should_have,
    calculate_settlement_owing,
    calculate_max_secs_left,
    plan_settlement,
)

# Exchange
from .exchanger import (
    ExchangeKind,
    ExchangeOutcome,
    ExchangeRequest,
    ExchangeAmounts,
    ExchangeResult,
    SettlementResult,
    ExchangeEngine,
)

# Wiring
from .system import SynthSystem

__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'Unit', 'ExecuteResult',
    'issuance_only_transfer_rule', 'synth', 'collateral', 'debt_share', 'to_decimal',
    'SYSTEM_WALLET', 'FEE_WALLET', 'UNIT_TYPE_SYNTH', 'UNIT_TYPE_COLLATERAL', 'UNIT_TYPE_DEBT_SHARE',
    'DEFAULT_BASE_SYNTH', 'DEFAULT_COLLATERAL', 'DEFAULT_DEBT_SHARE',
    # Errors
    'LedgerError', 'InsufficientFunds', 'TransferRuleViolation', 'UnitNotRegistered',
    'WalletNotRegistered', 'ZeroAmount', 'SameAsset', 'InvalidRate', 'TooVolatile',
    'SlippageExceeded', 'VolumeLimitExceeded', 'MaxQueueLengthReached',
    'CannotSettleDuringWaitingPeriod', 'MinimumStakeTimeNotElapsed', 'NoDebtToBurn',
    'AmountTooLarge', 'Unauthorized',
    # Ledger
    'Ledger',
    # Configuration
    'FeeConfig', 'SystemSettings',
    # Feeds
    'RoundData', 'PriceOracle', 'MockPriceOracle', 'DebtRatioOracle', 'MockDebtRatioOracle',
    'PooledDebtRatioOracle', 'EscrowSource', 'StaticEscrowSource',
    # Events
    'Event', 'EventLog',
    # Circuit breaker
    'CircuitBreaker', 'CircuitBreakerState', 'is_deviation_above_threshold',
    # Dynamic fees
    'DynamicFee', 'DynamicFeeModel', 'calculate_thresholded_deviation', 'calculate_dynamic_fee',
    'calculate_capped_fee', 'calculate_exchange_dynamic_fee',
    # Debt pool and issuance
    'DebtInfo', 'DebtPool', 'Account', 'IssuanceLedger', 'IssuanceResult',
    # Settlement
    'ExchangeEntry', 'EntrySettlement', 'SettlementOwing', 'SettlementPlan', 'SettlementQueue',
    'calculate_amount_should_have', 'calculate_settlement_owing', 'calculate_max_secs_left',
    'plan_settlement',
    # Exchange
    'ExchangeKind', 'ExchangeOutcome', 'ExchangeRequest', 'ExchangeAmounts', 'ExchangeResult',
    'SettlementResult', 'ExchangeEngine',
    # Wiring
    'SynthSystem',
]

__version__ = '1.0.0'
