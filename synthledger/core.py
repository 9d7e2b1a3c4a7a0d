"""
Core types and pure functions for the synthetic debt ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError and the issuance/exchange error taxonomy
4. Type aliases: Positions, BalanceMap, UnitState
5. Transfer rules: Pure validation functions for moves
6. Unit factories: synth(), collateral() and debt_share()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Debt shares, synth balances and rates are all Decimal. The global context
# is configured once at import time so every module computes identically.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
#   - prec=50: 18 fractional digits plus headroom for rate products
#   - rounding=ROUND_HALF_EVEN: Banker's rounding (unbiased)
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption. Minting is a move out of the
# system wallet, burning is a move back into it, so the system wallet holds
# minus the circulating supply of every unit it issues.
SYSTEM_WALLET = "system"

# Sink for exchange fees, always denominated in the base synth.
FEE_WALLET = "fee_pool"

# Unit type constants (strings, not enum).
UNIT_TYPE_SYNTH = "SYNTH"
UNIT_TYPE_COLLATERAL = "COLLATERAL"
UNIT_TYPE_DEBT_SHARE = "DEBT_SHARE"

# Default symbols.
DEFAULT_BASE_SYNTH = "sUSD"
DEFAULT_COLLATERAL = "SNX"
DEFAULT_DEBT_SHARE = "SDS"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-18")

# Synths, collateral and debt shares are 18-decimal fixed point.
FIXED_POINT_DECIMALS = 18
UNIT = Decimal("1")

DECIMAL_ROUNDING = {
    UNIT_TYPE_SYNTH: ROUND_HALF_EVEN,
    UNIT_TYPE_COLLATERAL: ROUND_DOWN,
    UNIT_TYPE_DEBT_SHARE: ROUND_HALF_EVEN,
    'FEES': ROUND_UP,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Static attributes of a unit (volatility flag, base flag, ...).
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    The debt pool, settlement queue and exchange engine read balances through
    this protocol. Functions accepting a LedgerView declare their read-only
    intent; only Ledger.execute() mutates balances.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    @property
    def block_number(self) -> int:
        """Return the current logical block."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Return the balance of a specific unit in a wallet.

        Returns Decimal("0") if the wallet holds none of the unit.
        """
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's static attributes."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def list_units(self, unit_type: Optional[str] = None) -> List[str]:
        """Return registered unit symbols, optionally filtered by unit type."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    ALREADY_APPLIED: Transaction ID was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation (insufficient funds, transfer rule).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    ISSUANCE = "issuance"        # issue / burn against the debt pool
    EXCHANGE = "exchange"        # standard or atomic exchange
    SETTLEMENT = "settlement"    # reclaim / rebate
    MIGRATION = "migration"      # privileged debt share adjustment
    SYSTEM = "system"            # genesis funding, wrappers


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would cause a wallet balance to fall below the unit's minimum."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered with the ledger."""
    pass


class ZeroAmount(LedgerError):
    """Raised when an issue, burn or exchange amount is zero."""
    pass


class SameAsset(LedgerError):
    """Raised when exchanging an asset into itself."""
    pass


class InvalidRate(LedgerError):
    """Raised when an oracle rate or the debt ratio is zero, missing or stale."""
    pass


class TooVolatile(LedgerError):
    """Raised when the dynamic fee model reports the price history as too volatile."""
    pass


class SlippageExceeded(LedgerError):
    """Raised when an atomic exchange would deliver less than the requested minimum."""
    pass


class VolumeLimitExceeded(LedgerError):
    """Raised when the per-block atomic exchange volume cap would be exceeded."""
    pass


class MaxQueueLengthReached(LedgerError):
    """Raised when an (account, asset) settlement queue is full."""
    pass


class CannotSettleDuringWaitingPeriod(LedgerError):
    """Raised when entries are still inside the settlement waiting period."""
    pass


class MinimumStakeTimeNotElapsed(LedgerError):
    """Raised when burning before the minimum stake time has passed since the last issue."""
    pass


class NoDebtToBurn(LedgerError):
    """Raised when burning for an account that carries no debt."""
    pass


class AmountTooLarge(LedgerError):
    """Raised when issuing beyond the account's remaining issuable amount."""
    pass


class Unauthorized(LedgerError):
    """Raised when a privileged entry point is called by an identity not on its allow-list."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin (ISSUANCE, EXCHANGE, ...)
        source_id: Unique operation reference (e.g. "exchange:000042")
        account: Account the operation was performed for (if applicable)
        event_type: Specific event (e.g. "ISSUE", "RECLAIM", "ATOMIC")
    """
    origin_type: OriginType
    source_id: str
    account: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.account:
            parts.append(f"account={self.account}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Minting a synth is a Move out of SYSTEM_WALLET, burning is a Move into it.

    Attributes:
        quantity: The amount to transfer (must be finite and positive).
        unit_symbol: The unit being transferred (e.g., "sUSD", "SDS").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Reference of the operation generating this move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _compute_intent_id(moves: Tuple[Move, ...], origin: TransactionOrigin) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    Based solely on the moves and the origin, never on timestamps. Engines put
    a unique operation reference in origin.source_id and in every contract_id,
    so two identical trades submitted separately still hash differently.
    """
    sorted_moves = tuple(sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    ))

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.account:
        content_parts.append(f"account:{origin.account}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Built by the debt pool and the exchange engine, then submitted to
    Ledger.execute(). All moves in one PendingTransaction are applied together
    or not at all.

    Attributes:
        moves: Tuple of value transfers between wallets
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        intent_id: Content-addressable hash of the transaction intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', _compute_intent_id(self.moves, self.origin))

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves."""
        return not self.moves

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves.

    This is the standard way to create transactions.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: List of moves to include in the transaction
        origin: Transaction origin (defaults to a SYSTEM origin)

    Returns:
        A PendingTransaction ready for execution

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("100"), "sUSD", SYSTEM_WALLET, "alice", "genesis:alice")
        ])
        ledger.execute(tx)
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.SYSTEM,
            source_id="system",
        )

    return PendingTransaction(
        moves=tuple(moves),
        origin=origin,
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        block_number: Logical block the transaction landed in
        sequence_number: Monotonic sequence within the ledger (for ordering)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    block_number: int
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transaction must have moves")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100  # Inner content width
        bar = "─" * w

        def pad(text: str) -> str:
            """Pad or truncate text to exactly w characters."""
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   block          : ' + str(self.block_number))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            move_str = f"   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}"
            lines.append(f"│{pad(move_str)}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# Type alias for transfer rule functions.
# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of an asset held in the ledger.

    Attributes:
        symbol: Currency key (e.g., "sUSD", "sETH", "SNX", "SDS").
        name: Human-readable name for the unit.
        unit_type: SYNTH, COLLATERAL or DEBT_SHARE.
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
        transfer_rule: Optional function to validate moves involving this unit.
        _frozen_state: Static attributes (tuple of key-value pairs).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = FIXED_POINT_DECIMALS
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Static attributes as a fresh dict."""
        return dict(self._frozen_state)

    @property
    def is_base(self) -> bool:
        return bool(self.state.get('is_base', False))

    @property
    def volatile(self) -> bool:
        return bool(self.state.get('volatile', False))

    def round(self, value: Decimal) -> Decimal:
        """
        Round a value to this unit's decimal precision using quantize.

        Returns the value unchanged if decimal_places is None.
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        rounding_mode = DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=rounding_mode)


# ============================================================================
# TRANSFER RULES
# ============================================================================

def issuance_only_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Restrict a unit to mint/burn moves against the system wallet.

    Debt shares are a claim on the pool, not a token: they may only be created
    or destroyed by the debt pool, never passed between accounts.

    Raises:
        TransferRuleViolation: If neither side of the move is SYSTEM_WALLET.
    """
    if move.source != SYSTEM_WALLET and move.dest != SYSTEM_WALLET:
        raise TransferRuleViolation(
            f"{move.unit_symbol} is not transferable: {move.source} → {move.dest}"
        )


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def synth(symbol: str, name: str, volatile: bool = False, is_base: bool = False) -> Unit:
    """
    Create a synthetic asset unit.

    Args:
        symbol: Currency key (e.g., "sUSD", "sETH").
        name: Full name (e.g., "Synth Ether").
        volatile: Excluded from atomic exchanges when True.
        is_base: Marks the system's base stable unit (rate fixed at 1).

    Returns:
        A Unit with an 18-decimal, non-negative balance constraint.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_SYNTH,
        _frozen_state=_freeze_state({'volatile': volatile, 'is_base': is_base}),
    )


def collateral(symbol: str, name: str) -> Unit:
    """Create the staking collateral unit."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_COLLATERAL,
        _frozen_state=_freeze_state({'volatile': True, 'is_base': False}),
    )


def debt_share(symbol: str = DEFAULT_DEBT_SHARE, name: str = "Debt Shares") -> Unit:
    """Create the non-transferable debt share unit."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_DEBT_SHARE,
        transfer_rule=issuance_only_transfer_rule,
    )


def to_decimal(value: Any) -> Decimal:
    """Convert ints, strings and floats to Decimal via str (no binary float artefacts)."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
