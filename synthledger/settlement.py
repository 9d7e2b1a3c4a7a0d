"""
settlement.py - Exchange entries, settlement queues and reclaim/rebate math

A standard exchange is priced with the oracle rates of the moment it happens,
which a fast trader can front-run. Each exchange therefore leaves an
ExchangeEntry in the queue of its (account, destination asset). Once the
waiting period has passed the entry is settled against the rates of the
settlement moment:

    should_have = amount * rate_now(src) / rate_now(dest) * (1 - fee_rate_at_trade)
    owing       = amount_received - should_have

A positive owing is reclaimed from the account (burned, capped at what the
account still holds), a negative one is rebated (minted).

ARCHITECTURE:
    - ExchangeEntry / SettlementOwing / EntrySettlement: frozen records
    - calculate_*: pure functions, every input explicit
    - plan_settlement: pure planner that walks a queue oldest-first
    - SettlementQueue: bounded FIFO per (account, asset), the only mutable state
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
import math
from typing import Callable, Dict, List, Sequence, Tuple

from .core import MaxQueueLengthReached

ZERO = Decimal("0")

# (src, dest) -> (rate_src, rate_dest) at the settlement moment
RateLookup = Callable[[str, str], Tuple[Decimal, Decimal]]


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class ExchangeEntry:
    """
    One standard exchange awaiting reconciliation.

    Created exactly once per exchange, consumed exactly once by settlement.
    """
    account: str
    src: str
    amount: Decimal
    dest: str
    amount_received: Decimal
    exchange_fee_rate: Decimal
    timestamp: datetime
    round_id_for_src: int
    round_id_for_dest: int

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Entry amount must be positive, got {self.amount}")
        if self.amount_received < 0:
            raise ValueError(f"Entry amount_received cannot be negative, got {self.amount_received}")
        if not (0 <= self.exchange_fee_rate < 1):
            raise ValueError(f"Entry fee rate must be in [0, 1), got {self.exchange_fee_rate}")

    def matures_at(self, waiting_period: timedelta) -> datetime:
        return self.timestamp + waiting_period

    def is_mature(self, now: datetime, waiting_period: timedelta) -> bool:
        return now - self.timestamp >= waiting_period


@dataclass(frozen=True, slots=True)
class EntrySettlement:
    """Outcome of settling one entry."""
    entry: ExchangeEntry
    reclaim: Decimal
    rebate: Decimal
    src_rate: Decimal
    dest_rate: Decimal


@dataclass(frozen=True, slots=True)
class SettlementOwing:
    """Aggregate reclaim and rebate over the matured entries of one queue."""
    reclaim_amount: Decimal
    rebate_amount: Decimal
    num_entries: int


@dataclass(frozen=True, slots=True)
class SettlementPlan:
    """
    What settling one queue would do right now.

    ``settlements`` covers the matured prefix of the queue, oldest first.
    Reclaims are already capped by the running balance.
    """
    settlements: Tuple[EntrySettlement, ...] = field(default_factory=tuple)
    unmatured: int = 0

    @property
    def reclaimed(self) -> Decimal:
        return sum((s.reclaim for s in self.settlements), ZERO)

    @property
    def refunded(self) -> Decimal:
        return sum((s.rebate for s in self.settlements), ZERO)

    @property
    def num_entries_settled(self) -> int:
        return len(self.settlements)


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_amount_should_have(entry: ExchangeEntry, src_rate: Decimal, dest_rate: Decimal) -> Decimal:
    """
    Amount the entry would have delivered at the given rates and its own fee rate.

    PURE FUNCTION.
    """
    if dest_rate == 0:
        raise ValueError(f"Destination rate for {entry.dest} is zero")
    return entry.amount * src_rate / dest_rate * (1 - entry.exchange_fee_rate)


def calculate_settlement_owing(
    entry: ExchangeEntry,
    src_rate: Decimal,
    dest_rate: Decimal,
    rounder: Callable[[Decimal], Decimal] = lambda x: x,
) -> Tuple[Decimal, Decimal]:
    """
    Return (reclaim, rebate) for one entry; at most one of them is non-zero.

    PURE FUNCTION - All inputs explicit, no hidden state.

    Example:
        # 100 A -> B at 2:1 with a 1% fee, then B doubles: reclaim half
        entry = ExchangeEntry("alice", "A", Decimal("100"), "B", Decimal("198"), ...)
        calculate_settlement_owing(entry, Decimal("2"), Decimal("2"))  # (99, 0)
    """
    should_have = rounder(calculate_amount_should_have(entry, src_rate, dest_rate))
    if entry.amount_received > should_have:
        return entry.amount_received - should_have, ZERO
    return ZERO, should_have - entry.amount_received


def plan_settlement(
    entries: Sequence[ExchangeEntry],
    now: datetime,
    waiting_period: timedelta,
    rates: RateLookup,
    balance: Decimal,
    rounder: Callable[[Decimal], Decimal] = lambda x: x,
) -> SettlementPlan:
    """
    Settle a queue on paper, oldest first.

    PURE FUNCTION. Processing stops at the first unmatured entry; it and
    everything after it stay queued. Entries are applied one after another:
    each reclaim is capped at the balance left after the previous entries,
    and each rebate adds to that balance.

    Args:
        entries: Queue contents, oldest first
        now: Settlement time
        waiting_period: Minimum age of a settleable entry
        rates: Lookup of current (src, dest) rates
        balance: Account's balance of the queue's asset before settlement
        rounder: Rounding of the queue's asset
    """
    settlements: List[EntrySettlement] = []
    running = balance
    for i, entry in enumerate(entries):
        if not entry.is_mature(now, waiting_period):
            return SettlementPlan(tuple(settlements), len(entries) - i)
        src_rate, dest_rate = rates(entry.src, entry.dest)
        reclaim, rebate = calculate_settlement_owing(entry, src_rate, dest_rate, rounder)
        reclaim = min(reclaim, max(running, ZERO))
        running = running - reclaim + rebate
        settlements.append(EntrySettlement(entry, reclaim, rebate, src_rate, dest_rate))
    return SettlementPlan(tuple(settlements), 0)


def calculate_max_secs_left(
    entries: Sequence[ExchangeEntry],
    now: datetime,
    waiting_period: timedelta,
) -> int:
    """Seconds until the newest entry matures (0 when nothing is waiting)."""
    if not entries:
        return 0
    newest = max(e.timestamp for e in entries)
    left = (newest + waiting_period - now).total_seconds()
    return math.ceil(left) if left > 0 else 0


# ============================================================================
# QUEUE
# ============================================================================

class SettlementQueue:
    """
    Bounded FIFO of ExchangeEntry per (account, asset).

    The cap is checked before insertion; a full queue rejects the append
    with MaxQueueLengthReached and is never evicted silently.

    Args:
        max_entries: Queue cap, or a zero-argument callable returning it so
            the queue follows live settings.
    """

    def __init__(self, max_entries=12):
        self._max_entries = max_entries
        self._entries: Dict[Tuple[str, str], List[ExchangeEntry]] = {}

    @property
    def max_entries(self) -> int:
        return self._max_entries() if callable(self._max_entries) else self._max_entries

    def entries(self, account: str, asset: str) -> Tuple[ExchangeEntry, ...]:
        """Entries for (account, asset), oldest first."""
        return tuple(self._entries.get((account, asset), ()))

    def length(self, account: str, asset: str) -> int:
        return len(self._entries.get((account, asset), ()))

    def entry_at(self, account: str, asset: str, index: int) -> ExchangeEntry:
        return self._entries[(account, asset)][index]

    def has_room(self, account: str, asset: str) -> bool:
        return self.length(account, asset) < self.max_entries

    def ensure_room(self, account: str, asset: str) -> None:
        """
        Raises:
            MaxQueueLengthReached: If the (account, asset) queue is full.
        """
        if not self.has_room(account, asset):
            raise MaxQueueLengthReached(
                f"Max queue length reached for {account}/{asset} ({self.max_entries} entries); settle first"
            )

    def append(self, entry: ExchangeEntry) -> None:
        """
        Queue an entry under (entry.account, entry.dest).

        Raises:
            MaxQueueLengthReached: If the queue is already full.
        """
        self.ensure_room(entry.account, entry.dest)
        self._entries.setdefault((entry.account, entry.dest), []).append(entry)

    def remove_oldest(self, account: str, asset: str, count: int) -> List[ExchangeEntry]:
        """Drop and return the ``count`` oldest entries."""
        queue = self._entries.get((account, asset), [])
        removed, remaining = queue[:count], queue[count:]
        if remaining:
            self._entries[(account, asset)] = remaining
        else:
            self._entries.pop((account, asset), None)
        return removed

    def keys(self) -> List[Tuple[str, str]]:
        return sorted(self._entries)

    def total_entries(self) -> int:
        return sum(len(q) for q in self._entries.values())

    def snapshot(self) -> Dict[Tuple[str, str], Tuple[ExchangeEntry, ...]]:
        return {key: tuple(queue) for key, queue in self._entries.items()}

    def __repr__(self):
        return f"SettlementQueue({len(self._entries)} queues, {self.total_entries()} entries, cap={self.max_entries})"
