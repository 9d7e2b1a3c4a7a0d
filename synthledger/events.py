"""
events.py - Operation events

Every state-changing operation appends one or more Event records to an
EventLog. The ledger's transaction log stays the authoritative audit trail;
events carry the domain meaning (which exchange, which entry was settled,
why a trade was skipped) that raw moves do not.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

# Event types.
ISSUED = "Issued"
BURNED = "Burned"
SYNTH_EXCHANGE = "SynthExchange"
ATOMIC_SYNTH_EXCHANGE = "AtomicSynthExchange"
EXCHANGE_ENTRY_APPENDED = "ExchangeEntryAppended"
EXCHANGE_ENTRY_SETTLED = "ExchangeEntrySettled"
EXCHANGE_RECLAIM = "ExchangeReclaim"
EXCHANGE_REBATE = "ExchangeRebate"
CIRCUIT_BROKEN = "CircuitBroken"
DEBT_SHARES_MIGRATED = "DebtSharesMigrated"


@dataclass(frozen=True, slots=True)
class Event:
    event_type: str
    timestamp: datetime
    account: Optional[str] = None
    asset: Optional[str] = None
    amount: Optional[Decimal] = None
    meta: Dict[str, Any] = field(default_factory=dict)


class EventLog:
    """Bounded (or unbounded) in-order event buffer with optional listeners."""

    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)
        self.listeners: List[Callable[[Event], None]] = []

    def add(self, e: Event) -> None:
        self.events.append(e)
        for listener in self.listeners:
            listener(e)

    def subscribe(self, listener: Callable[[Event], None]) -> None:
        self.listeners.append(listener)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def __len__(self) -> int:
        return len(self.events)
