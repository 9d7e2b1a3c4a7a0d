"""
exchanger.py - Synth exchange and settlement engine

Orchestrates exchanges between synths and the settlement of their entries.

Exchange kinds are a tagged variant dispatched to separate handlers that share
one fee/rate core:

    STANDARD  priced at current oracle rates, leaves an ExchangeEntry that is
              reconciled after the waiting period (reclaim or rebate)
    ATOMIC    final at execution, no entry, non-volatile assets only, capped
              per block in base-currency volume, optional slippage floor

Execution order of one exchange (all under the ledger lock):
    1. SameAsset / ZeroAmount
    2. Source still inside its waiting period -> CannotSettleDuringWaitingPeriod
    3. Stale or flagged rate -> InvalidRate
    4. Circuit breaker on both rates -> SKIPPED (no ledger change)
    5. Fee rate -> TooVolatile
    6. Settle matured source and destination entries
    7. Convert, deduct fee, slippage / volume / queue checks
    8. One ledger transaction: settlement moves, burn source, mint destination,
       mint fee in the base synth to the fee wallet
    9. Queue the entry (standard) and emit events

The circuit breaker is the only silent failure. Everything else raises.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging

from .circuit_breaker import CircuitBreaker
from .core import (
    FEE_WALLET, SYSTEM_WALLET, UNIT_TYPE_SYNTH,
    CannotSettleDuringWaitingPeriod, InsufficientFunds, InvalidRate, LedgerError, MaxQueueLengthReached,
    Move, OriginType, SameAsset, SlippageExceeded, TooVolatile, TransactionOrigin,
    VolumeLimitExceeded, ZeroAmount,
    build_transaction, to_decimal,
)
from .dynamic_fee import DynamicFeeModel
from .events import (
    ATOMIC_SYNTH_EXCHANGE, CIRCUIT_BROKEN, EXCHANGE_ENTRY_APPENDED, EXCHANGE_ENTRY_SETTLED,
    EXCHANGE_REBATE, EXCHANGE_RECLAIM, SYNTH_EXCHANGE,
    Event, EventLog,
)
from .ledger import Ledger
from .oracle import PriceOracle, RoundData
from .settings import SystemSettings
from .settlement import (
    ExchangeEntry, SettlementOwing, SettlementPlan, SettlementQueue,
    calculate_max_secs_left, calculate_settlement_owing, plan_settlement,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ============================================================================
# REQUEST / RESULT TYPES
# ============================================================================

class ExchangeKind(Enum):
    STANDARD = "standard"
    ATOMIC = "atomic"


class ExchangeOutcome(Enum):
    """
    EXECUTED: balances changed.
    SKIPPED: the circuit breaker rejected a rate; nothing changed.
    """
    EXECUTED = "executed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ExchangeRequest:
    kind: ExchangeKind
    account: str
    src: str
    amount: Decimal
    dest: str
    min_amount: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'amount', to_decimal(self.amount))
        if self.min_amount is not None:
            if self.kind is not ExchangeKind.ATOMIC:
                raise ValueError("min_amount is only supported on atomic exchanges")
            object.__setattr__(self, 'min_amount', to_decimal(self.min_amount))


@dataclass(frozen=True, slots=True)
class ExchangeAmounts:
    """Conversion of a source amount at given rates and fee rate (destination units)."""
    amount_received: Decimal
    fee: Decimal
    fee_rate: Decimal
    src_rate: Decimal
    dest_rate: Decimal


@dataclass(frozen=True, slots=True)
class SettlementResult:
    reclaimed: Decimal = ZERO
    refunded: Decimal = ZERO
    num_entries_settled: int = 0


@dataclass(frozen=True, slots=True)
class ExchangeResult:
    """
    Outcome of one exchange call.

    ``amount`` is the source amount actually exchanged, which can be lower
    than requested when settling the source reclaimed part of the balance.
    ``fee`` is in destination units, ``fee_in_base`` in the base synth.
    """
    outcome: ExchangeOutcome
    kind: ExchangeKind
    account: str
    src: str
    dest: str
    amount: Decimal = ZERO
    amount_received: Decimal = ZERO
    fee: Decimal = ZERO
    fee_in_base: Decimal = ZERO
    fee_rate: Decimal = ZERO
    entry: Optional[ExchangeEntry] = None
    src_settlement: SettlementResult = field(default_factory=SettlementResult)
    dest_settlement: SettlementResult = field(default_factory=SettlementResult)
    skipped_asset: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.outcome is ExchangeOutcome.EXECUTED


# ============================================================================
# ENGINE
# ============================================================================

class ExchangeEngine:
    """
    Exchange and settlement orchestration over a Ledger.

    Args:
        ledger: Ledger holding synth balances
        price_oracle: Rate feed
        settings: Live system settings
        fee_model: Dynamic fee model
        circuit_breaker: Rate deviation guard
        queue: Settlement queue
        events: Event sink
        fee_wallet: Wallet receiving exchange fees in the base synth
    """

    def __init__(
        self,
        ledger: Ledger,
        price_oracle: PriceOracle,
        settings: SystemSettings,
        fee_model: DynamicFeeModel,
        circuit_breaker: CircuitBreaker,
        queue: SettlementQueue,
        events: Optional[EventLog] = None,
        fee_wallet: str = FEE_WALLET,
    ):
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.settings = settings
        self.fee_model = fee_model
        self.circuit_breaker = circuit_breaker
        self.queue = queue
        self.events = events if events is not None else EventLog()
        self.fee_wallet = ledger.ensure_wallet(fee_wallet)
        # (block number, base-currency volume exchanged atomically in that block)
        self._atomic_volume: Tuple[int, Decimal] = (ledger.block_number, ZERO)
        self._handlers: Dict[ExchangeKind, Callable[[ExchangeRequest], ExchangeResult]] = {
            ExchangeKind.STANDARD: self._exchange_standard,
            ExchangeKind.ATOMIC: self._exchange_atomic,
        }

    @property
    def base_currency(self) -> str:
        return self.price_oracle.base_currency

    @property
    def waiting_period(self) -> timedelta:
        return timedelta(seconds=self.settings.waiting_period_secs)

    # ------------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------------

    def exchange(self, account: str, src: str, amount, dest: str) -> ExchangeResult:
        """
        Standard exchange of ``amount`` of ``src`` into ``dest``.

        Returns a SKIPPED result when the circuit breaker rejects either rate.

        Raises:
            SameAsset, ZeroAmount, CannotSettleDuringWaitingPeriod, InvalidRate,
            TooVolatile, InsufficientFunds, MaxQueueLengthReached
        """
        return self.execute(ExchangeRequest(ExchangeKind.STANDARD, account, src, amount, dest))

    def exchange_atomically(self, account: str, src: str, amount, dest: str, min_amount) -> ExchangeResult:
        """
        Atomic exchange: final immediately, no settlement entry.

        Raises:
            Everything ``exchange`` raises except MaxQueueLengthReached, plus
            TooVolatile for volatile assets, SlippageExceeded and VolumeLimitExceeded.
        """
        return self.execute(ExchangeRequest(ExchangeKind.ATOMIC, account, src, amount, dest, min_amount))

    def execute(self, request: ExchangeRequest) -> ExchangeResult:
        """Dispatch a request to the handler of its kind."""
        handler = self._handlers[request.kind]
        with self.ledger.lock:
            return handler(request)

    def settle(self, account: str, asset: str) -> SettlementResult:
        """
        Settle the matured entries of (account, asset), oldest first.

        Entries still inside the waiting period stay queued. An empty queue is
        a no-op and emits nothing.

        Raises:
            CannotSettleDuringWaitingPeriod: If entries exist but none has matured.
            InvalidRate: If a rate needed for settlement is invalid.
        """
        with self.ledger.lock:
            plan = self._plan_settlement(account, asset)
            if plan.num_entries_settled == 0:
                if plan.unmatured:
                    raise CannotSettleDuringWaitingPeriod(
                        f"Cannot settle {account}/{asset} during waiting period "
                        f"({self.max_secs_left_in_waiting_period(account, asset)}s left)"
                    )
                return SettlementResult()

            reference = self.ledger.next_reference("settle")
            moves = self._settlement_moves(account, asset, plan, reference)
            origin = TransactionOrigin(OriginType.SETTLEMENT, reference, account, "SETTLE")
            self.ledger.execute_or_raise(build_transaction(self.ledger, moves, origin))
            return self._finish_settlement(account, asset, plan)

    # ------------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------------

    def settlement_owing(self, account: str, asset: str) -> SettlementOwing:
        """Reclaim and rebate of the matured entries, ignoring the balance cap."""
        now = self.ledger.current_time
        rounder = self.ledger.get_unit(asset).round
        reclaim = rebate = ZERO
        count = 0
        for entry in self.queue.entries(account, asset):
            if not entry.is_mature(now, self.waiting_period):
                break
            src_rate, dest_rate = self._settlement_rates(entry.src, entry.dest)
            r, b = calculate_settlement_owing(entry, src_rate, dest_rate, rounder)
            reclaim += r
            rebate += b
            count += 1
        return SettlementOwing(reclaim, rebate, count)

    def max_secs_left_in_waiting_period(self, account: str, asset: str) -> int:
        return calculate_max_secs_left(
            self.queue.entries(account, asset), self.ledger.current_time, self.waiting_period
        )

    def has_waiting_period_or_settlement_owing(self, account: str, asset: str) -> bool:
        if self.max_secs_left_in_waiting_period(account, asset) > 0:
            return True
        owing = self.settlement_owing(account, asset)
        return owing.reclaim_amount > 0 or owing.rebate_amount > 0

    def get_amounts_for_exchange(self, amount, src: str, dest: str) -> ExchangeAmounts:
        """
        Quote a standard exchange at current rates.

        Raises:
            TooVolatile: If the dynamic fee signals excess volatility.
            InvalidRate: If either rate is invalid.
        """
        amount = to_decimal(amount)
        fee_rate = self.fee_model.fee_rate_for_exchange(src, dest)
        return self._quote(amount, src, dest, self._valid_rate(src), self._valid_rate(dest), fee_rate)

    def atomic_volume_in_block(self) -> Decimal:
        block, volume = self._atomic_volume
        return volume if block == self.ledger.block_number else ZERO

    # ------------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------------

    def _exchange_standard(self, request: ExchangeRequest) -> ExchangeResult:
        self._check_request(request)
        src_round, dest_round = self._observe_rates(request.src, request.dest)
        skipped = self._trip_breakers(request, src_round, dest_round)
        if skipped is not None:
            return skipped

        fee_rate = self.fee_model.fee_rate_for_exchange(request.src, request.dest)
        src_plan, dest_plan, amount = self._settle_source_and_dest(request)
        quote = self._quote(amount, request.src, request.dest, src_round.rate, dest_round.rate, fee_rate)

        # Entries settled in this same transaction free their queue slots.
        pending_len = self.queue.length(request.account, request.dest) - dest_plan.num_entries_settled
        if pending_len >= self.queue.max_entries:
            raise MaxQueueLengthReached(
                f"Max queue length reached for {request.account}/{request.dest} "
                f"({self.queue.max_entries} entries); settle first"
            )

        entry = ExchangeEntry(
            account=request.account,
            src=request.src,
            amount=amount,
            dest=request.dest,
            amount_received=quote.amount_received,
            exchange_fee_rate=fee_rate,
            timestamp=self.ledger.current_time,
            round_id_for_src=src_round.round_id,
            round_id_for_dest=dest_round.round_id,
        )
        result = self._apply(request, amount, quote, src_plan, dest_plan, entry)
        self.queue.append(entry)
        self.events.add(Event(
            EXCHANGE_ENTRY_APPENDED, self.ledger.current_time, request.account, request.dest,
            entry.amount_received,
            meta={
                'src': entry.src, 'amount': entry.amount, 'fee_rate': entry.exchange_fee_rate,
                'round_id_for_src': entry.round_id_for_src,
                'round_id_for_dest': entry.round_id_for_dest,
            },
        ))
        return result

    def _exchange_atomic(self, request: ExchangeRequest) -> ExchangeResult:
        self._check_request(request)
        for asset in (request.src, request.dest):
            if self._is_volatile(asset):
                raise TooVolatile(f"{asset} is flagged volatile and cannot be exchanged atomically")

        src_round, dest_round = self._observe_rates(request.src, request.dest)
        skipped = self._trip_breakers(request, src_round, dest_round)
        if skipped is not None:
            return skipped

        fee_rate = self.fee_model.fee_rate_for_atomic_exchange(request.src, request.dest)
        src_plan, dest_plan, amount = self._settle_source_and_dest(request)
        quote = self._quote(amount, request.src, request.dest, src_round.rate, dest_round.rate, fee_rate)

        if request.min_amount is not None and quote.amount_received < request.min_amount:
            raise SlippageExceeded(
                f"Atomic exchange delivers {quote.amount_received} {request.dest}, "
                f"below minimum {request.min_amount}"
            )

        volume = amount * src_round.rate
        in_block = self.atomic_volume_in_block()
        cap = self.settings.atomic_max_volume_per_block
        if in_block + volume > cap:
            raise VolumeLimitExceeded(
                f"Atomic volume {in_block + volume} exceeds per-block cap {cap} "
                f"in block {self.ledger.block_number}"
            )

        result = self._apply(request, amount, quote, src_plan, dest_plan, None)
        self._atomic_volume = (self.ledger.block_number, in_block + volume)
        return result

    # ------------------------------------------------------------------------
    # Shared core
    # ------------------------------------------------------------------------

    def _check_request(self, request: ExchangeRequest) -> None:
        if request.src == request.dest:
            raise SameAsset(f"Cannot exchange {request.src} into itself")
        if request.amount <= 0:
            raise ZeroAmount("Exchange amount must be positive")
        for asset in (request.src, request.dest):
            unit = self.ledger.get_unit(asset)
            if unit.unit_type != UNIT_TYPE_SYNTH:
                raise LedgerError(f"{asset} is not a synth")
        if self.max_secs_left_in_waiting_period(request.account, request.src) > 0:
            raise CannotSettleDuringWaitingPeriod(
                f"{request.src} of {request.account} is still in its waiting period"
            )

    def _is_volatile(self, asset: str) -> bool:
        return self.ledger.get_unit(asset).volatile or self.settings.fee_config(asset).volatile

    def _observe_rates(self, src: str, dest: str) -> Tuple[RoundData, RoundData]:
        """Latest rounds of both assets. Zero rates pass through to the breaker."""
        rounds = []
        for asset in (src, dest):
            observed = self.price_oracle.rate_and_round_id(asset)
            _, invalid = self.price_oracle.current_rate(asset)
            if observed.rate > 0 and invalid:
                raise InvalidRate(f"Rate for {asset} is stale or flagged")
            rounds.append(observed)
        return rounds[0], rounds[1]

    def _trip_breakers(
        self, request: ExchangeRequest, src_round: RoundData, dest_round: RoundData
    ) -> Optional[ExchangeResult]:
        """
        Run the breaker on both rates. Returns a SKIPPED result naming the
        first asset that tripped, after both have been checked.
        """
        tripped = None
        for asset, observed in ((request.src, src_round), (request.dest, dest_round)):
            if asset == self.base_currency:
                continue
            last_good = self.circuit_breaker.last_good_rates.get(asset, ZERO)
            if self.circuit_breaker.check_and_trip(asset, observed.rate):
                self.events.add(Event(
                    CIRCUIT_BROKEN, self.ledger.current_time, request.account, asset, observed.rate,
                    meta={'last_good_rate': last_good, 'kind': request.kind.value},
                ))
                if tripped is None:
                    tripped = asset
        if tripped is None:
            return None
        return ExchangeResult(
            outcome=ExchangeOutcome.SKIPPED,
            kind=request.kind,
            account=request.account,
            src=request.src,
            dest=request.dest,
            skipped_asset=tripped,
        )

    def _settle_source_and_dest(self, request: ExchangeRequest) -> Tuple[SettlementPlan, SettlementPlan, Decimal]:
        """
        Plan settlement of both queues and the source amount left to exchange.

        Raises:
            InsufficientFunds: If the source balance does not cover the amount.
        """
        src_plan = self._plan_settlement(request.account, request.src)
        dest_plan = self._plan_settlement(request.account, request.dest)

        balance = self.ledger.get_balance(request.account, request.src)
        balance_after = balance - src_plan.reclaimed + src_plan.refunded
        amount = request.amount
        if src_plan.num_entries_settled and src_plan.reclaimed > 0 and amount > balance_after:
            amount = balance_after
        if amount <= 0 or amount > balance_after:
            raise InsufficientFunds(
                f"{request.account} holds {balance_after} {request.src}, cannot exchange {request.amount}"
            )
        return src_plan, dest_plan, amount

    def _quote(
        self, amount: Decimal, src: str, dest: str,
        src_rate: Decimal, dest_rate: Decimal, fee_rate: Decimal,
    ) -> ExchangeAmounts:
        dest_unit = self.ledger.get_unit(dest)
        gross = dest_unit.round(amount * src_rate / dest_rate)
        received = dest_unit.round(gross * (1 - fee_rate))
        return ExchangeAmounts(
            amount_received=received,
            fee=gross - received,
            fee_rate=fee_rate,
            src_rate=src_rate,
            dest_rate=dest_rate,
        )

    def _apply(
        self,
        request: ExchangeRequest,
        amount: Decimal,
        quote: ExchangeAmounts,
        src_plan: SettlementPlan,
        dest_plan: SettlementPlan,
        entry: Optional[ExchangeEntry],
    ) -> ExchangeResult:
        """Execute settlement and exchange moves as one transaction, then emit events."""
        kind = request.kind.value
        reference = self.ledger.next_reference(f"exchange:{kind}")
        moves = self._settlement_moves(request.account, request.src, src_plan, reference)
        moves += self._settlement_moves(request.account, request.dest, dest_plan, reference)
        moves.append(Move(amount, request.src, request.account, SYSTEM_WALLET, reference))
        if quote.amount_received > 0:
            moves.append(Move(quote.amount_received, request.dest, SYSTEM_WALLET, request.account, reference))

        base_unit = self.ledger.get_unit(self.base_currency)
        fee_in_base = base_unit.round(quote.fee * quote.dest_rate)
        if fee_in_base > 0:
            moves.append(Move(fee_in_base, self.base_currency, SYSTEM_WALLET, self.fee_wallet, reference))

        origin = TransactionOrigin(OriginType.EXCHANGE, reference, request.account, kind.upper())
        self.ledger.execute_or_raise(build_transaction(self.ledger, moves, origin))

        src_result = self._finish_settlement(request.account, request.src, src_plan)
        dest_result = self._finish_settlement(request.account, request.dest, dest_plan)

        event_type = ATOMIC_SYNTH_EXCHANGE if request.kind is ExchangeKind.ATOMIC else SYNTH_EXCHANGE
        self.events.add(Event(
            event_type, self.ledger.current_time, request.account, request.src, amount,
            meta={
                'dest': request.dest, 'amount_received': quote.amount_received,
                'fee': quote.fee, 'fee_in_base': fee_in_base, 'fee_rate': quote.fee_rate,
                'block': self.ledger.block_number,
            },
        ))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "%s exchange %s: %s %s -> %s %s (fee %s, rate %s)",
                kind, request.account, amount, request.src,
                quote.amount_received, request.dest, quote.fee, quote.fee_rate,
            )

        return ExchangeResult(
            outcome=ExchangeOutcome.EXECUTED,
            kind=request.kind,
            account=request.account,
            src=request.src,
            dest=request.dest,
            amount=amount,
            amount_received=quote.amount_received,
            fee=quote.fee,
            fee_in_base=fee_in_base,
            fee_rate=quote.fee_rate,
            entry=entry,
            src_settlement=src_result,
            dest_settlement=dest_result,
        )

    # ------------------------------------------------------------------------
    # Settlement core
    # ------------------------------------------------------------------------

    def _valid_rate(self, asset: str) -> Decimal:
        rate, invalid = self.price_oracle.current_rate(asset)
        if invalid or rate <= 0:
            raise InvalidRate(f"Rate for {asset} is invalid")
        return rate

    def _settlement_rates(self, src: str, dest: str) -> Tuple[Decimal, Decimal]:
        return self._valid_rate(src), self._valid_rate(dest)

    def _plan_settlement(self, account: str, asset: str) -> SettlementPlan:
        entries = self.queue.entries(account, asset)
        if not entries:
            return SettlementPlan()
        return plan_settlement(
            entries,
            now=self.ledger.current_time,
            waiting_period=self.waiting_period,
            rates=self._settlement_rates,
            balance=self.ledger.get_balance(account, asset),
            rounder=self.ledger.get_unit(asset).round,
        )

    def _settlement_moves(self, account: str, asset: str, plan: SettlementPlan, reference: str) -> List[Move]:
        moves: List[Move] = []
        for s in plan.settlements:
            if s.reclaim > 0:
                moves.append(Move(s.reclaim, asset, account, SYSTEM_WALLET, reference))
            if s.rebate > 0:
                moves.append(Move(s.rebate, asset, SYSTEM_WALLET, account, reference))
        return moves

    def _finish_settlement(self, account: str, asset: str, plan: SettlementPlan) -> SettlementResult:
        """Drop settled entries and emit their events. Call after the moves are applied."""
        if plan.num_entries_settled == 0:
            return SettlementResult()
        self.queue.remove_oldest(account, asset, plan.num_entries_settled)
        now = self.ledger.current_time
        for s in plan.settlements:
            entry = s.entry
            if s.reclaim > 0:
                self.events.add(Event(EXCHANGE_RECLAIM, now, account, asset, s.reclaim))
            if s.rebate > 0:
                self.events.add(Event(EXCHANGE_REBATE, now, account, asset, s.rebate))
            self.events.add(Event(
                EXCHANGE_ENTRY_SETTLED, now, account, asset, entry.amount_received,
                meta={
                    'src': entry.src, 'amount': entry.amount, 'reclaim': s.reclaim, 'rebate': s.rebate,
                    'src_rate': s.src_rate, 'dest_rate': s.dest_rate,
                    'round_id_for_src': entry.round_id_for_src,
                    'round_id_for_dest': entry.round_id_for_dest,
                    'traded_at': entry.timestamp,
                },
            ))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "settled %d entries for %s/%s: reclaimed=%s refunded=%s",
                plan.num_entries_settled, account, asset, plan.reclaimed, plan.refunded,
            )
        return SettlementResult(plan.reclaimed, plan.refunded, plan.num_entries_settled)
