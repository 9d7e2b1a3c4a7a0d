"""
test_exchange_lifecycle.py - Functional tests for exchange and settlement end to end

Walks complete flows through SynthSystem:
- Stake, issue, exchange, price move, settle
- Front-running attempt neutralised by settlement
- Many exchanges settled together in FIFO order
- Atomic exchanges alongside standard ones
- Circuit breaker trip and administrative recovery
- Fees accumulating in the fee wallet
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from synthledger import (
    ExchangeOutcome, FeeConfig, MaxQueueLengthReached, SYSTEM_WALLET,
)
from synthledger.events import EXCHANGE_ENTRY_SETTLED

from tests.helpers import make_system, stake, verify_pool_invariant


class TestFrontRunning:
    """A trader who sees the next price before it lands gains nothing after settlement."""

    def test_profit_reclaimed(self, staked_system):
        """Buying before a price rise is priced at the new rate once settled."""
        staked_system.exchange("alice", "sUSD", Decimal("2000"), "sETH")
        assert staked_system.balance_of("alice", "sETH") == Decimal("1")

        staked_system.update_rate("sETH", Decimal("2500"))
        staked_system.advance_time(timedelta(seconds=180))
        result = staked_system.settle("alice", "sETH")

        assert result.reclaimed == Decimal("0.2")
        assert staked_system.balance_of("alice", "sETH") == Decimal("0.8")
        # 0.8 sETH at 2500 is the 2000 sUSD paid
        assert staked_system.balance_of("alice", "sETH") * Decimal("2500") == Decimal("2000")

    def test_loss_rebated(self, staked_system):
        """Buying before a price drop is refunded at the new rate once settled."""
        staked_system.exchange("alice", "sUSD", Decimal("2000"), "sETH")
        staked_system.update_rate("sETH", Decimal("1600"))
        staked_system.advance_time(timedelta(seconds=180))
        result = staked_system.settle("alice", "sETH")

        assert result.refunded == Decimal("0.25")
        assert staked_system.balance_of("alice", "sETH") == Decimal("1.25")

    def test_selling_settles_first(self, staked_system):
        """Exchanging out of a synth settles its matured entries in the same transaction."""
        staked_system.exchange("alice", "sUSD", Decimal("2000"), "sETH")
        staked_system.update_rate("sETH", Decimal("2500"))
        staked_system.advance_time(timedelta(seconds=180))
        log_len = len(staked_system.ledger.transaction_log)

        result = staked_system.exchange("alice", "sETH", Decimal("1"), "sUSD")

        assert len(staked_system.ledger.transaction_log) == log_len + 1
        assert result.src_settlement.reclaimed == Decimal("0.2")
        assert result.amount == Decimal("0.8")
        assert result.amount_received == Decimal("2000")
        assert staked_system.balance_of("alice", "sUSD") == Decimal("10000")


class TestQueueLifecycle:
    """Entries accumulate, mature and settle oldest first."""

    def test_fifo_settlement_across_rates(self, staked_system):
        """Entries made at different rates each settle against the settlement-time rate."""
        staked_system.exchange("alice", "sUSD", Decimal("2000"), "sETH")
        staked_system.advance_time(timedelta(seconds=60))
        staked_system.update_rate("sETH", Decimal("1000"))
        staked_system.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        assert staked_system.balance_of("alice", "sETH") == Decimal("2")

        staked_system.update_rate("sETH", Decimal("1500"))
        staked_system.advance_time(timedelta(seconds=180))
        result = staked_system.settle("alice", "sETH")

        assert result.num_entries_settled == 2
        settled = staked_system.events.of_type(EXCHANGE_ENTRY_SETTLED)
        assert [e.meta['amount'] for e in settled] == [Decimal("2000"), Decimal("1000")]
        # 3000 sUSD at 1500
        assert staked_system.balance_of("alice", "sETH") == Decimal("2")
        assert result.reclaimed == Decimal("0.333333333333333333")
        assert result.refunded == Decimal("0.333333333333333333")

    def test_partially_matured_queue(self, staked_system):
        """Only the matured prefix settles; newer entries stay queued."""
        staked_system.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        staked_system.advance_time(timedelta(seconds=120))
        staked_system.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        staked_system.advance_time(timedelta(seconds=60))

        result = staked_system.settle("alice", "sETH")

        assert result.num_entries_settled == 1
        assert staked_system.queue.length("alice", "sETH") == 1
        assert staked_system.exchanger.max_secs_left_in_waiting_period("alice", "sETH") == 120

    def test_full_queue_then_settle(self, staked_system):
        """A full queue blocks new exchanges until entries are settled."""
        staked_system.update_settings(max_entries_in_queue=3)
        for _ in range(3):
            staked_system.exchange("alice", "sUSD", Decimal("100"), "sETH")
        with pytest.raises(MaxQueueLengthReached):
            staked_system.exchange("alice", "sUSD", Decimal("100"), "sETH")

        staked_system.advance_time(timedelta(seconds=180))
        staked_system.settle("alice", "sETH")
        assert staked_system.queue.length("alice", "sETH") == 0
        assert staked_system.exchange("alice", "sUSD", Decimal("100"), "sETH").executed

    def test_multi_hop(self, staked_system):
        """sUSD -> sETH -> sBTC -> sUSD with waiting periods in between."""
        staked_system.add_synth("sBTC", "Synth Bitcoin", rate=Decimal("40000"))
        staked_system.exchange("alice", "sUSD", Decimal("4000"), "sETH")
        staked_system.advance_time(timedelta(seconds=180))
        staked_system.exchange("alice", "sETH", Decimal("2"), "sBTC")
        assert staked_system.balance_of("alice", "sBTC") == Decimal("0.1")
        staked_system.advance_time(timedelta(seconds=180))
        staked_system.exchange("alice", "sBTC", Decimal("0.1"), "sUSD")
        assert staked_system.balance_of("alice", "sUSD") == Decimal("10000")
        assert staked_system.queue.keys() == [("alice", "sUSD")]


class TestAtomicAlongsideStandard:

    def test_atomic_result_usable_immediately(self, staked_system):
        """Atomic proceeds can be exchanged again in the same block; standard ones cannot."""
        staked_system.exchange_atomically("alice", "sUSD", Decimal("2000"), "sETH", Decimal("1"))
        back = staked_system.exchange_atomically("alice", "sETH", Decimal("1"), "sUSD", Decimal("2000"))
        assert back.amount_received == Decimal("2000")
        assert staked_system.queue.total_entries() == 0

    def test_volume_cap_resets_each_block(self):
        """The per-block cap applies to atomic volume only."""
        system = make_system(atomic_max_volume_per_block=Decimal("1000"))
        stake(system, "alice", 100000, 10000)
        system.exchange_atomically("alice", "sUSD", Decimal("1000"), "sETH", Decimal("0"))
        # standard exchanges ignore the atomic cap
        assert system.exchange("alice", "sUSD", Decimal("5000"), "sETH").executed
        system.advance_time(timedelta(seconds=12))
        system.exchange_atomically("alice", "sUSD", Decimal("1000"), "sETH", Decimal("0"))
        assert system.exchanger.atomic_volume_in_block() == Decimal("1000")


class TestCircuitBreakerRecovery:

    def test_trip_and_rebaseline(self, staked_system):
        """A tripped asset stays skipped until the baseline is reset."""
        staked_system.update_rate("sETH", Decimal("8000"))
        assert staked_system.exchange("alice", "sUSD", Decimal("100"), "sETH").outcome is ExchangeOutcome.SKIPPED
        assert staked_system.exchange("alice", "sUSD", Decimal("100"), "sETH").outcome is ExchangeOutcome.SKIPPED

        staked_system.circuit_breaker.reset_last_value("sETH", Decimal("8000"))
        result = staked_system.exchange("alice", "sUSD", Decimal("8000"), "sETH")
        assert result.executed
        assert result.amount_received == Decimal("1")

    def test_skipped_source_asset(self, staked_system):
        """A trip on the source asset skips the exchange too."""
        staked_system.exchange("alice", "sUSD", Decimal("2000"), "sETH")
        staked_system.advance_time(timedelta(seconds=180))
        staked_system.update_rate("sETH", Decimal("500"))
        result = staked_system.exchange("alice", "sETH", Decimal("1"), "sUSD")
        assert result.outcome is ExchangeOutcome.SKIPPED
        assert result.skipped_asset == "sETH"
        assert staked_system.queue.length("alice", "sETH") == 1


class TestFees:

    def test_fees_accumulate_in_base_synth(self):
        """Fees from every exchange land in the fee wallet, valued in sUSD."""
        system = make_system()
        system.add_synth("sBTC", "Synth Bitcoin", rate=Decimal("40000"),
                         fee_config=FeeConfig(base_fee_rate=Decimal("0.01"), dynamic_fee_rounds=0))
        stake(system, "alice", 100000, 10000)

        system.exchange("alice", "sUSD", Decimal("4000"), "sBTC")
        system.exchange("alice", "sUSD", Decimal("4000"), "sBTC")

        assert system.fees_collected() == Decimal("80")
        assert system.balance_of("alice", "sBTC") == Decimal("0.198")
        assert system.ledger.get_balance(SYSTEM_WALLET, "sUSD") == Decimal("-2080")

    def test_fee_stays_in_system_debt(self):
        """The fee is carved out of the gross amount, so total debt is unchanged."""
        system = make_system()
        system.add_synth("sBTC", "Synth Bitcoin", rate=Decimal("40000"),
                         fee_config=FeeConfig(base_fee_rate=Decimal("0.01"), dynamic_fee_rounds=0))
        stake(system, "alice", 100000, 10000)
        system.exchange("alice", "sUSD", Decimal("4000"), "sBTC")

        assert system.total_debt() == Decimal("10000")
        holds, total, summed = verify_pool_invariant(system)
        assert holds
