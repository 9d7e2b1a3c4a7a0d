"""
test_issuance.py - Unit tests for IssuanceLedger

Tests:
- Issue: shares at ratio, max issuable, rate checks
- Burn: minimum stake time, no debt, cap at debt, burning all shares
- Burn to target after a collateral price drop, refused on an invalid collateral rate
- Issue max under a debt ratio with a repeating decimal expansion
- Collateral views: escrow, c-ratio, transferable collateral
- Burn blocked by unmatured base synth entries
- Debt share migration and issuing without debt
"""

import logging
import pytest
from datetime import timedelta
from decimal import Decimal

from synthledger import (
    Account, AmountTooLarge, CannotSettleDuringWaitingPeriod, InsufficientFunds,
    InvalidRate, IssuanceResult, MinimumStakeTimeNotElapsed, NoDebtToBurn,
    Unauthorized, ZeroAmount,
)
from synthledger.events import BURNED, DEBT_SHARES_MIGRATED, ISSUED

from tests.helpers import T0, make_system, stake


class TestIssue:

    def test_issue_mints_base_synth_and_shares(self, system):
        stake(system, "alice", 100000)
        result = system.issue("alice", Decimal("1000"))
        assert result == IssuanceResult(Decimal("1000"), Decimal("1000"))
        assert system.balance_of("alice", "sUSD") == Decimal("1000")
        assert system.debt_balance_of("alice") == Decimal("1000")

    def test_issue_is_one_transaction(self, system):
        stake(system, "alice", 100000)
        before = len(system.ledger.transaction_log)
        system.issue("alice", Decimal("1000"))
        assert len(system.ledger.transaction_log) == before + 1
        tx = system.ledger.transaction_log[-1]
        assert {m.unit_symbol for m in tx.moves} == {"sUSD", "SDS"}

    def test_max_issuable(self, system):
        stake(system, "alice", 100000)
        assert system.max_issuable("alice") == Decimal("25000")
        with pytest.raises(AmountTooLarge):
            system.issue("alice", Decimal("25000.01"))

    def test_max_issuable_reduced_by_debt(self, staked_system):
        assert staked_system.max_issuable("alice") == Decimal("15000")

    def test_max_issuable_never_negative(self, staked_system):
        staked_system.update_rate("SNX", Decimal("0.1"))
        assert staked_system.max_issuable("alice") == 0

    def test_issue_max(self, system):
        stake(system, "alice", 100000)
        assert system.issue_max("alice").amount == Decimal("25000")
        with pytest.raises(ZeroAmount):
            system.issue_max("alice")

    def test_issue_max_with_repeating_debt_ratio(self, system):
        """
        Debt ratio 30050.5 / 30000 has no finite decimal expansion, so the
        issuable amount carries more digits than the base synth holds.
        """
        stake(system, "alice", 100000, 10000)
        stake(system, "bob", 200000, 20000)
        system.exchange("bob", "sUSD", Decimal("1000"), "sETH")
        system.update_rate("sETH", Decimal("2101"))

        result = system.issue_max("alice")

        assert result.amount == Decimal("14983.166666666666666666")
        assert system.max_issuable("alice") < Decimal("1e-17")
        assert system.check_invariants()['valid']

    def test_issue_max_flagged_collateral_rate(self, system):
        stake(system, "alice", 100000)
        system.oracle.set_flagged("SNX")
        with pytest.raises(InvalidRate):
            system.issue_max("alice")

    def test_zero_amount(self, system):
        stake(system, "alice", 100000)
        with pytest.raises(ZeroAmount):
            system.issue("alice", Decimal("0"))

    def test_stale_collateral_rate(self, system):
        stake(system, "alice", 100000)
        system.advance_time(timedelta(hours=26))
        with pytest.raises(InvalidRate):
            system.issue("alice", Decimal("100"))

    def test_stale_debt_ratio(self, mock_ratio_system):
        mock_ratio_system.advance_time(timedelta(hours=26))
        mock_ratio_system.update_rate("SNX", Decimal("2"))
        with pytest.raises(InvalidRate, match="stale"):
            mock_ratio_system.issue("alice", Decimal("100"))

    def test_issued_event_and_timer(self, system):
        stake(system, "alice", 100000)
        system.issue("alice", Decimal("1000"))
        event = system.events.of_type(ISSUED)[-1]
        assert event.account == "alice"
        assert event.amount == Decimal("1000")
        assert event.meta['shares'] == Decimal("1000")
        assert system.issuance.last_issue_event("alice") == T0

    def test_issue_logs(self, system, caplog):
        stake(system, "alice", 100000)
        with caplog.at_level(logging.INFO, logger="synthledger.issuance"):
            system.issue("alice", Decimal("1000"))
        assert "sUSD to alice" in caplog.text


class TestBurn:

    def test_minimum_stake_time(self, staked_system):
        with pytest.raises(MinimumStakeTimeNotElapsed):
            staked_system.burn("alice", Decimal("1000"))
        staked_system.advance_time(timedelta(seconds=300))
        result = staked_system.burn("alice", Decimal("1000"))
        assert result == IssuanceResult(Decimal("1000"), Decimal("1000"))
        assert staked_system.debt_balance_of("alice") == Decimal("9000")

    def test_burn_does_not_reset_timer(self, staked_system):
        staked_system.advance_time(timedelta(seconds=300))
        staked_system.burn("alice", Decimal("1000"))
        staked_system.burn("alice", Decimal("1000"))
        assert staked_system.issuance.last_issue_event("alice") == T0

    def test_zero_amount(self, staked_system):
        with pytest.raises(ZeroAmount):
            staked_system.burn("alice", Decimal("0"))

    def test_no_debt(self, system):
        stake(system, "bob", 1000)
        with pytest.raises(NoDebtToBurn):
            system.burn("bob", Decimal("10"))

    def test_burn_capped_at_debt_burns_all_shares(self, mock_ratio_system):
        mock_ratio_system.issue("alice", Decimal("1000"))
        mock_ratio_system.set_debt_ratio(Decimal("0.5"))
        mock_ratio_system.advance_time(timedelta(seconds=300))
        result = mock_ratio_system.burn("alice", Decimal("800"))
        assert result == IssuanceResult(Decimal("500"), Decimal("1000"))
        assert mock_ratio_system.pool.shares_of("alice") == 0
        assert mock_ratio_system.balance_of("alice", "sUSD") == Decimal("500")

    def test_burn_more_than_held(self, staked_system):
        staked_system.advance_time(timedelta(seconds=300))
        staked_system.exchange("alice", "sUSD", Decimal("5000"), "sETH")
        with pytest.raises(InsufficientFunds):
            staked_system.burn("alice", Decimal("6000"))

    def test_burned_event(self, staked_system):
        staked_system.advance_time(timedelta(seconds=300))
        staked_system.burn("alice", Decimal("250"))
        event = staked_system.events.of_type(BURNED)[-1]
        assert event.amount == Decimal("250")
        assert event.meta['shares'] == Decimal("250")

    def test_unmatured_base_synth_entry_blocks_burn(self):
        system = make_system(minimum_stake_time=0)
        stake(system, "alice", 100000, 10000)
        system.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        system.advance_time(timedelta(seconds=180))
        system.exchange("alice", "sETH", Decimal("0.5"), "sUSD")
        with pytest.raises(CannotSettleDuringWaitingPeriod):
            system.burn("alice", Decimal("100"))

    def test_matured_base_synth_entry_settled_before_burn(self):
        system = make_system(minimum_stake_time=0)
        stake(system, "alice", 100000, 10000)
        system.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        system.advance_time(timedelta(seconds=180))
        system.exchange("alice", "sETH", Decimal("0.5"), "sUSD")
        system.advance_time(timedelta(seconds=180))
        system.burn("alice", Decimal("100"))
        assert system.queue.length("alice", "sUSD") == 0


class TestBurnToTarget:

    def test_price_drop(self, system):
        stake(system, "alice", 100000, 25000)
        system.update_rate("SNX", Decimal("1"))
        result = system.burn_to_target("alice")
        assert result.amount == Decimal("12500")
        assert system.debt_balance_of("alice") == Decimal("12500")

    def test_ignores_minimum_stake_time(self, system):
        stake(system, "alice", 100000, 25000)
        system.update_rate("SNX", Decimal("1.6"))
        assert system.burn_to_target("alice").amount == Decimal("5000")

    def test_at_target_is_noop(self, staked_system):
        assert staked_system.burn_to_target("alice") == IssuanceResult(Decimal("0"), Decimal("0"))

    def test_zero_collateral_rate_raises(self, staked_system):
        staked_system.advance_time(timedelta(seconds=400))
        staked_system.update_rate("SNX", Decimal("0"))
        with pytest.raises(InvalidRate):
            staked_system.burn_to_target("alice")
        assert staked_system.debt_balance_of("alice") == Decimal("10000")
        assert staked_system.balance_of("alice", "sUSD") == Decimal("10000")

    def test_flagged_collateral_rate_raises(self, staked_system):
        staked_system.update_rate("SNX", Decimal("0.5"))
        staked_system.oracle.set_flagged("SNX")
        with pytest.raises(InvalidRate):
            staked_system.burn_to_target("alice")
        assert staked_system.debt_balance_of("alice") == Decimal("10000")


class TestCollateralViews:

    def test_account(self, staked_system):
        assert staked_system.account("alice") == Account("alice", Decimal("10000"), Decimal("10000"), T0)

    def test_collateralisation_ratio(self, staked_system):
        assert staked_system.collateralisation_ratio("alice") == Decimal("0.05")

    def test_collateralisation_ratio_without_collateral(self, system):
        assert system.collateralisation_ratio("nobody") == 0

    def test_escrow_counts_as_collateral(self, staked_system):
        staked_system.set_escrow("alice", "reward_escrow", Decimal("50000"))
        staked_system.set_escrow("alice", "vesting", Decimal("70000"))
        assert staked_system.issuance.collateral("alice") == Decimal("150000")
        assert staked_system.max_issuable("alice") == Decimal("27500")

    def test_transferable_collateral(self, staked_system):
        assert staked_system.issuance.transferable_collateral("alice") == Decimal("60000")

    def test_transferable_collateral_excludes_escrow(self, staked_system):
        staked_system.set_escrow("alice", "reward_escrow", Decimal("50000"))
        assert staked_system.issuance.transferable_collateral("alice") == Decimal("100000")


class TestMigration:

    def test_unauthorized(self, staked_system):
        with pytest.raises(Unauthorized):
            staked_system.modify_debt_shares_for_migration("mallory", "alice", Decimal("100"))

    def test_mint_and_burn_shares(self, staked_system):
        staked_system.settings.allow_migrator("bridge")
        assert staked_system.modify_debt_shares_for_migration("bridge", "alice", Decimal("100")) == Decimal("10100")
        assert staked_system.modify_debt_shares_for_migration("bridge", "alice", Decimal("-600")) == Decimal("9500")
        event = staked_system.events.of_type(DEBT_SHARES_MIGRATED)[-1]
        assert event.amount == Decimal("-600")
        assert event.meta['caller'] == "bridge"
        assert staked_system.check_invariants()['valid']

    def test_burn_more_than_held(self, staked_system):
        staked_system.settings.allow_migrator("bridge")
        with pytest.raises(InsufficientFunds):
            staked_system.modify_debt_shares_for_migration("bridge", "alice", Decimal("-20000"))

    def test_zero_delta(self, staked_system):
        staked_system.settings.allow_migrator("bridge")
        with pytest.raises(ZeroAmount):
            staked_system.modify_debt_shares_for_migration("bridge", "alice", Decimal("0"))


class TestWithoutDebt:

    def test_unauthorized(self, system):
        with pytest.raises(Unauthorized):
            system.issue_without_debt("mallory", "sETH", "bob", Decimal("1"))
        with pytest.raises(Unauthorized):
            system.burn_without_debt("mallory", "sETH", "bob", Decimal("1"))

    def test_issue_and_burn(self, staked_system):
        staked_system.settings.allow_wrapper("wrapper")
        staked_system.issue_without_debt("wrapper", "sETH", "bob", Decimal("2"))
        assert staked_system.balance_of("bob", "sETH") == Decimal("2")
        assert staked_system.pool.shares_of("bob") == 0
        assert staked_system.debt_balance_of("alice") == Decimal("10000")

        staked_system.burn_without_debt("wrapper", "sETH", "bob", Decimal("2"))
        assert staked_system.balance_of("bob", "sETH") == 0
        assert staked_system.pool.excluded_debt["sETH"] == 0

    def test_burn_more_than_held(self, system):
        system.settings.allow_wrapper("wrapper")
        system.issue_without_debt("wrapper", "sETH", "bob", Decimal("1"))
        with pytest.raises(InsufficientFunds):
            system.burn_without_debt("wrapper", "sETH", "bob", Decimal("2"))
