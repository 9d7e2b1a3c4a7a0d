"""
test_pooled_debt.py - Functional tests for stakers sharing one global debt

Tests that:
- Debt follows each staker's share of the pool, not what they hold
- Later stakers enter at the current debt ratio
- Burning the whole debt leaves other stakers' debt unchanged
- Collateral price moves change capacity, not debt
- The pool invariant holds throughout
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from synthledger import InvalidRate

from tests.helpers import make_system, stake, verify_pool_invariant


@pytest.fixture
def two_stakers():
    """Zero-fee system where alice and bob have each issued 1000 sUSD."""
    system = make_system()
    stake(system, "alice", 100000, 1000)
    stake(system, "bob", 100000, 1000)
    return system


class TestSharedDebt:

    def test_price_move_shared_by_shares(self, two_stakers):
        """Alice's sETH doubles in value; both stakers owe half the gain."""
        two_stakers.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        two_stakers.update_rate("sETH", Decimal("4000"))

        info = two_stakers.debt_info()
        assert info.total_debt == Decimal("3000")
        assert info.debt_ratio == Decimal("1.5")
        assert two_stakers.debt_balance_of("alice") == Decimal("1500")
        assert two_stakers.debt_balance_of("bob") == Decimal("1500")

    def test_price_drop_shared(self, two_stakers):
        """A losing position lowers everyone's debt."""
        two_stakers.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        two_stakers.update_rate("sETH", Decimal("1000"))
        assert two_stakers.debt_balance_of("alice") == Decimal("750")
        assert two_stakers.debt_balance_of("bob") == Decimal("750")

    def test_late_staker_enters_at_current_ratio(self, two_stakers):
        """Shares are minted at the ratio of the moment, so a newcomer does not inherit past moves."""
        two_stakers.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        two_stakers.update_rate("sETH", Decimal("4000"))

        stake(two_stakers, "carol", 100000, 1500)

        assert two_stakers.pool.shares_of("carol") == Decimal("1000")
        assert two_stakers.debt_balance_of("carol") == Decimal("1500")
        assert two_stakers.debt_info().debt_ratio == Decimal("1.5")

        two_stakers.update_rate("sETH", Decimal("2000"))
        # sETH worth 1000 again: 1000 + 1500 + 1000 spread over 3000 shares
        assert abs(two_stakers.debt_balance_of("carol") - Decimal("3500") / 3) < Decimal("1e-30")

    def test_burn_whole_debt(self, two_stakers):
        """Bob burns exactly his debt; alice's debt is untouched."""
        two_stakers.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        two_stakers.update_rate("sETH", Decimal("1000"))
        two_stakers.advance_time(timedelta(seconds=300))

        result = two_stakers.burn("bob", Decimal("1000"))

        assert result.amount == Decimal("750")
        assert result.shares == Decimal("1000")
        assert two_stakers.pool.shares_of("bob") == 0
        assert two_stakers.balance_of("bob", "sUSD") == Decimal("250")
        assert two_stakers.debt_balance_of("alice") == Decimal("750")
        assert verify_pool_invariant(two_stakers)[0]

    def test_everyone_exits(self, two_stakers):
        """When every staker burns all debt the pool is empty and the ratio resets."""
        two_stakers.advance_time(timedelta(seconds=300))
        two_stakers.burn("alice", Decimal("1000"))
        two_stakers.burn("bob", Decimal("1000"))
        info = two_stakers.debt_info()
        assert info.total_debt_shares == 0
        assert info.total_debt == 0
        assert info.debt_ratio == Decimal("1")


class TestCollateralMoves:

    def test_capacity_follows_collateral_price(self, two_stakers):
        """Debt is unchanged by the collateral price, only how much more can be issued."""
        assert two_stakers.max_issuable("alice") == Decimal("24000")
        two_stakers.update_rate("SNX", Decimal("4"))
        assert two_stakers.debt_balance_of("alice") == Decimal("1000")
        assert two_stakers.max_issuable("alice") == Decimal("49000")

    def test_undercollateralised_then_burn_to_target(self, two_stakers):
        """A collateral crash leaves alice above target until burn_to_target restores it."""
        two_stakers.issue_max("alice")
        two_stakers.update_rate("SNX", Decimal("1"))
        assert two_stakers.collateralisation_ratio("alice") == Decimal("0.25")

        two_stakers.burn_to_target("alice")

        assert two_stakers.debt_balance_of("alice") == Decimal("12500")
        assert two_stakers.collateralisation_ratio("alice") == Decimal("0.125")
        assert two_stakers.debt_balance_of("bob") == Decimal("1000")

    def test_stale_synth_rate_blocks_issue(self, two_stakers):
        """The pooled ratio is stale while any circulating synth has a stale rate."""
        two_stakers.exchange("alice", "sUSD", Decimal("1000"), "sETH")
        two_stakers.advance_time(timedelta(hours=26))
        two_stakers.update_rate("SNX", Decimal("2"))
        with pytest.raises(InvalidRate):
            two_stakers.issue("bob", Decimal("10"))
        two_stakers.update_rate("sETH", Decimal("2000"))
        assert two_stakers.issue("bob", Decimal("10")).amount == Decimal("10")
