"""
helpers.py - System builders shared by the test suites

Plain functions (not fixtures) so hypothesis tests can build a fresh system
per example.
"""

from datetime import datetime
from decimal import Decimal
from typing import Tuple

from synthledger import SynthSystem, SystemSettings, FeeConfig


T0 = datetime(2025, 1, 1)


def zero_fee_config() -> FeeConfig:
    """Fee config with no base fee and no dynamic fee."""
    return FeeConfig(base_fee_rate=Decimal("0"), dynamic_fee_rounds=0)


def make_system(pooled: bool = True, zero_fees: bool = True, **settings) -> SynthSystem:
    """
    Create a system at T0 with sETH at 2000 and SNX at 2.

    Extra keyword arguments are passed to SystemSettings.
    """
    if zero_fees:
        settings.setdefault('default_fee_config', zero_fee_config())
    system = SynthSystem(
        SystemSettings(**settings),
        initial_time=T0,
        verbose=False,
        pooled_debt_ratio=pooled,
    )
    system.add_synth("sETH", "Synth Ether", rate=Decimal("2000"))
    system.update_rate("SNX", Decimal("2"))
    return system


def stake(system: SynthSystem, account: str, collateral_amount, issue_amount=None) -> None:
    """Fund collateral and optionally issue the base synth against it."""
    system.fund_collateral(account, Decimal(str(collateral_amount)))
    if issue_amount is not None:
        system.issue(account, Decimal(str(issue_amount)))


def ledger_balances(system: SynthSystem) -> dict:
    """Snapshot of every non-zero (wallet, unit) balance."""
    snapshot = {}
    for wallet in sorted(system.ledger.list_wallets()):
        for unit, qty in system.ledger.get_wallet_balances(wallet).items():
            if qty != 0:
                snapshot[(wallet, unit)] = qty
    return snapshot


def verify_pool_invariant(system: SynthSystem) -> Tuple[bool, Decimal, Decimal]:
    """
    Verify sum of account shares equals total debt shares.

    Returns:
        (holds, total_debt_shares, sum_of_account_shares)
    """
    total = system.pool.total_debt_shares
    summed = system.pool.sum_of_account_shares()
    return total == summed, total, summed
