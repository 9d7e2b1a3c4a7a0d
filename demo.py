#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial

A walk through one synth system: two stakers lock collateral, issue sUSD
against it, one of them trades into sETH, the price moves, the trade is
settled and the debt pool shifts between them.

Usage:
    python demo.py           # pause between steps
    python demo.py --quick   # run straight through
"""

import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from synthledger import SynthSystem, SystemSettings


@dataclass
class DemoConfig:
    start_time: datetime = datetime(2025, 1, 1, 9, 0)
    eth_rate: Decimal = Decimal("2000")
    eth_rate_after: Decimal = Decimal("2200")
    snx_rate: Decimal = Decimal("2")
    stake: Decimal = Decimal("100000")
    issue: Decimal = Decimal("10000")
    trade: Decimal = Decimal("5000")
    burn: Decimal = Decimal("5000")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def show_debts(system: SynthSystem, accounts):
    info = system.debt_info()
    print(f"Total debt:        {info.total_debt:,.2f} sUSD")
    print(f"Total debt shares: {info.total_debt_shares:,.2f}")
    for account in accounts:
        print(f"  {account:6s} debt {system.debt_balance_of(account):>12,.2f}"
              f"  c-ratio {system.collateralisation_ratio(account):.4f}")


# ============================================================================
# STEPS
# ============================================================================

def step_01_create_system() -> SynthSystem:
    step_header(1, "The System",
        "A ledger with sUSD, SNX collateral and debt shares, plus a price feed.")

    system = SynthSystem(SystemSettings(), initial_time=CONFIG.start_time)
    system.add_synth("sETH", "Synth Ether", rate=CONFIG.eth_rate)
    system.update_rate("SNX", CONFIG.snx_rate)

    print(system)
    print(f"Base currency: {system.base_currency}")
    print(f"Collateral:    {system.collateral_symbol}")
    return system


def step_02_stake(system: SynthSystem):
    step_header(2, "Staking",
        "Lock collateral and issue sUSD; each staker receives debt shares.")

    for account in ("alice", "bob"):
        system.fund_collateral(account, CONFIG.stake)
        result = system.issue(account, CONFIG.issue)
        print(f"{account} issued {result.amount:,.2f} sUSD for {result.shares:,.2f} shares")

    print()
    show_debts(system, ("alice", "bob"))


def step_03_exchange(system: SynthSystem):
    step_header(3, "Exchanging",
        "Trade sUSD into sETH; the trade waits in the settlement queue.")

    result = system.exchange("alice", "sUSD", CONFIG.trade, "sETH")
    print(f"alice paid {result.amount:,.2f} sUSD")
    print(f"alice received {result.amount_received} sETH (fee {result.fee})")
    print(f"Entries queued: {system.queue.length('alice', 'sETH')}")


def step_04_settle(system: SynthSystem):
    step_header(4, "Price Move and Settlement",
        "After the waiting period the trade is re-priced at current rates.")

    system.update_rate("sETH", CONFIG.eth_rate_after)
    system.advance_time(timedelta(seconds=system.settings.waiting_period_secs))
    settled = system.settle("alice", "sETH")
    print(f"Reclaimed: {settled.reclaimed}  Refunded: {settled.refunded}")
    print(f"alice sETH: {system.balance_of('alice', 'sETH')}")

    print()
    show_debts(system, ("alice", "bob"))


def step_05_burn(system: SynthSystem):
    step_header(5, "Burning",
        "Repay debt with sUSD once the minimum stake time has passed.")

    system.advance_time(system.settings.minimum_stake_time)
    result = system.burn("bob", CONFIG.burn)
    print(f"bob burned {result.amount:,.2f} sUSD")

    print()
    show_debts(system, ("alice", "bob"))
    check = system.check_invariants()
    print(f"\nInvariants valid: {check['valid']}")


def main():
    print("=" * 70)
    print("       SYNTH LEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)

    system = step_01_create_system()
    wait_for_enter()
    step_02_stake(system)
    wait_for_enter()
    step_03_exchange(system)
    wait_for_enter()
    step_04_settle(system)
    wait_for_enter()
    step_05_burn(system)


if __name__ == "__main__":
    main()
