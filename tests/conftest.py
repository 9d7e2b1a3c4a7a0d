"""
conftest.py - Shared pytest fixtures for synthledger tests

Provides common fixtures used across unit, functional and conformance tests:
- Bare ledgers (empty, with the system units registered)
- Systems with zero or default fees, pooled or mock debt ratio
- Staked systems with issued base synth ready for exchanges
- A default waiting period
"""

import pytest
from datetime import timedelta

from synthledger import Ledger, synth, collateral, debt_share

from tests.helpers import T0, make_system, stake


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False, test_mode=True)


@pytest.fixture
def unit_ledger():
    """Ledger with sUSD, SNX, SDS registered and two wallets."""
    ledger = Ledger("test", T0, verbose=False, test_mode=True)
    ledger.register_unit(synth("sUSD", "Synth USD", is_base=True))
    ledger.register_unit(collateral("SNX", "Collateral"))
    ledger.register_unit(debt_share())
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


# =============================================================================
# SYSTEM FIXTURES
# =============================================================================

@pytest.fixture
def system():
    """Zero-fee system, pooled debt ratio, no stakers."""
    return make_system()


@pytest.fixture
def staked_system():
    """Zero-fee system where alice holds 100,000 SNX and has issued 10,000 sUSD."""
    system = make_system()
    stake(system, "alice", 100000, 10000)
    return system


@pytest.fixture
def mock_ratio_system():
    """Zero-fee system with a settable debt ratio (starts at 1)."""
    system = make_system(pooled=False)
    stake(system, "alice", 100000)
    return system


@pytest.fixture
def fee_system():
    """System with default fees and dynamic fees enabled; alice has issued 10,000 sUSD."""
    system = make_system(zero_fees=False)
    stake(system, "alice", 100000, 10000)
    return system


@pytest.fixture
def waiting_period():
    return timedelta(seconds=180)
