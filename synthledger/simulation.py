"""
simulation.py - Seeded random activity for stress-testing the pool invariants

Price paths are geometric Brownian motion generated with numpy:

    S_{t+1} = S_t * exp((mu - sigma^2 / 2) * dt + sigma * sqrt(dt) * Z)

run_random_activity drives a SynthSystem through random issue, exchange,
settle and burn calls between price updates and checks the invariants after
every step. Expected rejections (InsufficientFunds, TooVolatile, ...) are
counted, not raised; an invariant violation raises immediately.
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Union
import logging

import numpy as np

from .core import UNIT_TYPE_SYNTH, LedgerError
from .system import SynthSystem

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365.0 * 24 * 3600

ACTIONS = ("issue", "exchange", "exchange_atomically", "settle", "burn")


def gbm_paths(
    initial_rates: Mapping[str, float],
    steps: int,
    dt_secs: float,
    volatility: Union[float, Mapping[str, float]] = 0.8,
    drift: float = 0.0,
    seed: Optional[int] = None,
) -> Dict[str, np.ndarray]:
    """
    Simulate one geometric Brownian motion path per asset.

    Args:
        initial_rates: Starting rate per asset
        steps: Number of steps after the initial rate
        dt_secs: Step length in seconds
        volatility: Annualised volatility, one for all assets or per asset
        drift: Annualised drift
        seed: Seed of the numpy Generator

    Returns:
        Asset -> array of steps + 1 rates, starting with the initial rate.
        Assets are drawn in sorted order so a seed reproduces every path.

    Raises:
        ValueError: On non-positive rates, steps or step length
    """
    if steps < 0:
        raise ValueError(f"steps must be non-negative, got {steps}")
    if dt_secs <= 0:
        raise ValueError(f"dt_secs must be positive, got {dt_secs}")
    rng = np.random.default_rng(seed)
    dt = dt_secs / SECONDS_PER_YEAR
    paths = {}
    for asset in sorted(initial_rates):
        s0 = float(initial_rates[asset])
        if not np.isfinite(s0) or s0 <= 0:
            raise ValueError(f"Initial rate of {asset} must be positive and finite")
        sigma = volatility[asset] if isinstance(volatility, Mapping) else volatility
        shocks = rng.standard_normal(steps)
        log_returns = (drift - 0.5 * sigma * sigma) * dt + sigma * np.sqrt(dt) * shocks
        paths[asset] = s0 * np.exp(np.concatenate(([0.0], np.cumsum(log_returns))))
    return paths


def to_rate(value: float, places: int = 8) -> Decimal:
    """Float rate from a path as a Decimal with a fixed number of places."""
    return Decimal(repr(round(float(value), places)))


@dataclass
class ActivityReport:
    """Counts of what a random run did."""
    steps: int = 0
    executed: Counter = field(default_factory=Counter)
    rejected: Counter = field(default_factory=Counter)
    skipped: int = 0
    invariant_checks: int = 0

    @property
    def total_executed(self) -> int:
        return sum(self.executed.values())


def run_random_activity(
    system: SynthSystem,
    accounts: Sequence[str],
    paths: Mapping[str, np.ndarray],
    step_secs: float = 60,
    actions_per_step: int = 3,
    seed: Optional[int] = None,
) -> ActivityReport:
    """
    Drive random operations against a system along precomputed price paths.

    Every asset in ``paths`` must already be registered (the collateral
    included, if it is to move). Accounts are expected to hold collateral.

    Raises:
        LedgerError: If an invariant is violated after a step
    """
    rng = np.random.default_rng(seed)
    synths: List[str] = system.ledger.list_units(UNIT_TYPE_SYNTH)
    lengths = {len(p) for p in paths.values()}
    if len(lengths) > 1:
        raise ValueError("All price paths must have the same length")
    n_steps = lengths.pop() if lengths else 0

    report = ActivityReport()
    for step in range(n_steps):
        system.advance_time(timedelta(seconds=step_secs))
        system.update_rates({asset: to_rate(path[step]) for asset, path in sorted(paths.items())})

        for _ in range(actions_per_step):
            account = accounts[int(rng.integers(len(accounts)))]
            action = ACTIONS[int(rng.integers(len(ACTIONS)))]
            fraction = Decimal(repr(round(float(rng.uniform(0.05, 0.5)), 4)))
            try:
                outcome = _perform(system, action, account, synths, fraction, rng)
            except LedgerError as e:
                report.rejected[type(e).__name__] += 1
                continue
            if outcome == "skipped":
                report.skipped += 1
            elif outcome == "executed":
                report.executed[action] += 1

        check = system.check_invariants()
        report.invariant_checks += 1
        if not check['valid']:
            raise LedgerError(f"Invariant violated at step {step}: {check}")
        report.steps += 1

    logger.info(
        "random activity: %d steps, %d executed, %d skipped, rejected=%s",
        report.steps, report.total_executed, report.skipped, dict(report.rejected),
    )
    return report


def _perform(system: SynthSystem, action: str, account: str, synths: Sequence[str],
             fraction: Decimal, rng: np.random.Generator) -> str:
    """Run one random action. Returns 'executed', 'skipped' or 'noop'."""
    if action == "issue":
        amount = (system.max_issuable(account) * fraction).quantize(Decimal("0.01"))
        if amount <= 0:
            return "noop"
        system.issue(account, amount)
        return "executed"

    if action == "burn":
        held = system.balance_of(account, system.base_currency)
        amount = (held * fraction).quantize(Decimal("0.01"))
        if amount <= 0 or system.debt_balance_of(account) <= 0:
            return "noop"
        system.burn(account, amount)
        return "executed"

    if action == "settle":
        asset = synths[int(rng.integers(len(synths)))]
        result = system.settle(account, asset)
        return "executed" if result.num_entries_settled else "noop"

    held = [s for s in synths if system.balance_of(account, s) > 0]
    if not held or len(synths) < 2:
        return "noop"
    src = held[int(rng.integers(len(held)))]
    dest = rng.choice([s for s in synths if s != src])
    amount = system.balance_of(account, src) * fraction
    amount = system.ledger.get_unit(src).round(amount)
    if amount <= 0:
        return "noop"
    if action == "exchange_atomically":
        result = system.exchange_atomically(account, src, amount, str(dest), Decimal("0"))
    else:
        result = system.exchange(account, src, amount, str(dest))
    return "executed" if result.executed else "skipped"
