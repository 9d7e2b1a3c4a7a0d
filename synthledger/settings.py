"""
settings.py - Administrator-mutable configuration

Two dataclasses hold every tunable of the system:

    FeeConfig       Frozen per-asset fee parameters (base rate, atomic override,
                    dynamic fee rounds/threshold/decay/max, volatile flag).
    SystemSettings  Mutable system-wide settings read on every operation:
                    stake time, issuance ratio, waiting period, queue cap,
                    staleness window, atomic volume cap, breaker factor,
                    escrow categories and privileged allow-lists.

Numeric inputs are normalized to Decimal via Decimal(str(x)) in __post_init__
so ints, floats and strings are all accepted. Range violations raise
ValueError, both at construction and through the update/set_* methods.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional, Set, Tuple

# Upper bounds on administrator input.
MAX_ISSUANCE_RATIO = Decimal("1")
MAX_EXCHANGE_FEE_RATE = Decimal("0.1")
MAX_MINIMUM_STAKE_TIME = timedelta(weeks=1)
MAX_WAITING_PERIOD_SECS = 7 * 24 * 3600


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================================
# FEE CONFIG
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeeConfig:
    """
    Per-asset fee parameters.

    Attributes:
        base_fee_rate: Flat fee charged on each leg of an exchange.
        atomic_fee_rate_override: Replaces base + dynamic for this asset as an
            atomic-exchange destination (None: no override).
        dynamic_fee_rounds: Oracle rounds inspected by the dynamic fee.
        dynamic_fee_threshold: Per-round price move tolerated without surcharge.
        dynamic_fee_max_rate: Cap on the dynamic fee; above it the asset is too volatile.
        dynamic_fee_weight_decay: Weight multiplier applied per round of age.
        volatile: Excluded from atomic exchanges.
    """
    base_fee_rate: Decimal = Decimal("0.003")
    atomic_fee_rate_override: Optional[Decimal] = None
    dynamic_fee_rounds: int = 10
    dynamic_fee_threshold: Decimal = Decimal("0.004")
    dynamic_fee_max_rate: Decimal = Decimal("0.05")
    dynamic_fee_weight_decay: Decimal = Decimal("0.95")
    volatile: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'base_fee_rate', _dec(self.base_fee_rate))
        object.__setattr__(self, 'dynamic_fee_threshold', _dec(self.dynamic_fee_threshold))
        object.__setattr__(self, 'dynamic_fee_max_rate', _dec(self.dynamic_fee_max_rate))
        object.__setattr__(self, 'dynamic_fee_weight_decay', _dec(self.dynamic_fee_weight_decay))
        if self.atomic_fee_rate_override is not None:
            object.__setattr__(self, 'atomic_fee_rate_override', _dec(self.atomic_fee_rate_override))

        if not (0 <= self.base_fee_rate <= MAX_EXCHANGE_FEE_RATE):
            raise ValueError(f"base_fee_rate must be in [0, {MAX_EXCHANGE_FEE_RATE}], got {self.base_fee_rate}")
        if self.atomic_fee_rate_override is not None and not (
            0 <= self.atomic_fee_rate_override <= MAX_EXCHANGE_FEE_RATE
        ):
            raise ValueError(
                f"atomic_fee_rate_override must be in [0, {MAX_EXCHANGE_FEE_RATE}], "
                f"got {self.atomic_fee_rate_override}"
            )
        if self.dynamic_fee_rounds < 0:
            raise ValueError(f"dynamic_fee_rounds must be non-negative, got {self.dynamic_fee_rounds}")
        if not (0 <= self.dynamic_fee_threshold < 1):
            raise ValueError(f"dynamic_fee_threshold must be in [0, 1), got {self.dynamic_fee_threshold}")
        if not (0 <= self.dynamic_fee_max_rate <= 1):
            raise ValueError(f"dynamic_fee_max_rate must be in [0, 1], got {self.dynamic_fee_max_rate}")
        if not (0 < self.dynamic_fee_weight_decay <= 1):
            raise ValueError(
                f"dynamic_fee_weight_decay must be in (0, 1], got {self.dynamic_fee_weight_decay}"
            )


# ============================================================================
# SYSTEM SETTINGS
# ============================================================================

@dataclass
class SystemSettings:
    """
    System-wide configuration surface.

    Attributes:
        minimum_stake_time: Minimum time between an issue and a following burn.
        issuance_ratio: Debt allowed per unit of collateral value (0.125 = 800% c-ratio).
        waiting_period_secs: Seconds before an exchange entry can be settled.
        max_entries_in_queue: Cap on unsettled entries per (account, asset).
        rate_stale_period: Oracle data older than this is stale.
        atomic_max_volume_per_block: USD volume cap for atomic exchanges per block.
        price_deviation_threshold_factor: Circuit breaker factor.
        collateral_escrow_categories: Escrow categories counted as collateral.
        default_fee_config: Fee parameters for assets without an explicit entry.
        fee_configs: Per-asset overrides of the default fee parameters.
        migrators: Identities allowed to call modify_debt_shares_for_migration.
        wrappers: Identities allowed to issue/burn synths without debt.
    """
    minimum_stake_time: timedelta = timedelta(seconds=300)
    issuance_ratio: Decimal = Decimal("0.125")
    waiting_period_secs: int = 180
    max_entries_in_queue: int = 12
    rate_stale_period: timedelta = timedelta(hours=25)
    atomic_max_volume_per_block: Decimal = Decimal("200000")
    price_deviation_threshold_factor: Decimal = Decimal("3")
    collateral_escrow_categories: Tuple[str, ...] = ("reward_escrow",)
    default_fee_config: FeeConfig = field(default_factory=FeeConfig)
    fee_configs: Dict[str, FeeConfig] = field(default_factory=dict)
    migrators: Set[str] = field(default_factory=set)
    wrappers: Set[str] = field(default_factory=set)

    def __post_init__(self):
        self.issuance_ratio = _dec(self.issuance_ratio)
        self.atomic_max_volume_per_block = _dec(self.atomic_max_volume_per_block)
        self.price_deviation_threshold_factor = _dec(self.price_deviation_threshold_factor)
        if isinstance(self.minimum_stake_time, (int, float)):
            self.minimum_stake_time = timedelta(seconds=self.minimum_stake_time)
        if isinstance(self.rate_stale_period, (int, float)):
            self.rate_stale_period = timedelta(seconds=self.rate_stale_period)
        self.collateral_escrow_categories = tuple(self.collateral_escrow_categories)
        self.validate()

    def validate(self) -> None:
        """Raise ValueError if any setting is out of range."""
        if not (0 < self.issuance_ratio <= MAX_ISSUANCE_RATIO):
            raise ValueError(f"issuance_ratio must be in (0, {MAX_ISSUANCE_RATIO}], got {self.issuance_ratio}")
        if not (timedelta(0) <= self.minimum_stake_time <= MAX_MINIMUM_STAKE_TIME):
            raise ValueError(f"minimum_stake_time must be within one week, got {self.minimum_stake_time}")
        if not (0 <= self.waiting_period_secs <= MAX_WAITING_PERIOD_SECS):
            raise ValueError(f"waiting_period_secs must be within one week, got {self.waiting_period_secs}")
        if self.max_entries_in_queue < 1:
            raise ValueError(f"max_entries_in_queue must be at least 1, got {self.max_entries_in_queue}")
        if self.rate_stale_period <= timedelta(0):
            raise ValueError(f"rate_stale_period must be positive, got {self.rate_stale_period}")
        if self.atomic_max_volume_per_block < 0:
            raise ValueError(
                f"atomic_max_volume_per_block must be non-negative, got {self.atomic_max_volume_per_block}"
            )
        if self.price_deviation_threshold_factor <= 1:
            raise ValueError(
                f"price_deviation_threshold_factor must be greater than 1, "
                f"got {self.price_deviation_threshold_factor}"
            )

    def update(self, **changes) -> None:
        """
        Apply several settings at once, all-or-nothing.

        Raises:
            ValueError: On unknown keys or out-of-range values (nothing is changed).
        """
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        candidate = replace(self, **changes)
        for name in changes:
            setattr(self, name, getattr(candidate, name))

    # ------------------------------------------------------------------------
    # Fee configuration
    # ------------------------------------------------------------------------

    def fee_config(self, asset: str) -> FeeConfig:
        """Fee parameters for an asset (the default config if none was set)."""
        return self.fee_configs.get(asset, self.default_fee_config)

    def set_fee_config(self, asset: str, config: Optional[FeeConfig] = None, **changes) -> FeeConfig:
        """
        Set an asset's fee parameters.

        Either pass a complete FeeConfig, or keyword changes applied on top of
        the asset's current config.
        """
        if config is None:
            config = replace(self.fee_config(asset), **changes)
        elif changes:
            config = replace(config, **changes)
        self.fee_configs[asset] = config
        return config

    # ------------------------------------------------------------------------
    # Allow-lists
    # ------------------------------------------------------------------------

    def allow_migrator(self, identity: str) -> None:
        self.migrators.add(identity)

    def revoke_migrator(self, identity: str) -> None:
        self.migrators.discard(identity)

    def allow_wrapper(self, identity: str) -> None:
        self.wrappers.add(identity)

    def revoke_wrapper(self, identity: str) -> None:
        self.wrappers.discard(identity)
