from dataclasses import dataclass, field

from .core import ONE


@dataclass
class ProtocolConfig:
    # Vault defaults (fractions of ONE)
    reserve_ratio: int = ONE // 10
    performance_fee: int = 5 * ONE // 100
    max_performance_fee: int = ONE // 5
    max_reserve_ratio: int = ONE // 5

    # Rebalance validation
    min_weight: int = 5 * ONE // 100
    minimum_yield_improvement: int = 5 * ONE // 100

    # Limits
    max_adapters_per_asset: int = 32
    max_batch_size: int = 64

    # Debug
    debug_balances: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.reserve_ratio <= self.max_reserve_ratio:
            raise ValueError("reserve_ratio out of range")
        if not 0 <= self.performance_fee <= self.max_performance_fee:
            raise ValueError("performance_fee out of range")
        if self.min_weight <= 0 or self.min_weight > ONE:
            raise ValueError("min_weight must be in (0, ONE]")


@dataclass
class ScenarioConfig:
    # Universe
    asset_symbols: list[str] = field(default_factory=lambda: ["USD", "ETH"])
    protocol_names: list[str] = field(default_factory=lambda: ["Alpha", "Beta", "Gamma"])
    markets_per_protocol: int = 1
    decimals: int = 18

    # Markets (whole tokens, annualised rates)
    initial_market_liquidity_mean: float = 50_000.0
    interest_rate_min: float = 0.02
    interest_rate_max: float = 0.12
    interest_drift_sigma: float = 0.02  # lognormal step per tick on the interest budget
    liquidity_cap_prob: float = 0.05   # chance per tick a market caps withdrawals
    liquidity_cap_fraction: float = 0.25
    ticks_per_year: int = 365

    # Depositors
    depositors_per_vault: int = 20
    depositor_initial_balance_mean: float = 5_000.0
    deposit_prob: float = 0.30
    deposit_amount_mean: float = 500.0
    withdraw_prob: float = 0.10
    withdraw_share_fraction: float = 0.25
    depositor_inflow_per_tick: float = 0.0  # rate of current balance per tick

    # Keeper
    keeper_enabled: bool = True
    keeper_interval_ticks: int = 7
    keeper_max_adapters: int = 4
    keeper_rebalance_threshold: float = 0.05  # max |delta| / productive balance before a plain rebalance

    # Metrics & log
    metrics_stride: int = 1
    adapter_metrics_stride: int = 7
    event_log_maxlen: int | None = 20_000

    # Debug
    debug_balances: bool = False

    def __post_init__(self) -> None:
        if self.markets_per_protocol < 1:
            self.markets_per_protocol = 1
        if self.interest_rate_max < self.interest_rate_min:
            self.interest_rate_min, self.interest_rate_max = self.interest_rate_max, self.interest_rate_min
        self.keeper_interval_ticks = max(1, int(self.keeper_interval_ticks))
        self.metrics_stride = max(1, int(self.metrics_stride))
        self.adapter_metrics_stride = max(1, int(self.adapter_metrics_stride))
        self.deposit_prob = min(1.0, max(0.0, float(self.deposit_prob)))
        self.withdraw_prob = min(1.0, max(0.0, float(self.withdraw_prob)))
