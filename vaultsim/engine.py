from __future__ import annotations
from typing import Dict, List, Optional
import logging
import math
import numpy as np
import random

from .config import ProtocolConfig, ScenarioConfig
from .core import MAX_UINT256, CallContext, Event, Ledger, MintableToken
from .errors import VaultSimError
from .factory import Venue, VaultFactory, VenueFactory, to_base_units
from .keeper import AllocationPlanner
from .metrics import MetricsStore
from .rebalancer import BatchRebalancer
from .registry import AdapterRegistry
from .vault import AllocationVault

logger = logging.getLogger(__name__)


class SimulationEngine:
    def __init__(self, cfg: ScenarioConfig, seed: int = 1,
                 protocol_cfg: Optional[ProtocolConfig] = None) -> None:
        self.cfg = cfg
        self.protocol_cfg = protocol_cfg or ProtocolConfig(debug_balances=cfg.debug_balances)
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.ledger = Ledger(event_log_maxlen=cfg.event_log_maxlen)
        self.log = self.ledger.log
        self.metrics = MetricsStore()

        # accounts
        self.governance = self.ledger.new_address("governance")
        self.keeper = self.ledger.new_address("keeper")
        self.treasury = self.ledger.new_address("treasury")

        self.registry = AdapterRegistry(self.ledger, owner=self.governance, config=self.protocol_cfg)
        self.batcher = BatchRebalancer(self.ledger, self.registry, config=self.protocol_cfg)
        self.vault_factory = VaultFactory(
            self.ledger, self.registry,
            owner=self.governance,
            batcher=self.batcher.address,
            default_fee_recipient=self.treasury,
            config=self.protocol_cfg,
        )
        self.venue_factory = VenueFactory(self.ledger, self.registry, cfg)
        self.planner = AllocationPlanner(
            self.registry, self.protocol_cfg,
            max_adapters=cfg.keeper_max_adapters,
            rebalance_threshold=cfg.keeper_rebalance_threshold,
        )

        self.assets: Dict[str, MintableToken] = {}
        self.venues: List[Venue] = []
        self.vaults: Dict[str, AllocationVault] = {}
        self.depositors: Dict[str, List[str]] = {}

        self.batches_ok = 0
        self.batches_failed = 0
        self.flow_failures = 0

        self._bootstrap()

    @property
    def tick(self) -> int:
        return self.ledger.tick

    def _gov(self) -> CallContext:
        return CallContext.external(self.governance)

    def _bootstrap(self) -> None:
        cfg = self.cfg
        self.venues = self.venue_factory.build(self._gov())
        self.assets = dict(self.venue_factory.assets)
        self.registry.add_vault_factory(self._gov(), self.vault_factory.address)
        for symbol, asset in self.assets.items():
            self.vault_factory.approve_token(self._gov(), asset.address)
            vault = self.vault_factory.deploy_vault(self._gov(), asset)
            self.vaults[symbol] = vault
            self.depositors[symbol] = []
            for i in range(cfg.depositors_per_vault):
                account = self.ledger.new_address(f"depositor:{symbol}:{i}")
                balance = to_base_units(np.random.exponential(cfg.depositor_initial_balance_mean), asset.decimals)
                asset.mint(account, balance)
                asset.approve(CallContext.external(account), vault.address, MAX_UINT256)
                self.depositors[symbol].append(account)
            self.log.add(Event(self.tick, "VAULT_BOOTSTRAPPED", emitter=vault.address,
                               args={"asset": symbol, "depositors": cfg.depositors_per_vault}))
        self.snapshot_metrics()

    # -----------------------------
    # Tick phases
    # -----------------------------
    def _accrue_interest(self) -> None:
        for venue in self.venues:
            venue.market.accrue(1, self.cfg.ticks_per_year)

    def _drift_markets(self) -> None:
        cfg = self.cfg
        for venue in self.venues:
            market = venue.market
            if cfg.interest_drift_sigma > 0.0:
                factor = math.exp(float(np.random.normal(0.0, cfg.interest_drift_sigma)))
                market.set_annual_interest(int(market.annual_interest * factor))
            if cfg.liquidity_cap_prob > 0.0 and self.rng.random() < cfg.liquidity_cap_prob:
                if market.liquidity_cap is None:
                    market.set_available_liquidity(int(market.cash() * cfg.liquidity_cap_fraction))
                    self.log.add(Event(self.tick, "LIQUIDITY_CAPPED", emitter=market.address,
                                       args={"cap": market.liquidity_cap}))
                else:
                    market.set_available_liquidity(None)
                    self.log.add(Event(self.tick, "LIQUIDITY_RESTORED", emitter=market.address))

    def _apply_depositor_flows(self) -> None:
        cfg = self.cfg
        for symbol, vault in self.vaults.items():
            asset = self.assets[symbol]
            for account in self.depositors[symbol]:
                ctx = CallContext.external(account)
                if cfg.depositor_inflow_per_tick > 0.0:
                    inflow = int(asset.balance_of(account) * cfg.depositor_inflow_per_tick)
                    if inflow > 0:
                        asset.mint(account, inflow)
                if self.rng.random() < cfg.deposit_prob:
                    amount = to_base_units(np.random.exponential(cfg.deposit_amount_mean), asset.decimals)
                    amount = min(amount, asset.balance_of(account))
                    if amount > 0:
                        self._try_flow("DEPOSIT", vault, account, lambda: vault.deposit(ctx, amount), amount)
                shares = vault.balance_of(account)
                if shares > 0 and self.rng.random() < cfg.withdraw_prob:
                    to_burn = max(1, int(shares * cfg.withdraw_share_fraction))
                    self._try_flow("WITHDRAW", vault, account, lambda: vault.withdraw(ctx, to_burn), to_burn)

    def _try_flow(self, kind: str, vault: AllocationVault, account: str, call, amount: int) -> None:
        try:
            call()
        except VaultSimError as exc:
            self.flow_failures += 1
            logger.info("%s failed vault=%s account=%s reason=%s", kind.lower(), vault.symbol, account, exc.reason)
            self.log.add(Event(self.tick, f"{kind}_FAILED", emitter=vault.address,
                               args={"account": account, "amount": amount, "reason": exc.reason}))

    def _run_keeper(self) -> None:
        targets: List[str] = []
        calls: List[bytes] = []
        for vault in self.vaults.values():
            data, plan = self.planner.call_for(vault)
            if data is None:
                continue
            targets.append(vault.address)
            calls.append(data)
            self.log.add(Event(self.tick, "KEEPER_PLAN", emitter=vault.address,
                               args={"ok": plan.ok, "reason": plan.reason,
                                     "net_yield": plan.net_yield, "current_net_yield": plan.current_net_yield}))
        if not targets:
            return
        try:
            self.batcher.batch_execute_rebalance(CallContext.external(self.keeper), targets, calls)
        except VaultSimError as exc:
            self.batches_failed += 1
            logger.warning("keeper batch failed tick=%d reason=%s detail=%s", self.tick, exc.reason, exc)
            self.log.add(Event(self.tick, "BATCH_FAILED", emitter=self.batcher.address,
                               args={"vaults": len(targets), "reason": exc.reason}))
            return
        self.batches_ok += 1
        self.log.add(Event(self.tick, "BATCH_EXECUTED", emitter=self.batcher.address,
                           args={"vaults": len(targets)}))

    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.ledger.tick += 1
            self._accrue_interest()
            self._drift_markets()
            self._apply_depositor_flows()
            if self.cfg.keeper_enabled and self.tick % self.cfg.keeper_interval_ticks == 0:
                self._run_keeper()
            self.snapshot_metrics()

    # -----------------------------
    # Metrics
    # -----------------------------
    def snapshot_metrics(self) -> None:
        cfg = self.cfg
        counters = {
            "batches_ok": self.batches_ok,
            "batches_failed": self.batches_failed,
            "flow_failures": self.flow_failures,
        }
        for symbol, vault in self.vaults.items():
            if self.tick % cfg.metrics_stride == 0:
                self.metrics.record_vault(self.tick, symbol, vault, counters)
            if self.tick % cfg.adapter_metrics_stride == 0:
                self.metrics.record_adapters(self.tick, symbol, vault)
