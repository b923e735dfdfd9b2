from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

import numpy as np

from .adapters import YieldAdapter
from .allocation import propose_distribution
from .calls import REBALANCE, REBALANCE_WITH_NEW_ADAPTERS, encode_call
from .config import ProtocolConfig
from .core import ONE, to_fraction

logger = logging.getLogger(__name__)


@dataclass
class AllocationPlan:
    ok: bool
    reason: str
    adapters: List[YieldAdapter] = field(default_factory=list)
    weights: List[int] = field(default_factory=list)
    net_yield: int = 0
    current_net_yield: int = 0


class AllocationPlanner:
    """
    Greedy weight search: the productive balance is cut into ``min_weight``
    slices and each slice goes to the candidate adapter whose hypothetical
    yield after receiving it is highest.
    """
    def __init__(self, registry, config: Optional[ProtocolConfig] = None, max_adapters: int = 4,
                 rebalance_threshold: float = 0.05) -> None:
        self.registry = registry
        self.config = config or ProtocolConfig()
        self.max_adapters = max(1, int(max_adapters))
        self.rebalance_threshold = rebalance_threshold

    def _candidates(self, vault) -> List[YieldAdapter]:
        adapters, _ = self.registry.get_adapters_sorted_by_yield(vault.underlying_asset)
        return adapters[: self.max_adapters]

    def _greedy_weights(self, candidates: List[YieldAdapter], balances: List[int],
                        productive: int) -> np.ndarray:
        steps = ONE // self.config.min_weight
        chunk = productive // steps
        counts = np.zeros(len(candidates), dtype=np.int64)
        for _ in range(steps):
            marginal = np.array([
                float(a.hypothetical_yield(chunk * (int(counts[i]) + 1) - balances[i]))
                for i, a in enumerate(candidates)
            ])
            counts[int(np.argmax(marginal))] += 1
        return counts

    def plan(self, vault) -> AllocationPlan:
        candidates = self._candidates(vault)
        if not candidates:
            return AllocationPlan(ok=False, reason="no_adapters")
        sheet = vault.balance_sheet()
        current = vault.current_distribution()
        if sheet.total_productive_balance <= 0:
            return AllocationPlan(ok=False, reason="empty_vault", current_net_yield=current.net_yield)

        balances = [a.balance_underlying(vault.address) for a in candidates]
        counts = self._greedy_weights(candidates, balances, sheet.total_productive_balance)
        adapters = [a for a, n in zip(candidates, counts) if n > 0]
        weights = [int(n) * self.config.min_weight for n in counts if n > 0]
        # slices that do not divide ONE evenly leave a remainder for the largest holder
        weights[int(np.argmax(weights))] += ONE - sum(weights)

        if self._same_allocation(vault, adapters, weights):
            return AllocationPlan(False, "unchanged", adapters, weights, current.net_yield, current.net_yield)
        proposed = propose_distribution(current, sheet.total_productive_balance, adapters, weights,
                                        vault.reserve_ratio)
        plan = AllocationPlan(True, "improved", adapters, weights, proposed.net_yield, current.net_yield)
        if proposed.net_yield <= current.net_yield:
            plan.ok, plan.reason = False, "not_improved"
        elif current.net_yield > 0 and to_fraction(proposed.net_yield - current.net_yield, current.net_yield) \
                < self.config.minimum_yield_improvement:
            plan.ok, plan.reason = False, "insufficient_improvement"
        logger.debug(
            "plan vault=%s ok=%s reason=%s current=%d proposed=%d",
            vault.symbol, plan.ok, plan.reason, current.net_yield, proposed.net_yield,
        )
        return plan

    def _same_allocation(self, vault, adapters: List[YieldAdapter], weights: List[int]) -> bool:
        active, active_weights = vault.get_adapters_and_weights()
        current = sorted((a.address, w) for a, w in zip(active, active_weights) if w > 0)
        return current == sorted((a.address, w) for a, w in zip(adapters, weights))

    def needs_rebalance(self, vault) -> bool:
        sheet = vault.balance_sheet()
        if sheet.total_productive_balance <= 0:
            return False
        limit = int(sheet.total_productive_balance * self.rebalance_threshold)
        return any(abs(d) > limit for d in vault.get_current_liquidity_deltas())

    def call_for(self, vault) -> Tuple[Optional[bytes], AllocationPlan]:
        plan = self.plan(vault)
        if plan.ok:
            return encode_call(REBALANCE_WITH_NEW_ADAPTERS, [a.address for a in plan.adapters], plan.weights), plan
        if self.needs_rebalance(vault):
            return encode_call(REBALANCE), plan
        return None, plan
