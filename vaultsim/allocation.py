"""
Allocation math for a vault: liquidity deltas toward target weights, the
blended net yield of a distribution and the two cascades that move funds
(withdraw-then-deposit for rebalances, in-order draining for withdrawals).

All amounts are integers in base units and all ratios are fractions of ONE.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import logging

from .adapters import YieldAdapter
from .arrays import excluded_indices
from .core import ONE, CallContext, mul_fraction
from .errors import InsufficientLiquidity

logger = logging.getLogger(__name__)


@dataclass
class BalanceSheet:
    balances: List[int]
    reserve_balance: int
    total_balance: int
    total_productive_balance: int


@dataclass
class DistributionParameters:
    adapters: List[Optional[YieldAdapter]]
    weights: List[int]
    balances: List[int]
    liquidity_deltas: List[int]
    net_yield: int


@dataclass
class CascadeResult:
    withdrawn: int = 0
    deposited: int = 0
    withdrawals: List[int] = field(default_factory=list)
    deposits: List[int] = field(default_factory=list)


def productive_balance(total_balance: int, reserve_ratio: int) -> int:
    return total_balance - mul_fraction(total_balance, reserve_ratio)


def liquidity_deltas(total_productive: int, weights: Sequence[int], balances: Sequence[int]) -> List[int]:
    return [mul_fraction(total_productive, w) - b for w, b in zip(weights, balances)]


def net_yield(adapters: Sequence[Optional[YieldAdapter]], weights: Sequence[int],
              deltas: Sequence[int], reserve_ratio: int = 0) -> int:
    """Weighted hypothetical yield after the deltas, discounted by the idle reserve."""
    acc = 0
    for adapter, weight, delta in zip(adapters, weights, deltas):
        if adapter is None or weight == 0:
            continue
        acc += mul_fraction(adapter.hypothetical_yield(delta), weight)
    return mul_fraction(acc, ONE - reserve_ratio)


def yields(adapters: Sequence[Optional[YieldAdapter]], deltas: Sequence[int]) -> List[int]:
    return [0 if a is None else a.hypothetical_yield(d) for a, d in zip(adapters, deltas)]


def current_distribution(adapters: Sequence[YieldAdapter], weights: Sequence[int],
                         sheet: BalanceSheet, reserve_ratio: int) -> DistributionParameters:
    deltas = liquidity_deltas(sheet.total_productive_balance, weights, sheet.balances)
    return DistributionParameters(
        adapters=list(adapters),
        weights=list(weights),
        balances=list(sheet.balances),
        liquidity_deltas=deltas,
        net_yield=net_yield(adapters, weights, deltas, reserve_ratio),
    )


def propose_distribution(current: DistributionParameters, total_productive: int,
                         proposed_adapters: Sequence[YieldAdapter], proposed_weights: Sequence[int],
                         reserve_ratio: int) -> DistributionParameters:
    """
    Distribution for a new adapter set. Current adapters left out of the
    proposal are appended with weight 0 so their balance is withdrawn.
    """
    current_addresses = [a.address for a in current.adapters]
    adapters: List[Optional[YieldAdapter]] = list(proposed_adapters)
    weights = list(proposed_weights)
    balances: List[int] = []
    for adapter in proposed_adapters:
        if adapter.address in current_addresses:
            balances.append(current.balances[current_addresses.index(adapter.address)])
        else:
            balances.append(0)
    for i in excluded_indices(current_addresses, [a.address for a in proposed_adapters]):
        adapters.append(current.adapters[i])
        weights.append(0)
        balances.append(current.balances[i])
    deltas = liquidity_deltas(total_productive, weights, balances)
    return DistributionParameters(
        adapters=adapters,
        weights=weights,
        balances=balances,
        liquidity_deltas=deltas,
        net_yield=net_yield(adapters, weights, deltas, reserve_ratio),
    )


def execute_rebalance(ctx: CallContext, adapters: Sequence[Optional[YieldAdapter]],
                      deltas: Sequence[int], idle_balance: int) -> CascadeResult:
    """
    Withdraw from every adapter with a negative delta, then deposit in list
    order. Deposits are capped by the idle balance plus what was withdrawn;
    the first deposit that exhausts it is partial and ends the cascade.
    ``ctx.sender`` must be the vault that owns the positions.
    """
    result = CascadeResult(withdrawals=[0] * len(adapters), deposits=[0] * len(adapters))
    for i, (adapter, delta) in enumerate(zip(adapters, deltas)):
        if adapter is None or delta >= 0:
            continue
        withdrawn = adapter.withdraw_underlying_up_to(ctx, -delta)
        result.withdrawals[i] = withdrawn
        result.withdrawn += withdrawn

    available = idle_balance + result.withdrawn
    for i, (adapter, delta) in enumerate(zip(adapters, deltas)):
        if adapter is None or delta <= 0 or available <= 0:
            continue
        if delta >= available:
            adapter.deposit(ctx, available)
            result.deposits[i] = available
            result.deposited += available
            available = 0
            break
        adapter.deposit(ctx, delta)
        result.deposits[i] = delta
        result.deposited += delta
        available -= delta
    logger.debug("cascade withdrawn=%d deposited=%d idle_left=%d", result.withdrawn, result.deposited, available)
    return result


def withdraw_to_match_amount(ctx: CallContext, adapters: Sequence[YieldAdapter], weights: Sequence[int],
                             balances: Sequence[int], reserve_balance: int, amount: int,
                             new_reserves: int) -> List[int]:
    """
    Pull ``amount - reserve_balance`` from the adapters in list order, asking
    each for ``new_reserves`` extra while the shortfall is open. Returns the
    indices of zero-weight adapters that were fully drained.
    """
    to_withdraw = amount - reserve_balance
    drained: List[int] = []
    for i, (adapter, weight, balance) in enumerate(zip(adapters, weights, balances)):
        if balance <= 0:
            continue
        withdrawn = adapter.withdraw_underlying_up_to(ctx, to_withdraw + new_reserves)
        if weight == 0 and withdrawn == balance:
            drained.append(i)
        if withdrawn >= to_withdraw:
            to_withdraw = 0
            break
        to_withdraw -= withdrawn
    if to_withdraw > 0:
        raise InsufficientLiquidity(f"{to_withdraw} still owed after draining adapters")
    return drained
