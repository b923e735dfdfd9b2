from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import logging

from .adapters import YieldAdapter
from .allocation import (
    BalanceSheet,
    DistributionParameters,
    current_distribution,
    execute_rebalance,
    liquidity_deltas,
    net_yield,
    productive_balance,
    propose_distribution,
    withdraw_to_match_amount,
    yields,
)
from .arrays import remove_at, total
from .calls import REBALANCE_SIGNATURES, SELECTOR_SIZE, decode_call, function_selector, method_name
from .config import ProtocolConfig
from .core import (
    MAX_UINT256,
    ONE,
    ZERO_ADDRESS,
    CallContext,
    Ledger,
    Token,
    div_round_up,
    mul_div,
    mul_fraction,
    to_fraction,
    transactional,
)
from .errors import (
    DuplicateAdapter,
    FunctionNotAllowed,
    InsufficientImprovement,
    InsufficientLiquidity,
    InvalidAmount,
    InvalidConfig,
    InvalidWeights,
    LengthMismatch,
    MaximumExceeded,
    NotApproved,
    NotFound,
    NotImproved,
    NotUnused,
    Null,
    TokenLocked,
    TransferFailed,
    Unauthorized,
    WrongUnderlying,
)
from .packing import pack_adapters_and_weights, unpack_adapters_and_weights

logger = logging.getLogger(__name__)

CALLABLE_SIGNATURES = REBALANCE_SIGNATURES + (
    "deposit(uint256)",
    "withdraw(uint256)",
    "withdraw_underlying(uint256)",
    "claim_fees()",
)


class AllocationVault(Token):
    """
    Pooled deposits of one underlying asset spread across yield adapters.

    Shares are the vault's own token. A fraction ``reserve_ratio`` of the
    value stays idle in the vault to serve withdrawals; the rest is spread
    across the active adapters by weight when a rebalance runs. Gains in
    share price above ``price_at_last_fee`` are charged ``performance_fee``,
    paid as new shares to ``fee_recipient``.
    """
    ABI: Dict[bytes, str] = {function_selector(sig): sig for sig in CALLABLE_SIGNATURES}

    def __init__(self, ledger: Ledger, registry: Any, underlying: Token, *, owner: str,
                 fee_recipient: Optional[str] = None, batcher: Optional[str] = None,
                 config: Optional[ProtocolConfig] = None) -> None:
        super().__init__(ledger, name=f"Allocated {underlying.name}", symbol=f"a{underlying.symbol}",
                         decimals=underlying.decimals)
        self.config = config or ProtocolConfig()
        self.registry = registry
        self.underlying = underlying
        self.underlying_asset = underlying.address
        self.owner = owner
        self.batcher = batcher
        self.fee_recipient = fee_recipient or owner
        self.rewards_seller: Optional[str] = None
        self.reserve_ratio = self.config.reserve_ratio
        self.performance_fee = self.config.performance_fee
        self.maximum_underlying = 0
        self.price_at_last_fee = ONE
        self.locked_tokens: Set[str] = set()
        self.debug_balances = self.config.debug_balances
        self._packed_adapters_and_weights: List[int] = []

        adapter, _ = registry.best_adapter(self.underlying_asset)
        if adapter is None:
            raise NotFound(f"no adapters registered for {underlying.symbol}")
        self._set_adapters_and_weights([adapter], [ONE])

    # -----------------------------
    # Access
    # -----------------------------
    def _self_ctx(self, ctx: Optional[CallContext] = None) -> CallContext:
        return CallContext(sender=self.address, origin=ctx.origin if ctx else self.address)

    def _only_owner(self, ctx: CallContext) -> None:
        if ctx.sender != self.owner:
            raise Unauthorized(f"{ctx.sender} is not the vault owner")

    def _only_external_or_batcher(self, ctx: CallContext) -> None:
        if self.batcher is not None and ctx.sender == self.batcher:
            return
        if ctx.is_external and not self.ledger.is_contract(ctx.sender):
            return
        raise Unauthorized(f"{ctx.sender} may not rebalance")

    # -----------------------------
    # Queries
    # -----------------------------
    def get_adapters_and_weights(self) -> Tuple[List[YieldAdapter], List[int]]:
        addresses, weights = unpack_adapters_and_weights(self._packed_adapters_and_weights)
        return [self.ledger.resolve(a) for a in addresses], weights

    def get_balances(self) -> List[int]:
        adapters, _ = self.get_adapters_and_weights()
        return [a.balance_underlying(self.address) for a in adapters]

    def reserve_balance(self) -> int:
        return self.underlying.balance_of(self.address)

    def balance(self) -> int:
        return self.reserve_balance() + total(self.get_balances())

    def balance_sheet(self) -> BalanceSheet:
        balances = self.get_balances()
        reserve = self.reserve_balance()
        total_balance = reserve + total(balances)
        return BalanceSheet(
            balances=balances,
            reserve_balance=reserve,
            total_balance=total_balance,
            total_productive_balance=productive_balance(total_balance, self.reserve_ratio),
        )

    def current_distribution(self) -> DistributionParameters:
        adapters, weights = self.get_adapters_and_weights()
        return current_distribution(adapters, weights, self.balance_sheet(), self.reserve_ratio)

    def get_current_liquidity_deltas(self) -> List[int]:
        return self.current_distribution().liquidity_deltas

    def get_hypothetical_liquidity_deltas(self, weights: Sequence[int],
                                          adapters: Optional[Sequence[YieldAdapter]] = None) -> List[int]:
        adapters = self._adapters_or_current(adapters, weights)
        sheet = self.balance_sheet()
        balances = [a.balance_underlying(self.address) for a in adapters]
        return liquidity_deltas(sheet.total_productive_balance, weights, balances)

    def get_net_yield(self) -> int:
        return self.current_distribution().net_yield

    def get_yields(self) -> List[int]:
        params = self.current_distribution()
        return yields(params.adapters, params.liquidity_deltas)

    def get_hypothetical_net_yield(self, weights: Sequence[int],
                                   adapters: Optional[Sequence[YieldAdapter]] = None) -> int:
        adapters = self._adapters_or_current(adapters, weights)
        deltas = self.get_hypothetical_liquidity_deltas(weights, adapters)
        return net_yield(adapters, weights, deltas, self.reserve_ratio)

    def _adapters_or_current(self, adapters: Optional[Sequence[Any]], weights: Sequence[int]) -> List[YieldAdapter]:
        if adapters is None:
            adapters, _ = self.get_adapters_and_weights()
        else:
            adapters = [self._resolve_adapter(a) for a in adapters]
        if len(adapters) != len(weights):
            raise LengthMismatch(f"{len(adapters)} adapters, {len(weights)} weights")
        return list(adapters)

    def _pending_fee(self, total_balance: int, supply: int) -> Tuple[int, int]:
        if supply == 0 or total_balance == 0:
            return 0, 0
        price = to_fraction(total_balance, supply)
        if price <= self.price_at_last_fee:
            return 0, 0
        fee_value = mul_fraction(mul_fraction(price - self.price_at_last_fee, supply), self.performance_fee)
        fee_shares = mul_div(fee_value, supply, total_balance)
        return fee_value, fee_shares

    def get_pending_fees(self) -> int:
        fee_value, _ = self._pending_fee(self.balance(), self.total_supply)
        return fee_value

    def get_price_per_full_share(self) -> int:
        if self.total_supply == 0:
            return ONE
        return to_fraction(self.balance(), self.total_supply)

    def get_price_per_full_share_with_fee(self) -> int:
        if self.total_supply == 0:
            return ONE
        total_balance = self.balance()
        _, fee_shares = self._pending_fee(total_balance, self.total_supply)
        return to_fraction(total_balance, self.total_supply + fee_shares)

    # -----------------------------
    # Configuration
    # -----------------------------
    @transactional
    def set_performance_fee(self, ctx: CallContext, fee: int) -> None:
        self._only_owner(ctx)
        if fee < 0 or fee > self.config.max_performance_fee:
            raise InvalidConfig(f"performance fee {fee} above maximum")
        self._claim_fees()
        self.performance_fee = fee
        self.ledger.emit(self.address, "SetPerformanceFee", performance_fee=fee)

    @transactional
    def set_reserve_ratio(self, ctx: CallContext, ratio: int) -> None:
        self._only_owner(ctx)
        if ratio < 0 or ratio > self.config.max_reserve_ratio:
            raise InvalidConfig(f"reserve ratio {ratio} above maximum")
        self.reserve_ratio = ratio
        self.ledger.emit(self.address, "SetReserveRatio", reserve_ratio=ratio)

    @transactional
    def set_fee_recipient(self, ctx: CallContext, recipient: str) -> None:
        self._only_owner(ctx)
        if not recipient or recipient == ZERO_ADDRESS:
            raise Null("fee recipient is null")
        self.fee_recipient = recipient
        self.ledger.emit(self.address, "SetFeeRecipient", fee_recipient=recipient)

    @transactional
    def set_maximum_underlying(self, ctx: CallContext, maximum: int) -> None:
        self._only_owner(ctx)
        if maximum < 0:
            raise InvalidConfig("maximum underlying must not be negative")
        self.maximum_underlying = maximum
        self.ledger.emit(self.address, "SetMaximumUnderlying", maximum_underlying=maximum)

    @transactional
    def set_rewards_seller(self, ctx: CallContext, seller: Optional[str]) -> None:
        self._only_owner(ctx)
        self.rewards_seller = seller
        self.ledger.emit(self.address, "SetRewardsSeller", rewards_seller=seller)

    # -----------------------------
    # Deposits & withdrawals
    # -----------------------------
    @transactional
    def deposit(self, ctx: CallContext, amount: int) -> int:
        if amount <= 0:
            raise InvalidAmount("deposit amount must be positive")
        self._claim_fees()
        value_before = self.balance()
        if self.maximum_underlying and value_before + amount > self.maximum_underlying:
            raise MaximumExceeded(f"deposit would exceed {self.maximum_underlying}")
        supply = self.total_supply
        shares = amount if supply == 0 or value_before == 0 else mul_div(amount, supply, value_before)
        if shares == 0:
            raise InvalidAmount("deposit too small to mint shares")
        self.underlying.transfer_from(self._self_ctx(ctx), ctx.sender, self.address, amount)
        self._mint(ctx.sender, shares)
        logger.debug("vault=%s deposit caller=%s amount=%d shares=%d", self.symbol, ctx.sender, amount, shares)
        return shares

    @transactional
    def withdraw(self, ctx: CallContext, shares: int) -> int:
        if shares <= 0:
            raise InvalidAmount("withdraw shares must be positive")
        if shares > self.balance_of(ctx.sender):
            raise TransferFailed(f"{self.symbol}: burn amount exceeds balance")
        self._claim_fees()
        sheet = self.balance_sheet()
        amount = mul_div(shares, sheet.total_balance, self.total_supply)
        self._burn(ctx.sender, shares)
        self._transfer_out(ctx, amount, sheet)
        logger.debug("vault=%s withdraw caller=%s shares=%d amount=%d", self.symbol, ctx.sender, shares, amount)
        return amount

    @transactional
    def withdraw_underlying(self, ctx: CallContext, amount: int) -> int:
        if amount <= 0:
            raise InvalidAmount("withdraw amount must be positive")
        self._claim_fees()
        sheet = self.balance_sheet()
        if sheet.total_balance == 0:
            raise InsufficientLiquidity("vault holds nothing")
        if self.total_supply == 0:
            raise InvalidAmount("no shares outstanding")
        shares = div_round_up(amount * self.total_supply, sheet.total_balance)
        self._burn(ctx.sender, shares)
        self._transfer_out(ctx, amount, sheet)
        return shares

    def _transfer_out(self, ctx: CallContext, amount: int, sheet: BalanceSheet) -> None:
        if amount > sheet.reserve_balance:
            adapters, weights = self.get_adapters_and_weights()
            new_reserves = mul_fraction(sheet.total_balance - amount, self.reserve_ratio)
            drained = withdraw_to_match_amount(
                self._self_ctx(ctx), adapters, weights, sheet.balances,
                sheet.reserve_balance, amount, new_reserves,
            )
            if drained:
                self._remove_adapters(drained)
        self.underlying.transfer(self._self_ctx(ctx), ctx.sender, amount)

    # -----------------------------
    # Fees
    # -----------------------------
    @transactional
    def claim_fees(self, ctx: Optional[CallContext] = None) -> int:
        fee_value, _ = self._claim_fees()
        return fee_value

    def _claim_fees(self) -> Tuple[int, int]:
        supply = self.total_supply
        total_balance = self.balance()
        if supply == 0 or to_fraction(total_balance, supply) <= self.price_at_last_fee:
            return 0, 0
        fee_value, fee_shares = self._pending_fee(total_balance, supply)
        if fee_shares > 0:
            self._mint(self.fee_recipient, fee_shares)
        self.price_at_last_fee = max(self.price_at_last_fee, to_fraction(total_balance, self.total_supply))
        if fee_value > 0:
            self.ledger.emit(self.address, "FeesClaimed", amount=fee_value, fee_shares=fee_shares)
            logger.debug("vault=%s fees value=%d shares=%d", self.symbol, fee_value, fee_shares)
        return fee_value, fee_shares

    # -----------------------------
    # Rebalancing
    # -----------------------------
    @transactional
    def rebalance(self, ctx: CallContext) -> int:
        self._only_external_or_batcher(ctx)
        self._claim_fees()
        sheet = self.balance_sheet()
        adapters, weights = self.get_adapters_and_weights()
        params = current_distribution(adapters, weights, sheet, self.reserve_ratio)
        self._execute_distribution(ctx, params, sheet.reserve_balance)
        return params.net_yield

    @transactional
    def rebalance_with_new_weights(self, ctx: CallContext, weights: Sequence[int]) -> int:
        self._only_external_or_batcher(ctx)
        self._claim_fees()
        adapters, current_weights = self.get_adapters_and_weights()
        weights = [int(w) for w in weights]
        if len(weights) != len(current_weights):
            raise LengthMismatch(f"{len(current_weights)} adapters, {len(weights)} weights")
        self._check_weights(weights, current_weights)
        sheet = self.balance_sheet()
        current = current_distribution(adapters, current_weights, sheet, self.reserve_ratio)
        proposed = current_distribution(adapters, weights, sheet, self.reserve_ratio)
        self._check_improvement(current.net_yield, proposed.net_yield)
        self._set_adapters_and_weights(adapters, weights)
        self._execute_distribution(ctx, proposed, sheet.reserve_balance)
        return proposed.net_yield

    @transactional
    def rebalance_with_new_adapters(self, ctx: CallContext, adapters: Sequence[Any],
                                    weights: Sequence[int]) -> int:
        self._only_external_or_batcher(ctx)
        self._claim_fees()
        weights = [int(w) for w in weights]
        if len(adapters) != len(weights):
            raise LengthMismatch(f"{len(adapters)} adapters, {len(weights)} weights")
        proposed_adapters = self._check_new_adapters(adapters)
        self._check_weights(weights)

        sheet = self.balance_sheet()
        current_adapters, current_weights = self.get_adapters_and_weights()
        current = current_distribution(current_adapters, current_weights, sheet, self.reserve_ratio)
        proposed = propose_distribution(current, sheet.total_productive_balance, proposed_adapters,
                                        weights, self.reserve_ratio)
        self._check_improvement(current.net_yield, proposed.net_yield)

        # excluded adapters holding nothing leave right away
        n_new = len(proposed_adapters)
        keep = [
            i for i in range(len(proposed.adapters))
            if i < n_new or proposed.adapters[i].balance_receipt_tokens(self.address) > 0
        ]
        dropped = [proposed.adapters[i] for i in range(n_new, len(proposed.adapters)) if i not in keep]
        params = DistributionParameters(
            adapters=[proposed.adapters[i] for i in keep],
            weights=[proposed.weights[i] for i in keep],
            balances=[proposed.balances[i] for i in keep],
            liquidity_deltas=[proposed.liquidity_deltas[i] for i in keep],
            net_yield=proposed.net_yield,
        )
        self._set_adapters_and_weights(params.adapters, params.weights)
        for adapter in dropped:
            self._release_adapter(adapter)
        self._execute_distribution(ctx, params, sheet.reserve_balance)
        return params.net_yield

    def _check_new_adapters(self, adapters: Sequence[Any]) -> List[YieldAdapter]:
        resolved: List[YieldAdapter] = []
        seen: Set[str] = set()
        for item in adapters:
            adapter = self._resolve_adapter(item)
            if not self.registry.is_approved_adapter(adapter):
                raise NotApproved(f"adapter {adapter.address} not approved")
            if adapter.underlying_asset != self.underlying_asset:
                raise WrongUnderlying(f"adapter {adapter.address} has a different underlying")
            if adapter.address in seen:
                raise DuplicateAdapter(f"adapter {adapter.address} listed twice")
            seen.add(adapter.address)
            resolved.append(adapter)
        return resolved

    def _check_weights(self, weights: Sequence[int], current_weights: Optional[Sequence[int]] = None) -> None:
        for i, weight in enumerate(weights):
            if weight == 0:
                if current_weights is None or current_weights[i] != 0:
                    raise InvalidWeights("can not set null weight")
            elif weight < self.config.min_weight:
                raise InvalidWeights(f"weight {weight} below minimum {self.config.min_weight}")
        if total(weights) != ONE:
            raise InvalidWeights("weights do not sum to 100%")

    def _check_improvement(self, current: int, proposed: int) -> None:
        if proposed <= current:
            raise NotImproved(f"net yield {proposed} does not beat {current}")
        if current > 0 and to_fraction(proposed - current, current) < self.config.minimum_yield_improvement:
            raise InsufficientImprovement(f"net yield {proposed} improves {current} by too little")

    def _execute_distribution(self, ctx: CallContext, params: DistributionParameters, idle_balance: int) -> None:
        result = execute_rebalance(self._self_ctx(ctx), params.adapters, params.liquidity_deltas, idle_balance)
        self._remove_drained_adapters()
        self.ledger.emit(
            self.address, "Rebalanced",
            net_yield=params.net_yield, withdrawn=result.withdrawn, deposited=result.deposited,
        )
        logger.debug(
            "vault=%s rebalance net_yield=%d withdrawn=%d deposited=%d",
            self.symbol, params.net_yield, result.withdrawn, result.deposited,
        )

    # -----------------------------
    # Adapter list
    # -----------------------------
    def _resolve_adapter(self, adapter: Any) -> YieldAdapter:
        if isinstance(adapter, str):
            if not self.ledger.is_contract(adapter):
                raise NotApproved(f"adapter {adapter} not approved")
            return self.ledger.resolve(adapter)
        return adapter

    def _set_adapters_and_weights(self, adapters: Sequence[YieldAdapter], weights: Sequence[int]) -> None:
        if total(weights) > ONE:
            raise InvalidWeights("weights sum above 100%")
        packed = pack_adapters_and_weights([a.address for a in adapters], list(weights))
        ctx = self._self_ctx()
        for adapter in adapters:
            self.underlying.approve(ctx, adapter.address, MAX_UINT256)
            self.ledger.resolve(adapter.receipt_token).approve(ctx, adapter.address, MAX_UINT256)
            self.locked_tokens.add(adapter.receipt_token)
        self._packed_adapters_and_weights = packed
        self.ledger.emit(
            self.address, "AllocationsUpdated",
            adapters=[a.address for a in adapters], weights=list(weights),
        )

    def _remove_drained_adapters(self) -> None:
        adapters, weights = self.get_adapters_and_weights()
        drained = [
            i for i, (a, w) in enumerate(zip(adapters, weights))
            if w == 0 and a.balance_receipt_tokens(self.address) == 0
        ]
        if drained:
            self._remove_adapters(drained)

    def _remove_adapters(self, indices: Sequence[int]) -> None:
        packed = list(self._packed_adapters_and_weights)
        adapters, _ = self.get_adapters_and_weights()
        for i in sorted(indices, reverse=True):
            remove_at(packed, i)
        self._packed_adapters_and_weights = packed
        for i in sorted(indices):
            self._release_adapter(adapters[i])

    def _release_adapter(self, adapter: YieldAdapter) -> None:
        ctx = self._self_ctx()
        self.underlying.approve(ctx, adapter.address, 0)
        self.ledger.resolve(adapter.receipt_token).approve(ctx, adapter.address, 0)
        self.locked_tokens.discard(adapter.receipt_token)
        self.ledger.emit(self.address, "AdapterRemoved", adapter=adapter.address)

    # -----------------------------
    # Maintenance
    # -----------------------------
    @transactional
    def withdraw_from_unused_adapter(self, ctx: CallContext, adapter: Any) -> int:
        adapter = self._resolve_adapter(adapter)
        active, _ = self.get_adapters_and_weights()
        if any(a.address == adapter.address for a in active):
            raise NotUnused(f"adapter {adapter.address} is active")
        if not self.registry.is_approved_adapter(adapter):
            raise NotApproved(f"adapter {adapter.address} not approved")
        own = self._self_ctx(ctx)
        receipt = self.ledger.resolve(adapter.receipt_token)
        receipt.approve(own, adapter.address, MAX_UINT256)
        amount = adapter.withdraw_all(own)
        receipt.approve(own, adapter.address, 0)
        return amount

    @transactional
    def sell_rewards(self, ctx: CallContext, token: str, params: Any = None) -> None:
        if token in self.locked_tokens or token == self.underlying_asset:
            raise TokenLocked(f"token {token} can not be sold")
        if self.rewards_seller is None:
            raise Null("rewards seller not set")
        reward = self.ledger.resolve(token)
        amount = reward.balance_of(self.address)
        reward.transfer(self._self_ctx(ctx), self.rewards_seller, amount)
        seller = self.ledger.resolve(self.rewards_seller)
        seller.sell_rewards(self._self_ctx(ctx), token, self.underlying_asset, params)

    # -----------------------------
    # Encoded dispatch
    # -----------------------------
    def execute(self, ctx: CallContext, data: bytes) -> Any:
        selector = bytes(data[:SELECTOR_SIZE])
        signature = self.ABI.get(selector)
        if signature is None:
            raise FunctionNotAllowed(f"vault has no function for selector {selector.hex()}")
        return getattr(self, method_name(signature))(ctx, *decode_call(signature, data))
