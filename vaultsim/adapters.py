from __future__ import annotations
from typing import Any, List, Optional, Protocol, runtime_checkable
import logging

from .core import ONE, CallContext, Ledger, MintableToken, Token, div_round_up, mul_div, transactional
from .errors import InsufficientLiquidity, InvalidAmount, TransferFailed

logger = logging.getLogger(__name__)


@runtime_checkable
class YieldAdapter(Protocol):
    """Uniform view of one (underlying asset, receipt token) venue."""

    address: str
    underlying_asset: str
    receipt_token: str
    name: str

    def deposit(self, ctx: CallContext, amount: int) -> int: ...

    def withdraw(self, ctx: CallContext, receipt_amount: int) -> int: ...

    def withdraw_all(self, ctx: CallContext) -> int: ...

    def withdraw_underlying(self, ctx: CallContext, amount: int) -> int: ...

    def withdraw_underlying_up_to(self, ctx: CallContext, amount: int) -> int: ...

    def balance_receipt_tokens(self, account: str) -> int: ...

    def balance_underlying(self, account: str) -> int: ...

    def available_liquidity(self) -> int: ...

    def current_yield(self) -> int: ...

    def hypothetical_yield(self, delta: int) -> int: ...

    def exchange_rate_to_underlying(self, receipt_amount: int) -> int: ...

    def exchange_rate_to_receipt(self, underlying_amount: int) -> int: ...


class RewardsSeller(Protocol):
    def sell_rewards(self, ctx: CallContext, token: str, underlying: str, params: Any) -> None: ...


# -----------------------------
# Simulated venue
# -----------------------------
class LendingMarket:
    """
    Generic interest-bearing pool. Suppliers receive receipt tokens whose
    exchange rate grows as ``accrue`` adds the interest budget to the cash.

    ``annual_interest`` is the amount of underlying paid per year to all
    suppliers together, so the supply yield falls as liquidity grows.
    """
    def __init__(self, ledger: Ledger, underlying: MintableToken, name: str, annual_interest: int) -> None:
        self.ledger = ledger
        self.address = ledger.new_address(f"market:{name}")
        self.name = name
        self.underlying = underlying
        self.receipt = Token(ledger, name=f"{name} {underlying.symbol}", symbol=f"r{underlying.symbol}")
        self.annual_interest = int(annual_interest)
        self.liquidity_cap: Optional[int] = None
        self.accrued_interest: int = 0
        ledger.register(self)

    # ---- state ----
    def cash(self) -> int:
        return self.underlying.balance_of(self.address)

    def total_value(self) -> int:
        return self.cash()

    def available_liquidity(self) -> int:
        cash = self.cash()
        return cash if self.liquidity_cap is None else min(cash, self.liquidity_cap)

    def supply_yield(self, delta: int = 0) -> int:
        denominator = max(self.total_value() + delta, 1)
        return mul_div(self.annual_interest, ONE, denominator)

    def to_underlying(self, receipt_amount: int) -> int:
        supply = self.receipt.total_supply
        if supply == 0:
            return receipt_amount
        return mul_div(receipt_amount, self.total_value(), supply)

    def to_receipt(self, underlying_amount: int) -> int:
        supply = self.receipt.total_supply
        value = self.total_value()
        if supply == 0 or value == 0:
            return underlying_amount
        return mul_div(underlying_amount, supply, value)

    # ---- mutation ----
    def set_available_liquidity(self, amount: Optional[int]) -> None:
        self.liquidity_cap = None if amount is None else max(0, int(amount))

    def set_annual_interest(self, amount: int) -> None:
        self.annual_interest = max(0, int(amount))

    def accrue(self, ticks: int, ticks_per_year: int) -> int:
        if self.receipt.total_supply == 0 or ticks <= 0:
            return 0
        interest = self.annual_interest * ticks // ticks_per_year
        if interest > 0:
            self.underlying.mint(self.address, interest)
            self.accrued_interest += interest
        return interest

    def issue(self, recipient: str, receipt_amount: int) -> None:
        self.receipt._mint(recipient, receipt_amount)

    def redeem(self, holder: str, receipt_amount: int, recipient: str, amount: Optional[int] = None) -> int:
        if amount is None:
            amount = self.to_underlying(receipt_amount)
        if amount > self.available_liquidity():
            raise InsufficientLiquidity(f"{self.name}: {amount} requested, {self.available_liquidity()} available")
        self.receipt._burn(holder, receipt_amount)
        self.underlying.transfer(CallContext.external(self.address), recipient, amount)
        if self.liquidity_cap is not None:
            self.liquidity_cap -= amount
        return amount


class MarketAdapter:
    """``YieldAdapter`` over a ``LendingMarket``. Pulls funds from the caller through allowances."""

    def __init__(self, ledger: Ledger, market: LendingMarket, protocol_name: str = "") -> None:
        self.ledger = ledger
        self.market = market
        self.address = ledger.new_address(f"adapter:{market.name}")
        self.underlying_asset = market.underlying.address
        self.receipt_token = market.receipt.address
        self.name = f"{protocol_name or market.name} {market.underlying.symbol} Adapter"
        ledger.register(self)

    def _forward(self, ctx: CallContext) -> CallContext:
        return ctx.forward(self.address)

    # ---- queries ----
    def balance_receipt_tokens(self, account: str) -> int:
        return self.market.receipt.balance_of(account)

    def balance_underlying(self, account: str) -> int:
        return self.market.to_underlying(self.balance_receipt_tokens(account))

    def available_liquidity(self) -> int:
        return self.market.available_liquidity()

    def current_yield(self) -> int:
        return self.market.supply_yield()

    def hypothetical_yield(self, delta: int) -> int:
        return self.market.supply_yield(delta)

    def exchange_rate_to_underlying(self, receipt_amount: int) -> int:
        return self.market.to_underlying(receipt_amount)

    def exchange_rate_to_receipt(self, underlying_amount: int) -> int:
        return self.market.to_receipt(underlying_amount)

    # ---- mutation ----
    @transactional
    def deposit(self, ctx: CallContext, amount: int) -> int:
        if amount <= 0:
            raise InvalidAmount("deposit amount must be positive")
        minted = self.market.to_receipt(amount)
        self.market.underlying.transfer_from(self._forward(ctx), ctx.sender, self.market.address, amount)
        self.market.issue(ctx.sender, minted)
        logger.debug("adapter=%s deposit caller=%s amount=%d minted=%d", self.name, ctx.sender, amount, minted)
        return minted

    @transactional
    def withdraw(self, ctx: CallContext, receipt_amount: int) -> int:
        if receipt_amount <= 0:
            return 0
        self.market.receipt.transfer_from(self._forward(ctx), ctx.sender, self.address, receipt_amount)
        amount = self.market.redeem(self.address, receipt_amount, ctx.sender)
        logger.debug("adapter=%s withdraw caller=%s receipt=%d amount=%d", self.name, ctx.sender, receipt_amount, amount)
        return amount

    def withdraw_all(self, ctx: CallContext) -> int:
        return self.withdraw(ctx, self.balance_receipt_tokens(ctx.sender))

    @transactional
    def withdraw_underlying(self, ctx: CallContext, amount: int) -> int:
        if amount <= 0:
            return 0
        supply = self.market.receipt.total_supply
        value = self.market.total_value()
        if supply == 0 or value == 0:
            raise InsufficientLiquidity(f"{self.market.name}: empty market")
        receipt_amount = div_round_up(amount * supply, value)
        if receipt_amount > self.balance_receipt_tokens(ctx.sender):
            raise TransferFailed(f"{self.name}: receipt balance too low")
        self.market.receipt.transfer_from(self._forward(ctx), ctx.sender, self.address, receipt_amount)
        self.market.redeem(self.address, receipt_amount, ctx.sender, amount=amount)
        return receipt_amount

    @transactional
    def withdraw_underlying_up_to(self, ctx: CallContext, amount: int) -> int:
        balance = self.balance_underlying(ctx.sender)
        amount = min(amount, self.available_liquidity(), balance)
        if amount <= 0:
            return 0
        if amount == balance:
            return self.withdraw_all(ctx)
        self.withdraw_underlying(ctx, amount)
        return amount


class ProtocolAdapter:
    """Named protocol account that registers the adapters it builds."""

    def __init__(self, ledger: Ledger, registry: Any, name: str) -> None:
        self.ledger = ledger
        self.registry = registry
        self.name = name
        self.address = ledger.new_address(f"protocol:{name}")
        self.adapters: List[MarketAdapter] = []
        ledger.register(self)

    @transactional
    def add_market(self, market: LendingMarket) -> MarketAdapter:
        adapter = MarketAdapter(self.ledger, market, protocol_name=self.name)
        self.registry.add_adapter(CallContext.external(self.address), adapter)
        self.adapters.append(adapter)
        return adapter
