from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import numpy as np

from .adapters import LendingMarket, MarketAdapter, ProtocolAdapter
from .arrays import OrderedSet
from .config import ProtocolConfig, ScenarioConfig
from .core import ZERO_ADDRESS, CallContext, Ledger, MintableToken, Token, transactional
from .errors import AlreadyExists, NotApproved, NotFound, Null, Unauthorized
from .vault import AllocationVault

logger = logging.getLogger(__name__)


def to_base_units(amount: float, decimals: int) -> int:
    return int(round(float(amount) * 10 ** decimals))


class VaultFactory:
    """Deploys one vault per approved underlying and registers it with the registry."""

    def __init__(self, ledger: Ledger, registry: Any, *, owner: str, batcher: Optional[str] = None,
                 default_fee_recipient: Optional[str] = None, config: Optional[ProtocolConfig] = None) -> None:
        self.ledger = ledger
        self.registry = registry
        self.owner = owner
        self.batcher = batcher
        self.default_fee_recipient = default_fee_recipient or owner
        self.config = config or ProtocolConfig()
        self.address = ledger.new_address("vault_factory")
        self.approved_tokens = OrderedSet()
        ledger.register(self)

    def _only_owner(self, ctx: CallContext) -> None:
        if ctx.sender != self.owner:
            raise Unauthorized(f"{ctx.sender} is not the factory owner")

    @transactional
    def approve_token(self, ctx: CallContext, token: str) -> None:
        self._only_owner(ctx)
        if not token or token == ZERO_ADDRESS:
            raise Null("token address is null")
        if not self.approved_tokens.add(token):
            raise AlreadyExists(f"token {token} already approved")
        self.ledger.emit(self.address, "TokenApproved", token=token)

    @transactional
    def set_default_fee_recipient(self, ctx: CallContext, recipient: str) -> None:
        self._only_owner(ctx)
        if not recipient or recipient == ZERO_ADDRESS:
            raise Null("fee recipient is null")
        self.default_fee_recipient = recipient
        self.ledger.emit(self.address, "SetDefaultFeeRecipient", fee_recipient=recipient)

    @transactional
    def deploy_vault(self, ctx: CallContext, underlying: Token) -> AllocationVault:
        if underlying.address not in self.approved_tokens:
            raise NotApproved(f"token {underlying.symbol} not approved")
        if self.registry.get_adapters_count(underlying.address) == 0:
            raise NotFound(f"no adapters for {underlying.symbol}")
        vault = AllocationVault(
            self.ledger, self.registry, underlying,
            owner=self.owner,
            fee_recipient=self.default_fee_recipient,
            batcher=self.batcher,
            config=self.config,
        )
        self.registry.add_vault(ctx.forward(self.address), vault)
        self.ledger.emit(self.address, "VaultDeployed", underlying=underlying.address, vault=vault.address)
        logger.info("deployed vault %s for %s", vault.symbol, underlying.symbol)
        return vault


@dataclass
class Venue:
    protocol: ProtocolAdapter
    market: LendingMarket
    adapter: MarketAdapter


class VenueFactory:
    """Builds the simulated assets, protocols and markets of a scenario."""

    def __init__(self, ledger: Ledger, registry: Any, cfg: ScenarioConfig) -> None:
        self.ledger = ledger
        self.registry = registry
        self.cfg = cfg
        self.assets: Dict[str, MintableToken] = {}
        self.protocols: Dict[str, ProtocolAdapter] = {}
        self.venues: List[Venue] = []
        self.market_counter = 0

    def _new_market_name(self, protocol: str, symbol: str) -> str:
        self.market_counter += 1
        return f"{protocol} {symbol} #{self.market_counter:03d}"

    def create_asset(self, symbol: str) -> MintableToken:
        token = MintableToken(self.ledger, name=f"{symbol} Coin", symbol=symbol, decimals=self.cfg.decimals)
        token.debug_balances = self.cfg.debug_balances
        self.assets[symbol] = token
        return token

    def create_protocol(self, owner_ctx: CallContext, name: str) -> ProtocolAdapter:
        protocol = ProtocolAdapter(self.ledger, self.registry, name)
        self.registry.add_protocol(owner_ctx, protocol.address)
        self.protocols[name] = protocol
        return protocol

    def sample_annual_rate(self) -> float:
        return float(np.random.uniform(self.cfg.interest_rate_min, self.cfg.interest_rate_max))

    def create_venue(self, protocol: ProtocolAdapter, asset: MintableToken) -> Venue:
        cfg = self.cfg
        liquidity = to_base_units(np.random.exponential(cfg.initial_market_liquidity_mean), asset.decimals)
        liquidity = max(liquidity, 10 ** asset.decimals)
        annual_interest = int(liquidity * self.sample_annual_rate())
        market = LendingMarket(self.ledger, asset, self._new_market_name(protocol.name, asset.symbol), annual_interest)

        # seed supplier so the market starts with cash and receipts outstanding
        seeder = self.ledger.new_address(f"seeder:{market.name}")
        asset.mint(seeder, liquidity)
        asset.approve(CallContext.external(seeder), market.address, liquidity)
        asset.transfer_from(CallContext.external(market.address), seeder, market.address, liquidity)
        market.issue(seeder, liquidity)

        adapter = protocol.add_market(market)
        venue = Venue(protocol=protocol, market=market, adapter=adapter)
        self.venues.append(venue)
        logger.debug("venue market=%s liquidity=%d annual_interest=%d", market.name, liquidity, annual_interest)
        return venue

    def build(self, owner_ctx: CallContext) -> List[Venue]:
        for symbol in self.cfg.asset_symbols:
            self.create_asset(symbol)
        for name in self.cfg.protocol_names:
            self.create_protocol(owner_ctx, name)
        for protocol in self.protocols.values():
            for asset in self.assets.values():
                for _ in range(self.cfg.markets_per_protocol):
                    self.create_venue(protocol, asset)
        return self.venues
