import pytest

from constants import FIFTY, HUNDRED, MAX_UINT256, TEN_PERCENT
from conf_utils import as_sender
from vaultsim.adapters import LendingMarket, MarketAdapter, ProtocolAdapter
from vaultsim.core import CallContext, Ledger, MintableToken, mul_fraction
from vaultsim.factory import VaultFactory
from vaultsim.rebalancer import BatchRebalancer
from vaultsim.registry import AdapterRegistry


############
# Accounts #
############


@pytest.fixture
def ledger():
    return Ledger()


@pytest.fixture
def owner(ledger):
    return ledger.new_address("owner")


@pytest.fixture
def alice(ledger):
    return ledger.new_address("alice")


@pytest.fixture
def bob(ledger):
    return ledger.new_address("bob")


@pytest.fixture
def fee_recipient(ledger):
    return ledger.new_address("fee_recipient")


@pytest.fixture
def whale(ledger):
    return ledger.new_address("whale")


##########
# Tokens #
##########


@pytest.fixture
def underlying(ledger, alice, bob, whale):
    token = MintableToken(ledger, "Test Token", "TT")
    for account in (alice, bob):
        token.mint(account, HUNDRED)
    token.mint(whale, 10 * HUNDRED)
    return token


@pytest.fixture
def other_underlying(ledger, whale):
    token = MintableToken(ledger, "Other Token", "OT")
    token.mint(whale, 10 * HUNDRED)
    return token


############
# Registry #
############


@pytest.fixture
def registry(ledger, owner):
    return AdapterRegistry(ledger, owner=owner)


@pytest.fixture
def protocol(ledger, registry, owner):
    p = ProtocolAdapter(ledger, registry, "TestProtocol")
    registry.add_protocol(as_sender(owner), p.address)
    return p


@pytest.fixture
def make_market(ledger, whale):
    """Market holding ``liquidity`` supplied by the whale, paying ``rate`` on that liquidity."""
    def _make(token, name, rate=TEN_PERCENT, liquidity=FIFTY):
        market = LendingMarket(ledger, token, name, annual_interest=mul_fraction(liquidity, rate))
        token.approve(as_sender(whale), market.address, liquidity)
        token.transfer_from(CallContext.external(market.address), whale, market.address, liquidity)
        market.issue(whale, liquidity)
        return market
    return _make


@pytest.fixture
def market1(make_market, underlying):
    return make_market(underlying, "Market1", rate=TEN_PERCENT)


@pytest.fixture
def market2(make_market, underlying):
    return make_market(underlying, "Market2", rate=TEN_PERCENT // 2)


@pytest.fixture
def market3(make_market, underlying):
    return make_market(underlying, "Market3", rate=TEN_PERCENT // 10)


@pytest.fixture
def adapter1(protocol, market1):
    return protocol.add_market(market1)


@pytest.fixture
def adapter2(protocol, market2):
    return protocol.add_market(market2)


@pytest.fixture
def adapter3(protocol, market3):
    return protocol.add_market(market3)


@pytest.fixture
def unregistered_adapter(ledger, make_market, underlying):
    return MarketAdapter(ledger, make_market(underlying, "Unregistered", rate=TEN_PERCENT * 2))


#########
# Vault #
#########


@pytest.fixture
def batcher(ledger, registry):
    return BatchRebalancer(ledger, registry)


@pytest.fixture
def vault_factory(ledger, registry, owner, batcher, fee_recipient):
    factory = VaultFactory(ledger, registry, owner=owner, batcher=batcher.address,
                           default_fee_recipient=fee_recipient)
    registry.add_vault_factory(as_sender(owner), factory.address)
    return factory


@pytest.fixture
def deploy_vault(vault_factory, owner, ledger, alice, bob):
    def _deploy(token):
        vault_factory.approve_token(as_sender(owner), token.address)
        vault = vault_factory.deploy_vault(as_sender(owner), token)
        for account in (alice, bob):
            token.approve(as_sender(account), vault.address, MAX_UINT256)
        return vault
    return _deploy


@pytest.fixture
def vault(deploy_vault, underlying, adapter1, adapter2):
    return deploy_vault(underlying)
