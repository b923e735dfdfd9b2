import pytest

from conf_utils import as_sender, filter_logs
from constants import EIGHTEEN_DECIMALS, FIVE_PERCENT, HUNDRED_PERCENT, TEN, TEN_PERCENT, ZERO_ADDRESS
from vaultsim.calls import encode_call
from vaultsim.core import Token, mul_div, mul_fraction, to_fraction
from vaultsim.errors import (
    InsufficientLiquidity,
    InvalidAmount,
    InvalidConfig,
    MaximumExceeded,
    NotApproved,
    NotFound,
    NotUnused,
    Null,
    TokenLocked,
    TransferFailed,
    Unauthorized,
)
from vaultsim.vault import AllocationVault

HALF = EIGHTEEN_DECIMALS // 2


@pytest.fixture
def rebalanced(vault, alice):
    vault.deposit(as_sender(alice), TEN)
    vault.rebalance(as_sender(alice))
    return vault


################
# Construction #
################


def test_vault_starts_on_best_adapter(vault, adapter1, market1, owner, fee_recipient):
    adapters, weights = vault.get_adapters_and_weights()
    assert adapters == [adapter1]
    assert weights == [HUNDRED_PERCENT]
    assert market1.receipt.address in vault.locked_tokens
    assert vault.reserve_ratio == TEN_PERCENT
    assert vault.performance_fee == FIVE_PERCENT
    assert vault.price_at_last_fee == EIGHTEEN_DECIMALS
    assert vault.owner == owner
    assert vault.fee_recipient == fee_recipient


def test_vault_needs_an_adapter(ledger, registry, owner, other_underlying):
    with pytest.raises(NotFound):
        AllocationVault(ledger, registry, other_underlying, owner=owner)


###########
# Deposit #
###########


def test_deposit_mints_shares(ledger, vault, underlying, alice, bob):
    assert vault.deposit(as_sender(alice), TEN) == TEN
    assert vault.deposit(as_sender(bob), TEN) == TEN
    assert vault.total_supply == 2 * TEN
    assert vault.reserve_balance() == 2 * TEN
    assert vault.get_balances() == [0]

    mint = filter_logs(ledger, "Transfer", vault)[0]
    assert mint.args == {"src": ZERO_ADDRESS, "dst": alice, "amount": TEN}


def test_deposit_without_allowance_fails(ledger, vault, underlying, alice):
    underlying.approve(as_sender(alice), vault.address, 0)
    n_events = len(ledger.log.events)
    with pytest.raises(TransferFailed):
        vault.deposit(as_sender(alice), TEN)
    assert vault.total_supply == 0
    assert len(ledger.log.events) == n_events


def test_deposit_maximum_underlying(vault, owner, alice):
    vault.set_maximum_underlying(as_sender(owner), 15 * EIGHTEEN_DECIMALS)
    vault.deposit(as_sender(alice), TEN)
    with pytest.raises(MaximumExceeded):
        vault.deposit(as_sender(alice), TEN)
    vault.deposit(as_sender(alice), 5 * EIGHTEEN_DECIMALS)


def test_deposit_zero_rejected(vault, alice):
    with pytest.raises(InvalidAmount):
        vault.deposit(as_sender(alice), 0)


def test_deposit_after_value_doubles_mints_half(vault, owner, underlying, alice, bob):
    vault.set_performance_fee(as_sender(owner), 0)
    vault.deposit(as_sender(alice), TEN)
    underlying.mint(vault.address, TEN)
    shares = vault.deposit(as_sender(bob), TEN)
    assert abs(shares - TEN // 2) <= 1
    assert vault.balance_of(alice) == TEN


############
# Withdraw #
############


def test_withdraw_from_reserve(vault, underlying, alice):
    vault.deposit(as_sender(alice), TEN)
    before = underlying.balance_of(alice)
    assert vault.withdraw(as_sender(alice), 4 * EIGHTEEN_DECIMALS) == 4 * EIGHTEEN_DECIMALS
    assert underlying.balance_of(alice) - before == 4 * EIGHTEEN_DECIMALS
    assert vault.balance_of(alice) == 6 * EIGHTEEN_DECIMALS


def test_withdraw_pulls_shortfall_plus_reserve_top_up(ledger, rebalanced, underlying, market1, adapter1, alice):
    assert rebalanced.get_balances() == [9 * EIGHTEEN_DECIMALS]
    assert rebalanced.reserve_balance() == EIGHTEEN_DECIMALS

    amount = rebalanced.withdraw(as_sender(alice), 5 * EIGHTEEN_DECIMALS)
    assert amount == 5 * EIGHTEEN_DECIMALS

    pulled = [e for e in filter_logs(ledger, "Transfer", underlying)
              if e.args["src"] == market1.address and e.args["dst"] == rebalanced.address]
    assert pulled[-1].args["amount"] == 45 * EIGHTEEN_DECIMALS // 10
    assert rebalanced.get_balances() == [45 * EIGHTEEN_DECIMALS // 10]
    assert rebalanced.reserve_balance() == HALF


def test_withdraw_walks_adapters_in_order(rebalanced, adapter1, adapter2, alice):
    rebalanced._set_adapters_and_weights([adapter1, adapter2], [HALF, HALF])
    rebalanced.rebalance(as_sender(alice))
    assert rebalanced.get_balances() == [45 * EIGHTEEN_DECIMALS // 10] * 2

    rebalanced.withdraw(as_sender(alice), 6 * EIGHTEEN_DECIMALS)
    # 5 short of the reserve, plus 0.4 to refill it: adapter1 empties, adapter2 covers the rest
    assert rebalanced.get_balances() == [0, 36 * EIGHTEEN_DECIMALS // 10]
    assert rebalanced.reserve_balance() == 4 * EIGHTEEN_DECIMALS // 10
    assert [a.address for a in rebalanced.get_adapters_and_weights()[0]] == [adapter1.address, adapter2.address]


def test_withdraw_removes_drained_zero_weight_adapter(ledger, rebalanced, adapter1, adapter2, market1, alice):
    rebalanced._set_adapters_and_weights([adapter1, adapter2], [HALF, HALF])
    rebalanced.rebalance(as_sender(alice))
    rebalanced._set_adapters_and_weights([adapter1, adapter2], [0, HUNDRED_PERCENT])

    rebalanced.withdraw(as_sender(alice), 55 * EIGHTEEN_DECIMALS // 10)
    adapters, weights = rebalanced.get_adapters_and_weights()
    assert adapters == [adapter2]
    assert weights == [HUNDRED_PERCENT]
    assert filter_logs(ledger, "AdapterRemoved", rebalanced)[-1].args["adapter"] == adapter1.address
    assert market1.receipt.address not in rebalanced.locked_tokens


def test_withdraw_insufficient_liquidity_rolls_back(ledger, rebalanced, market1, alice):
    market1.set_available_liquidity(EIGHTEEN_DECIMALS)
    n_events = len(ledger.log.events)
    with pytest.raises(InsufficientLiquidity):
        rebalanced.withdraw(as_sender(alice), TEN)
    assert rebalanced.balance_of(alice) == TEN
    assert rebalanced.get_balances() == [9 * EIGHTEEN_DECIMALS]
    assert len(ledger.log.events) == n_events


def test_withdraw_more_shares_than_held(vault, alice, bob):
    vault.deposit(as_sender(alice), TEN)
    with pytest.raises(TransferFailed):
        vault.withdraw(as_sender(bob), EIGHTEEN_DECIMALS)


def test_withdraw_from_vault_without_shares(vault, alice):
    with pytest.raises(TransferFailed):
        vault.withdraw(as_sender(alice), 1)


def test_withdraw_underlying_needs_outstanding_shares(vault, underlying, alice, bob):
    underlying.transfer(as_sender(bob), vault.address, TEN)
    before = underlying.balance_of(alice)
    with pytest.raises(InvalidAmount):
        vault.withdraw_underlying(as_sender(alice), TEN)
    assert underlying.balance_of(alice) == before
    assert vault.reserve_balance() == TEN


def test_withdraw_underlying_burns_callers_shares(vault, alice, bob):
    vault.deposit(as_sender(alice), TEN)
    with pytest.raises(TransferFailed):
        vault.withdraw_underlying(as_sender(bob), EIGHTEEN_DECIMALS)


def test_withdraw_underlying_rounds_shares_up(vault, market1, alice):
    vault.deposit(as_sender(alice), TEN)
    vault.rebalance(as_sender(alice))
    market1.accrue(365, 365)

    supply, total_balance = vault.total_supply, vault.balance()
    fee_value = vault.get_pending_fees()
    fee_shares = mul_div(fee_value, supply, total_balance)
    expected = -(-3 * EIGHTEEN_DECIMALS * (supply + fee_shares) // total_balance)

    burned = vault.withdraw_underlying(as_sender(alice), 3 * EIGHTEEN_DECIMALS)
    assert burned == expected
    assert vault.balance_of(alice) == TEN - burned


########
# Fees #
########


def test_claim_fees_on_gain(ledger, rebalanced, market1, fee_recipient, alice):
    market1.accrue(365, 365)
    supply, total_balance = rebalanced.total_supply, rebalanced.balance()
    price = to_fraction(total_balance, supply)
    fee_value = mul_fraction(mul_fraction(price - EIGHTEEN_DECIMALS, supply), FIVE_PERCENT)
    fee_shares = mul_div(fee_value, supply, total_balance)
    assert rebalanced.get_pending_fees() == fee_value
    assert rebalanced.get_price_per_full_share_with_fee() == to_fraction(total_balance, supply + fee_shares)

    assert rebalanced.claim_fees(as_sender(alice)) == fee_value
    assert rebalanced.balance_of(fee_recipient) == fee_shares
    claimed = filter_logs(ledger, "FeesClaimed", rebalanced)[-1]
    assert claimed.args == {"amount": fee_value, "fee_shares": fee_shares}
    assert rebalanced.price_at_last_fee == to_fraction(total_balance, supply + fee_shares)

    assert rebalanced.claim_fees(as_sender(alice)) == 0
    assert rebalanced.balance_of(fee_recipient) == fee_shares
    assert rebalanced.get_pending_fees() == 0


def test_no_fees_without_gain(rebalanced, alice, fee_recipient):
    assert rebalanced.get_pending_fees() == 0
    assert rebalanced.claim_fees(as_sender(alice)) == 0
    assert rebalanced.balance_of(fee_recipient) == 0
    assert rebalanced.get_price_per_full_share() == EIGHTEEN_DECIMALS


def test_deposit_claims_fees_first(ledger, rebalanced, market1, fee_recipient, bob):
    market1.accrue(365, 365)
    pending = rebalanced.get_pending_fees()
    rebalanced.deposit(as_sender(bob), TEN)
    assert filter_logs(ledger, "FeesClaimed", rebalanced)[-1].args["amount"] == pending
    assert rebalanced.balance_of(fee_recipient) > 0
    # bob buys in at the post-fee price
    assert rebalanced.balance_of(bob) < TEN


def test_price_at_last_fee_never_decreases(rebalanced, market1, alice):
    market1.accrue(365, 365)
    rebalanced.claim_fees(as_sender(alice))
    high_water = rebalanced.price_at_last_fee
    market1.underlying.burn(market1.address, 5 * EIGHTEEN_DECIMALS)
    rebalanced.claim_fees(as_sender(alice))
    assert rebalanced.price_at_last_fee == high_water


#################
# Configuration #
#################


def test_setters_are_owner_only(vault, alice):
    with pytest.raises(Unauthorized):
        vault.set_performance_fee(as_sender(alice), 0)
    with pytest.raises(Unauthorized):
        vault.set_reserve_ratio(as_sender(alice), 0)
    with pytest.raises(Unauthorized):
        vault.set_fee_recipient(as_sender(alice), alice)
    with pytest.raises(Unauthorized):
        vault.set_maximum_underlying(as_sender(alice), 1)
    with pytest.raises(Unauthorized):
        vault.set_rewards_seller(as_sender(alice), alice)


def test_setter_bounds_and_events(ledger, vault, owner, bob):
    with pytest.raises(InvalidConfig):
        vault.set_performance_fee(as_sender(owner), HUNDRED_PERCENT // 5 + 1)
    with pytest.raises(InvalidConfig):
        vault.set_reserve_ratio(as_sender(owner), HUNDRED_PERCENT // 5 + 1)
    with pytest.raises(Null):
        vault.set_fee_recipient(as_sender(owner), ZERO_ADDRESS)

    vault.set_performance_fee(as_sender(owner), HUNDRED_PERCENT // 5)
    vault.set_reserve_ratio(as_sender(owner), FIVE_PERCENT)
    vault.set_fee_recipient(as_sender(owner), bob)
    assert vault.performance_fee == HUNDRED_PERCENT // 5
    assert vault.reserve_ratio == FIVE_PERCENT
    assert vault.fee_recipient == bob
    assert filter_logs(ledger, "SetReserveRatio", vault)[-1].args == {"reserve_ratio": FIVE_PERCENT}


def test_set_performance_fee_claims_at_old_rate(ledger, rebalanced, market1, owner, fee_recipient):
    market1.accrue(365, 365)
    pending = rebalanced.get_pending_fees()
    rebalanced.set_performance_fee(as_sender(owner), 0)
    assert filter_logs(ledger, "FeesClaimed", rebalanced)[-1].args["amount"] == pending
    assert rebalanced.balance_of(fee_recipient) > 0


###############
# Maintenance #
###############


class _Seller:
    def __init__(self, ledger):
        self.ledger = ledger
        self.address = ledger.new_address("seller")
        self.sold = []
        ledger.register(self)

    def sell_rewards(self, ctx, token, underlying, params):
        self.sold.append((ctx.sender, token, underlying, params))


def test_sell_rewards(ledger, vault, owner, underlying, market1, alice):
    reward = Token(ledger, "Reward", "RWD")
    reward._mint(vault.address, TEN)

    with pytest.raises(TokenLocked):
        vault.sell_rewards(as_sender(alice), underlying.address)
    with pytest.raises(TokenLocked):
        vault.sell_rewards(as_sender(alice), market1.receipt.address)
    with pytest.raises(Null):
        vault.sell_rewards(as_sender(alice), reward.address)

    seller = _Seller(ledger)
    vault.set_rewards_seller(as_sender(owner), seller.address)
    vault.sell_rewards(as_sender(alice), reward.address, {"min_out": 1})
    assert reward.balance_of(seller.address) == TEN
    assert seller.sold == [(vault.address, reward.address, underlying.address, {"min_out": 1})]


def test_withdraw_from_unused_adapter(vault, adapter1, adapter2, unregistered_adapter, underlying, alice):
    with pytest.raises(NotUnused):
        vault.withdraw_from_unused_adapter(as_sender(alice), adapter1)
    with pytest.raises(NotApproved):
        vault.withdraw_from_unused_adapter(as_sender(alice), unregistered_adapter)

    # a position left behind in adapter2
    underlying.transfer(as_sender(alice), vault.address, TEN)
    ctx = as_sender(vault.address)
    underlying.approve(ctx, adapter2.address, TEN)
    adapter2.deposit(ctx, TEN)

    assert vault.withdraw_from_unused_adapter(as_sender(alice), adapter2) == TEN
    assert adapter2.balance_receipt_tokens(vault.address) == 0
    assert adapter2.market.receipt.allowance(vault.address, adapter2.address) == 0
    assert vault.reserve_balance() == TEN


####################
# Encoded dispatch #
####################


def test_execute_routes_to_method(vault, alice):
    vault.execute(as_sender(alice), encode_call("deposit(uint256)", TEN))
    assert vault.balance_of(alice) == TEN
