import pytest
from fractions import Fraction
from liquidstake.protocol.types.common import (
    InvalidAmount, InsufficientBalance, Unauthorized, DelegateUnavailable, WithdrawalState,
)
from liquidstake.protocol.config.economic_model import UNIT
from conftest import OPERATOR, TREASURY, ALICE, BOB, UNBONDING

ONE = "1.000000000000000000"


def snapshot(core):
    return core.ledger().model_dump(), core.receipt_supply()


# ═══════════════════════════════════════════════════════════════════
# STAKE
# ═══════════════════════════════════════════════════════════════════

def test_first_stake_mints_one_to_one(core):
    result = core.user_stake(ALICE, 100 * UNIT)

    assert result.receipts_minted == 100 * UNIT
    assert result.exchange_rate == ONE
    assert core.receipt_balance(ALICE) == 100 * UNIT
    assert core.receipt_supply() == 100 * UNIT

    lg = core.ledger()
    assert lg.total_principal == 100 * UNIT
    assert lg.undelegated_principal == 100 * UNIT
    assert lg.delegated_principal == 0
    assert core.exchange_rate() == 1


def test_stake_after_rewards_mints_fewer_receipts(core, delegate):
    core.update_settings(OPERATOR, {"fee_rate_bps": 0})
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 100 * UNIT)
    delegate.accrue_rewards(10 * UNIT)
    core.settle_rewards(OPERATOR)

    assert core.exchange_rate() == Fraction(110, 100)

    result = core.user_stake(BOB, 11 * UNIT)
    assert result.receipts_minted == 10 * UNIT
    assert result.exchange_rate == "1.100000000000000000"
    # Existing holder is not diluted
    assert core.exchange_rate() == Fraction(110, 100)


def test_stake_rejects_bad_amounts(core):
    before = snapshot(core)
    with pytest.raises(InvalidAmount):
        core.user_stake(ALICE, 0)
    with pytest.raises(InvalidAmount):
        core.user_stake(ALICE, -5)
    with pytest.raises(InvalidAmount):
        core.user_stake(ALICE, 1.5)
    with pytest.raises(InvalidAmount):
        core.user_stake(ALICE, True)
    assert snapshot(core) == before


def test_stake_below_minimum(core):
    minimum = core.view_settings().minimum_stake
    with pytest.raises(InvalidAmount):
        core.user_stake(ALICE, minimum - 1)

    core.user_stake(ALICE, minimum)
    assert core.receipt_balance(ALICE) == minimum


def test_stake_does_not_touch_delegate(core, delegate):
    delegate.offline = True
    core.user_stake(ALICE, 5 * UNIT)
    assert core.ledger().undelegated_principal == 5 * UNIT


# ═══════════════════════════════════════════════════════════════════
# DELEGATION
# ═══════════════════════════════════════════════════════════════════

def test_delegate_principal_moves_buffer(core, delegate):
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 80 * UNIT)

    lg = core.ledger()
    assert lg.undelegated_principal == 20 * UNIT
    assert lg.delegated_principal == 80 * UNIT
    assert lg.total_principal == 100 * UNIT
    assert delegate.bonded == 80 * UNIT
    # Delegation never moves the rate
    assert core.exchange_rate() == 1


def test_delegate_principal_requires_operator(core):
    core.user_stake(ALICE, 10 * UNIT)
    with pytest.raises(Unauthorized):
        core.delegate_principal(ALICE, 5 * UNIT)


def test_delegate_more_than_buffer(core):
    core.user_stake(ALICE, 10 * UNIT)
    with pytest.raises(InvalidAmount):
        core.delegate_principal(OPERATOR, 11 * UNIT)


def test_delegate_failure_leaves_state(core, delegate):
    core.user_stake(ALICE, 10 * UNIT)
    before = snapshot(core)

    delegate.offline = True
    with pytest.raises(DelegateUnavailable):
        core.delegate_principal(OPERATOR, 5 * UNIT)
    assert snapshot(core) == before

    delegate.offline = False
    delegate.reject_deposits = True
    with pytest.raises(DelegateUnavailable):
        core.delegate_principal(OPERATOR, 5 * UNIT)
    assert snapshot(core) == before
    assert delegate.bonded == 0


def test_auto_delegation_keeps_buffer(make_core, delegate):
    core = make_core(auto_delegate_threshold=50 * UNIT, liquidity_buffer=10 * UNIT)
    core.user_stake(ALICE, 40 * UNIT)
    assert core.ledger().undelegated_principal == 40 * UNIT

    core.user_stake(BOB, 60 * UNIT)
    lg = core.ledger()
    assert lg.undelegated_principal == 10 * UNIT
    assert lg.delegated_principal == 90 * UNIT
    assert delegate.bonded == 90 * UNIT


def test_auto_delegation_failure_keeps_stake(make_core, delegate):
    core = make_core(auto_delegate_threshold=50 * UNIT)
    delegate.offline = True

    result = core.user_stake(ALICE, 100 * UNIT)
    assert result.receipts_minted == 100 * UNIT
    assert core.ledger().undelegated_principal == 100 * UNIT
    assert core.ledger().delegated_principal == 0


# ═══════════════════════════════════════════════════════════════════
# UNSTAKE
# ═══════════════════════════════════════════════════════════════════

def test_unstake_paid_from_buffer(core):
    core.user_stake(ALICE, 100 * UNIT)
    result = core.user_unstake(ALICE, 40 * UNIT)

    assert not result.deferred
    assert result.payout == 40 * UNIT
    assert core.base_balance(ALICE) == 40 * UNIT
    assert core.receipt_balance(ALICE) == 60 * UNIT

    lg = core.ledger()
    assert lg.total_principal == 60 * UNIT
    assert lg.undelegated_principal == 60 * UNIT


def test_unstake_from_buffer_while_delegate_offline(core, delegate):
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 50 * UNIT)
    delegate.offline = True

    result = core.user_unstake(ALICE, 30 * UNIT)
    assert result.payout == 30 * UNIT


def test_unstake_deferred_when_buffer_short(core, delegate, clock):
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 80 * UNIT)

    result = core.user_unstake(ALICE, 50 * UNIT)
    assert result.deferred
    assert result.payout == 0

    req = result.withdrawal
    assert req.state == WithdrawalState.PENDING
    assert req.requester == ALICE
    assert req.amount_requested == 50 * UNIT
    assert req.local_portion == 20 * UNIT
    assert req.delegate_portion == 30 * UNIT
    assert req.unlock_timestamp == clock() + UNBONDING

    lg = core.ledger()
    assert lg.undelegated_principal == 0
    assert lg.escrowed_liquidity == 20 * UNIT
    assert lg.delegated_principal == 50 * UNIT
    assert lg.total_principal == 50 * UNIT
    assert core.receipt_balance(ALICE) == 50 * UNIT
    assert delegate.bonded == 50 * UNIT
    assert core.get_withdrawal(req.handle).handle == req.handle


def test_unstake_insufficient_receipts(core):
    core.user_stake(ALICE, 10 * UNIT)
    before = snapshot(core)
    with pytest.raises(InsufficientBalance):
        core.user_unstake(ALICE, 11 * UNIT)
    with pytest.raises(InsufficientBalance):
        core.user_unstake(BOB, 1)
    assert snapshot(core) == before


def test_unstake_zero(core):
    core.user_stake(ALICE, 10 * UNIT)
    with pytest.raises(InvalidAmount):
        core.user_unstake(ALICE, 0)


def test_unstake_keeps_receipts_when_delegate_fails(core, delegate):
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 100 * UNIT)
    before = snapshot(core)

    delegate.offline = True
    with pytest.raises(DelegateUnavailable):
        core.user_unstake(ALICE, 50 * UNIT)

    assert snapshot(core) == before
    assert core.receipt_balance(ALICE) == 100 * UNIT
    assert core.list_withdrawals() == []


def test_unstake_after_rewards_pays_share(core, delegate):
    core.update_settings(OPERATOR, {"fee_rate_bps": 0})
    core.user_stake(ALICE, 100 * UNIT)
    core.user_stake(BOB, 100 * UNIT)
    core.delegate_principal(OPERATOR, 100 * UNIT)
    delegate.accrue_rewards(20 * UNIT)
    core.settle_rewards(OPERATOR)

    # 220 managed / 200 receipts
    result = core.user_unstake(ALICE, 50 * UNIT)
    assert result.payout == 55 * UNIT

    lg = core.ledger()
    assert lg.total_principal + lg.accrued_rewards == 165 * UNIT
    assert lg.undelegated_principal == 45 * UNIT
    core.check_invariants()


def test_last_redeemer_drains_pool(make_core, delegate, clock):
    core = make_core(treasury=None)
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 100 * UNIT)
    delegate.accrue_rewards(10 * UNIT)
    core.settle_rewards(OPERATOR)

    # Fee accrues as a liability while no treasury is configured
    lg = core.ledger()
    assert lg.accrued_rewards == 10 * UNIT
    assert lg.accrued_fees == 1 * UNIT
    assert core.total_managed_assets() == 109 * UNIT

    result = core.user_unstake(ALICE, 100 * UNIT)
    assert result.base_amount == 109 * UNIT
    assert core.receipt_supply() == 0

    lg = core.ledger()
    assert lg.total_principal == 0
    assert lg.delegated_principal == 0
    assert core.total_managed_assets() == 0

    clock.advance(UNBONDING)
    assert core.claim_withdrawal(ALICE, result.withdrawal.handle) == 109 * UNIT
    assert core.base_balance(ALICE) == 109 * UNIT


def test_round_trip_never_gains(core, delegate):
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 100 * UNIT)
    delegate.accrue_rewards(7 * UNIT)
    core.settle_rewards(OPERATOR)

    amount = 3 * UNIT + 7
    receipts = core.user_stake(BOB, amount).receipts_minted
    result = core.user_unstake(BOB, receipts)
    assert result.payout <= amount


def test_treasury_receipts_are_transferable_claims(core, delegate):
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 90 * UNIT)
    delegate.accrue_rewards(10 * UNIT)
    core.settle_rewards(OPERATOR)

    fee_receipts = core.receipt_balance(TREASURY)
    assert fee_receipts > 0
    result = core.user_unstake(TREASURY, fee_receipts)
    assert abs(result.payout - 1 * UNIT) <= 2
