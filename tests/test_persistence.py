import pytest
import os
from liquidstake.engine.core.staking_core import StakingCore
from liquidstake.engine.core.state import LedgerState
from liquidstake.protocol.types.common import WithdrawalState, InsufficientBalance
from liquidstake.protocol.config.params import get_network
from liquidstake.protocol.config.economic_model import DEVNET, UNIT
from conftest import OPERATOR, ALICE, BOB, UNBONDING


def test_restart_restores_state(make_core, delegate, clock):
    core = make_core()
    core.user_stake(ALICE, 100 * UNIT)
    core.delegate_principal(OPERATOR, 80 * UNIT)
    delegate.accrue_rewards(4 * UNIT)
    core.settle_rewards(OPERATOR)
    core.update_settings(OPERATOR, {"fee_rate_bps": 700})
    handle = core.user_unstake(ALICE, 50 * UNIT).withdrawal.handle

    ledger = core.ledger()
    settings = core.view_settings()
    supply = core.receipt_supply()
    alice_receipts = core.receipt_balance(ALICE)
    core.close()

    restarted = make_core()
    assert restarted.ledger() == ledger
    assert restarted.view_settings() == settings
    assert restarted.receipt_supply() == supply
    assert restarted.receipt_balance(ALICE) == alice_receipts
    assert restarted.operator == OPERATOR
    assert restarted.get_withdrawal(handle).state == WithdrawalState.PENDING
    restarted.check_invariants()

    clock.advance(UNBONDING)
    paid = restarted.claim_withdrawal(ALICE, handle)
    assert restarted.base_balance(ALICE) == paid


def test_operator_cannot_be_replaced_on_restart(make_core, db_dir, delegate, clock):
    make_core().close()

    restarted = StakingCore(os.path.join(db_dir, "core.db"), delegate, operator=BOB,
                            config=get_network("devnet"), economics=DEVNET, clock=clock)
    assert restarted.operator == OPERATOR
    restarted.close()


def test_operation_journal(core):
    core.user_stake(ALICE, 2 * UNIT)
    core.delegate_principal(OPERATOR, UNIT)
    core.update_settings(OPERATOR, {"minimum_stake": 10})

    ops = core.recent_operations()
    assert [op["op_type"] for op in ops] == ["UPDATE_SETTINGS", "DELEGATE", "STAKE", "GENESIS"]
    assert ops[0]["data"] == {"minimum_stake": 10}
    assert ops[2]["caller"] == ALICE
    assert ops[2]["data"] == {"amount": 2 * UNIT}


def test_failed_operation_not_journaled(core):
    core.user_stake(ALICE, UNIT)
    with pytest.raises(InsufficientBalance):
        core.user_unstake(ALICE, 2 * UNIT)
    assert [op["op_type"] for op in core.recent_operations()] == ["STAKE", "GENESIS"]


class ProcessDied(BaseException):
    """Escapes every `except Exception`, like the process going away."""


def test_death_mid_unstake_keeps_receipts(make_core, delegate, monkeypatch):
    core = make_core()
    core.user_stake(ALICE, 10 * UNIT)
    core.delegate_principal(OPERATOR, 10 * UNIT)
    ledger = core.ledger()

    def die(amount):
        raise ProcessDied()

    # The burn happens before the delegate call inside the same operation
    monkeypatch.setattr(delegate, "request_withdrawal", die)
    with pytest.raises(ProcessDied):
        core.user_unstake(ALICE, 4 * UNIT)
    core.close()

    restarted = make_core()
    assert restarted.receipt_balance(ALICE) == 10 * UNIT
    assert restarted.receipt_supply() == 10 * UNIT
    assert restarted.ledger() == ledger
    assert restarted.list_withdrawals() == []
    assert [op["op_type"] for op in restarted.recent_operations(1)] == ["DELEGATE"]
    restarted.check_invariants()


def test_death_mid_cancel_mints_nothing(make_core, delegate, monkeypatch):
    core = make_core()
    core.user_stake(ALICE, 10 * UNIT)
    core.delegate_principal(OPERATOR, 10 * UNIT)
    handle = core.user_unstake(ALICE, 4 * UNIT).withdrawal.handle

    def die(self):
        raise ProcessDied()

    # Dies after the re-mint is staged, before anything is written
    monkeypatch.setattr(LedgerState, "check_invariants", die)
    with pytest.raises(ProcessDied):
        core.cancel_withdrawal(ALICE, handle)
    monkeypatch.undo()
    core.close()

    restarted = make_core()
    assert restarted.receipt_balance(ALICE) == 6 * UNIT
    assert restarted.receipt_supply() == 6 * UNIT
    assert restarted.get_withdrawal(handle).state == WithdrawalState.PENDING
    restarted.check_invariants()
