import pytest
import os
from liquidstake.engine.core.staking_core import StakingCore
from liquidstake.engine.core.sim_delegate import SimulatedDelegate
from liquidstake.protocol.types.common import InvalidConfig, Unauthorized, ExchangeRateMode
from liquidstake.protocol.types.settings import SettingsUpdate
from liquidstake.protocol.config.params import get_network, NetworkConfig
from liquidstake.protocol.crypto.addresses import address_from_pubkey
from liquidstake.protocol.config.economic_model import DEVNET, UNIT
from conftest import OPERATOR, TREASURY, ALICE, UNBONDING


def test_genesis_settings(core, delegate):
    s = core.view_settings()
    assert s.fee_rate_bps == DEVNET.fee_rate_bps
    assert s.minimum_stake == DEVNET.minimum_stake
    assert s.treasury_address == TREASURY
    assert s.delegate_identifier == delegate.identifier
    assert s.receipt_token_identifier == core.token.identifier
    assert s.exchange_rate_mode == ExchangeRateMode.DYNAMIC
    assert s.settle_on_user_ops is False
    assert core.operator == OPERATOR


def test_update_settings(core):
    updated = core.update_settings(OPERATOR, {"fee_rate_bps": 500, "minimum_stake": UNIT})
    assert updated.fee_rate_bps == 500
    assert core.view_settings().minimum_stake == UNIT
    # Untouched fields are kept
    assert core.view_settings().treasury_address == TREASURY


def test_update_settings_with_model(core):
    core.update_settings(OPERATOR, SettingsUpdate(exchange_rate_mode=ExchangeRateMode.STATIC))
    assert core.view_settings().exchange_rate_mode == ExchangeRateMode.STATIC


def test_update_settings_requires_operator(core):
    with pytest.raises(Unauthorized):
        core.update_settings(ALICE, {"fee_rate_bps": 0})
    assert core.view_settings().fee_rate_bps == DEVNET.fee_rate_bps


@pytest.mark.parametrize("change", [
    {"fee_rate_bps": 10_001},
    {"fee_rate_bps": -1},
    {"minimum_stake": -1},
    {"treasury_address": "not-an-address"},
    {"exchange_rate_mode": "floating"},
    {"unknown_field": 1},
])
def test_update_settings_rejects_invalid(core, change):
    before = core.view_settings()
    with pytest.raises(InvalidConfig):
        core.update_settings(OPERATOR, change)
    assert core.view_settings() == before


def test_identifiers_are_bound(core):
    with pytest.raises(InvalidConfig):
        core.update_settings(OPERATOR, {"delegate_identifier": "other-delegate"})
    with pytest.raises(InvalidConfig):
        core.update_settings(OPERATOR, {"receipt_token_identifier": "other-token"})

    # Re-stating the current value is not a change
    same = core.view_settings().delegate_identifier
    core.update_settings(OPERATOR, {"delegate_identifier": same})


def test_view_settings_is_a_copy(core):
    view = core.view_settings()
    view.fee_rate_bps = 0
    assert core.view_settings().fee_rate_bps == DEVNET.fee_rate_bps


def test_new_core_requires_operator(db_dir, delegate, clock):
    with pytest.raises(InvalidConfig):
        StakingCore(os.path.join(db_dir, "core.db"), delegate,
                    config=get_network("devnet"), economics=DEVNET, clock=clock)


def test_invalid_genesis_settings(db_dir, delegate, clock):
    with pytest.raises(InvalidConfig):
        StakingCore(os.path.join(db_dir, "core.db"), delegate, operator=OPERATOR,
                    treasury_address="bogus", config=get_network("devnet"),
                    economics=DEVNET, clock=clock)


def test_reopen_with_other_delegate(core, db_dir, clock):
    core.close()
    other = SimulatedDelegate(identifier="someone-else", clock=clock)
    with pytest.raises(InvalidConfig):
        StakingCore(os.path.join(db_dir, "core.db"), other, operator=OPERATOR,
                    config=get_network("devnet"), economics=DEVNET, clock=clock)


def test_treasury_prefix_follows_core_network(make_core):
    config = NetworkConfig(network_id="devnet", chain_id="ls-devnet-1", bech32_prefix_acc="tls",
                           delegate_timeout_sec=2.0, unbonding_period_sec=UNBONDING)
    treasury = address_from_pubkey(b"treasury", prefix="tls")
    core = make_core(treasury=treasury, config=config)
    assert core.view_settings().treasury_address == treasury

    with pytest.raises(InvalidConfig):
        core.update_settings(OPERATOR, {"treasury_address": TREASURY})
    assert core.view_settings().treasury_address == treasury

    other = address_from_pubkey(b"other-treasury", prefix="tls")
    assert core.update_settings(OPERATOR, {"treasury_address": other}).treasury_address == other


def test_treasury_from_other_network_rejected_at_genesis(make_core):
    with pytest.raises(InvalidConfig):
        make_core(treasury=address_from_pubkey(b"treasury", prefix="tls"))
