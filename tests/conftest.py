import pytest
import os
import shutil
from liquidstake.engine.core.staking_core import StakingCore
from liquidstake.engine.core.sim_delegate import SimulatedDelegate
from liquidstake.engine.core.events import EventBus
from liquidstake.protocol.config.params import get_network
from liquidstake.protocol.config.economic_model import DEVNET, UNIT
from liquidstake.protocol.crypto.addresses import address_from_pubkey

TEST_DB_DIR = "./test_db"

OPERATOR = address_from_pubkey(b"operator")
TREASURY = address_from_pubkey(b"treasury")
ALICE = address_from_pubkey(b"alice")
BOB = address_from_pubkey(b"bob")
CAROL = address_from_pubkey(b"carol")

UNBONDING = 60


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


@pytest.fixture
def db_dir():
    if os.path.exists(TEST_DB_DIR):
        shutil.rmtree(TEST_DB_DIR)
    os.makedirs(TEST_DB_DIR)
    yield TEST_DB_DIR
    if os.path.exists(TEST_DB_DIR):
        shutil.rmtree(TEST_DB_DIR)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def delegate(clock):
    return SimulatedDelegate(identifier="sim-delegate", unbonding_period_sec=UNBONDING, clock=clock)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_core(db_dir, delegate, clock, bus):
    """Factory so tests can pick genesis settings; every core is closed on teardown."""
    cores = []

    def _make(treasury=TREASURY, config=None, **genesis):
        core = StakingCore(
            os.path.join(db_dir, "core.db"),
            delegate,
            operator=OPERATOR,
            treasury_address=treasury,
            config=config or get_network("devnet"),
            economics=DEVNET,
            genesis_settings=genesis,
            clock=clock,
            events=bus,
        )
        cores.append(core)
        return core

    yield _make
    for core in cores:
        core.close()


@pytest.fixture
def core(make_core):
    return make_core()
