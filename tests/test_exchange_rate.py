import pytest
from fractions import Fraction
from liquidstake.engine.core.exchange_rate import (
    exchange_rate, receipts_for_deposit, assets_for_receipts, split_redemption,
    fee_receipts, format_rate,
)
from liquidstake.protocol.types.common import ExchangeRateMode, InvalidAmount
from liquidstake.protocol.config.economic_model import EconomicConfig, DEVNET, UNIT
from liquidstake.protocol.crypto.addresses import (
    address_from_pubkey, address_from_name, decode_address, is_valid_address,
)
from liquidstake.protocol.crypto.hash import withdrawal_handle

STATIC = ExchangeRateMode.STATIC


# ═══════════════════════════════════════════════════════════════════
# RATE MATH
# ═══════════════════════════════════════════════════════════════════

def test_genesis_rate_is_one():
    assert exchange_rate(0, 0) == 1
    assert exchange_rate(123, 0) == 1
    assert receipts_for_deposit(10, 0, 0) == 10


def test_dynamic_rate():
    assert exchange_rate(110, 100) == Fraction(11, 10)
    assert receipts_for_deposit(11, 110, 100) == 10
    assert assets_for_receipts(10, 110, 100) == 11


def test_conversions_round_down():
    assert receipts_for_deposit(10, 3, 2) == 6        # 6.67
    assert assets_for_receipts(10, 2, 3) == 6         # 6.67
    assert receipts_for_deposit(1, 3, 2) == 0


def test_deposit_into_worthless_pool():
    with pytest.raises(InvalidAmount):
        receipts_for_deposit(10, 0, 5)


def test_static_mode_pinned_until_impaired():
    assert exchange_rate(150, 100, STATIC) == 1
    assert receipts_for_deposit(7, 150, 100, STATIC) == 7
    assert assets_for_receipts(7, 150, 100, STATIC) == 7

    assert exchange_rate(90, 100, STATIC) == Fraction(9, 10)
    assert assets_for_receipts(10, 90, 100, STATIC) == 9


def test_split_redemption():
    assert split_redemption(55, 200, 220) == (50, 5)
    assert split_redemption(10, 100, 100) == (10, 0)
    # Impaired pool: principal above managed assets
    assert split_redemption(10, 100, 90) == (10, 0)
    assert split_redemption(0, 100, 120) == (0, 0)


def test_fee_receipts_preserve_rate():
    supply, managed_ex_fee, fee = 100 * UNIT, 109 * UNIT, 1 * UNIT
    minted = fee_receipts(fee, managed_ex_fee, supply)
    before = exchange_rate(managed_ex_fee, supply)
    after = exchange_rate(managed_ex_fee + fee, supply + minted)
    assert after >= before
    assert after - before < Fraction(1, 10**18)

    assert fee_receipts(0, 100, 100) == 0
    assert fee_receipts(5, 100, 0) == 5
    assert fee_receipts(5, 100, 100, STATIC) == 5


def test_format_rate():
    assert format_rate(Fraction(1)) == "1.000000000000000000"
    assert format_rate(Fraction(2, 3)) == "0.666666666666666666"
    assert format_rate(Fraction(0)) == "0.000000000000000000"
    assert format_rate(Fraction(11, 10), places=2) == "1.10"


# ═══════════════════════════════════════════════════════════════════
# ECONOMICS
# ═══════════════════════════════════════════════════════════════════

def test_fee_split():
    assert EconomicConfig.compute_fee(10 * UNIT, 1000) == UNIT
    assert EconomicConfig.compute_fee(9, 1000) == 0
    assert EconomicConfig.compute_fee(-5, 1000) == 0
    assert EconomicConfig.split_rewards(100, 2500) == {"fee": 25, "holders": 75}


def test_tolerance():
    assert not EconomicConfig.exceeds_tolerance(1, 100, 100)
    assert EconomicConfig.exceeds_tolerance(2, 100, 100)
    assert not EconomicConfig.exceeds_tolerance(0, 0, 0)
    assert DEVNET.slashing_tolerance_bps == 100


# ═══════════════════════════════════════════════════════════════════
# ADDRESSES & HANDLES
# ═══════════════════════════════════════════════════════════════════

def test_addresses():
    addr = address_from_pubkey(b"alice")
    assert addr.startswith("ls1")
    assert is_valid_address(addr, "ls")
    assert not is_valid_address(addr, "cosmos")
    assert not is_valid_address("ls1garbage")
    assert not is_valid_address(None)

    prefix, h20 = decode_address(addr)
    assert prefix == "ls"
    assert len(h20) == 20

    assert address_from_name("token") == address_from_name("token")
    assert address_from_name("token") != address_from_name("delegate")


def test_withdrawal_handles_unique():
    a = withdrawal_handle("ls1alice", 0, "d-1")
    b = withdrawal_handle("ls1alice", 1, "d-1")
    assert a != b
    assert a.startswith("wr")
    assert a == withdrawal_handle("ls1alice", 0, "d-1")
