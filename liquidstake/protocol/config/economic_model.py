# MIT License
# Copyright (c) 2025 Hashborn

"""
Liquid Staking Economic Model

Single source of truth for protocol-wide economic defaults. These values seed
the on-ledger Settings at genesis; after that the operator owns them through
update_settings.

Fee policy: fees are skimmed from newly recognized rewards only, never from
principal, and paid to the treasury as freshly minted receipt tokens.
"""

from dataclasses import dataclass
from typing import Dict
from .params import DECIMALS, NETWORK_ENV_VAR
import os

UNIT = 10**DECIMALS
BPS_DENOMINATOR = 10_000

@dataclass
class EconomicConfig:
    """Economic parameters for a network."""

    # ═══════════════════════════════════════════════════════
    # FEES
    # ═══════════════════════════════════════════════════════
    fee_rate_bps: int                   # Share of new rewards taken as fee (1000 = 10%)

    # ═══════════════════════════════════════════════════════
    # DEPOSITS
    # ═══════════════════════════════════════════════════════
    minimum_stake: int                  # Smallest accepted deposit in minimal units

    # ═══════════════════════════════════════════════════════
    # DELEGATION BUFFER
    # ═══════════════════════════════════════════════════════
    auto_delegate_threshold: int        # Auto-delegate once local buffer exceeds this (0 = off)
    liquidity_buffer: int               # Amount kept local after auto-delegation

    # ═══════════════════════════════════════════════════════
    # SLASHING
    # ═══════════════════════════════════════════════════════
    slashing_tolerance_bps: int         # Max unacknowledged drop of managed assets per settlement

    # ═══════════════════════════════════════════════════════
    # HELPER METHODS
    # ═══════════════════════════════════════════════════════

    @staticmethod
    def compute_fee(new_rewards: int, fee_rate_bps: int) -> int:
        """Fee owed on newly recognized rewards (rounded down)."""
        if new_rewards <= 0:
            return 0
        return new_rewards * fee_rate_bps // BPS_DENOMINATOR

    @staticmethod
    def split_rewards(new_rewards: int, fee_rate_bps: int) -> Dict[str, int]:
        """
        Split new rewards into fee and holder share.
        Returns: {'fee': int, 'holders': int}
        """
        fee = EconomicConfig.compute_fee(new_rewards, fee_rate_bps)
        return {
            'fee': fee,
            'holders': new_rewards - fee,
        }

    @staticmethod
    def exceeds_tolerance(loss: int, managed_assets: int, tolerance_bps: int) -> bool:
        """True if `loss` is a larger share of `managed_assets` than the tolerance allows."""
        if loss <= 0:
            return False
        return loss * BPS_DENOMINATOR > tolerance_bps * managed_assets


# ═══════════════════════════════════════════════════════════════════════════
# NETWORK CONFIGURATIONS
# ═══════════════════════════════════════════════════════════════════════════
DEVNET = EconomicConfig(
    fee_rate_bps=1000,                  # 10%
    minimum_stake=UNIT // 1000,         # 0.001 ETH
    auto_delegate_threshold=0,          # Manual delegation on devnet
    liquidity_buffer=0,
    slashing_tolerance_bps=100,         # 1%
)

TESTNET = EconomicConfig(
    fee_rate_bps=1000,
    minimum_stake=UNIT // 1000,
    auto_delegate_threshold=32 * UNIT,
    liquidity_buffer=4 * UNIT,
    slashing_tolerance_bps=100,
)

MAINNET = EconomicConfig(
    fee_rate_bps=1000,
    minimum_stake=UNIT // 100,          # 0.01 ETH
    auto_delegate_threshold=64 * UNIT,
    liquidity_buffer=16 * UNIT,
    slashing_tolerance_bps=50,          # 0.5%
)

ECONOMIC_CONFIGS: Dict[str, EconomicConfig] = {
    "devnet": DEVNET,
    "testnet": TESTNET,
    "mainnet": MAINNET,
}

ECONOMIC_CONFIG = ECONOMIC_CONFIGS.get(os.environ.get(NETWORK_ENV_VAR, "devnet"), DEVNET)
