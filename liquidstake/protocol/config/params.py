# MIT License
# Copyright (c) 2025 Hashborn

import os
from typing import Dict

# Global Constants
RECEIPT_DENOM = "veth"
DECIMALS = 18

NETWORK_ENV_VAR = "LIQUIDSTAKE_NETWORK"

class NetworkConfig:
    def __init__(self,
                 network_id: str,
                 chain_id: str,
                 bech32_prefix_acc: str = "ls",
                 version: int = 1,
                 # Receipt token / delegate identity
                 receipt_token_name: str = RECEIPT_DENOM,
                 delegate_name: str = "staking-delegate",
                 # Delegate call guard
                 delegate_timeout_sec: float = 10.0,
                 # Simulated delegate (devnet/tests only)
                 unbonding_period_sec: int = 7 * 24 * 3600,
                 # Withdrawal sweep
                 max_withdrawals_per_sweep: int = 100):
        self.network_id = network_id
        self.chain_id = chain_id
        self.bech32_prefix_acc = bech32_prefix_acc
        self.version = version
        self.receipt_token_name = receipt_token_name
        self.delegate_name = delegate_name
        self.delegate_timeout_sec = delegate_timeout_sec
        self.unbonding_period_sec = unbonding_period_sec
        self.max_withdrawals_per_sweep = max_withdrawals_per_sweep

NETWORKS: Dict[str, NetworkConfig] = {
    "devnet": NetworkConfig(
        network_id="devnet",
        chain_id="ls-devnet-1",
        delegate_timeout_sec=2.0,
        unbonding_period_sec=60,           # 1 minute, fast local iteration
    ),
    "testnet": NetworkConfig(
        network_id="testnet",
        chain_id="ls-testnet-1",
        delegate_timeout_sec=10.0,
        unbonding_period_sec=24 * 3600,    # 1 day
    ),
    "mainnet": NetworkConfig(
        network_id="mainnet",
        chain_id="ls-mainnet-1",
        delegate_timeout_sec=30.0,
        unbonding_period_sec=7 * 24 * 3600,
        max_withdrawals_per_sweep=500,
    ),
}

def get_network(name: str = None) -> NetworkConfig:
    """Resolve a network preset by name, falling back to $LIQUIDSTAKE_NETWORK, then devnet."""
    name = name or os.environ.get(NETWORK_ENV_VAR, "devnet")
    if name not in NETWORKS:
        raise ValueError(f"Unknown network '{name}' (expected one of {sorted(NETWORKS)})")
    return NETWORKS[name]

CURRENT_NETWORK = get_network()
