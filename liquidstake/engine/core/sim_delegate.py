# MIT License
# Copyright (c) 2025 Hashborn

"""
In-process staking delegate for devnet and tests.

Behaves like a remote validator-staking service: deposits bond immediately,
withdrawals unbond for `unbonding_period_sec`, rewards and slashing are injected
by the operator of the simulation, and the whole thing can be taken offline or
made slow to exercise the core's failure handling.
"""

from typing import Dict, Tuple, Callable, Optional
from dataclasses import dataclass
import logging
import threading
import time
from .delegate import StakingDelegate
from ...protocol.types.common import NotYetUnlocked
from ...protocol.types.ledger import DelegateBalances
from ...protocol.config.params import CURRENT_NETWORK

logger = logging.getLogger(__name__)


@dataclass
class UnbondingEntry:
    amount: int
    unlock_timestamp: int
    claimed: bool = False


class SimulatedDelegate(StakingDelegate):
    def __init__(self, identifier: str = None,
                 unbonding_period_sec: int = None,
                 clock: Callable[[], int] = None):
        self.identifier = identifier or CURRENT_NETWORK.delegate_name
        self.unbonding_period_sec = (
            unbonding_period_sec if unbonding_period_sec is not None
            else CURRENT_NETWORK.unbonding_period_sec
        )
        self.clock = clock or (lambda: int(time.time()))

        self.bonded = 0              # Principal + compounded rewards
        self.pending_rewards = 0     # Rewards not yet compounded
        self.unbonding: Dict[str, UnbondingEntry] = {}
        self._seq = 0
        self._lock = threading.Lock()

        # Failure injection
        self.offline = False
        self.reject_deposits = False
        self.latency_sec: float = 0.0
        self.report_override: Optional[DelegateBalances] = None

    def _maybe_fail(self, op: str):
        if self.latency_sec:
            time.sleep(self.latency_sec)
        if self.offline:
            raise ConnectionError(f"delegate {self.identifier} unreachable ({op})")

    # --- StakingDelegate interface ---
    def deposit(self, amount: int) -> bool:
        self._maybe_fail("deposit")
        if self.reject_deposits or amount <= 0:
            return False
        with self._lock:
            self.bonded += amount
        logger.debug(f"[sim] bonded {amount}, total bonded {self.bonded}")
        return True

    def request_withdrawal(self, amount: int) -> Tuple[str, int]:
        self._maybe_fail("request_withdrawal")
        with self._lock:
            available = self.bonded + self.pending_rewards
            if amount <= 0 or amount > available:
                raise ValueError(f"cannot unbond {amount}, available {available}")
            from_bonded = min(amount, self.bonded)
            self.bonded -= from_bonded
            self.pending_rewards -= amount - from_bonded

            self._seq += 1
            handle = f"{self.identifier}-unbond-{self._seq}"
            unlock = self.clock() + self.unbonding_period_sec
            self.unbonding[handle] = UnbondingEntry(amount=amount, unlock_timestamp=unlock)
        return handle, unlock

    def claim_withdrawal(self, handle: str) -> int:
        self._maybe_fail("claim_withdrawal")
        with self._lock:
            entry = self.unbonding.get(handle)
            if entry is None:
                raise KeyError(f"unknown withdrawal {handle}")
            if entry.claimed:
                raise ValueError(f"withdrawal {handle} already claimed")
            now = self.clock()
            if now < entry.unlock_timestamp:
                raise NotYetUnlocked(f"{handle} unlocks at {entry.unlock_timestamp}, now {now}")
            entry.claimed = True
            return entry.amount

    def report_balances(self) -> DelegateBalances:
        self._maybe_fail("report_balances")
        if self.report_override is not None:
            return self.report_override
        return DelegateBalances(delegated_principal=self.bonded, accrued_rewards=self.pending_rewards)

    # --- Simulation controls ---
    def accrue_rewards(self, amount: int, compound: bool = True):
        """Credit validator rewards, either compounded into bonded or left pending."""
        with self._lock:
            if compound:
                self.bonded += amount
            else:
                self.pending_rewards += amount

    def slash(self, amount: int):
        """Remove `amount` from pending rewards first, then bonded principal."""
        with self._lock:
            from_rewards = min(amount, self.pending_rewards)
            self.pending_rewards -= from_rewards
            self.bonded = max(0, self.bonded - (amount - from_rewards))

    def total_held(self) -> int:
        return self.bonded + self.pending_rewards
