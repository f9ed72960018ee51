# MIT License
# Copyright (c) 2025 Hashborn

"""
Staking delegate boundary.

StakingDelegate is the narrow interface the core consumes; the concrete
validator-level implementation lives elsewhere. GuardedDelegate is the only
way the core talks to a delegate: every call is treated as a slow, fallible
remote operation and every returned value is sanity-checked before the core
lets it near the ledger.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Callable, Optional, Tuple, Any
import logging
import time
from pydantic import ValidationError as PydanticValidationError
from ...protocol.types.common import DelegateUnavailable, DelegateTimeout, NotYetUnlocked
from ...protocol.types.ledger import DelegateBalances

logger = logging.getLogger(__name__)


class StakingDelegate(ABC):
    """Operations required of any conforming staking delegate."""

    identifier: str

    @abstractmethod
    def deposit(self, amount: int) -> bool:
        """Accept `amount` for delegation. False (or an exception) means rejected."""

    @abstractmethod
    def request_withdrawal(self, amount: int) -> Tuple[str, int]:
        """Start unbonding `amount`. Returns (request_handle, unlock_timestamp)."""

    @abstractmethod
    def claim_withdrawal(self, handle: str) -> int:
        """
        Collect an unbonded withdrawal.

        Raises:
            NotYetUnlocked: unbonding delay has not elapsed
        """

    @abstractmethod
    def report_balances(self) -> DelegateBalances:
        """Current (delegated_principal, accrued_rewards) held for the core."""


class GuardedDelegate:
    """
    Bounded-trust wrapper around a StakingDelegate.

    - Calls run on a worker thread and are abandoned after `timeout_sec`;
      the abandoned call may still complete, so a timeout is raised as
      DelegateTimeout and the core records the call as in doubt.
    - Any failure, timeout or malformed answer becomes DelegateUnavailable.
    - NotYetUnlocked from claim_withdrawal is passed through unchanged.
    """

    def __init__(self, delegate: StakingDelegate, timeout_sec: Optional[float] = None,
                 clock: Callable[[], int] = None):
        self.delegate = delegate
        self.timeout_sec = timeout_sec
        self.clock = clock or (lambda: int(time.time()))
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="delegate") if timeout_sec else None

    @property
    def identifier(self) -> str:
        return self.delegate.identifier

    def _call(self, name: str, *args) -> Any:
        method = getattr(self.delegate, name)
        try:
            if self._executor is None:
                return method(*args)
            future = self._executor.submit(method, *args)
            return future.result(timeout=self.timeout_sec)
        except FuturesTimeout:
            logger.error(f"Delegate {self.identifier}.{name} timed out after {self.timeout_sec}s")
            raise DelegateTimeout(f"{name} timed out after {self.timeout_sec}s")
        except (NotYetUnlocked, DelegateUnavailable):
            raise
        except Exception as e:
            logger.error(f"Delegate {self.identifier}.{name} failed: {e}")
            raise DelegateUnavailable(f"{name} failed: {e}") from e

    def deposit(self, amount: int) -> None:
        accepted = self._call("deposit", amount)
        if accepted is not True:
            raise DelegateUnavailable(f"Delegate rejected deposit of {amount}")

    def request_withdrawal(self, amount: int) -> Tuple[str, int]:
        result = self._call("request_withdrawal", amount)
        try:
            handle, unlock_timestamp = result
        except (TypeError, ValueError):
            raise DelegateUnavailable(f"Malformed withdrawal response: {result!r}")

        if not isinstance(handle, str) or not handle:
            raise DelegateUnavailable(f"Malformed withdrawal handle: {handle!r}")
        if not isinstance(unlock_timestamp, int) or isinstance(unlock_timestamp, bool):
            raise DelegateUnavailable(f"Malformed unlock timestamp: {unlock_timestamp!r}")

        now = self.clock()
        if unlock_timestamp < now:
            # An unlock in the past would let a caller skip the unbonding delay
            raise DelegateUnavailable(f"Unlock timestamp {unlock_timestamp} is before now ({now})")
        return handle, unlock_timestamp

    def claim_withdrawal(self, handle: str) -> int:
        amount = self._call("claim_withdrawal", handle)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise DelegateUnavailable(f"Malformed claim amount for {handle}: {amount!r}")
        return amount

    def report_balances(self) -> DelegateBalances:
        report = self._call("report_balances")
        try:
            if isinstance(report, DelegateBalances):
                return DelegateBalances.model_validate(report.model_dump())
            if isinstance(report, dict):
                return DelegateBalances.model_validate(report)
            delegated, rewards = report
            return DelegateBalances(delegated_principal=delegated, accrued_rewards=rewards)
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise DelegateUnavailable(f"Malformed balance report {report!r}: {e}") from e

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)
