# MIT License
# Copyright (c) 2025 Hashborn

"""
Receipt token boundary.

The staking core only needs balance queries plus mint/burn authority. Holder
transfers are ordinary fungible-token semantics and are included so a receipt
can change hands before it is redeemed.

Mints and burns made by a core operation go through a TokenBatch: the batch
holds the token lock, reads through its own pending writes, and hands its
writes back as (key, value) items so the core commits them in the same sqlite
transaction as the ledger.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple
import logging
import threading
from ...protocol.types.common import InsufficientBalance, InvalidAmount, Unauthorized
from ..storage.db import StorageDB

logger = logging.getLogger(__name__)


class TokenBatch:
    """Pending mints/burns of one core operation."""

    def __init__(self, token: 'StoredReceiptToken'):
        self.token = token
        self._balances: Dict[str, int] = {}
        self._supply: Optional[int] = None

    def balance_of(self, address: str) -> int:
        if address in self._balances:
            return self._balances[address]
        return self.token.balance_of(address)

    def total_supply(self) -> int:
        if self._supply is None:
            return self.token.total_supply()
        return self._supply

    def mint(self, caller: str, to: str, amount: int) -> None:
        self.token._require_minter(caller)
        self.token._require_positive(amount)
        self._balances[to] = self.balance_of(to) + amount
        self._supply = self.total_supply() + amount

    def burn(self, caller: str, holder: str, amount: int) -> None:
        self.token._require_minter(caller)
        self.token._require_positive(amount)
        balance = self.balance_of(holder)
        if balance < amount:
            raise InsufficientBalance(f"Burn of {amount} exceeds balance {balance} of {holder}")
        self._balances[holder] = balance - amount
        self._supply = self.total_supply() - amount

    def dirty_items(self) -> List[Tuple[str, str]]:
        items = [(self.token._bal_key(addr), str(bal)) for addr, bal in self._balances.items()]
        if self._supply is not None:
            items.append((self.token._supply_key(), str(self._supply)))
        return items


class ReceiptToken(ABC):
    """Fungible receipt token whose supply is controlled by a single minter."""

    identifier: str
    minter: str
    db: StorageDB

    @abstractmethod
    def balance_of(self, address: str) -> int: ...

    @abstractmethod
    def total_supply(self) -> int: ...

    @abstractmethod
    def mint(self, caller: str, to: str, amount: int) -> None: ...

    @abstractmethod
    def burn(self, caller: str, holder: str, amount: int) -> None: ...

    @abstractmethod
    def transfer(self, sender: str, to: str, amount: int) -> None: ...

    @abstractmethod
    def stage(self) -> Iterator[TokenBatch]:
        """Context manager yielding a TokenBatch; the caller persists its dirty_items()."""


class StoredReceiptToken(ReceiptToken):
    """
    Receipt token persisted in the same StorageDB as the ledger.

    Keys:
        tok:<identifier>:bal:<address> -> balance
        tok:<identifier>:supply        -> total supply
    """

    def __init__(self, db: StorageDB, identifier: str, minter: str):
        self.db = db
        self.identifier = identifier
        self.minter = minter
        self._lock = threading.RLock()

    def _bal_key(self, address: str) -> str:
        return f"tok:{self.identifier}:bal:{address}"

    def _supply_key(self) -> str:
        return f"tok:{self.identifier}:supply"

    def _require_minter(self, caller: str):
        if caller != self.minter:
            raise Unauthorized(f"{caller} is not the minter of {self.identifier}")

    @staticmethod
    def _require_positive(amount: int):
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount(f"Token amount must be a positive integer, got {amount!r}")

    def balance_of(self, address: str) -> int:
        raw = self.db.get_state(self._bal_key(address))
        return int(raw) if raw else 0

    def total_supply(self) -> int:
        raw = self.db.get_state(self._supply_key())
        return int(raw) if raw else 0

    def holders(self) -> Dict[str, int]:
        """All non-zero balances (address -> amount)."""
        prefix = f"tok:{self.identifier}:bal:"
        data = self.db.get_state_by_prefix(prefix)
        return {k[len(prefix):]: int(v) for k, v in data.items() if int(v) > 0}

    @contextmanager
    def stage(self) -> Iterator[TokenBatch]:
        with self._lock:
            yield TokenBatch(self)

    def mint(self, caller: str, to: str, amount: int) -> None:
        with self.stage() as batch:
            batch.mint(caller, to, amount)
            self.db.set_state_batch(batch.dirty_items())
        logger.debug(f"Minted {amount} {self.identifier} to {to} (supply {batch.total_supply()})")

    def burn(self, caller: str, holder: str, amount: int) -> None:
        with self.stage() as batch:
            batch.burn(caller, holder, amount)
            self.db.set_state_batch(batch.dirty_items())
        logger.debug(f"Burned {amount} {self.identifier} from {holder} (supply {batch.total_supply()})")

    def transfer(self, sender: str, to: str, amount: int) -> None:
        self._require_positive(amount)
        with self._lock:
            sender_balance = self.balance_of(sender)
            if sender_balance < amount:
                raise InsufficientBalance(f"Transfer of {amount} exceeds balance {sender_balance} of {sender}")
            if sender == to:
                return
            self.db.set_state_batch([
                (self._bal_key(sender), str(sender_balance - amount)),
                (self._bal_key(to), str(self.balance_of(to) + amount)),
            ])
