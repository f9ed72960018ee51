# MIT License
# Copyright (c) 2025 Hashborn

from typing import Dict, Optional, List, Tuple, Iterable
import json
from .accounts import Account
from ...protocol.types.ledger import PoolLedger
from ...protocol.types.settings import Settings
from ...protocol.types.withdrawal import WithdrawalRequest
from ...protocol.types.common import InvariantViolation
from ..storage.db import StorageDB

LEDGER_KEY = "ledger"
SETTINGS_KEY = "settings"
OPERATOR_KEY = "operator"

class LedgerState:
    """
    Copy-on-write view of the core's persisted state.

    Mutators work on a clone(); the clone is persisted in one sqlite transaction
    and only then replaces the live state.
    """

    def __init__(self, db: StorageDB,
                 ledger: Optional[PoolLedger] = None,
                 settings: Optional[Settings] = None,
                 operator: Optional[str] = None,
                 accounts: Dict[str, Account] = None,
                 withdrawals: Dict[str, WithdrawalRequest] = None):
        self.db = db
        self.ledger = ledger if ledger is not None else PoolLedger()
        self.settings = settings
        self.operator = operator
        # Cache for modified/accessed accounts: address -> Account
        self._accounts: Dict[str, Account] = accounts if accounts is not None else {}
        # Cache for withdrawal requests: handle -> WithdrawalRequest
        self._withdrawals: Dict[str, WithdrawalRequest] = withdrawals if withdrawals is not None else {}

    @staticmethod
    def load(db: StorageDB) -> 'LedgerState':
        """Loads ledger scalars, settings and operator from DB (accounts/withdrawals lazily)."""
        state = LedgerState(db)
        raw_ledger = db.get_state(LEDGER_KEY)
        if raw_ledger:
            state.ledger = PoolLedger.model_validate_json(raw_ledger)
        raw_settings = db.get_state(SETTINGS_KEY)
        if raw_settings:
            state.settings = Settings.model_validate_json(raw_settings)
        raw_operator = db.get_state(OPERATOR_KEY)
        if raw_operator:
            state.operator = json.loads(raw_operator)
        return state

    @property
    def is_initialized(self) -> bool:
        return self.settings is not None and self.operator is not None

    def clone(self) -> 'LedgerState':
        """Creates a copy of the state (for a tentative operation)."""
        new_accounts = {k: v.model_copy(deep=True) for k, v in self._accounts.items()}
        new_withdrawals = {k: v.model_copy(deep=True) for k, v in self._withdrawals.items()}
        return LedgerState(
            self.db,
            ledger=self.ledger.model_copy(deep=True),
            settings=self.settings.model_copy(deep=True) if self.settings else None,
            operator=self.operator,
            accounts=new_accounts,
            withdrawals=new_withdrawals,
        )

    # --- Accounts ---
    def get_account(self, address: str) -> Account:
        if address in self._accounts:
            return self._accounts[address]

        # Try load from DB
        raw_json = self.db.get_state(f"acc:{address}")
        if raw_json:
            acc = Account.model_validate_json(raw_json)
            self._accounts[address] = acc
            return acc

        # Return generic new account
        return Account(address=address)

    def set_account(self, account: Account):
        """Updates account in local cache."""
        self._accounts[account.address] = account

    # --- Withdrawals ---
    def get_withdrawal(self, handle: str) -> Optional[WithdrawalRequest]:
        if handle in self._withdrawals:
            return self._withdrawals[handle]

        raw_json = self.db.get_state(f"wr:{handle}")
        if raw_json:
            req = WithdrawalRequest.model_validate_json(raw_json)
            self._withdrawals[handle] = req
            return req
        return None

    def set_withdrawal(self, request: WithdrawalRequest):
        self._withdrawals[request.handle] = request

    def get_all_withdrawals(self) -> List[WithdrawalRequest]:
        """Loads all withdrawal requests from DB + cache overlay, oldest first."""
        all_db_data = self.db.get_state_by_prefix("wr:")
        final: Dict[str, WithdrawalRequest] = {}

        for k, v in all_db_data.items():
            handle = k.split(":", 1)[1]
            final[handle] = WithdrawalRequest.model_validate_json(v)

        # Overlay cache
        for handle, req in self._withdrawals.items():
            final[handle] = req

        return sorted(final.values(), key=lambda r: (r.request_timestamp, r.handle))

    def open_withdrawals(self) -> List[WithdrawalRequest]:
        return [r for r in self.get_all_withdrawals() if r.is_open()]

    # --- Persistence ---
    def _dirty_items(self) -> List[Tuple[str, str]]:
        items = [(LEDGER_KEY, self.ledger.model_dump_json())]
        if self.settings is not None:
            items.append((SETTINGS_KEY, self.settings.model_dump_json()))
        if self.operator is not None:
            items.append((OPERATOR_KEY, json.dumps(self.operator)))
        for addr, acc in self._accounts.items():
            items.append((f"acc:{addr}", acc.model_dump_json()))
        for handle, req in self._withdrawals.items():
            items.append((f"wr:{handle}", req.model_dump_json()))
        return items

    def persist(self, operation: Optional[Tuple[str, str, str]] = None,
                extra_items: Iterable[Tuple[str, str]] = ()):
        """
        Writes ledger, settings, accounts and withdrawals to DB atomically,
        together with `extra_items` (staged receipt-token writes).
        """
        self.db.set_state_batch(self._dirty_items() + list(extra_items), operation=operation)

    # --- Invariants ---
    def check_invariants(self):
        """Raises InvariantViolation if the pooled accounting is inconsistent."""
        lg = self.ledger
        scalars = {
            "total_principal": lg.total_principal,
            "undelegated_principal": lg.undelegated_principal,
            "delegated_principal": lg.delegated_principal,
            "unbonding_principal": lg.unbonding_principal,
            "escrowed_liquidity": lg.escrowed_liquidity,
            "accrued_rewards": lg.accrued_rewards,
            "accrued_fees": lg.accrued_fees,
            "unreclaimed_loss": lg.unreclaimed_loss,
        }
        for name, value in scalars.items():
            if value < 0:
                raise InvariantViolation(f"{name} is negative: {value}")

        if lg.undelegated_principal > lg.total_principal:
            raise InvariantViolation(
                f"undelegated_principal {lg.undelegated_principal} exceeds total_principal {lg.total_principal}"
            )

        conserved = lg.undelegated_principal + lg.delegated_principal + lg.unbonding_principal
        if conserved != lg.total_principal:
            raise InvariantViolation(
                f"principal not conserved: undelegated+delegated+unbonding={conserved}, "
                f"total_principal={lg.total_principal}"
            )

        if lg.unreclaimed_loss > lg.unbonding_principal:
            raise InvariantViolation(
                f"unreclaimed_loss {lg.unreclaimed_loss} exceeds unbonding_principal {lg.unbonding_principal}"
            )

        if lg.accrued_fees > lg.accrued_rewards:
            raise InvariantViolation(
                f"accrued_fees {lg.accrued_fees} exceed accrued_rewards {lg.accrued_rewards}"
            )

        # Escrow must exactly cover the local portions of open requests.
        reserved = sum(r.local_portion for r in self.open_withdrawals())
        if reserved != lg.escrowed_liquidity:
            raise InvariantViolation(
                f"escrowed_liquidity {lg.escrowed_liquidity} != open local portions {reserved}"
            )
