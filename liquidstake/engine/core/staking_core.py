# MIT License
# Copyright (c) 2025 Hashborn

"""
Liquid staking core.

Owns the pooled ledger and the settings, holds mint/burn authority over the
receipt token, and is the only caller of the staking delegate.

Every public mutator is one atomic, serialized operation:

    clone state -> mutate clone -> check invariants -> persist (one sqlite tx)
    -> swap clone in -> emit events

Receipt mints/burns are staged in a TokenBatch and written in the same sqlite
transaction as the ledger, so an operation that aborts or dies before the
commit leaves neither the ledger nor the receipt supply changed.

A delegate call that times out may still land. The core records it as an
in-doubt delegate operation and refuses to settle rewards until the operator
resolves it with resolve_in_doubt().
"""

from typing import Optional, List, Tuple, Callable, Any, Dict, Union
from fractions import Fraction
import json
import logging
import threading
import time
from pydantic import ValidationError as PydanticValidationError

from ...protocol.types.common import (
    OperationType, WithdrawalState, DelegateCall, ProtocolError, InvalidAmount, InsufficientBalance,
    InvalidConfig, Unauthorized, DelegateUnavailable, DelegateTimeout, DelegateInDoubt, NotYetUnlocked,
    SlashingToleranceExceeded, WithdrawalNotFound, InvalidWithdrawalState,
)
from ...protocol.types.ledger import PoolLedger, InDoubtOperation
from ...protocol.types.settings import Settings, SettingsUpdate
from ...protocol.types.withdrawal import WithdrawalRequest
from ...protocol.types.results import StakeResult, UnstakeResult, SettlementReport, SweepResult
from ...protocol.crypto.addresses import address_from_name, is_valid_address
from ...protocol.crypto.hash import withdrawal_handle
from ...protocol.config.params import CURRENT_NETWORK, NetworkConfig
from ...protocol.config.economic_model import ECONOMIC_CONFIG, EconomicConfig
from ..storage.db import StorageDB
from ..observability.metrics import record_operation, record_failure
from .state import LedgerState
from .delegate import StakingDelegate, GuardedDelegate
from .receipt_token import ReceiptToken, StoredReceiptToken, TokenBatch
from .exchange_rate import (
    exchange_rate, receipts_for_deposit, assets_for_receipts, split_redemption,
    fee_receipts, format_rate,
)
from .events import EventBus, event_bus
from . import events as ev

logger = logging.getLogger(__name__)


def _require_amount(amount: Any, what: str = "amount") -> int:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidAmount(f"{what} must be an integer in minimal units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"{what} must be > 0, got {amount}")
    return amount


class _Operation:
    """Working set of one in-flight operation."""

    def __init__(self, core: 'StakingCore', state: LedgerState, tokens: TokenBatch):
        self.core = core
        self.state = state
        self.tokens = tokens
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.in_doubt: Optional[InDoubtOperation] = None

    @property
    def ledger(self) -> PoolLedger:
        return self.state.ledger

    @property
    def settings(self) -> Settings:
        return self.state.settings

    def supply(self) -> int:
        return self.tokens.total_supply()

    def mint(self, to: str, amount: int):
        if amount <= 0:
            return
        self.tokens.mint(self.core.address, to, amount)

    def burn(self, holder: str, amount: int):
        self.tokens.burn(self.core.address, holder, amount)

    def emit(self, event_type: str, **data):
        self.events.append((event_type, data))

    def call_delegate(self, kind: DelegateCall, method: Callable, *args,
                      amount: int = 0, withdrawal_handle: Optional[str] = None) -> Any:
        """Call the guarded delegate, remembering the call if it times out."""
        try:
            return method(*args)
        except DelegateTimeout:
            self.in_doubt = InDoubtOperation(kind=kind, amount=amount, withdrawal_handle=withdrawal_handle,
                                             recorded_at=self.core.clock())
            raise


class StakingCore:
    def __init__(self, db_path: str, delegate: StakingDelegate,
                 operator: Optional[str] = None,
                 treasury_address: Optional[str] = None,
                 token: Optional[ReceiptToken] = None,
                 config: Optional[NetworkConfig] = None,
                 economics: Optional[EconomicConfig] = None,
                 genesis_settings: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], int] = None,
                 events: Optional[EventBus] = None):
        self.config = config or CURRENT_NETWORK
        self.economics = economics or ECONOMIC_CONFIG
        self.clock = clock or (lambda: int(time.time()))
        self.events = events or event_bus
        self._lock = threading.RLock()

        self.db = StorageDB(db_path)
        prefix = self.config.bech32_prefix_acc
        self.address = address_from_name(f"{self.config.chain_id}:staking-core", prefix=prefix)

        if token is None:
            token_id = address_from_name(f"{self.config.chain_id}:{self.config.receipt_token_name}", prefix=prefix)
            token = StoredReceiptToken(self.db, identifier=token_id, minter=self.address)
        if token.minter != self.address:
            raise InvalidConfig(f"Receipt token {token.identifier} must be minted by the core ({self.address})")
        if token.db is not self.db:
            raise InvalidConfig(f"Receipt token {token.identifier} must be stored with the ledger")
        self.token = token

        self.delegate = GuardedDelegate(delegate, timeout_sec=self.config.delegate_timeout_sec, clock=self.clock)

        self.state = LedgerState.load(self.db)
        self._load_or_init_genesis(operator, treasury_address, genesis_settings or {})

    def _load_or_init_genesis(self, operator: Optional[str], treasury_address: Optional[str],
                              overrides: Dict[str, Any]):
        if self.state.is_initialized:
            settings = self.state.settings
            if settings.receipt_token_identifier != self.token.identifier:
                raise InvalidConfig(
                    f"Stored receipt token {settings.receipt_token_identifier} != configured {self.token.identifier}"
                )
            if settings.delegate_identifier != self.delegate.identifier:
                raise InvalidConfig(
                    f"Stored delegate {settings.delegate_identifier} != configured {self.delegate.identifier}"
                )
            if operator and operator != self.state.operator:
                logger.warning(f"Ignoring operator {operator}; ledger is owned by {self.state.operator}")
            logger.info(
                f"Staking core loaded: principal={self.state.ledger.total_principal}, "
                f"supply={self.token.total_supply()}, rate={format_rate(self.exchange_rate())}"
            )
            return

        if not operator:
            raise InvalidConfig("An operator address is required to initialize a new staking core")

        econ = self.economics
        values = {
            "receipt_token_identifier": self.token.identifier,
            "delegate_identifier": self.delegate.identifier,
            "fee_rate_bps": econ.fee_rate_bps,
            "minimum_stake": econ.minimum_stake,
            "treasury_address": treasury_address,
            "slashing_tolerance_bps": econ.slashing_tolerance_bps,
            "auto_delegate_threshold": econ.auto_delegate_threshold,
            "liquidity_buffer": econ.liquidity_buffer,
        }
        values.update(overrides)
        try:
            settings = Settings.model_validate(values)
        except PydanticValidationError as e:
            raise InvalidConfig(f"Invalid genesis settings: {e}") from e
        self._require_treasury_prefix(settings.treasury_address)

        state = LedgerState(self.db, settings=settings, operator=operator)
        state.persist(operation=("GENESIS", operator, settings.model_dump_json()))
        self.state = state
        logger.info(
            f"Staking core initialized on {self.config.network_id}: operator={operator}, "
            f"token={settings.receipt_token_identifier}, delegate={settings.delegate_identifier}"
        )

    # ═══════════════════════════════════════════════════════════════════
    # OPERATION RUNNER
    # ═══════════════════════════════════════════════════════════════════

    def _run(self, op_type: OperationType, caller: str, body: Callable[[_Operation], Any],
             payload: Optional[Dict[str, Any]] = None) -> Any:
        with self._lock, self.token.stage() as tokens:
            op = _Operation(self, self.state.clone(), tokens)
            try:
                result = body(op)
                op.state.check_invariants()
                op.state.persist(operation=(op_type.value, caller, json.dumps(payload or {})),
                                 extra_items=tokens.dirty_items())
            except ProtocolError as e:
                record_failure(op_type.value, e.code)
                logger.warning(f"{op_type.value} by {caller} aborted: {e.code}: {e}")
                if op.in_doubt is not None:
                    self._record_in_doubt(caller, op.in_doubt)
                raise
            except Exception as e:
                record_failure(op_type.value, type(e).__name__)
                logger.error(f"{op_type.value} by {caller} aborted unexpectedly: {e}", exc_info=True)
                raise
            self.state = op.state

        record_operation(op_type.value)
        for event_type, data in op.events:
            self.events.emit(event_type, **data)
        return result

    def _record_in_doubt(self, caller: str, record: InDoubtOperation):
        """Commit a timed-out delegate call on its own, after its operation aborted."""
        state = self.state.clone()
        lg = state.ledger
        record.op_id = lg.in_doubt_nonce
        lg.in_doubt_nonce += 1
        lg.in_doubt.append(record)
        state.persist(operation=(OperationType.RECORD_IN_DOUBT.value, caller, record.model_dump_json()))
        self.state = state

        record_operation(OperationType.RECORD_IN_DOUBT.value)
        logger.error(
            f"⚠️  Delegate {record.kind.value} #{record.op_id} (amount {record.amount}) timed out and may "
            f"still land; settlement is blocked until the operator resolves it"
        )
        self.events.emit(ev.DELEGATE_CALL_IN_DOUBT, **record.model_dump(mode="json"))

    def _require_operator(self, caller: str):
        if caller != self.state.operator:
            raise Unauthorized(f"{caller} is not the operator")

    def _require_treasury_prefix(self, treasury_address: Optional[str]):
        prefix = self.config.bech32_prefix_acc
        if treasury_address is not None and not is_valid_address(treasury_address, prefix):
            raise InvalidConfig(f"treasury_address {treasury_address} is not a '{prefix}' address")

    def _require_not_in_doubt(self, op: _Operation, handle: str):
        for record in op.ledger.in_doubt:
            if record.withdrawal_handle == handle:
                raise DelegateInDoubt(
                    f"Claim of {handle} timed out earlier (in-doubt #{record.op_id}); resolve it first"
                )

    def _rate(self, ledger: PoolLedger, supply: int, settings: Settings) -> Fraction:
        return exchange_rate(ledger.total_managed_assets(), supply, settings.exchange_rate_mode)

    # ═══════════════════════════════════════════════════════════════════
    # STAKE PATH
    # ═══════════════════════════════════════════════════════════════════

    def user_stake(self, caller: str, amount: int) -> StakeResult:
        """
        Deposit `amount` base units and mint receipts to `caller` at the current rate.

        Raises:
            InvalidAmount: zero, malformed, below minimum stake, or pool insolvent
        """
        _require_amount(amount)

        def body(op: _Operation) -> StakeResult:
            if amount < op.settings.minimum_stake:
                raise InvalidAmount(f"Stake {amount} below minimum {op.settings.minimum_stake}")
            if op.settings.settle_on_user_ops:
                self._apply_settlement(op, strict=False)

            lg = op.ledger
            supply = op.supply()
            receipts = receipts_for_deposit(amount, lg.total_managed_assets(), supply,
                                            op.settings.exchange_rate_mode)
            if receipts <= 0:
                raise InvalidAmount(f"Stake {amount} is too small to mint any receipts")

            lg.total_principal += amount
            lg.undelegated_principal += amount
            op.mint(caller, receipts)

            rate = format_rate(self._rate(lg, supply + receipts, op.settings))
            op.emit(ev.STAKED, caller=caller, amount=amount, receipts=receipts, rate=rate)
            logger.info(f"Staked {amount} from {caller}: minted {receipts} receipts (rate {rate})")
            return StakeResult(caller=caller, amount=amount, receipts_minted=receipts, exchange_rate=rate)

        result = self._run(OperationType.STAKE, caller, body, {"amount": amount})
        self._maybe_auto_delegate()
        return result

    def delegate_principal(self, caller: str, amount: int) -> int:
        """
        Forward `amount` of undelegated principal to the staking delegate.

        Raises:
            Unauthorized: caller is not the operator
            InvalidAmount: zero or more than the undelegated buffer
            DelegateUnavailable: delegate rejected or failed (nothing moved)
        """
        self._require_operator(caller)
        return self._delegate(caller, amount)

    def _delegate(self, caller: str, amount: int) -> int:
        _require_amount(amount)

        def body(op: _Operation) -> int:
            lg = op.ledger
            if amount > lg.undelegated_principal:
                raise InvalidAmount(
                    f"Cannot delegate {amount}; only {lg.undelegated_principal} undelegated"
                )
            op.call_delegate(DelegateCall.DEPOSIT, self.delegate.deposit, amount, amount=amount)
            lg.undelegated_principal -= amount
            lg.delegated_principal += amount
            op.emit(ev.PRINCIPAL_DELEGATED, amount=amount,
                    undelegated=lg.undelegated_principal, delegated=lg.delegated_principal)
            logger.info(f"Delegated {amount} to {self.delegate.identifier} (buffer now {lg.undelegated_principal})")
            return amount

        return self._run(OperationType.DELEGATE, caller, body, {"amount": amount})

    def _maybe_auto_delegate(self):
        settings = self.state.settings
        if settings.auto_delegate_threshold <= 0:
            return
        undelegated = self.state.ledger.undelegated_principal
        if undelegated <= settings.auto_delegate_threshold:
            return
        amount = undelegated - settings.liquidity_buffer
        if amount <= 0:
            return
        try:
            self._delegate(self.address, amount)
        except ProtocolError as e:
            # The stake itself is already committed; delegation is retried on the next trigger
            logger.warning(f"Auto-delegation of {amount} failed: {e}")

    # ═══════════════════════════════════════════════════════════════════
    # UNSTAKE PATH
    # ═══════════════════════════════════════════════════════════════════

    def user_unstake(self, caller: str, receipt_amount: int) -> UnstakeResult:
        """
        Burn `receipt_amount` receipts and redeem them for base asset.

        Pays out immediately when the local buffer covers the redemption;
        otherwise opens a WithdrawalRequest against the delegate for the shortfall.

        Raises:
            InvalidAmount: zero or malformed amount, or redemption worth nothing
            InsufficientBalance: caller holds fewer receipts
            DelegateUnavailable: withdrawal request could not be placed (nothing burned)
        """
        _require_amount(receipt_amount, "receipt_amount")

        def body(op: _Operation) -> UnstakeResult:
            balance = op.tokens.balance_of(caller)
            if balance < receipt_amount:
                raise InsufficientBalance(f"{caller} holds {balance} receipts, cannot redeem {receipt_amount}")
            if op.settings.settle_on_user_ops:
                self._apply_settlement(op, strict=False)

            lg = op.ledger
            supply = op.supply()
            tma = lg.total_managed_assets()
            mode = op.settings.exchange_rate_mode
            base_amount = assets_for_receipts(receipt_amount, tma, supply, mode)
            if base_amount <= 0:
                raise InvalidAmount(f"{receipt_amount} receipts redeem for nothing")
            principal_part, reward_part = split_redemption(base_amount, lg.total_principal, tma)

            op.burn(caller, receipt_amount)
            account = op.state.get_account(caller)

            if lg.undelegated_principal >= base_amount:
                lg.undelegated_principal -= base_amount
                lg.total_principal -= principal_part
                lg.accrued_rewards -= reward_part
                lg.delegated_principal += reward_part

                account.balance += base_amount
                account.total_redeemed += base_amount
                op.state.set_account(account)

                rate = format_rate(self._rate(lg, supply - receipt_amount, op.settings))
                op.emit(ev.UNSTAKED, caller=caller, receipt_amount=receipt_amount,
                        base_amount=base_amount, rate=rate)
                logger.info(f"Unstaked {receipt_amount} receipts for {caller}: paid {base_amount} from buffer")
                return UnstakeResult(caller=caller, receipt_amount=receipt_amount,
                                     base_amount=base_amount, payout=base_amount)

            local_portion = lg.undelegated_principal
            shortfall = base_amount - local_portion
            if shortfall > lg.delegated_principal + reward_part:
                raise DelegateUnavailable(
                    f"Delegate liquidity {lg.delegated_principal + reward_part} cannot cover {shortfall}; "
                    f"retry after unbonding funds return"
                )

            delegate_handle, unlock_timestamp = op.call_delegate(
                DelegateCall.REQUEST_WITHDRAWAL, self.delegate.request_withdrawal, shortfall, amount=shortfall
            )

            lg.undelegated_principal = 0
            lg.escrowed_liquidity += local_portion
            lg.total_principal -= principal_part
            lg.accrued_rewards -= reward_part
            lg.delegated_principal += reward_part - shortfall

            handle = withdrawal_handle(caller, lg.withdrawal_nonce, delegate_handle)
            lg.withdrawal_nonce += 1
            request = WithdrawalRequest(
                handle=handle,
                requester=caller,
                receipt_amount=receipt_amount,
                amount_requested=base_amount,
                local_portion=local_portion,
                delegate_portion=shortfall,
                delegate_handle=delegate_handle,
                request_timestamp=self.clock(),
                unlock_timestamp=unlock_timestamp,
            )
            op.state.set_withdrawal(request)
            account.withdrawal_handles.append(handle)
            op.state.set_account(account)

            op.emit(ev.WITHDRAWAL_REQUESTED, caller=caller, handle=handle, receipt_amount=receipt_amount,
                    base_amount=base_amount, unlock_timestamp=unlock_timestamp)
            logger.info(
                f"Unstaked {receipt_amount} receipts for {caller}: {base_amount} deferred as {handle} "
                f"(local {local_portion}, delegate {shortfall}, unlocks {unlock_timestamp})"
            )
            return UnstakeResult(caller=caller, receipt_amount=receipt_amount,
                                 base_amount=base_amount, withdrawal=request)

        return self._run(OperationType.UNSTAKE, caller, body, {"receipt_amount": receipt_amount})

    # ═══════════════════════════════════════════════════════════════════
    # WITHDRAWAL REQUESTS
    # ═══════════════════════════════════════════════════════════════════

    def _load_open_request(self, op: _Operation, caller: str, handle: str,
                           authorized: bool = False) -> WithdrawalRequest:
        request = op.state.get_withdrawal(handle)
        if request is None:
            raise WithdrawalNotFound(f"No withdrawal request {handle}")
        if not authorized and caller not in (request.requester, op.state.operator):
            raise Unauthorized(f"{caller} may not act on withdrawal {handle}")
        if not request.is_open():
            raise InvalidWithdrawalState(f"Withdrawal {handle} is {request.state.value}")
        return request

    def claim_withdrawal(self, caller: str, handle: str) -> int:
        """
        Finalize a withdrawal request once its unlock time has passed.

        Returns:
            Base-asset amount paid to the requester

        Raises:
            WithdrawalNotFound, Unauthorized, InvalidWithdrawalState,
            NotYetUnlocked, DelegateUnavailable
        """
        return self._claim(caller, handle, authorized=False)

    def _claim(self, caller: str, handle: str, authorized: bool) -> int:
        def body(op: _Operation) -> int:
            request = self._load_open_request(op, caller, handle, authorized)
            now = self.clock()
            if not request.is_unlocked(now):
                raise NotYetUnlocked(f"Withdrawal {handle} unlocks at {request.unlock_timestamp}, now {now}")
            self._require_not_in_doubt(op, handle)

            returned = op.call_delegate(
                DelegateCall.CLAIM_WITHDRAWAL, self.delegate.claim_withdrawal, request.delegate_handle,
                amount=request.delegate_portion, withdrawal_handle=handle,
            )
            return self._finish_claim(op, request, returned)

        return self._run(OperationType.CLAIM_WITHDRAWAL, caller, body, {"handle": handle})

    def _finish_claim(self, op: _Operation, request: WithdrawalRequest, returned: int) -> int:
        handle = request.handle
        lg = op.ledger
        lg.escrowed_liquidity -= request.local_portion
        from_delegate = min(returned, request.delegate_portion)
        excess = returned - request.delegate_portion
        if excess > 0:
            lg.undelegated_principal += excess
            lg.total_principal += excess
            logger.warning(f"Delegate returned {excess} more than requested for {handle}; added to buffer")
        elif excess < 0:
            logger.warning(f"Delegate returned {returned} of {request.delegate_portion} for {handle}")

        payout = request.local_portion + from_delegate
        account = op.state.get_account(request.requester)
        account.balance += payout
        account.total_redeemed += payout
        op.state.set_account(account)

        request.state = WithdrawalState.SETTLED
        request.amount_paid = payout
        request.delegate_claimed = True
        request.settled_at = self.clock()
        op.state.set_withdrawal(request)

        op.emit(ev.WITHDRAWAL_CLAIMED, handle=handle, requester=request.requester, payout=payout)
        logger.info(f"Withdrawal {handle} settled: paid {payout} to {request.requester}")
        return payout

    def cancel_withdrawal(self, caller: str, handle: str) -> int:
        """
        Cancel an open withdrawal and restore the requester's position as receipts
        minted at the current rate. The delegate leg keeps unbonding and is
        reclaimed into the pool by process_withdrawals.

        Returns:
            Receipts minted back to the requester
        """
        def body(op: _Operation) -> int:
            request = self._load_open_request(op, caller, handle)
            lg = op.ledger
            supply = op.supply()
            receipts = receipts_for_deposit(request.amount_requested, lg.total_managed_assets(),
                                            supply, op.settings.exchange_rate_mode)

            lg.escrowed_liquidity -= request.local_portion
            lg.undelegated_principal += request.local_portion
            lg.unbonding_principal += request.delegate_portion
            lg.total_principal += request.amount_requested

            request.state = WithdrawalState.CANCELLED
            request.settled_at = self.clock()
            op.state.set_withdrawal(request)
            op.mint(request.requester, receipts)

            op.emit(ev.WITHDRAWAL_CANCELLED, handle=handle, requester=request.requester, receipts=receipts)
            logger.info(f"Withdrawal {handle} cancelled: re-minted {receipts} receipts to {request.requester}")
            return receipts

        return self._run(OperationType.CANCEL_WITHDRAWAL, caller, body, {"handle": handle})

    def _mark_claimable(self, caller: str, handle: str):
        def body(op: _Operation):
            request = op.state.get_withdrawal(handle)
            if request is None or request.state != WithdrawalState.PENDING:
                return
            request.state = WithdrawalState.CLAIMABLE
            op.state.set_withdrawal(request)
            op.emit(ev.WITHDRAWAL_CLAIMABLE, handle=handle, requester=request.requester)

        self._run(OperationType.CLAIM_WITHDRAWAL, caller, body, {"handle": handle, "mark": "claimable"})

    def _reclaim(self, caller: str, handle: str) -> int:
        """Collect the delegate leg of a cancelled request back into the buffer."""
        def body(op: _Operation) -> int:
            request = op.state.get_withdrawal(handle)
            if request is None or request.state != WithdrawalState.CANCELLED or request.delegate_claimed:
                raise InvalidWithdrawalState(f"Withdrawal {handle} has nothing to reclaim")
            now = self.clock()
            if not request.is_unlocked(now):
                raise NotYetUnlocked(f"Withdrawal {handle} unlocks at {request.unlock_timestamp}, now {now}")
            self._require_not_in_doubt(op, handle)

            returned = op.call_delegate(
                DelegateCall.CLAIM_WITHDRAWAL, self.delegate.claim_withdrawal, request.delegate_handle,
                amount=request.delegate_portion, withdrawal_handle=handle,
            )
            return self._finish_reclaim(op, request, returned)

        return self._run(OperationType.CLAIM_WITHDRAWAL, caller, body, {"handle": handle, "mark": "reclaim"})

    def _finish_reclaim(self, op: _Operation, request: WithdrawalRequest, returned: int) -> int:
        """
        Move what the delegate returned into the buffer. A shortfall stays in
        unbonding_principal as unreclaimed_loss until a settlement recognizes it
        under the slashing tolerance (or an acknowledgement).
        """
        handle = request.handle
        lg = op.ledger
        if returned >= request.delegate_portion:
            lg.unbonding_principal -= request.delegate_portion
            lg.total_principal += returned - request.delegate_portion
        else:
            deficit = request.delegate_portion - returned
            lg.unbonding_principal -= returned
            lg.unreclaimed_loss += deficit
            logger.warning(
                f"Reclaimed only {returned} of {request.delegate_portion} for {handle}; "
                f"{deficit} held as unreclaimed loss until the next settlement"
            )
        lg.undelegated_principal += returned

        request.delegate_claimed = True
        op.state.set_withdrawal(request)
        op.emit(ev.WITHDRAWAL_RECLAIMED, handle=handle, amount=returned)
        return returned

    def process_withdrawals(self, caller: str, limit: Optional[int] = None) -> SweepResult:
        """
        Settlement sweep. Marks unlocked requests Claimable, finalizes them one
        atomic operation at a time, and reclaims unbonded funds of cancelled
        requests. A failure on one request does not stop the sweep.
        """
        if limit is None:
            limit = self.config.max_withdrawals_per_sweep
        now = self.clock()
        result = SweepResult()

        with self._lock:
            candidates = [
                r for r in self.state.get_all_withdrawals()
                if r.is_unlocked(now) and (
                    r.is_open() or (r.state == WithdrawalState.CANCELLED and not r.delegate_claimed)
                )
            ][:limit]

        for request in candidates:
            handle = request.handle
            try:
                if request.state == WithdrawalState.CANCELLED:
                    self._reclaim(caller, handle)
                    result.reclaimed.append(handle)
                    continue
                if request.state == WithdrawalState.PENDING:
                    self._mark_claimable(caller, handle)
                    result.marked_claimable.append(handle)
                self._claim(caller, handle, authorized=True)
                result.settled.append(handle)
            except ProtocolError as e:
                logger.warning(f"Sweep could not finalize {handle}: {e.code}: {e}")
                result.failed.append(handle)

        if candidates:
            logger.info(
                f"Withdrawal sweep: {len(result.settled)} settled, {len(result.reclaimed)} reclaimed, "
                f"{len(result.failed)} failed"
            )
        return result

    # ═══════════════════════════════════════════════════════════════════
    # REWARD / FEE SETTLEMENT
    # ═══════════════════════════════════════════════════════════════════

    def settle_rewards(self, caller: str) -> SettlementReport:
        """
        Reconcile with the delegate's reported balances: recognize rewards, skim
        the fee as treasury receipts, or absorb a loss within slashing tolerance.
        Unreclaimed unbonding funds count toward the loss.

        Raises:
            Unauthorized: caller is not the operator
            DelegateUnavailable: report failed or was malformed
            DelegateInDoubt: a timed-out delegate call is unresolved
            SlashingToleranceExceeded: loss too large without acknowledgement
        """
        self._require_operator(caller)
        return self._run(OperationType.SETTLE_REWARDS, caller, self._apply_settlement)

    def _apply_settlement(self, op: _Operation, strict: bool = True) -> Optional[SettlementReport]:
        lg, settings = op.ledger, op.settings
        if lg.in_doubt:
            pending = ", ".join(f"#{r.op_id} {r.kind.value}" for r in lg.in_doubt)
            if not strict:
                logger.warning(f"Skipping settlement; unresolved delegate calls: {pending}")
                return None
            raise DelegateInDoubt(f"Unresolved delegate calls ({pending}) must be resolved before settlement")

        report = self.delegate.report_balances()
        known = lg.held_at_delegate()
        observed = report.total()
        delta = observed - known

        supply = op.supply()
        rate_before = self._rate(lg, supply, settings)
        new_rewards = fee = 0

        if delta > 0:
            new_rewards = delta
            fee = self.economics.split_rewards(new_rewards, settings.fee_rate_bps)["fee"]
            lg.accrued_rewards += new_rewards
            lg.accrued_fees += fee

        unreclaimed = lg.unreclaimed_loss
        delegate_loss = max(0, -delta)
        slashed = unreclaimed + delegate_loss
        if slashed > 0:
            managed = lg.total_managed_assets()
            if (self.economics.exceeds_tolerance(slashed, managed, settings.slashing_tolerance_bps)
                    and slashed > lg.slashing_allowance):
                logger.warning(
                    f"⚠️  Loss of {slashed} (delegate {observed} < {known}, unreclaimed {unreclaimed}) "
                    f"exceeds tolerance {settings.slashing_tolerance_bps} bps, operator acknowledgement required"
                )
                self.events.emit(ev.SLASHING_TOLERANCE_EXCEEDED, loss=slashed, known=known,
                                 observed=observed, unreclaimed=unreclaimed)
                raise SlashingToleranceExceeded(
                    f"Loss of {slashed} exceeds {settings.slashing_tolerance_bps} bps of {managed}"
                )

            # Rewards absorb the loss first; rewards at the delegate that cover
            # the unbonding deficit become delegated principal
            from_rewards = min(slashed, lg.accrued_rewards)
            rewards_for_delegate = min(from_rewards, delegate_loss)
            rewards_for_unbonding = from_rewards - rewards_for_delegate

            lg.accrued_rewards -= from_rewards
            lg.delegated_principal -= delegate_loss - rewards_for_delegate
            lg.delegated_principal += rewards_for_unbonding
            lg.unbonding_principal -= unreclaimed
            lg.total_principal -= slashed - from_rewards
            lg.unreclaimed_loss = 0

            lg.accrued_fees = min(lg.accrued_fees, lg.accrued_rewards)
            lg.total_slashed += slashed
            lg.slashing_allowance = 0
            from_principal = slashed - from_rewards
            op.emit(ev.SLASHING_APPLIED, loss=slashed, from_rewards=from_rewards, from_principal=from_principal)
            logger.warning(f"Applied slashing loss {slashed} (rewards {from_rewards}, principal {from_principal})")

        minted = 0
        if lg.accrued_fees > 0 and settings.treasury_address:
            minted = fee_receipts(lg.accrued_fees, lg.total_managed_assets(), supply, settings.exchange_rate_mode)
            lg.accrued_fees = 0
            if minted > 0:
                op.mint(settings.treasury_address, minted)
                lg.total_fee_receipts_minted += minted

        lg.last_settled_at = self.clock()
        rate_after = self._rate(lg, supply + minted, settings)

        settlement = SettlementReport(
            reported_total=observed,
            known_total=known,
            new_rewards=new_rewards,
            fee=fee,
            fee_receipts_minted=minted,
            slashed=slashed,
            exchange_rate_before=format_rate(rate_before),
            exchange_rate_after=format_rate(rate_after),
        )
        op.emit(ev.REWARDS_SETTLED, **settlement.model_dump())
        logger.info(
            f"Settled rewards: +{new_rewards} (fee {fee}, {minted} receipts to treasury), "
            f"slashed {slashed}, rate {settlement.exchange_rate_before} -> {settlement.exchange_rate_after}"
        )
        return settlement

    def acknowledge_slashing(self, caller: str, max_loss: int) -> None:
        """Allow the next settlement to absorb a loss of up to `max_loss`."""
        self._require_operator(caller)
        _require_amount(max_loss, "max_loss")

        def body(op: _Operation):
            op.ledger.slashing_allowance = max_loss
            op.emit(ev.SLASHING_ACKNOWLEDGED, operator=caller, max_loss=max_loss)
            logger.warning(f"Operator {caller} acknowledged slashing loss up to {max_loss}")

        self._run(OperationType.ACK_SLASHING, caller, body, {"max_loss": max_loss})

    # ═══════════════════════════════════════════════════════════════════
    # IN-DOUBT DELEGATE CALLS
    # ═══════════════════════════════════════════════════════════════════

    def resolve_in_doubt(self, caller: str, op_id: int, landed: bool,
                         delegate_handle: Optional[str] = None,
                         unlock_timestamp: Optional[int] = None,
                         returned: Optional[int] = None) -> InDoubtOperation:
        """
        Record the real outcome of a delegate call that timed out.

        With landed=False the call had no effect and the record is dropped.
        With landed=True the ledger catches up with the delegate:

            deposit             principal moves from the buffer to delegated
            request_withdrawal  the unbonding entry (`delegate_handle`,
                                `unlock_timestamp`) is tracked as a pool-owned
                                request and reclaimed by process_withdrawals
            claim_withdrawal    the withdrawal is finalized with `returned`

        Raises:
            Unauthorized: caller is not the operator
            InvalidConfig: unknown op_id or missing outcome details
        """
        self._require_operator(caller)

        def body(op: _Operation) -> InDoubtOperation:
            lg = op.ledger
            record = next((r for r in lg.in_doubt if r.op_id == op_id), None)
            if record is None:
                raise InvalidConfig(f"No in-doubt delegate call #{op_id}")
            lg.in_doubt = [r for r in lg.in_doubt if r.op_id != op_id]

            if landed:
                if record.kind == DelegateCall.DEPOSIT:
                    self._land_deposit(op, record)
                elif record.kind == DelegateCall.REQUEST_WITHDRAWAL:
                    self._land_withdrawal_request(op, record, delegate_handle, unlock_timestamp)
                else:
                    self._land_claim(op, record, returned)

            op.emit(ev.DELEGATE_CALL_RESOLVED, op_id=op_id, kind=record.kind.value, landed=landed)
            logger.warning(f"Operator {caller} resolved in-doubt {record.kind.value} #{op_id}: landed={landed}")
            return record

        payload = {"op_id": op_id, "landed": landed}
        if delegate_handle is not None:
            payload.update(delegate_handle=delegate_handle, unlock_timestamp=unlock_timestamp)
        if returned is not None:
            payload["returned"] = returned
        return self._run(OperationType.RESOLVE_IN_DOUBT, caller, body, payload)

    def _land_deposit(self, op: _Operation, record: InDoubtOperation):
        lg = op.ledger
        if record.amount > lg.undelegated_principal:
            raise InvalidAmount(
                f"Deposit #{record.op_id} of {record.amount} exceeds undelegated {lg.undelegated_principal}"
            )
        lg.undelegated_principal -= record.amount
        lg.delegated_principal += record.amount
        op.emit(ev.PRINCIPAL_DELEGATED, amount=record.amount,
                undelegated=lg.undelegated_principal, delegated=lg.delegated_principal)

    def _land_withdrawal_request(self, op: _Operation, record: InDoubtOperation,
                                 delegate_handle: Optional[str], unlock_timestamp: Optional[int]):
        if not isinstance(delegate_handle, str) or not delegate_handle:
            raise InvalidConfig("delegate_handle of the landed withdrawal is required")
        if not isinstance(unlock_timestamp, int) or isinstance(unlock_timestamp, bool):
            raise InvalidConfig("unlock_timestamp of the landed withdrawal is required")
        lg = op.ledger
        if record.amount > lg.delegated_principal:
            raise InvalidAmount(
                f"Withdrawal #{record.op_id} of {record.amount} exceeds delegated {lg.delegated_principal}"
            )
        lg.delegated_principal -= record.amount
        lg.unbonding_principal += record.amount

        # The unstake that placed it aborted, so the pool owns the unbonding funds
        now = self.clock()
        request = WithdrawalRequest(
            handle=withdrawal_handle(self.address, lg.withdrawal_nonce, delegate_handle),
            requester=self.address,
            receipt_amount=0,
            amount_requested=0,
            local_portion=0,
            delegate_portion=record.amount,
            delegate_handle=delegate_handle,
            request_timestamp=now,
            unlock_timestamp=unlock_timestamp,
            state=WithdrawalState.CANCELLED,
            settled_at=now,
        )
        lg.withdrawal_nonce += 1
        op.state.set_withdrawal(request)

    def _land_claim(self, op: _Operation, record: InDoubtOperation, returned: Optional[int]):
        if not isinstance(returned, int) or isinstance(returned, bool) or returned < 0:
            raise InvalidConfig(f"returned amount of claim #{record.op_id} is required, got {returned!r}")
        request = op.state.get_withdrawal(record.withdrawal_handle)
        if request is not None and request.is_open():
            self._finish_claim(op, request, returned)
        elif request is not None and request.state == WithdrawalState.CANCELLED and not request.delegate_claimed:
            self._finish_reclaim(op, request, returned)
        else:
            raise InvalidWithdrawalState(f"Withdrawal {record.withdrawal_handle} has no pending claim")

    # ═══════════════════════════════════════════════════════════════════
    # SETTINGS
    # ═══════════════════════════════════════════════════════════════════

    def view_settings(self) -> Settings:
        """Current configuration snapshot (pure read)."""
        return self.state.settings.model_copy(deep=True)

    def update_settings(self, caller: str, partial: Union[SettingsUpdate, Dict[str, Any]]) -> Settings:
        """
        Apply a partial settings change.

        Raises:
            Unauthorized: caller is not the operator
            InvalidConfig: out-of-range value, unknown field, or identifier change
        """
        self._require_operator(caller)
        if not isinstance(partial, SettingsUpdate):
            try:
                partial = SettingsUpdate.model_validate(partial)
            except PydanticValidationError as e:
                raise InvalidConfig(f"Invalid settings update: {e}") from e
        changes = partial.model_dump(exclude_unset=True, exclude_none=True)

        def body(op: _Operation) -> Settings:
            current = op.settings
            for bound in ("receipt_token_identifier", "delegate_identifier"):
                if bound in changes and changes[bound] != getattr(current, bound):
                    raise InvalidConfig(f"{bound} is bound at genesis and cannot be changed")
            try:
                updated = Settings.model_validate({**current.model_dump(), **changes})
            except PydanticValidationError as e:
                raise InvalidConfig(f"Invalid settings: {e}") from e
            if "treasury_address" in changes:
                self._require_treasury_prefix(updated.treasury_address)
            op.state.settings = updated
            op.emit(ev.SETTINGS_UPDATED, operator=caller,
                    changes={k: getattr(updated, k) for k in changes})
            logger.info(f"Settings updated by {caller}: {sorted(changes)}")
            return updated.model_copy(deep=True)

        payload = json.loads(partial.model_dump_json(exclude_unset=True, exclude_none=True))
        return self._run(OperationType.UPDATE_SETTINGS, caller, body, payload)

    # ═══════════════════════════════════════════════════════════════════
    # VIEWS
    # ═══════════════════════════════════════════════════════════════════

    @property
    def operator(self) -> str:
        return self.state.operator

    def ledger(self) -> PoolLedger:
        return self.state.ledger.model_copy(deep=True)

    def total_managed_assets(self) -> int:
        return self.state.ledger.total_managed_assets()

    def receipt_supply(self) -> int:
        return self.token.total_supply()

    def exchange_rate(self) -> Fraction:
        return self._rate(self.state.ledger, self.token.total_supply(), self.state.settings)

    def receipt_balance(self, address: str) -> int:
        return self.token.balance_of(address)

    def base_balance(self, address: str) -> int:
        with self._lock:
            return self.state.get_account(address).balance

    def get_withdrawal(self, handle: str) -> Optional[WithdrawalRequest]:
        with self._lock:
            request = self.state.get_withdrawal(handle)
            return request.model_copy(deep=True) if request else None

    def list_withdrawals(self, requester: Optional[str] = None,
                         state: Optional[WithdrawalState] = None) -> List[WithdrawalRequest]:
        with self._lock:
            requests = self.state.get_all_withdrawals()
        return [
            r.model_copy(deep=True) for r in requests
            if (requester is None or r.requester == requester) and (state is None or r.state == state)
        ]

    def in_doubt_operations(self) -> List[InDoubtOperation]:
        """Timed-out delegate calls waiting for resolve_in_doubt()."""
        with self._lock:
            return [r.model_copy() for r in self.state.ledger.in_doubt]

    def check_invariants(self):
        with self._lock:
            self.state.check_invariants()

    def recent_operations(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent journal entries, newest first."""
        return [
            {"seq": seq, "op_type": op_type, "caller": caller, "data": json.loads(data), "timestamp": ts}
            for seq, op_type, caller, data, ts in self.db.get_operations(limit)
        ]

    def close(self):
        self.delegate.shutdown()
        self.db.close()
