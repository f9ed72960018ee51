# MIT License
# Copyright (c) 2025 Hashborn

from enum import Enum

class OperationType(str, Enum):
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    DELEGATE = "DELEGATE"
    SETTLE_REWARDS = "SETTLE_REWARDS"
    CLAIM_WITHDRAWAL = "CLAIM_WITHDRAWAL"
    CANCEL_WITHDRAWAL = "CANCEL_WITHDRAWAL"
    UPDATE_SETTINGS = "UPDATE_SETTINGS"
    ACK_SLASHING = "ACK_SLASHING"
    RECORD_IN_DOUBT = "RECORD_IN_DOUBT"
    RESOLVE_IN_DOUBT = "RESOLVE_IN_DOUBT"

class WithdrawalState(str, Enum):
    PENDING = "PENDING"       # Waiting for the delegate unbonding delay
    CLAIMABLE = "CLAIMABLE"   # Unlock time reached, payout not finalized
    SETTLED = "SETTLED"       # Paid out (terminal)
    CANCELLED = "CANCELLED"   # Receipts restored to requester (terminal)

class ExchangeRateMode(str, Enum):
    STATIC = "static"     # 1 receipt == 1 base unit forever
    DYNAMIC = "dynamic"   # rate = total_managed_assets / receipt_supply

class DelegateCall(str, Enum):
    """Delegate calls with side effects; a timed-out one is recorded as in doubt."""
    DEPOSIT = "deposit"
    REQUEST_WITHDRAWAL = "request_withdrawal"
    CLAIM_WITHDRAWAL = "claim_withdrawal"


class ProtocolError(Exception):
    """Base class for every error surfaced by the staking core."""
    code = "PROTOCOL_ERROR"

class ValidationError(ProtocolError):
    code = "VALIDATION_ERROR"

class InvalidAmount(ValidationError):
    """Zero, below minimum, or malformed amount."""
    code = "INVALID_AMOUNT"

class InsufficientBalance(ValidationError):
    """Redemption exceeds the caller's receipt holdings."""
    code = "INSUFFICIENT_BALANCE"

class InvalidConfig(ValidationError):
    code = "INVALID_CONFIG"

class Unauthorized(ProtocolError):
    code = "UNAUTHORIZED"

class DelegateUnavailable(ProtocolError):
    """External delegate call failed, timed out, or returned garbage."""
    code = "DELEGATE_UNAVAILABLE"

class DelegateTimeout(DelegateUnavailable):
    """No answer in time. The call may still take effect on the delegate."""
    code = "DELEGATE_TIMEOUT"

class DelegateInDoubt(DelegateUnavailable):
    """Refused while a timed-out delegate call is unresolved."""
    code = "DELEGATE_IN_DOUBT"

class NotYetUnlocked(ProtocolError):
    code = "NOT_YET_UNLOCKED"

class SlashingToleranceExceeded(ProtocolError):
    """Reported delegate balance dropped by more than the configured tolerance."""
    code = "SLASHING_TOLERANCE_EXCEEDED"

class WithdrawalNotFound(ProtocolError):
    code = "WITHDRAWAL_NOT_FOUND"

class InvalidWithdrawalState(ProtocolError):
    code = "INVALID_WITHDRAWAL_STATE"

class InvariantViolation(ProtocolError):
    code = "INVARIANT_VIOLATION"
