from pydantic import BaseModel
from typing import Optional
from .common import WithdrawalState

class WithdrawalRequest(BaseModel):
    """Redemption waiting on delegate liquidity."""
    handle: str                  # wr... (derived from requester + nonce)
    requester: str               # Address that burned the receipts
    receipt_amount: int          # Receipts burned at request time
    amount_requested: int        # Base asset owed (local_portion + delegate_portion)
    local_portion: int           # Escrowed from the local buffer
    delegate_portion: int        # Requested from the delegate
    delegate_handle: str         # Handle returned by delegate.request_withdrawal
    request_timestamp: int
    unlock_timestamp: int        # From the delegate's unbonding delay
    state: WithdrawalState = WithdrawalState.PENDING

    amount_paid: int = 0
    delegate_claimed: bool = False   # Delegate leg collected (pool-side, used after cancel)
    settled_at: Optional[int] = None

    def is_open(self) -> bool:
        return self.state in (WithdrawalState.PENDING, WithdrawalState.CLAIMABLE)

    def is_unlocked(self, now: int) -> bool:
        return now >= self.unlock_timestamp
