from pydantic import BaseModel, Field
from typing import List, Optional
from .common import DelegateCall

class InDoubtOperation(BaseModel):
    """A delegate call that timed out and may or may not have taken effect."""
    op_id: int = 0
    kind: DelegateCall
    amount: int = 0                          # Deposit or unbonding amount; expected return for claims
    withdrawal_handle: Optional[str] = None  # Claims only
    recorded_at: int

class PoolLedger(BaseModel):
    """Pooled accounting scalars owned by the staking core (minimal units)."""
    total_principal: int = 0            # Net deposited principal
    undelegated_principal: int = 0      # Held locally, redemption buffer
    delegated_principal: int = 0        # Sent to the delegate (last known)
    unbonding_principal: int = 0        # Pool funds in flight back from the delegate
    escrowed_liquidity: int = 0         # Local funds reserved for pending withdrawals
    accrued_rewards: int = 0            # Recognized rewards still in the pool
    accrued_fees: int = 0               # Fee liability not yet minted to treasury
    unreclaimed_loss: int = 0           # Part of unbonding_principal the delegate did not return

    # Slashing
    slashing_allowance: int = 0         # Loss acknowledged by operator for next settlement
    total_slashed: int = 0

    # Counters
    withdrawal_nonce: int = 0
    total_fee_receipts_minted: int = 0
    last_settled_at: Optional[int] = None

    # Timed-out delegate calls awaiting operator resolution
    in_doubt: List[InDoubtOperation] = []
    in_doubt_nonce: int = 0

    def total_managed_assets(self) -> int:
        """Assets backing the receipt supply."""
        return (
            self.undelegated_principal
            + self.delegated_principal
            + self.unbonding_principal
            + self.accrued_rewards
            - self.accrued_fees
        )

    def held_at_delegate(self) -> int:
        """What the delegate should be reporting as bonded + accrued."""
        return self.delegated_principal + self.accrued_rewards

class DelegateBalances(BaseModel):
    """Advisory balance report from the staking delegate."""
    delegated_principal: int = Field(ge=0)   # Bonded balance, including compounded rewards
    accrued_rewards: int = Field(ge=0)       # Rewards not yet compounded

    def total(self) -> int:
        return self.delegated_principal + self.accrued_rewards
