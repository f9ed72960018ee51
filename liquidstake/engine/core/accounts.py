from pydantic import BaseModel, Field
from typing import List

class Account(BaseModel):
    """Base-asset account of a user. Receives redemption payouts."""
    address: str
    balance: int = 0                 # Base asset paid out to this address
    total_redeemed: int = 0          # Lifetime payouts (informational)

    # Handles of withdrawal requests opened by this address
    withdrawal_handles: List[str] = Field(default_factory=list)
