from pydantic import BaseModel, Field
from typing import Optional, List
from .withdrawal import WithdrawalRequest

class StakeResult(BaseModel):
    caller: str
    amount: int
    receipts_minted: int
    exchange_rate: str           # Decimal string, 18 places

class UnstakeResult(BaseModel):
    caller: str
    receipt_amount: int
    base_amount: int
    payout: int = 0                                # Paid immediately (0 if deferred)
    withdrawal: Optional[WithdrawalRequest] = None

    @property
    def deferred(self) -> bool:
        return self.withdrawal is not None

class SettlementReport(BaseModel):
    reported_total: int
    known_total: int
    new_rewards: int = 0
    fee: int = 0
    fee_receipts_minted: int = 0
    slashed: int = 0
    exchange_rate_before: str
    exchange_rate_after: str

class SweepResult(BaseModel):
    marked_claimable: List[str] = Field(default_factory=list)
    settled: List[str] = Field(default_factory=list)
    reclaimed: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
