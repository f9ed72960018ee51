from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from .common import ExchangeRateMode
from ..crypto.addresses import is_valid_address

def _check_treasury(value: Optional[str]) -> Optional[str]:
    # The account prefix is checked by the core against its network config
    if value is not None and not is_valid_address(value):
        raise ValueError("treasury_address is not a valid bech32 account address")
    return value

class Settings(BaseModel):
    """Protocol-wide configuration snapshot."""
    model_config = ConfigDict(validate_assignment=True)

    receipt_token_identifier: str                  # Resolves the receipt token component
    delegate_identifier: str                       # Resolves the staking delegate component
    fee_rate_bps: int = Field(ge=0, le=10_000)     # Fee on new rewards, basis points
    minimum_stake: int = Field(ge=0)               # Smallest accepted deposit
    treasury_address: Optional[str] = None         # Receives fee receipts (None = accrue)

    slashing_tolerance_bps: int = Field(default=100, ge=0, le=10_000)
    auto_delegate_threshold: int = Field(default=0, ge=0)   # 0 = disabled
    liquidity_buffer: int = Field(default=0, ge=0)
    exchange_rate_mode: ExchangeRateMode = ExchangeRateMode.DYNAMIC
    settle_on_user_ops: bool = False

    @field_validator("treasury_address")
    @classmethod
    def check_treasury(cls, value):
        return _check_treasury(value)

class SettingsUpdate(BaseModel):
    """Partial settings change. Only fields that are set get applied."""
    model_config = ConfigDict(extra="forbid")

    receipt_token_identifier: Optional[str] = None
    delegate_identifier: Optional[str] = None
    fee_rate_bps: Optional[int] = Field(default=None, ge=0, le=10_000)
    minimum_stake: Optional[int] = Field(default=None, ge=0)
    treasury_address: Optional[str] = None
    slashing_tolerance_bps: Optional[int] = Field(default=None, ge=0, le=10_000)
    auto_delegate_threshold: Optional[int] = Field(default=None, ge=0)
    liquidity_buffer: Optional[int] = Field(default=None, ge=0)
    exchange_rate_mode: Optional[ExchangeRateMode] = None
    settle_on_user_ops: Optional[bool] = None

    @field_validator("treasury_address")
    @classmethod
    def check_treasury(cls, value):
        return _check_treasury(value)
