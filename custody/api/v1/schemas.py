"""Request and response models for the v1 API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class WalletCreate(BaseModel):
    """Optional profile details stored alongside a new wallet."""

    email: Optional[str] = Field(None, description="Contact e-mail used for recipient lookups")
    name: Optional[str] = None


class WalletResponse(BaseModel):
    address: str
    chain: str
    created: bool
    explorer_url: str


class WalletAddressResponse(BaseModel):
    address: str
    chain: str
    explorer_url: str


class AssetBalanceResponse(BaseModel):
    symbol: str
    balance: str
    balance_raw: str
    decimals: int
    usd_value: float


class BalanceResponse(BaseModel):
    address: str
    eth: AssetBalanceResponse
    usdc: AssetBalanceResponse
    total_usd: float


class TransferInitiate(BaseModel):
    recipient: str = Field(..., description="0x address or registered e-mail")
    amount: Decimal = Field(..., gt=0)
    currency: str = Field("USDC", description="ETH or USDC")

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("recipient")
    @classmethod
    def strip_recipient(cls, value: str) -> str:
        return value.strip()


class ConfirmationHandleResponse(BaseModel):
    transaction_id: str
    confirmation_token: str
    expires_at: datetime
    expires_in: int
    from_address: str
    to_address: str
    amount: str
    currency: str
    estimated_fee_usd: str
    total_usd: str
    requires_2fa: bool
    recipient_email: Optional[str] = None


class TransferExecute(BaseModel):
    confirmation_token: str = Field(..., min_length=1)
    confirmed: bool = False


class ExecutionResponse(BaseModel):
    transaction_id: str
    status: str
    tx_hash: str
    explorer_url: str
    nonce: int
    gas_price: str
    gas_limit: int


class TransactionStatusResponse(BaseModel):
    id: str
    status: str
    type: str
    amount: str
    currency: str
    from_address: str
    to_address: str
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    confirmations: Optional[int] = None
    created_at: datetime
    executed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReconcileResponse(BaseModel):
    checked: int
    updated: int
    errors: int


class PaginationResponse(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class TransactionHistoryResponse(BaseModel):
    transactions: List[TransactionStatusResponse]
    pagination: PaginationResponse


class LimitsResponse(BaseModel):
    """Spending limits for the caller's KYC tier and what is left of them in USD."""

    tier: int
    per_transaction_usd: str
    daily_usd: str
    monthly_usd: str
    requires_2fa: bool
    spent_today_usd: str
    spent_this_month_usd: str
    remaining_today_usd: str
    remaining_this_month_usd: str
