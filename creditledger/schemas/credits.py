from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from creditledger.models.ledger import LedgerReason
from creditledger.models.subscription import SubscriptionStatus

# ── Requests ─────────────────────────────────────────────


class SpendRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    amount: int = Field(gt=0)
    reason: Literal[
        "usage_spend", "manual_adjustment", "plan_change_adjustment"
    ] = "usage_spend"
    reference: str = Field(default="", max_length=255)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)


class GrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    amount: int = Field(gt=0)
    reason: Literal[
        "monthly_grant", "manual_adjustment", "refund", "plan_change_adjustment"
    ] = "manual_adjustment"
    reference: str = Field(default="", max_length=255)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)


class RefundRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    idempotency_key: str = Field(min_length=1, max_length=255)


# ── Responses ────────────────────────────────────────────


class LedgerResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    ok: bool
    new_balance: int
    entry_id: UUID | None = None
    replayed: bool = False
    error: str | None = None


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    user_id: str
    delta: int
    balance_after: int
    reason: LedgerReason
    reference: str
    idempotency_key: str
    created_at: datetime


class CreditStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    balance: int
    plan_slug: str
    status: SubscriptionStatus
    monthly_credit_grant: int
    max_profiles: int
    feature_flags: dict
    cycle_start: datetime | None = None
    cycle_end: datetime | None = None
    last_synced_at: datetime | None = None
    usage_this_cycle: int = 0


class BalanceAuditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    balance: int
    ledger_sum: int
    consistent: bool
