from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from creditledger.models.subscription import SubscriptionStatus


class BillingPlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    slug: str
    name: str
    monthly_credit_grant: int
    price_cents: int
    max_profiles: int
    feature_flags: dict | None = None


class SubscriptionSyncRequest(BaseModel):
    email: str | None = Field(default=None, max_length=255)


class SubscriptionSyncRead(BaseModel):
    user_id: str
    plan_slug: str
    status: SubscriptionStatus
    current_period_end: datetime | None = None
    subscribed: bool
    stale: bool
    changed: bool
    granted: int = 0
    balance: int
    last_synced_at: datetime | None = None


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: str | None = None
