import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from creditledger.db import Base, TimestampMixin


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"


class Subscription(TimestampMixin, Base):
    """Cached mirror of the provider's subscription state for one user."""

    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    plan_slug: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active
    )
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), index=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(
        String(255), index=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class BillingPlan(TimestampMixin, Base):
    __tablename__ = "billing_plans"

    slug: Mapped[str] = mapped_column(String(80), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    monthly_credit_grant: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_price_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    max_profiles: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    feature_flags: Mapped[dict | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
