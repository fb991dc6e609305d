"""Read access to the billing plan catalog."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from creditledger.config import settings
from creditledger.models.subscription import BillingPlan

logger = logging.getLogger(__name__)

DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "slug": "free",
        "name": "Free",
        "monthly_credit_grant": 10,
        "price_cents": 0,
        "max_profiles": 1,
        "feature_flags": {"advanced_analytics": False},
    },
    {
        "slug": "creator",
        "name": "Creator",
        "monthly_credit_grant": 100,
        "price_cents": 1999,
        "max_profiles": 3,
        "feature_flags": {"advanced_analytics": False},
    },
    {
        "slug": "pro",
        "name": "Pro",
        "monthly_credit_grant": 250,
        "price_cents": 3999,
        "max_profiles": 10,
        "feature_flags": {"advanced_analytics": True},
    },
    {
        "slug": "team",
        "name": "Team",
        "monthly_credit_grant": 1000,
        "price_cents": 9999,
        "max_profiles": 50,
        "feature_flags": {"advanced_analytics": True},
    },
)


class Plans:
    @staticmethod
    def get(db: Session, slug: str) -> BillingPlan | None:
        return db.get(BillingPlan, slug)

    @staticmethod
    def list(db: Session, is_active: bool | None = True) -> list[BillingPlan]:
        stmt = select(BillingPlan)
        if is_active is not None:
            stmt = stmt.where(BillingPlan.is_active.is_(is_active))
        return list(db.scalars(stmt.order_by(BillingPlan.price_cents.asc())).all())

    @staticmethod
    def default_slug() -> str:
        return settings.default_plan_slug

    @staticmethod
    def resolve_slug(db: Session, price: dict[str, Any] | None) -> str:
        """Map a provider price object onto a catalog plan.

        Explicit price id wins, then ``metadata.plan_slug``, then the cheapest
        paid plan whose price covers the charged amount.
        """
        if not price:
            return settings.default_plan_slug
        price_id = price.get("id")
        if price_id:
            plan = db.scalars(
                select(BillingPlan).where(BillingPlan.provider_price_id == price_id)
            ).first()
            if plan is not None:
                return plan.slug
        metadata_slug = (price.get("metadata") or {}).get("plan_slug")
        if metadata_slug and db.get(BillingPlan, metadata_slug) is not None:
            return metadata_slug

        paid = [plan for plan in Plans.list(db) if plan.price_cents > 0]
        if not paid:
            return settings.default_plan_slug
        amount = int(price.get("unit_amount") or 0)
        for plan in paid:
            if amount <= plan.price_cents:
                return plan.slug
        logger.info(
            "Price %s (%s) above every catalog plan, using %s",
            price_id,
            amount,
            paid[-1].slug,
        )
        return paid[-1].slug


def seed_default_plans(db: Session) -> list[BillingPlan]:
    """Insert or refresh the built-in catalog. Used by deployment scripts."""
    seeded = []
    for entry in DEFAULT_PLANS:
        plan = db.get(BillingPlan, entry["slug"])
        if plan is None:
            plan = BillingPlan(slug=entry["slug"])
            db.add(plan)
        for key, value in entry.items():
            setattr(plan, key, value)
        seeded.append(plan)
    db.commit()
    logger.info("Seeded %s billing plans", len(seeded))
    return seeded


plans = Plans()
