"""Billing-cycle credit grants.

A subscription is granted its plan's credits at most once per billing period.
The period is identified by a cycle reference built from the subscription
identity and the period start; the grant's idempotency key is derived from
that reference, so concurrent or repeated triggers collapse onto one entry.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from creditledger.config import settings
from creditledger.models.ledger import LedgerReason
from creditledger.models.subscription import Subscription, SubscriptionStatus
from creditledger.services.common import ensure_utc, utcnow
from creditledger.services.credits import CreditEngine, LedgerResult, credit_engine
from creditledger.services.ledger_store import ledger_store
from creditledger.services.plans import plans

logger = logging.getLogger(__name__)


class CycleState(str, enum.Enum):
    awaiting_cycle = "awaiting_cycle"
    granted_current_cycle = "granted_current_cycle"


def subscription_key(subscription: Subscription) -> str:
    if subscription.provider_subscription_id:
        return subscription.provider_subscription_id
    return f"free-{subscription.user_id}"


def cycle_reference(subscription: Subscription) -> str:
    start = ensure_utc(subscription.current_period_start)
    if start is None:
        raise ValueError("subscription has no current period")
    return f"cycle:{subscription_key(subscription)}:{start.isoformat()}"


class CycleManager:
    def __init__(
        self,
        credits: CreditEngine | None = None,
        default_plan_slug: str | None = None,
        plan_change_topup: bool | None = None,
    ) -> None:
        self.credits = credits or credit_engine
        self.default_plan_slug = default_plan_slug or settings.default_plan_slug
        self.plan_change_topup = (
            settings.plan_change_topup if plan_change_topup is None else plan_change_topup
        )

    def is_grant_eligible(self, subscription: Subscription) -> bool:
        return (
            subscription.plan_slug == self.default_plan_slug
            or subscription.status == SubscriptionStatus.active
        )

    def cycle_state(self, db: Session, subscription: Subscription) -> CycleState:
        if subscription.current_period_start is None:
            return CycleState.awaiting_cycle
        if ledger_store.has_reference(
            db, subscription.user_id, cycle_reference(subscription)
        ):
            return CycleState.granted_current_cycle
        return CycleState.awaiting_cycle

    def ensure_cycle_grant(
        self, db: Session, subscription: Subscription, now: datetime | None = None
    ) -> LedgerResult | None:
        """Grant the current period's credits unless already granted.

        Returns the new grant, or ``None`` when nothing was granted.
        """
        now = now or utcnow()
        start = ensure_utc(subscription.current_period_start)
        end = ensure_utc(subscription.current_period_end)
        log_extra = {"user_id": subscription.user_id}
        if start is None or end is None or not start <= now < end:
            logger.debug("No current billing period", extra=log_extra)
            return None
        if not self.is_grant_eligible(subscription):
            logger.info(
                "Subscription %s not eligible for a grant",
                subscription.status.value,
                extra=log_extra,
            )
            return None
        if self.cycle_state(db, subscription) is CycleState.granted_current_cycle:
            return None

        plan = plans.get(db, subscription.plan_slug)
        if plan is None:
            logger.warning(
                "Unknown plan %s, skipping grant", subscription.plan_slug, extra=log_extra
            )
            return None
        if plan.monthly_credit_grant <= 0:
            return None

        result = self.credits.grant(
            db,
            subscription.user_id,
            plan.monthly_credit_grant,
            LedgerReason.monthly_grant,
            reference=cycle_reference(subscription),
            cycle=(start, end),
        )
        if result.replayed:
            return None
        logger.info(
            "Granted %s credits for %s cycle starting %s",
            plan.monthly_credit_grant,
            plan.slug,
            start.isoformat(),
            extra=log_extra,
        )
        return result

    def apply_plan_change(
        self,
        db: Session,
        subscription: Subscription,
        previous_plan_slug: str,
        previous_period_start: datetime | None,
    ) -> LedgerResult | None:
        """Top up the grant difference on a mid-cycle upgrade.

        Only runs when enabled; downgrades never claw back credits.
        """
        if not self.plan_change_topup:
            return None
        start = ensure_utc(subscription.current_period_start)
        if start is None or ensure_utc(previous_period_start) != start:
            return None
        old_plan = plans.get(db, previous_plan_slug)
        new_plan = plans.get(db, subscription.plan_slug)
        if old_plan is None or new_plan is None:
            return None
        difference = new_plan.monthly_credit_grant - old_plan.monthly_credit_grant
        if difference <= 0:
            return None
        reference = (
            f"plan_change:{subscription_key(subscription)}:{start.isoformat()}"
            f":{old_plan.slug}->{new_plan.slug}"
        )
        result = self.credits.grant(
            db,
            subscription.user_id,
            difference,
            LedgerReason.plan_change_adjustment,
            reference=reference,
        )
        logger.info(
            "Plan change %s -> %s topped up %s credits",
            old_plan.slug,
            new_plan.slug,
            difference,
            extra={"user_id": subscription.user_id},
        )
        return result
