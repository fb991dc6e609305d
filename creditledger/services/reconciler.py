"""Keep the cached subscription row in step with the billing provider.

Pull-on-demand, webhook push and the periodic sweep all end in
:meth:`SubscriptionReconciler.merge`, which overwrites the cached row with the
provider's view and asks the cycle manager for the period's grant when the
plan, period or status moved.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creditledger.config import settings
from creditledger.errors import LedgerError, ProviderUnavailableError
from creditledger.metrics import RECONCILIATIONS
from creditledger.models.subscription import Subscription, SubscriptionStatus
from creditledger.services.common import ensure_utc, from_timestamp, utcnow
from creditledger.services.credits import LedgerResult
from creditledger.services.cycles import CycleManager
from creditledger.services.plans import plans
from creditledger.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.active,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "incomplete": SubscriptionStatus.incomplete,
    "canceled": SubscriptionStatus.canceled,
    "incomplete_expired": SubscriptionStatus.canceled,
    "paused": SubscriptionStatus.canceled,
}
# Statuses that keep the paid plan; anything else falls back to the free plan.
PLAN_BEARING_STATUSES = {SubscriptionStatus.active, SubscriptionStatus.past_due}
_STATUS_PREFERENCE = {
    SubscriptionStatus.active: 0,
    SubscriptionStatus.past_due: 1,
    SubscriptionStatus.incomplete: 2,
    SubscriptionStatus.canceled: 3,
}

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
INVOICE_EVENTS = {"invoice.payment_succeeded", "invoice.payment_failed"}
CHECKOUT_EVENTS = {"checkout.session.completed"}
HANDLED_EVENTS = SUBSCRIPTION_EVENTS | INVOICE_EVENTS | CHECKOUT_EVENTS


@dataclass(frozen=True)
class ProviderSnapshot:
    """The provider's view of one user's subscription.

    ``plan_slug`` of ``None`` means the default free plan, whose period is
    computed locally.
    """

    plan_slug: str | None
    status: SubscriptionStatus = SubscriptionStatus.active
    period_start: datetime | None = None
    period_end: datetime | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    email: str | None = None


@dataclass
class ReconcileResult:
    subscription: Subscription
    changed: bool = False
    grant: LedgerResult | None = None
    adjustment: LedgerResult | None = None
    stale: bool = False


@dataclass
class SweepReport:
    checked: int = 0
    granted: int = 0
    stale: int = 0
    failed: int = 0
    failed_users: list[str] = field(default_factory=list)


def map_provider_status(value: str | None) -> SubscriptionStatus:
    return PROVIDER_STATUS_MAP.get(value or "", SubscriptionStatus.incomplete)


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def snapshot_from_subscription(
    db: Session, obj: dict[str, Any], email: str | None = None
) -> ProviderSnapshot:
    """Translate a provider subscription object into a snapshot."""
    status = map_provider_status(obj.get("status"))
    item = _first_item(obj)
    if status not in PLAN_BEARING_STATUSES:
        return ProviderSnapshot(
            plan_slug=None,
            status=status,
            customer_id=_object_id(obj.get("customer")),
            email=email,
        )
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")
    return ProviderSnapshot(
        plan_slug=plans.resolve_slug(db, item.get("price") or item.get("plan")),
        status=status,
        period_start=from_timestamp(period_start),
        period_end=from_timestamp(period_end),
        customer_id=_object_id(obj.get("customer")),
        subscription_id=obj.get("id"),
        email=email,
    )


def _pick_subscription(candidates: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda obj: (
            _STATUS_PREFERENCE[map_provider_status(obj.get("status"))],
            -int(obj.get("created") or 0),
        ),
    )


class SubscriptionReconciler:
    def __init__(
        self,
        gateway: StripeGateway,
        cycles: CycleManager,
        default_plan_slug: str | None = None,
        free_cycle_days: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.cycles = cycles
        self.default_plan_slug = default_plan_slug or settings.default_plan_slug
        self.free_cycle = timedelta(days=free_cycle_days or settings.free_cycle_days)

    def get_or_create(
        self, db: Session, user_id: str, email: str | None = None
    ) -> Subscription:
        """Return the cached row, creating a free one on first contact.

        A new row carries no period yet; the first merge sets it and grants.
        """
        subscription = db.get(Subscription, user_id)
        if subscription is not None:
            if email and subscription.email != email:
                subscription.email = email
                db.commit()
            return subscription
        subscription = Subscription(
            user_id=user_id,
            email=email,
            plan_slug=self.default_plan_slug,
            status=SubscriptionStatus.active,
        )
        db.add(subscription)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.get(Subscription, user_id)
            if existing is None:
                raise
            return existing
        logger.info("Created subscription record", extra={"user_id": user_id})
        return subscription

    def _free_period(
        self,
        was_free: bool,
        previous_start: datetime | None,
        previous_end: datetime | None,
        now: datetime,
    ) -> tuple[datetime, datetime]:
        if was_free and previous_start is not None and previous_end is not None:
            if now < previous_end:
                return previous_start, previous_end
            elapsed = (now - previous_end) // self.free_cycle
            start = previous_end + elapsed * self.free_cycle
            return start, start + self.free_cycle
        return now, now + self.free_cycle

    def merge(
        self,
        db: Session,
        user_id: str,
        snapshot: ProviderSnapshot,
        now: datetime | None = None,
        source: str = "pull",
    ) -> ReconcileResult:
        """Overwrite the cached row with ``snapshot`` and grant if needed."""
        now = now or utcnow()
        subscription = self.get_or_create(db, user_id, email=snapshot.email)
        previous_plan = subscription.plan_slug
        previous_status = subscription.status
        previous_start = ensure_utc(subscription.current_period_start)
        previous_end = ensure_utc(subscription.current_period_end)
        was_free = (
            previous_plan == self.default_plan_slug
            and subscription.provider_subscription_id is None
        )

        if snapshot.plan_slug is None:
            plan_slug = self.default_plan_slug
            period_start, period_end = self._free_period(
                was_free, previous_start, previous_end, now
            )
        else:
            plan_slug = snapshot.plan_slug
            period_start, period_end = snapshot.period_start, snapshot.period_end

        subscription.plan_slug = plan_slug
        subscription.status = snapshot.status
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.provider_subscription_id = snapshot.subscription_id
        if snapshot.customer_id:
            subscription.provider_customer_id = snapshot.customer_id
        subscription.last_synced_at = now
        db.commit()

        changed = (
            plan_slug != previous_plan
            or snapshot.status != previous_status
            or ensure_utc(period_end) != previous_end
        )
        result = ReconcileResult(subscription=subscription, changed=changed)
        if plan_slug != previous_plan:
            result.adjustment = self.cycles.apply_plan_change(
                db, subscription, previous_plan, previous_start
            )
        # Keyed on the cycle reference, so a grant lost to an earlier failure
        # is retried here even when the cached row already matches.
        result.grant = self.cycles.ensure_cycle_grant(db, subscription, now)

        RECONCILIATIONS.labels(source, "changed" if changed else "unchanged").inc()
        logger.info(
            "Reconciled subscription via %s: %s/%s%s",
            source,
            plan_slug,
            snapshot.status.value,
            " (changed)" if changed else "",
            extra={"user_id": user_id},
        )
        return result

    def fetch_snapshot(self, db: Session, subscription: Subscription) -> ProviderSnapshot:
        """Ask the provider for the user's current subscription."""
        customer_id = subscription.provider_customer_id
        if customer_id is None:
            if not subscription.email:
                return ProviderSnapshot(plan_slug=None)
            customer = self.gateway.find_customer_by_email(subscription.email)
            if customer is None:
                return ProviderSnapshot(plan_slug=None)
            customer_id = customer["id"]

        chosen = _pick_subscription(self.gateway.list_subscriptions(customer_id))
        if chosen is None:
            return ProviderSnapshot(plan_slug=None, customer_id=customer_id)
        snapshot = snapshot_from_subscription(db, chosen)
        if snapshot.customer_id is None:
            return replace(snapshot, customer_id=customer_id)
        return snapshot

    def pull(
        self,
        db: Session,
        user_id: str,
        email: str | None = None,
        now: datetime | None = None,
        source: str = "pull",
    ) -> ReconcileResult:
        """Refresh from the provider; serve the cache if it is unreachable."""
        subscription = self.get_or_create(db, user_id, email=email)
        try:
            snapshot = self.fetch_snapshot(db, subscription)
        except ProviderUnavailableError as exc:
            RECONCILIATIONS.labels(source, "stale").inc()
            logger.warning(
                "Provider unavailable, serving cached subscription: %s",
                exc,
                extra={"user_id": user_id},
            )
            return ReconcileResult(subscription=subscription, stale=True)
        return self.merge(db, user_id, snapshot, now=now, source=source)

    def _match_user(
        self, db: Session, obj: dict[str, Any], customer_id: str | None
    ) -> str | None:
        if customer_id:
            user_id = db.scalar(
                select(Subscription.user_id).where(
                    Subscription.provider_customer_id == customer_id
                )
            )
            if user_id:
                return user_id
        explicit = obj.get("client_reference_id") or (obj.get("metadata") or {}).get(
            "user_id"
        )
        if explicit:
            return explicit

        email = obj.get("customer_email") or (obj.get("customer_details") or {}).get(
            "email"
        )
        if not email and customer_id:
            customer = self.gateway.retrieve_customer(customer_id)
            email = (customer or {}).get("email")
        if not email:
            return None
        return db.scalar(select(Subscription.user_id).where(Subscription.email == email))

    def apply_event(
        self, db: Session, event: dict[str, Any], now: datetime | None = None
    ) -> ReconcileResult | None:
        """Apply a verified provider event. ``None`` means nothing to do."""
        event_type = event.get("type", "")
        if event_type not in HANDLED_EVENTS:
            return None
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in SUBSCRIPTION_EVENTS:
            subscription_obj: dict[str, Any] | None = obj
        else:
            if event_type in INVOICE_EVENTS and obj.get("billing_reason") == "subscription_create":
                # checkout.session.completed covers the first invoice
                return None
            subscription_id = _object_id(obj.get("subscription"))
            if subscription_id is None:
                subscription_id = _object_id(
                    ((obj.get("parent") or {}).get("subscription_details") or {}).get(
                        "subscription"
                    )
                )
            if subscription_id is None:
                return None
            subscription_obj = self.gateway.retrieve_subscription(subscription_id)

        customer_id = _object_id(obj.get("customer"))
        user_id = self._match_user(db, obj, customer_id)
        if user_id is None and subscription_obj is not None and subscription_obj is not obj:
            user_id = self._match_user(db, subscription_obj, customer_id)
        if user_id is None:
            logger.warning(
                "No user matches %s for customer %s",
                event_type,
                customer_id,
                extra={"event_id": event.get("id"), "event_type": event_type},
            )
            return None

        if subscription_obj is None:
            snapshot = ProviderSnapshot(plan_slug=None, customer_id=customer_id)
        else:
            snapshot = snapshot_from_subscription(db, subscription_obj)
            if snapshot.customer_id is None and customer_id:
                snapshot = replace(snapshot, customer_id=customer_id)

        cached = db.get(Subscription, user_id)
        if (
            cached is not None
            and snapshot.subscription_id
            and snapshot.subscription_id == cached.provider_subscription_id
            and snapshot.period_end is not None
            and cached.current_period_end is not None
            and snapshot.period_end < ensure_utc(cached.current_period_end)
        ):
            logger.info(
                "Skipping out-of-order %s for an older period",
                event_type,
                extra={"user_id": user_id, "event_id": event.get("id")},
            )
            return ReconcileResult(subscription=cached)
        return self.merge(db, user_id, snapshot, now=now, source="webhook")

    def sweep(
        self, db: Session, now: datetime | None = None, pull: bool = False
    ) -> SweepReport:
        """Walk every cached subscription and make sure each is granted.

        Free-plan periods roll forward locally; paid periods only move when
        the provider says so, so ``pull`` refreshes them first.
        """
        now = now or utcnow()
        report = SweepReport()
        user_ids = list(db.scalars(select(Subscription.user_id)).all())
        for user_id in user_ids:
            report.checked += 1
            try:
                if pull:
                    result = self.pull(db, user_id, now=now, source="sweep")
                    report.stale += int(result.stale)
                    report.granted += int(result.grant is not None)
                subscription = db.get(Subscription, user_id)
                if subscription is None:
                    continue
                if (
                    subscription.plan_slug == self.default_plan_slug
                    and subscription.provider_subscription_id is None
                ):
                    result = self.merge(
                        db,
                        user_id,
                        ProviderSnapshot(plan_slug=None, status=subscription.status),
                        now=now,
                        source="sweep",
                    )
                    report.granted += int(result.grant is not None)
                    subscription = result.subscription
                grant = self.cycles.ensure_cycle_grant(db, subscription, now)
                report.granted += int(grant is not None)
            except (LedgerError, SQLAlchemyError):
                db.rollback()
                report.failed += 1
                report.failed_users.append(user_id)
                logger.exception("Sweep failed", extra={"user_id": user_id})
        logger.info(
            "Sweep checked %s subscriptions, granted %s, stale %s, failed %s",
            report.checked,
            report.granted,
            report.stale,
            report.failed,
        )
        return report
