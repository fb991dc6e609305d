"""Background jobs: the periodic cycle sweep and per-user reconciliation."""
import logging
from dataclasses import asdict
from functools import lru_cache

from creditledger.celery_app import celery_app
from creditledger.db import SessionLocal
from creditledger.errors import ProviderUnavailableError
from creditledger.services.billing import BillingServices, build_billing_services

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def billing_services() -> BillingServices:
    """Per worker process; the provider client is built on first use."""
    return build_billing_services()


@celery_app.task(name="creditledger.tasks.sweep_billing_cycles")
def sweep_billing_cycles(pull: bool = False) -> dict:
    db = SessionLocal()
    try:
        report = billing_services().reconciler.sweep(db, pull=pull)
    finally:
        db.close()
    return asdict(report)


@celery_app.task(
    name="creditledger.tasks.reconcile_subscription",
    autoretry_for=(ProviderUnavailableError,),
    retry_backoff=True,
    max_retries=5,
)
def reconcile_subscription(user_id: str, email: str | None = None) -> dict:
    db = SessionLocal()
    try:
        reconciler = billing_services().reconciler
        subscription = reconciler.get_or_create(db, user_id, email=email)
        snapshot = reconciler.fetch_snapshot(db, subscription)
        result = reconciler.merge(db, user_id, snapshot, source="task")
        return {
            "user_id": user_id,
            "plan_slug": result.subscription.plan_slug,
            "status": result.subscription.status.value,
            "changed": result.changed,
            "granted": result.grant is not None,
        }
    finally:
        db.close()
