"""Billing provider routes: plan catalog, subscription sync and webhooks."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse

from creditledger.api.deps import get_db, get_ingestor, get_reconciler
from creditledger.schemas.billing import (
    BillingPlanRead,
    SubscriptionSyncRead,
    SubscriptionSyncRequest,
    WebhookAck,
)
from creditledger.services.balances import balances
from creditledger.services.plans import plans
from creditledger.services.reconciler import PLAN_BEARING_STATUSES, SubscriptionReconciler
from creditledger.services.webhooks import WebhookIngestor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/plans", response_model=list[BillingPlanRead])
def list_plans(db: Session = Depends(get_db)):
    return plans.list(db)


@router.post("/subscriptions/{user_id}/sync", response_model=SubscriptionSyncRead)
def sync_subscription(
    user_id: str,
    payload: SubscriptionSyncRequest | None = None,
    db: Session = Depends(get_db),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Refresh the cached subscription from the provider and grant if due."""
    result = reconciler.pull(db, user_id, email=payload.email if payload else None)
    state = balances.get_credit_state(db, user_id)
    return {
        "user_id": user_id,
        "plan_slug": state.plan_slug,
        "status": state.status,
        "current_period_end": state.cycle_end,
        "subscribed": state.plan_slug != reconciler.default_plan_slug
        and state.status in PLAN_BEARING_STATUSES,
        "stale": result.stale,
        "changed": result.changed,
        "granted": sum(1 for r in (result.grant, result.adjustment) if r is not None),
        "balance": state.balance,
        "last_synced_at": state.last_synced_at,
    }


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> JSONResponse:
    """Handle Stripe webhook; no auth, signature verified."""
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    outcome = await run_in_threadpool(ingestor.ingest, db, body, signature)
    return JSONResponse(
        status_code=outcome.status_code,
        content=WebhookAck(status=outcome.status, event_id=outcome.event_id).model_dump(),
    )
