from collections.abc import Iterator

from fastapi import Request
from sqlalchemy.orm import Session

from creditledger.db import SessionLocal
from creditledger.services.billing import BillingServices
from creditledger.services.reconciler import SubscriptionReconciler
from creditledger.services.webhooks import WebhookIngestor


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_billing(request: Request) -> BillingServices:
    services: BillingServices = request.app.state.billing
    return services


def get_reconciler(request: Request) -> SubscriptionReconciler:
    return get_billing(request).reconciler


def get_ingestor(request: Request) -> WebhookIngestor:
    return get_billing(request).ingestor
