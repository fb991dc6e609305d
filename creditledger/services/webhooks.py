"""Signed, deduplicated intake of provider webhook events.

Each event id is recorded in ``webhook_events`` before it is processed. The
committed row is the durable claim; a redelivery of a processed event is
acknowledged without doing anything, and a failed or abandoned claim can be
picked up again by the next delivery.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditledger.config import settings
from creditledger.errors import WebhookSignatureError
from creditledger.metrics import WEBHOOK_EVENTS
from creditledger.models.webhook import WebhookEvent, WebhookEventStatus
from creditledger.services.common import utcnow
from creditledger.services.reconciler import SubscriptionReconciler
from creditledger.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    status: str
    event_id: str | None = None


class WebhookIngestor:
    def __init__(
        self,
        gateway: StripeGateway,
        reconciler: SubscriptionReconciler,
        claim_timeout_seconds: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.reconciler = reconciler
        self.claim_timeout = timedelta(
            seconds=claim_timeout_seconds or settings.webhook_claim_timeout_seconds
        )

    def _claim(
        self, db: Session, event_id: str, event_type: str, payload: dict, now: datetime
    ) -> str:
        """Record or re-claim the event. Returns claimed, duplicate or in_progress."""
        existing = db.scalars(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        ).first()
        if existing is None:
            db.add(
                WebhookEvent(
                    provider=PROVIDER,
                    event_type=event_type,
                    event_id=event_id,
                    payload=payload,
                    status=WebhookEventStatus.processing,
                    received_at=now,
                    claimed_at=now,
                )
            )
            try:
                db.commit()
                return "claimed"
            except IntegrityError:
                db.rollback()
                existing = db.scalars(
                    select(WebhookEvent).where(WebhookEvent.event_id == event_id)
                ).first()
                if existing is None:
                    raise

        if existing.processed_at is not None:
            return "duplicate"
        stale_before = now - self.claim_timeout
        result = db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processed_at.is_(None),
                or_(
                    WebhookEvent.status == WebhookEventStatus.failed,
                    and_(
                        WebhookEvent.status == WebhookEventStatus.processing,
                        WebhookEvent.claimed_at < stale_before,
                    ),
                ),
            )
            .values(
                status=WebhookEventStatus.processing,
                claimed_at=now,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return "claimed" if result.rowcount == 1 else "in_progress"

    def _finish(
        self,
        db: Session,
        event_id: str,
        status: WebhookEventStatus,
        now: datetime,
        error_message: str | None = None,
    ) -> None:
        values: dict = {"status": status, "error_message": error_message}
        if status is not WebhookEventStatus.failed:
            values["processed_at"] = now
        db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def ingest(
        self,
        db: Session,
        payload: bytes,
        signature: str | None,
        now: datetime | None = None,
    ) -> WebhookOutcome:
        if not self.gateway.webhooks_configured():
            raise HTTPException(status_code=503, detail="Webhook secret not configured")
        try:
            event = self.gateway.construct_event(payload, signature or "")
        except WebhookSignatureError:
            WEBHOOK_EVENTS.labels("unknown", "rejected").inc()
            logger.warning("Rejected webhook with invalid signature")
            raise
        event_id = event.get("id")
        event_type = event.get("type") or "unknown"
        if not event_id:
            raise HTTPException(status_code=400, detail="Event id missing")
        now = now or utcnow()
        log_extra = {"event_id": event_id, "event_type": event_type}

        claim = self._claim(db, event_id, event_type, event, now)
        if claim == "duplicate":
            WEBHOOK_EVENTS.labels(event_type, "duplicate").inc()
            logger.info("Duplicate webhook acknowledged", extra=log_extra)
            return WebhookOutcome(200, "duplicate", event_id)
        if claim == "in_progress":
            WEBHOOK_EVENTS.labels(event_type, "in_progress").inc()
            logger.info("Webhook already being processed", extra=log_extra)
            return WebhookOutcome(409, "in_progress", event_id)

        try:
            result = self.reconciler.apply_event(db, event, now=now)
        except Exception as exc:
            db.rollback()
            self._finish(
                db, event_id, WebhookEventStatus.failed, now, error_message=str(exc)
            )
            WEBHOOK_EVENTS.labels(event_type, "failed").inc()
            logger.error("Webhook processing failed: %s", exc, extra=log_extra)
            raise

        if result is None:
            self._finish(db, event_id, WebhookEventStatus.ignored, now)
            WEBHOOK_EVENTS.labels(event_type, "ignored").inc()
            logger.info("Webhook ignored", extra=log_extra)
            return WebhookOutcome(200, "ignored", event_id)

        self._finish(db, event_id, WebhookEventStatus.processed, now)
        WEBHOOK_EVENTS.labels(event_type, "processed").inc()
        logger.info("Webhook processed", extra=log_extra)
        return WebhookOutcome(200, "processed", event_id)
