"""Read-only views of credit balances and plan entitlements."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from creditledger.config import settings
from creditledger.models.ledger import Account, LedgerEntry, LedgerReason
from creditledger.models.subscription import Subscription, SubscriptionStatus
from creditledger.services.common import ensure_utc
from creditledger.services.ledger_store import ledger_store
from creditledger.services.plans import plans


@dataclass(frozen=True)
class CreditState:
    user_id: str
    balance: int
    plan_slug: str
    status: SubscriptionStatus
    monthly_credit_grant: int
    max_profiles: int
    feature_flags: dict[str, Any]
    cycle_start: datetime | None
    cycle_end: datetime | None
    last_synced_at: datetime | None


@dataclass(frozen=True)
class BalanceAudit:
    user_id: str
    balance: int
    ledger_sum: int
    consistent: bool


class Balances:
    @staticmethod
    def get_credit_state(db: Session, user_id: str) -> CreditState:
        account = db.get(Account, user_id)
        subscription = db.get(Subscription, user_id)
        plan_slug = subscription.plan_slug if subscription else settings.default_plan_slug
        plan = plans.get(db, plan_slug)
        if subscription is not None:
            cycle_start = subscription.current_period_start
            cycle_end = subscription.current_period_end
        else:
            cycle_start = account.cycle_start if account else None
            cycle_end = account.cycle_end if account else None
        return CreditState(
            user_id=user_id,
            balance=account.balance if account else 0,
            plan_slug=plan_slug,
            status=subscription.status if subscription else SubscriptionStatus.active,
            monthly_credit_grant=plan.monthly_credit_grant if plan else 0,
            max_profiles=plan.max_profiles if plan else 1,
            feature_flags=dict(plan.feature_flags or {}) if plan else {},
            cycle_start=ensure_utc(cycle_start),
            cycle_end=ensure_utc(cycle_end),
            last_synced_at=ensure_utc(subscription.last_synced_at) if subscription else None,
        )

    @staticmethod
    def has_credits(db: Session, user_id: str, amount: int = 1) -> bool:
        return ledger_store.get_balance(db, user_id) >= amount

    @staticmethod
    def usage_since(db: Session, user_id: str, since: datetime | None = None) -> int:
        """Credits consumed since ``since`` (default: start of the current cycle), net of refunds."""
        if since is None:
            since = Balances.get_credit_state(db, user_id).cycle_start
        spent = ledger_store.sum_deltas(db, user_id, {LedgerReason.usage_spend}, since)
        refunded = ledger_store.sum_deltas(db, user_id, {LedgerReason.refund}, since)
        return max(-spent - refunded, 0)

    @staticmethod
    def list_entries(
        db: Session,
        user_id: str,
        reason: LedgerReason | None = None,
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        return ledger_store.list_entries(db, user_id, reason, order_dir, limit, offset)

    @staticmethod
    def audit_balance(db: Session, user_id: str) -> BalanceAudit:
        balance = ledger_store.get_balance(db, user_id)
        total = ledger_store.ledger_sum(db, user_id)
        return BalanceAudit(
            user_id=user_id, balance=balance, ledger_sum=total, consistent=balance == total
        )


balances = Balances()
