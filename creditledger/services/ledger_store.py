"""Transaction-scoped persistence primitives for accounts and ledger entries.

No business rules live here. Callers own the transaction: every method except
``ensure_account`` runs inside the caller's open transaction and leaves
commit/rollback to it.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditledger.models.ledger import Account, LedgerEntry, LedgerReason
from creditledger.services.common import apply_ordering, apply_pagination, utcnow

logger = logging.getLogger(__name__)


class LedgerStore:
    @staticmethod
    def get_account(db: Session, user_id: str) -> Account | None:
        return db.get(Account, user_id)

    @staticmethod
    def ensure_account(db: Session, user_id: str) -> Account:
        """Return the user's account, creating an empty one if missing.

        Must be called outside an open unit of work: the new row is committed
        so that later conditional updates have a row to lock.
        """
        account = db.get(Account, user_id)
        if account is not None:
            return account
        db.add(Account(user_id=user_id, balance=0, version=0))
        try:
            db.commit()
            logger.info("Created account", extra={"user_id": user_id})
        except IntegrityError:
            # Another request created it first.
            db.rollback()
        account = db.get(Account, user_id)
        if account is None:
            raise RuntimeError(f"Account {user_id} vanished after creation")
        return account

    @staticmethod
    def get_balance(db: Session, user_id: str) -> int:
        balance = db.scalar(select(Account.balance).where(Account.user_id == user_id))
        return int(balance or 0)

    @staticmethod
    def find_entry(db: Session, idempotency_key: str) -> LedgerEntry | None:
        return db.scalars(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        ).first()

    @staticmethod
    def debit_if_sufficient(db: Session, user_id: str, amount: int) -> bool:
        """Atomically decrement the balance if it covers ``amount``.

        The row lock taken by the UPDATE is held until the caller's
        transaction ends; the affected-row count is the outcome.
        """
        result = db.execute(
            update(Account)
            .where(Account.user_id == user_id, Account.balance >= amount)
            .values(
                balance=Account.balance - amount,
                version=Account.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def credit(db: Session, user_id: str, amount: int) -> bool:
        result = db.execute(
            update(Account)
            .where(Account.user_id == user_id)
            .values(
                balance=Account.balance + amount,
                version=Account.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def set_cycle(
        db: Session, user_id: str, cycle_start: datetime, cycle_end: datetime
    ) -> None:
        db.execute(
            update(Account)
            .where(Account.user_id == user_id)
            .values(cycle_start=cycle_start, cycle_end=cycle_end)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def append_entry(
        db: Session,
        *,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        reference: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            delta=delta,
            balance_after=LedgerStore.get_balance(db, user_id),
            reason=reason,
            reference=reference,
            idempotency_key=idempotency_key,
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def ledger_sum(db: Session, user_id: str) -> int:
        total = db.scalar(
            select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(
                LedgerEntry.user_id == user_id
            )
        )
        return int(total or 0)

    @staticmethod
    def sum_deltas(
        db: Session,
        user_id: str,
        reasons: set[LedgerReason],
        since: datetime | None = None,
    ) -> int:
        conditions = [LedgerEntry.user_id == user_id, LedgerEntry.reason.in_(reasons)]
        if since is not None:
            conditions.append(LedgerEntry.created_at >= since)
        total = db.scalar(
            select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(*conditions)
        )
        return int(total or 0)

    @staticmethod
    def has_reference(db: Session, user_id: str, reference: str) -> bool:
        found = db.scalar(
            select(LedgerEntry.id).where(
                LedgerEntry.user_id == user_id, LedgerEntry.reference == reference
            )
        )
        return found is not None

    @staticmethod
    def list_entries(
        db: Session,
        user_id: str,
        reason: LedgerReason | None,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[LedgerEntry], int]:
        conditions = [LedgerEntry.user_id == user_id]
        if reason is not None:
            conditions.append(LedgerEntry.reason == reason)
        total = db.scalar(
            select(func.count()).select_from(LedgerEntry).where(*conditions)
        ) or 0
        stmt = apply_ordering(
            select(LedgerEntry).where(*conditions),
            "created_at",
            order_dir,
            {"created_at": LedgerEntry.created_at},
        )
        items = list(db.scalars(apply_pagination(stmt, limit, offset)).all())
        return items, total


ledger_store = LedgerStore()
