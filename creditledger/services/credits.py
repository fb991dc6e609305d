"""Idempotent spend/grant engine.

Every balance mutation goes through :class:`CreditEngine`. A mutation is one
transaction that (a) changes ``accounts.balance`` with a conditional update and
(b) appends a :class:`LedgerEntry` whose ``idempotency_key`` is unique. A
retried call with the same key finds the recorded entry and returns the
recorded outcome instead of applying the delta again.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from creditledger.errors import (
    IdempotencyConflictError,
    LedgerEntryNotFoundError,
    LedgerUnavailableError,
)
from creditledger.metrics import LEDGER_OPERATIONS
from creditledger.models.ledger import (
    GRANT_REASONS,
    SPEND_REASONS,
    LedgerEntry,
    LedgerReason,
)
from creditledger.services.ledger_store import LedgerStore, ledger_store

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class LedgerResult:
    ok: bool
    new_balance: int
    entry_id: uuid.UUID | None = None
    replayed: bool = False
    error: str | None = None


def derive_idempotency_key(
    user_id: str, reason: LedgerReason | str, reference: str
) -> str:
    """Deterministic key for a business operation.

    Same (user, reason, reference) always yields the same key, so replays
    of the operation collapse onto one ledger entry.
    """
    reason_value = LedgerReason(reason).value
    digest = hashlib.sha256(
        "\x1f".join((user_id, reason_value, reference)).encode("utf-8")
    ).hexdigest()
    return f"{reason_value}:{digest}"


def _coerce_reason(
    reason: LedgerReason | str, allowed: frozenset[LedgerReason], operation: str
) -> LedgerReason:
    value = LedgerReason(reason)
    if value not in allowed:
        raise ValueError(f"reason {value.value!r} is not valid for {operation}")
    return value


class CreditEngine:
    def __init__(self, store: LedgerStore | None = None) -> None:
        self.store = store or ledger_store

    def spend(
        self,
        db: Session,
        user_id: str,
        amount: int,
        reason: LedgerReason | str = LedgerReason.usage_spend,
        reference: str = "",
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        """Deduct ``amount`` credits if the balance covers it.

        Insufficient balance is returned as ``ok=False`` with the current
        balance and no mutation; it is not raised.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        reason = _coerce_reason(reason, SPEND_REASONS, "spend")
        key = idempotency_key or derive_idempotency_key(user_id, reason, reference)
        return self._apply(db, user_id, -amount, reason, reference, key)

    def grant(
        self,
        db: Session,
        user_id: str,
        amount: int,
        reason: LedgerReason | str = LedgerReason.manual_adjustment,
        reference: str = "",
        idempotency_key: str | None = None,
        cycle: tuple[datetime, datetime] | None = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise ValueError("amount must be positive")
        reason = _coerce_reason(reason, GRANT_REASONS, "grant")
        key = idempotency_key or derive_idempotency_key(user_id, reason, reference)
        return self._apply(db, user_id, amount, reason, reference, key, cycle=cycle)

    def refund(
        self, db: Session, user_id: str, original_idempotency_key: str
    ) -> LedgerResult:
        """Give back exactly what an earlier spend took. Refunds once."""
        original = self.store.find_entry(db, original_idempotency_key)
        if original is None or original.user_id != user_id:
            raise LedgerEntryNotFoundError(
                f"No ledger entry for idempotency key {original_idempotency_key!r}"
            )
        if original.delta >= 0:
            raise ValueError("only spend entries can be refunded")
        return self.grant(
            db,
            user_id,
            -original.delta,
            LedgerReason.refund,
            reference=f"refund:{original_idempotency_key}",
        )

    def _apply(
        self,
        db: Session,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        reference: str,
        key: str,
        cycle: tuple[datetime, datetime] | None = None,
    ) -> LedgerResult:
        operation = "spend" if delta < 0 else "grant"
        log_extra = {"user_id": user_id, "idempotency_key": key}
        try:
            recorded = self.store.find_entry(db, key)
            if recorded is not None:
                return self._replay(recorded, user_id, delta, reason, key)

            self.store.ensure_account(db, user_id)
            if delta < 0:
                if not self.store.debit_if_sufficient(db, user_id, -delta):
                    db.rollback()
                    # A concurrent request with the same key may have drained
                    # the balance and committed while this one waited.
                    recorded = self.store.find_entry(db, key)
                    if recorded is not None:
                        return self._replay(recorded, user_id, delta, reason, key)
                    balance = self.store.get_balance(db, user_id)
                    db.rollback()
                    LEDGER_OPERATIONS.labels(operation, "insufficient").inc()
                    logger.info(
                        "Insufficient credits: needed %s, have %s",
                        -delta,
                        balance,
                        extra=log_extra,
                    )
                    return LedgerResult(
                        ok=False, new_balance=balance, error=INSUFFICIENT_CREDITS
                    )
            else:
                self.store.credit(db, user_id, delta)
            if cycle is not None:
                self.store.set_cycle(db, user_id, *cycle)
            entry = self.store.append_entry(
                db,
                user_id=user_id,
                delta=delta,
                reason=reason,
                reference=reference,
                idempotency_key=key,
            )
            result = LedgerResult(
                ok=True, new_balance=entry.balance_after, entry_id=entry.id
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            # A concurrent request with the same key committed first.
            recorded = self.store.find_entry(db, key)
            if recorded is None:
                raise
            return self._replay(recorded, user_id, delta, reason, key)
        except DBAPIError as exc:
            db.rollback()
            LEDGER_OPERATIONS.labels(operation, "unavailable").inc()
            logger.warning("Ledger store unavailable: %s", exc, extra=log_extra)
            raise LedgerUnavailableError(
                f"Ledger store unavailable during {operation}; retry with the same "
                "idempotency key"
            ) from exc

        LEDGER_OPERATIONS.labels(operation, "applied").inc()
        logger.info(
            "Applied %s of %s credits (%s), balance now %s",
            operation,
            abs(delta),
            reason.value,
            result.new_balance,
            extra=log_extra,
        )
        return result

    @staticmethod
    def _replay(
        entry: LedgerEntry,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        key: str,
    ) -> LedgerResult:
        operation = "spend" if delta < 0 else "grant"
        requested = {"user_id": user_id, "delta": delta, "reason": reason.value}
        recorded = {
            "user_id": entry.user_id,
            "delta": entry.delta,
            "reason": LedgerReason(entry.reason).value,
        }
        if requested != recorded:
            LEDGER_OPERATIONS.labels(operation, "conflict").inc()
            logger.error(
                "Idempotency key reused for a different operation",
                extra={"user_id": user_id, "idempotency_key": key},
            )
            raise IdempotencyConflictError(key, requested, recorded)
        LEDGER_OPERATIONS.labels(operation, "replayed").inc()
        logger.info(
            "Replayed %s for existing entry %s",
            operation,
            entry.id,
            extra={"user_id": user_id, "idempotency_key": key},
        )
        return LedgerResult(
            ok=True,
            new_balance=entry.balance_after,
            entry_id=entry.id,
            replayed=True,
        )


credit_engine = CreditEngine()
