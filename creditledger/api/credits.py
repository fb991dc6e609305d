from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from creditledger.api.deps import get_db
from creditledger.models.ledger import LedgerReason
from creditledger.schemas.common import ListResponse
from creditledger.schemas.credits import (
    BalanceAuditRead,
    CreditStateRead,
    GrantRequest,
    LedgerEntryRead,
    LedgerResultRead,
    RefundRequest,
    SpendRequest,
)
from creditledger.services.balances import balances
from creditledger.services.credits import credit_engine
from creditledger.services.response import list_response

router = APIRouter(prefix="/credits", tags=["credits"])


# ── Mutations ────────────────────────────────────────────


@router.post("/spend", response_model=LedgerResultRead)
def spend_credits(payload: SpendRequest, db: Session = Depends(get_db)):
    return credit_engine.spend(
        db,
        payload.user_id,
        payload.amount,
        reason=payload.reason,
        reference=payload.reference,
        idempotency_key=payload.idempotency_key,
    )


@router.post("/grant", response_model=LedgerResultRead)
def grant_credits(payload: GrantRequest, db: Session = Depends(get_db)):
    return credit_engine.grant(
        db,
        payload.user_id,
        payload.amount,
        reason=payload.reason,
        reference=payload.reference,
        idempotency_key=payload.idempotency_key,
    )


@router.post("/refund", response_model=LedgerResultRead)
def refund_credits(payload: RefundRequest, db: Session = Depends(get_db)):
    try:
        return credit_engine.refund(db, payload.user_id, payload.idempotency_key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ── Queries ──────────────────────────────────────────────


@router.get("/{user_id}", response_model=CreditStateRead)
def get_credit_state(user_id: str, db: Session = Depends(get_db)):
    state = balances.get_credit_state(db, user_id)
    return {
        **asdict(state),
        "usage_this_cycle": balances.usage_since(db, user_id, state.cycle_start),
    }


@router.get("/{user_id}/entries", response_model=ListResponse[LedgerEntryRead])
def list_ledger_entries(
    user_id: str,
    reason: LedgerReason | None = None,
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items, total = balances.list_entries(db, user_id, reason, order_dir, limit, offset)
    return list_response(items, limit, offset, total=total)


@router.get("/{user_id}/audit", response_model=BalanceAuditRead)
def audit_balance(user_id: str, db: Session = Depends(get_db)):
    return balances.audit_balance(db, user_id)
