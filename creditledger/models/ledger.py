import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creditledger.db import Base, TimestampMixin


class LedgerReason(str, enum.Enum):
    usage_spend = "usage_spend"
    monthly_grant = "monthly_grant"
    manual_adjustment = "manual_adjustment"
    refund = "refund"
    plan_change_adjustment = "plan_change_adjustment"


SPEND_REASONS = frozenset(
    {
        LedgerReason.usage_spend,
        LedgerReason.manual_adjustment,
        LedgerReason.plan_change_adjustment,
    }
)
GRANT_REASONS = frozenset(
    {
        LedgerReason.monthly_grant,
        LedgerReason.manual_adjustment,
        LedgerReason.refund,
        LedgerReason.plan_change_adjustment,
    }
)


class Account(TimestampMixin, Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cycle_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cycle_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    entries = relationship("LedgerEntry", back_populates="account")


class LedgerEntry(Base):
    """Append-only record of one balance mutation. Never updated or deleted."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint(
            "idempotency_key", name="uq_ledger_entries_idempotency_key"
        ),
        CheckConstraint("delta <> 0", name="ck_ledger_entries_delta_non_zero"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("accounts.user_id"), nullable=False, index=True
    )
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[LedgerReason] = mapped_column(Enum(LedgerReason), nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )

    account = relationship("Account", back_populates="entries")
