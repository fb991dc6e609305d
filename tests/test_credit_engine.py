"""Tests for the idempotent spend/grant engine."""

import pytest

from creditledger.errors import IdempotencyConflictError, LedgerEntryNotFoundError
from creditledger.models.ledger import LedgerReason
from creditledger.services.balances import balances
from creditledger.services.credits import (
    INSUFFICIENT_CREDITS,
    credit_engine,
    derive_idempotency_key,
)
from creditledger.services.ledger_store import ledger_store


@pytest.fixture()
def funded_user(db_session, user_id):
    credit_engine.grant(db_session, user_id, 100, reference="seed")
    return user_id


def test_grant_creates_account_and_entry(db_session, user_id):
    result = credit_engine.grant(db_session, user_id, 25, reference="welcome")
    assert result.ok is True
    assert result.new_balance == 25
    assert result.replayed is False
    assert result.entry_id is not None


def test_spend_deducts_balance(db_session, funded_user):
    result = credit_engine.spend(db_session, funded_user, 30, idempotency_key=f"{funded_user}-a")
    assert result.ok is True
    assert result.new_balance == 70
    assert ledger_store.get_balance(db_session, funded_user) == 70


def test_spend_insufficient_returns_result_without_mutation(db_session, funded_user):
    result = credit_engine.spend(db_session, funded_user, 101, idempotency_key=f"{funded_user}-big")
    assert result.ok is False
    assert result.error == INSUFFICIENT_CREDITS
    assert result.new_balance == 100
    assert result.entry_id is None
    assert ledger_store.find_entry(db_session, f"{funded_user}-big") is None
    assert ledger_store.get_balance(db_session, funded_user) == 100


def test_spend_for_unknown_user_is_insufficient(db_session, user_id):
    result = credit_engine.spend(db_session, user_id, 1, idempotency_key=f"{user_id}-x")
    assert result.ok is False
    assert result.new_balance == 0


def test_spend_replay_returns_recorded_outcome(db_session, funded_user):
    key = f"{funded_user}-replay"
    first = credit_engine.spend(db_session, funded_user, 10, idempotency_key=key)
    credit_engine.spend(db_session, funded_user, 5, idempotency_key=f"{funded_user}-other")
    second = credit_engine.spend(db_session, funded_user, 10, idempotency_key=key)

    assert second.ok is True
    assert second.replayed is True
    assert second.entry_id == first.entry_id
    assert second.new_balance == first.new_balance == 90
    assert ledger_store.get_balance(db_session, funded_user) == 85


def test_replay_with_different_amount_conflicts(db_session, funded_user):
    key = f"{funded_user}-conflict"
    credit_engine.spend(db_session, funded_user, 10, idempotency_key=key)
    with pytest.raises(IdempotencyConflictError) as exc_info:
        credit_engine.spend(db_session, funded_user, 11, idempotency_key=key)
    assert exc_info.value.idempotency_key == key
    assert exc_info.value.recorded["delta"] == -10
    assert ledger_store.get_balance(db_session, funded_user) == 90


def test_replay_with_different_user_conflicts(db_session, funded_user):
    key = f"{funded_user}-shared"
    credit_engine.spend(db_session, funded_user, 10, idempotency_key=key)
    credit_engine.grant(db_session, f"{funded_user}-other", 50, reference="seed")
    with pytest.raises(IdempotencyConflictError):
        credit_engine.spend(db_session, f"{funded_user}-other", 10, idempotency_key=key)


def test_grant_without_key_derives_one_from_reference(db_session, user_id):
    first = credit_engine.grant(db_session, user_id, 10, LedgerReason.monthly_grant, reference="cycle:a")
    second = credit_engine.grant(db_session, user_id, 10, LedgerReason.monthly_grant, reference="cycle:a")
    assert second.replayed is True
    assert second.entry_id == first.entry_id
    assert ledger_store.get_balance(db_session, user_id) == 10
    assert ledger_store.find_entry(
        db_session, derive_idempotency_key(user_id, LedgerReason.monthly_grant, "cycle:a")
    ) is not None


def test_derive_idempotency_key_is_deterministic():
    a = derive_idempotency_key("u1", "monthly_grant", "cycle:sub_1:2026-01-01")
    b = derive_idempotency_key("u1", LedgerReason.monthly_grant, "cycle:sub_1:2026-01-01")
    c = derive_idempotency_key("u2", LedgerReason.monthly_grant, "cycle:sub_1:2026-01-01")
    assert a == b
    assert a != c
    assert a.startswith("monthly_grant:")


def test_rejects_non_positive_amounts(db_session, user_id):
    with pytest.raises(ValueError):
        credit_engine.spend(db_session, user_id, 0)
    with pytest.raises(ValueError):
        credit_engine.grant(db_session, user_id, -5)


def test_rejects_reason_for_wrong_direction(db_session, user_id):
    with pytest.raises(ValueError):
        credit_engine.spend(db_session, user_id, 1, reason=LedgerReason.monthly_grant)
    with pytest.raises(ValueError):
        credit_engine.grant(db_session, user_id, 1, reason=LedgerReason.usage_spend)


def test_refund_returns_spent_credits_once(db_session, funded_user):
    key = f"{funded_user}-refundable"
    credit_engine.spend(db_session, funded_user, 40, idempotency_key=key)

    first = credit_engine.refund(db_session, funded_user, key)
    second = credit_engine.refund(db_session, funded_user, key)

    assert first.new_balance == 100
    assert second.replayed is True
    assert ledger_store.get_balance(db_session, funded_user) == 100


def test_refund_unknown_key_raises(db_session, funded_user):
    with pytest.raises(LedgerEntryNotFoundError):
        credit_engine.refund(db_session, funded_user, "missing-key")


def test_refund_of_grant_rejected(db_session, user_id):
    credit_engine.grant(db_session, user_id, 10, idempotency_key=f"{user_id}-grant")
    with pytest.raises(ValueError):
        credit_engine.refund(db_session, user_id, f"{user_id}-grant")


def test_balance_matches_ledger_after_mixed_operations(db_session, funded_user):
    for index in range(5):
        credit_engine.spend(db_session, funded_user, 15, idempotency_key=f"{funded_user}-{index}")
    credit_engine.spend(db_session, funded_user, 500, idempotency_key=f"{funded_user}-too-much")
    credit_engine.refund(db_session, funded_user, f"{funded_user}-2")
    credit_engine.grant(db_session, funded_user, 7, reference="bonus")

    audit = balances.audit_balance(db_session, funded_user)
    assert audit.consistent is True
    assert audit.balance == 100 - 75 + 15 + 7
