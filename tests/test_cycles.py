"""Tests for billing-cycle grants."""

from datetime import timedelta

import pytest

from creditledger.models.ledger import LedgerReason
from creditledger.models.subscription import Subscription, SubscriptionStatus
from creditledger.services.cycles import (
    CycleManager,
    CycleState,
    cycle_reference,
    subscription_key,
)
from creditledger.services.ledger_store import ledger_store


@pytest.fixture()
def cycles() -> CycleManager:
    return CycleManager(default_plan_slug="free", plan_change_topup=False)


@pytest.fixture()
def pro_subscription(db_session, user_id, period_start):
    subscription = Subscription(
        user_id=user_id,
        plan_slug="pro",
        status=SubscriptionStatus.active,
        current_period_start=period_start,
        current_period_end=period_start + timedelta(days=30),
        provider_customer_id=f"cus_{user_id}",
        provider_subscription_id=f"sub_{user_id}",
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


def test_cycle_reference_uses_subscription_and_period(pro_subscription, period_start, user_id):
    assert subscription_key(pro_subscription) == f"sub_{user_id}"
    assert cycle_reference(pro_subscription) == (
        f"cycle:sub_{user_id}:{period_start.isoformat()}"
    )


def test_free_subscription_key(user_id):
    subscription = Subscription(user_id=user_id, plan_slug="free")
    assert subscription_key(subscription) == f"free-{user_id}"


def test_grants_once_per_cycle(db_session, cycles, pro_subscription, period_start, user_id):
    now = period_start + timedelta(days=1)
    assert cycles.cycle_state(db_session, pro_subscription) is CycleState.awaiting_cycle

    first = cycles.ensure_cycle_grant(db_session, pro_subscription, now)
    second = cycles.ensure_cycle_grant(db_session, pro_subscription, now + timedelta(hours=5))

    assert first is not None
    assert first.new_balance == 250
    assert second is None
    assert cycles.cycle_state(db_session, pro_subscription) is CycleState.granted_current_cycle
    assert ledger_store.get_balance(db_session, user_id) == 250

    account = ledger_store.get_account(db_session, user_id)
    db_session.refresh(account)
    assert account.cycle_end is not None


def test_no_grant_outside_period(db_session, cycles, pro_subscription, period_start, user_id):
    assert cycles.ensure_cycle_grant(db_session, pro_subscription, period_start - timedelta(seconds=1)) is None
    assert cycles.ensure_cycle_grant(db_session, pro_subscription, period_start + timedelta(days=30)) is None
    assert ledger_store.get_balance(db_session, user_id) == 0


def test_past_due_paid_plan_not_granted(db_session, cycles, pro_subscription, period_start, user_id):
    pro_subscription.status = SubscriptionStatus.past_due
    db_session.commit()
    assert cycles.ensure_cycle_grant(db_session, pro_subscription, period_start + timedelta(days=1)) is None
    assert ledger_store.get_balance(db_session, user_id) == 0


def test_free_plan_granted_even_when_canceled(db_session, cycles, user_id, period_start):
    subscription = Subscription(
        user_id=user_id,
        plan_slug="free",
        status=SubscriptionStatus.canceled,
        current_period_start=period_start,
        current_period_end=period_start + timedelta(days=30),
    )
    db_session.add(subscription)
    db_session.commit()

    result = cycles.ensure_cycle_grant(db_session, subscription, period_start + timedelta(days=2))
    assert result is not None
    assert result.new_balance == 10


def test_unknown_plan_is_skipped(db_session, cycles, pro_subscription, period_start):
    pro_subscription.plan_slug = "enterprise"
    db_session.commit()
    assert cycles.ensure_cycle_grant(db_session, pro_subscription, period_start + timedelta(days=1)) is None


def test_plan_change_topup_grants_difference(db_session, pro_subscription, period_start, user_id):
    cycles = CycleManager(default_plan_slug="free", plan_change_topup=True)
    cycles.ensure_cycle_grant(db_session, pro_subscription, period_start + timedelta(days=1))

    pro_subscription.plan_slug = "team"
    db_session.commit()
    result = cycles.apply_plan_change(db_session, pro_subscription, "pro", period_start)

    assert result is not None
    assert result.new_balance == 1000
    items, _ = ledger_store.list_entries(
        db_session, user_id, LedgerReason.plan_change_adjustment, "desc", 10, 0
    )
    assert [item.delta for item in items] == [750]


def test_plan_change_topup_disabled_or_downgrade(db_session, cycles, pro_subscription, period_start):
    pro_subscription.plan_slug = "team"
    db_session.commit()
    assert cycles.apply_plan_change(db_session, pro_subscription, "pro", period_start) is None

    enabled = CycleManager(default_plan_slug="free", plan_change_topup=True)
    pro_subscription.plan_slug = "creator"
    db_session.commit()
    assert enabled.apply_plan_change(db_session, pro_subscription, "pro", period_start) is None
