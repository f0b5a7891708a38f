"""Subscription activation and plan expiry"""
from datetime import datetime, timedelta

import pytest

from app.models.payment_intent import IntentStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.coupon_usage import CouponUsage
from app.services import subscriptions, transitions
from app.services.errors import NotFoundError, ValidationError


def approved_intent(db, make_intent, **kwargs):
    intent = make_intent(status=IntentStatus.APPROVED.value, **kwargs)
    return intent


def test_activate_is_idempotent_per_charge(db, user, plans, make_intent):
    intent = approved_intent(db, make_intent, charge_id="pi_1", discount="10", coupon_code="PROMO10")

    first = subscriptions.activate(db, intent)
    second = subscriptions.activate(db, intent)
    db.commit()

    assert first is not None
    assert second is None
    assert db.query(Subscription).count() == 1
    assert db.query(CouponUsage).count() == 1


def test_activate_requires_approved_charge(db, user, plans, make_intent):
    intent = make_intent(charge_id="pi_1")
    with pytest.raises(ValueError):
        subscriptions.activate(db, intent)

    no_charge = make_intent(session_id="cs_other", status=IntentStatus.APPROVED.value)
    with pytest.raises(ValueError):
        subscriptions.activate(db, no_charge)


def test_activation_uses_quote_time_expiry(db, user, plans, make_intent):
    quoted_at = datetime(2026, 1, 31, 9, 0)
    intent = make_intent(charge_id="pi_1", now=quoted_at)

    outcome = transitions.apply_status(db, intent, IntentStatus.APPROVED, "succeeded", now=datetime(2026, 2, 3, 9, 0))

    assert outcome.subscription.expires_at == datetime(2026, 2, 28, 9, 0)
    assert outcome.subscription.started_at == datetime(2026, 2, 3, 9, 0)
    db.refresh(user)
    assert user.plan == "monthly"
    assert user.plan_expires_at == datetime(2026, 2, 28, 9, 0)


def test_user_plan_follows_latest_subscription(db, user, plans, make_intent):
    monthly = make_intent(session_id="cs_1", charge_id="pi_1", now=datetime(2026, 1, 1))
    transitions.apply_status(db, monthly, IntentStatus.APPROVED, now=datetime(2026, 1, 1))
    semester = make_intent(session_id="cs_2", plan_id="semester", base_price_cents=14300,
                           charge_id="pi_2", now=datetime(2026, 1, 10))
    transitions.apply_status(db, semester, IntentStatus.APPROVED, now=datetime(2026, 1, 10))

    db.refresh(user)
    assert user.plan == "semester"
    assert user.plan_expires_at == datetime(2026, 7, 10)
    assert db.query(Subscription).count() == 2


def test_check_expired_plan_clears_expired(db, user, plans, make_intent):
    intent = make_intent(charge_id="pi_1", now=datetime(2026, 1, 1))
    transitions.apply_status(db, intent, IntentStatus.APPROVED, now=datetime(2026, 1, 1))

    result = subscriptions.check_expired_plan(db, user, now=datetime(2026, 2, 2))

    assert result["expired"] is True
    db.refresh(user)
    assert user.plan is None
    assert user.plan_expires_at is None


def test_check_expired_plan_reports_days_remaining(db, user, plans, make_intent):
    intent = make_intent(charge_id="pi_1", now=datetime(2026, 1, 1))
    transitions.apply_status(db, intent, IntentStatus.APPROVED, now=datetime(2026, 1, 1))

    result = subscriptions.check_expired_plan(db, user, now=datetime(2026, 1, 21, 12, 0))

    assert result["expired"] is False
    assert result["plan"] == "monthly"
    assert result["planExpiresAt"] == datetime(2026, 2, 1)
    assert result["daysRemaining"] == 11


def test_check_expired_plan_without_subscriptions(db, user):
    user.plan = "monthly"
    user.plan_expires_at = datetime.utcnow() + timedelta(days=3)
    db.commit()

    result = subscriptions.check_expired_plan(db, user)

    assert result == {"expired": False, "plan": None, "planExpiresAt": None, "daysRemaining": None}
    db.refresh(user)
    assert user.plan is None


def test_manual_grant_is_a_history_row(db, user, admin_user, plans):
    subscription = subscriptions.grant_manual_access(db, user.id, "semester", granted_by=admin_user.id,
                                                     now=datetime(2026, 3, 1))

    assert subscription.charge_id.startswith("MANUAL_")
    assert subscription.manually_granted
    assert subscription.granted_by == admin_user.id
    assert subscription.expires_at == datetime(2026, 9, 1)
    db.refresh(user)
    assert (user.plan, user.plan_expires_at) == ("semester", datetime(2026, 9, 1))


def test_manual_grant_rejects_unknown_plan_and_user(db, user, admin_user, plans):
    with pytest.raises(ValidationError):
        subscriptions.grant_manual_access(db, user.id, "yearly", granted_by=admin_user.id)
    with pytest.raises(NotFoundError):
        subscriptions.grant_manual_access(db, "ghost", "monthly", granted_by=admin_user.id)
    assert db.query(Subscription).count() == 0


def test_revoke_appends_a_removal_and_clears_the_plan(db, user, admin_user, plans, make_intent):
    intent = make_intent(charge_id="pi_1", now=datetime(2026, 1, 1))
    transitions.apply_status(db, intent, IntentStatus.APPROVED, now=datetime(2026, 1, 1))

    revocation = subscriptions.revoke_access(db, user.id, revoked_by=admin_user.id, now=datetime(2026, 1, 5))

    assert revocation.status == SubscriptionStatus.REVOKED.value
    db.refresh(user)
    assert user.plan is None
    assert user.plan_expires_at is None
    paid = db.query(Subscription).filter_by(charge_id="pi_1").one()
    assert paid.status == SubscriptionStatus.ACTIVE.value
    assert subscriptions.check_expired_plan(db, user, now=datetime(2026, 1, 6))["plan"] is None


def test_purchase_after_removal_restores_the_plan(db, user, admin_user, plans, make_intent):
    subscriptions.grant_manual_access(db, user.id, "monthly", granted_by=admin_user.id, now=datetime(2026, 1, 1))
    subscriptions.revoke_access(db, user.id, revoked_by=admin_user.id, now=datetime(2026, 1, 2))
    intent = make_intent(charge_id="pi_2", now=datetime(2026, 1, 3))
    transitions.apply_status(db, intent, IntentStatus.APPROVED, now=datetime(2026, 1, 3))

    db.refresh(user)
    assert user.plan == "monthly"
    assert user.plan_expires_at == datetime(2026, 2, 3)


def test_revoke_without_plan_is_a_no_op(db, user, admin_user):
    assert subscriptions.revoke_access(db, user.id, revoked_by=admin_user.id) is None
    assert db.query(Subscription).count() == 0
