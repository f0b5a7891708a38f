"""Synchronous charge path: idempotency keys, retries after decline, timeouts"""
import pytest

from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.subscription import Subscription
from app.models.reconciliation_conflict import ReconciliationConflict, ConflictKind
from app.services import charge_submitter
from app.services.errors import NotFoundError


def submit(db, gateway, session_id="cs_test_session", user_id="user-1"):
    return charge_submitter.submit(db, gateway, user_id=user_id, session_id=session_id, instrument_token="pm_card_visa")


def test_approved_charge_activates_subscription(db, gateway, user, plans, make_intent):
    make_intent()
    gateway.script("approved")

    result = submit(db, gateway)

    assert result.status is IntentStatus.APPROVED
    assert result.charge_id.startswith("pi_test_")
    assert gateway.idempotency_keys == ["user-1-cs_test_session-1"]
    subscription = db.query(Subscription).one()
    assert subscription.charge_id == result.charge_id
    db.refresh(user)
    assert user.plan == "monthly"
    assert user.plan_expires_at == result.intent.expires_at


def test_unknown_session_is_not_found(db, gateway, user, plans):
    with pytest.raises(NotFoundError):
        submit(db, gateway, session_id="cs_missing")


def test_other_users_session_is_not_found(db, gateway, user, other_user, plans, make_intent):
    make_intent(user_id=other_user.id)
    with pytest.raises(NotFoundError):
        submit(db, gateway, user_id=user.id)


def test_decline_then_retry_uses_new_attempt(db, gateway, user, plans, make_intent):
    make_intent()
    gateway.script("declined", "approved")

    first = submit(db, gateway)
    assert first.status is IntentStatus.DECLINED
    assert first.intent.status_detail == "card_declined"

    second = submit(db, gateway)
    assert second.status is IntentStatus.APPROVED
    assert gateway.idempotency_keys == ["user-1-cs_test_session-1", "user-1-cs_test_session-2"]

    attempts = db.query(PaymentIntent).order_by(PaymentIntent.attempt).all()
    assert [(i.attempt, i.status) for i in attempts] == [(1, "declined"), (2, "approved")]
    assert attempts[0].charge_id != attempts[1].charge_id
    assert db.query(Subscription).count() == 1


def test_timeout_goes_to_review_and_retry_reuses_key(db, gateway, user, plans, make_intent):
    make_intent()
    gateway.script("timeout", "approved")

    first = submit(db, gateway)
    assert first.status is IntentStatus.IN_REVIEW
    assert first.message == charge_submitter.PENDING_CONFIRMATION
    assert first.charge_id is None
    assert db.query(Subscription).count() == 0

    second = submit(db, gateway)
    assert second.status is IntentStatus.APPROVED
    assert gateway.idempotency_keys == ["user-1-cs_test_session-1", "user-1-cs_test_session-1"]
    assert db.query(PaymentIntent).count() == 1


def test_timeout_after_charge_is_never_reported_as_decline(db, gateway, user, plans, make_intent):
    make_intent()
    gateway.script("timeout_after_charge")

    result = submit(db, gateway)

    assert result.status is IntentStatus.IN_REVIEW
    assert len(gateway.charges) == 1
    intent = db.query(PaymentIntent).one()
    assert intent.status == IntentStatus.IN_REVIEW.value
    assert intent.status_detail.startswith("gateway_undetermined")


def test_gateway_review_status_leaves_intent_in_review(db, gateway, user, plans, make_intent):
    make_intent()
    gateway.script("in_review")

    result = submit(db, gateway)

    assert result.status is IntentStatus.IN_REVIEW
    assert result.charge_id is not None
    assert db.query(Subscription).count() == 0


def test_resubmit_with_attached_charge_refreshes_instead_of_charging(db, gateway, user, plans, make_intent):
    make_intent()
    gateway.script("in_review")
    first = submit(db, gateway)
    gateway.set_status(first.charge_id, "succeeded")

    second = submit(db, gateway)

    assert second.status is IntentStatus.APPROVED
    assert second.charge_id == first.charge_id
    assert len(gateway.idempotency_keys) == 1


def test_resubmit_after_approval_is_a_no_op(db, gateway, user, plans, make_intent):
    make_intent()
    submit(db, gateway)

    again = submit(db, gateway)

    assert again.status is IntentStatus.APPROVED
    assert again.message == "Payment already approved"
    assert len(gateway.idempotency_keys) == 1
    assert db.query(Subscription).count() == 1


def test_amount_mismatch_is_recorded_and_status_still_applied(db, gateway, user, plans, make_intent):
    intent = make_intent()
    charge = gateway.add_charge("succeeded", amount_cents=1000)

    result = charge_submitter.apply_charge(db, intent, charge)

    assert result.status is IntentStatus.APPROVED
    kinds = [c.kind for c in db.query(ReconciliationConflict).all()]
    assert kinds == [ConflictKind.AMOUNT_MISMATCH.value]
