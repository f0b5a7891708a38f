"""Intent store: snapshot, conditional transitions, first-writer-wins charge ids"""
from datetime import datetime
from decimal import Decimal

import pytest

from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.reconciliation_conflict import ReconciliationConflict, ConflictKind
from app.models.subscription import Subscription
from app.services import payment_intents, transitions
from app.services.errors import ValidationError


def test_create_intent_snapshots_price_and_expiry(db, user, plans, make_intent):
    now = datetime(2026, 1, 31, 10, 0)
    intent = make_intent(discount="10", coupon_code="PROMO10", now=now)

    assert intent.status == IntentStatus.PENDING.value
    assert intent.final_price_cents == 2691
    assert intent.discount_cents == 299
    assert intent.expires_at == datetime(2026, 2, 28, 10, 0)
    assert intent.attempt == 1
    assert intent.charge_id is None


def test_zero_discount_drops_coupon_code(db, user, plans, make_intent):
    intent = make_intent(discount="0", coupon_code="PROMO10")
    assert intent.coupon_code is None


def test_create_intent_rejects_discount_out_of_range(db, user, plans):
    with pytest.raises(ValidationError):
        payment_intents.create_intent(
            db, user_id=user.id, plan_id="monthly", base_price_cents=2990,
            discount_percent=Decimal("101"), coupon_code=None, session_id="cs_x", duration_months=1,
        )


def test_find_by_session_returns_latest_attempt(db, user, plans, make_intent):
    make_intent(session_id="cs_retry", status=IntentStatus.DECLINED.value, charge_id="pi_1")
    make_intent(session_id="cs_retry", attempt=2)

    intent = payment_intents.find_by_session_id(db, "cs_retry")
    assert intent.attempt == 2
    assert payment_intents.find_by_session_id(db, "cs_retry", user_id="someone-else") is None


def test_attach_charge_id_first_writer_wins(db, user, plans, make_intent):
    intent = make_intent()

    assert payment_intents.attach_charge_id(db, intent, "pi_first")
    assert payment_intents.attach_charge_id(db, intent, "pi_first")
    assert not payment_intents.attach_charge_id(db, intent, "pi_second")
    db.commit()

    db.refresh(intent)
    assert intent.charge_id == "pi_first"
    conflicts = db.query(ReconciliationConflict).all()
    assert [c.kind for c in conflicts] == [ConflictKind.CHARGE_ID_MISMATCH.value]


def test_attach_charge_owned_by_another_intent_is_a_conflict(db, user, plans, make_intent):
    make_intent(session_id="cs_a", charge_id="pi_shared")
    other = make_intent(session_id="cs_b")

    assert not payment_intents.attach_charge_id(db, other, "pi_shared")
    db.commit()

    db.refresh(other)
    assert other.charge_id is None
    assert db.query(ReconciliationConflict).filter_by(kind=ConflictKind.CHARGE_ID_MISMATCH.value).count() == 1


@pytest.mark.parametrize("stored, target, allowed", [
    (IntentStatus.PENDING, IntentStatus.IN_REVIEW, True),
    (IntentStatus.PENDING, IntentStatus.APPROVED, True),
    (IntentStatus.PENDING, IntentStatus.DECLINED, True),
    (IntentStatus.IN_REVIEW, IntentStatus.IN_REVIEW, True),
    (IntentStatus.IN_REVIEW, IntentStatus.APPROVED, True),
    (IntentStatus.IN_REVIEW, IntentStatus.DECLINED, True),
    (IntentStatus.IN_REVIEW, IntentStatus.PENDING, False),
    (IntentStatus.APPROVED, IntentStatus.DECLINED, False),
    (IntentStatus.APPROVED, IntentStatus.IN_REVIEW, False),
    (IntentStatus.APPROVED, IntentStatus.APPROVED, False),
    (IntentStatus.DECLINED, IntentStatus.APPROVED, False),
    (IntentStatus.DECLINED, IntentStatus.PENDING, False),
])
def test_update_status_only_moves_forward(db, user, plans, make_intent, stored, target, allowed):
    intent = make_intent(status=stored.value, charge_id="pi_1")

    assert payment_intents.update_status(db, intent, target) is allowed
    db.commit()
    assert intent.status == (target.value if allowed else stored.value)


def test_open_retry_attempt_copies_snapshot(db, user, plans, make_intent):
    declined = make_intent(discount="10", coupon_code="PROMO10", status=IntentStatus.DECLINED.value, charge_id="pi_1")

    retry = payment_intents.open_retry_attempt(db, declined)
    assert retry.attempt == 2
    assert retry.session_id == declined.session_id
    assert retry.status == IntentStatus.PENDING.value
    assert retry.final_price_cents == declined.final_price_cents
    assert retry.expires_at == declined.expires_at
    assert retry.coupon_code == "PROMO10"
    assert retry.charge_id is None


def test_gateway_metadata_round_trips_into_charge_metadata(db, user, plans, make_intent):
    from app.schemas.payment import ChargeMetadata

    intent = make_intent(discount="10", coupon_code="PROMO10")
    metadata = {k: "" if v is None else str(v) for k, v in payment_intents.gateway_metadata(intent).items()}
    parsed = ChargeMetadata.model_validate(metadata)

    assert parsed.user_id == user.id
    assert parsed.plan_id.value == "monthly"
    assert parsed.coupon_code == "PROMO10"
    assert parsed.discount == Decimal("10.00")
    assert parsed.expires_at == intent.expires_at
    assert parsed.base_price_cents == 2990


def test_concurrent_approvals_activate_once(session_factory, db, user, plans, make_intent):
    intent = make_intent(charge_id="pi_race")

    first, second = session_factory(), session_factory()
    try:
        a = first.get(PaymentIntent, intent.id)
        b = second.get(PaymentIntent, intent.id)

        outcome_a = transitions.apply_status(first, a, IntentStatus.APPROVED, "succeeded")
        outcome_b = transitions.apply_status(second, b, IntentStatus.APPROVED, "succeeded")
    finally:
        first.close()
        second.close()

    assert outcome_a.changed and outcome_a.subscription is not None
    assert not outcome_b.changed and outcome_b.subscription is None
    assert db.query(Subscription).filter_by(charge_id="pi_race").count() == 1


def test_late_decline_after_approval_is_recorded_not_applied(db, user, plans, make_intent):
    intent = make_intent(charge_id="pi_1")
    transitions.apply_status(db, intent, IntentStatus.APPROVED, "succeeded")

    outcome = transitions.apply_status(db, intent, IntentStatus.DECLINED, "canceled")

    assert not outcome.changed
    assert outcome.status is IntentStatus.APPROVED
    kinds = [c.kind for c in db.query(ReconciliationConflict).all()]
    assert kinds == [ConflictKind.TERMINAL_STATUS_CHANGE.value]


def test_in_review_after_approval_is_silent(db, user, plans, make_intent):
    intent = make_intent(charge_id="pi_1")
    transitions.apply_status(db, intent, IntentStatus.APPROVED, "succeeded")

    outcome = transitions.apply_status(db, intent, IntentStatus.IN_REVIEW, "processing")

    assert outcome.status is IntentStatus.APPROVED
    assert db.query(ReconciliationConflict).count() == 0
