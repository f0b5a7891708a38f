"""Manual reconciliation script"""
import importlib.util
import os
from datetime import datetime

from app.models.payment_event import PaymentEvent
from app.models.payment_intent import IntentStatus
from app.models.subscription import Subscription
from app.services import payment_intents

SCRIPT = os.path.join(os.path.dirname(os.path.dirname(__file__)), "scripts", "reconcile_payments.py")


def load_script():
    spec = importlib.util.spec_from_file_location("reconcile_payments", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_reconcile_refreshes_open_intents_and_replays_events(db, gateway, user, plans, make_intent):
    script = load_script()
    stuck = make_intent(session_id="cs_stuck", status=IntentStatus.IN_REVIEW.value, charge_id="pi_stuck")
    gateway.add_charge("succeeded", charge_id="pi_stuck", metadata=payment_intents.gateway_metadata(stuck))

    orphan = make_intent(session_id="cs_orphan")
    gateway.add_charge("succeeded", charge_id="pi_orphan", metadata=payment_intents.gateway_metadata(orphan))
    db.add(PaymentEvent(event_type="payment", charge_id="pi_orphan", payload={}, processed=False,
                        received_at=datetime.utcnow()))
    db.commit()

    counts = script.reconcile_payments(db, gateway)

    assert counts["events_replayed"] == 1
    assert counts["intents_refreshed"] == 1
    db.expire_all()
    assert db.query(Subscription).count() == 2
    assert db.query(PaymentEvent).filter_by(processed=False).count() == 0


def test_dry_run_changes_nothing(db, gateway, user, plans, make_intent):
    script = load_script()
    make_intent(status=IntentStatus.IN_REVIEW.value, charge_id="pi_stuck")

    counts = script.reconcile_payments(db, gateway, dry_run=True)

    assert counts["intents_refreshed"] == 0
    assert db.query(Subscription).count() == 0
