#!/usr/bin/env python3
"""
Manual reconciliation.

Replays webhook deliveries that were stored but never processed, then re-fetches
every non-terminal intent that already has a charge id and applies whatever the
gateway says now. Safe to run repeatedly.

Usage:
    python scripts/reconcile_payments.py [--dry-run]
"""
import sys
import os
import argparse
import logging

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from sqlalchemy.orm import Session
from app.core.config import settings
from app.db.session import SessionLocal
from app.models.payment_event import PaymentEvent
from app.models.payment_intent import PaymentIntent
from app.services import webhook_reconciler
from app.services.gateway import StripeGateway
from app.services.payment_intents import OPEN_STATUSES

logger = logging.getLogger("reconcile_payments")


def reconcile_payments(db: Session, gateway, dry_run: bool = False) -> dict:
    counts = {"events_replayed": 0, "events_failed": 0, "intents_refreshed": 0, "intents_failed": 0}

    events = db.query(PaymentEvent).filter(
        PaymentEvent.processed.is_(False)
    ).order_by(PaymentEvent.received_at.asc()).all()
    logger.info(f"[RECONCILE] {len(events)} unprocessed deliveries")
    for event in events:
        if dry_run:
            print(f"  would replay {event.event_type} for charge {event.charge_id}")
            continue
        if webhook_reconciler.replay_event(db, gateway, event):
            counts["events_replayed"] += 1
        else:
            counts["events_failed"] += 1

    charge_ids = [
        row.charge_id for row in db.query(PaymentIntent.charge_id).filter(
            PaymentIntent.status.in_(OPEN_STATUSES),
            PaymentIntent.charge_id.isnot(None),
        ).all()
    ]
    logger.info(f"[RECONCILE] {len(charge_ids)} open intents with a charge")
    for charge_id in charge_ids:
        if dry_run:
            print(f"  would refresh charge {charge_id}")
            continue
        try:
            outcome = webhook_reconciler.reconcile_charge(db, gateway, charge_id)
            logger.info(f"[RECONCILE] Charge {charge_id}: {outcome.intent.status}")
            counts["intents_refreshed"] += 1
        except Exception as e:
            db.rollback()
            logger.error(f"[RECONCILE] Charge {charge_id} failed: {e}")
            counts["intents_failed"] += 1

    return counts


def main():
    parser = argparse.ArgumentParser(description="Reconcile local payment state with the gateway")
    parser.add_argument("--dry-run", action="store_true", help="List what would be reconciled without changing anything")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    db: Session = SessionLocal()
    try:
        counts = reconcile_payments(db, StripeGateway(), dry_run=args.dry_run)
        print("\nSummary:")
        for key, value in counts.items():
            print(f"  {key}: {value}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
