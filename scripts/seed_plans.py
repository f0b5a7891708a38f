#!/usr/bin/env python3
"""Seed script to create the default plan catalog"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from sqlalchemy.orm import Session
from app.db.session import SessionLocal
from app.models.plan import Plan, PlanId

DEFAULT_PLANS = [
    {
        "id": PlanId.MONTHLY.value,
        "name": "Plano Mensal",
        "description": "Acesso completo por 1 mês",
        "price_cents": 2990,
        "duration_months": 1,
    },
    {
        "id": PlanId.SEMESTER.value,
        "name": "Plano Semestral",
        "description": "Acesso completo por 6 meses",
        "price_cents": 14300,
        "duration_months": 6,
    },
]


def seed_plans():
    db: Session = SessionLocal()
    try:
        for data in DEFAULT_PLANS:
            plan = db.query(Plan).filter(Plan.id == data["id"]).first()
            if plan:
                print(f"Plan {data['id']} already exists ({plan.price_cents} cents)")
                continue
            db.add(Plan(active=True, **data))
            print(f"Plan created: {data['id']} at {data['price_cents']} cents")
        db.commit()
    except Exception as e:
        db.rollback()
        print(f"Error seeding plans: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_plans()
