from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.plan import Plan
from app.schemas.plan import PlanListResponse, PlanResponse
from app.utils.money import cents_to_decimal

router = APIRouter()


@router.get("", response_model=PlanListResponse, response_model_by_alias=True)
def list_plans(db: Session = Depends(get_db)):
    """Active plans, shortest first."""
    plans = db.query(Plan).filter(Plan.active.is_(True)).order_by(Plan.duration_months.asc()).all()
    return PlanListResponse(plans=[
        PlanResponse(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price=cents_to_decimal(plan.price_cents),
            duration_months=plan.duration_months,
        )
        for plan in plans
    ])
