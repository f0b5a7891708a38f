from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.plan import ExpiredPlanResponse
from app.services import subscriptions

router = APIRouter()


@router.post("/check-expired-plan", response_model=ExpiredPlanResponse, response_model_by_alias=True)
def check_expired_plan(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Clear the user's plan if its latest subscription has expired; otherwise report days remaining."""
    result = subscriptions.check_expired_plan(db, current_user)
    return ExpiredPlanResponse(
        expired=result["expired"],
        plan=result["plan"],
        plan_expires_at=result["planExpiresAt"],
        days_remaining=result["daysRemaining"],
    )
