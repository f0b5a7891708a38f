from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.coupon import CouponValidationResponse
from app.services import pricing
from app.services.errors import ValidationError

router = APIRouter()


@router.get("/validate", response_model=CouponValidationResponse)
def validate_coupon(
    code: str = Query(...),
    plan_id: Optional[str] = Query(None, alias="planId"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Preview a coupon before quoting. Never persists anything."""
    try:
        normalized = pricing.normalize_coupon_code(code)
        plan_key = pricing.parse_plan_id(plan_id) if plan_id else None
    except ValidationError as e:
        return CouponValidationResponse(valid=False, code=code, error=str(e))
    if normalized is None:
        return CouponValidationResponse(valid=False, error="Coupon code is required")

    check = pricing.check_coupon(db, normalized, plan_id=plan_key, user_id=current_user.id)
    if not check.valid:
        return CouponValidationResponse(valid=False, code=normalized, error=check.message)
    return CouponValidationResponse(
        valid=True,
        code=normalized,
        discount=check.coupon.discount,
        description=check.coupon.description,
    )
