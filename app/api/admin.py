"""
Admin endpoints. All require the admin_master role.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import require_admin
from app.db.session import get_db
from app.models.coupon import Coupon
from app.models.user import User
from app.schemas.coupon import CouponStatsResponse, CouponStatsBody
from app.schemas.plan import GrantAccessRequest, GrantAccessResponse, RemovePlanResponse
from app.services import coupon_ledger, pricing, subscriptions
from app.services.errors import NotFoundError, ValidationError

router = APIRouter()


@router.get("/coupons/{code}/stats", response_model=CouponStatsResponse, response_model_by_alias=True)
def get_coupon_stats(
    code: str,
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
):
    """Usage totals for a coupon; the *Approved figures only count charges that actually went through."""
    try:
        normalized = pricing.normalize_coupon_code(code)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if normalized is None or db.query(Coupon).filter(Coupon.code == normalized).first() is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")

    stats = coupon_ledger.coupon_stats(db, normalized)
    return CouponStatsResponse(stats=CouponStatsBody(**stats.as_response()))


@router.post("/users/{uid}/grant-access", response_model=GrantAccessResponse, response_model_by_alias=True)
def grant_access(
    uid: str,
    body: GrantAccessRequest,
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
):
    """Give a user a plan without a charge. Expires after the plan's duration, like a purchase."""
    try:
        subscription = subscriptions.grant_manual_access(db, uid, body.plan, granted_by=admin_user.id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return GrantAccessResponse(
        message=f"{subscription.plan_id.capitalize()} access granted",
        plan=subscription.plan_id,
        expires_at=subscription.expires_at,
    )


@router.api_route("/users/{uid}/remove-plan", methods=["POST", "DELETE"], response_model=RemovePlanResponse)
def remove_plan(
    uid: str,
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
):
    try:
        revocation = subscriptions.revoke_access(db, uid, revoked_by=admin_user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if revocation is None:
        return RemovePlanResponse(message="User has no active plan")
    return RemovePlanResponse(message="Plan removed")
