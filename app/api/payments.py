"""
Checkout API: quote a plan and submit a charge for the quoted session.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_gateway
from app.db.session import get_db
from app.models.payment_intent import IntentStatus
from app.models.user import User
from app.schemas.payment import (
    QuoteRequest,
    QuoteResponse,
    ChargeRequest,
    ChargeResponse,
    IntentStatusResponse,
)
from app.services import charge_submitter, checkout, payment_intents
from app.services.errors import GatewayError, NotFoundError, ValidationError
from app.utils.money import cents_to_decimal

logger = logging.getLogger(__name__)

router = APIRouter()

_STATUS_CODES = {
    IntentStatus.APPROVED: status.HTTP_200_OK,
    IntentStatus.IN_REVIEW: status.HTTP_202_ACCEPTED,
    IntentStatus.PENDING: status.HTTP_202_ACCEPTED,
    IntentStatus.DECLINED: status.HTTP_400_BAD_REQUEST,
}


@router.post("/quote", response_model=QuoteResponse, response_model_by_alias=True)
def create_quote(
    body: QuoteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway=Depends(get_gateway),
):
    """Price the plan (with optional coupon) and open a checkout session for it."""
    try:
        result = checkout.open_checkout(db, gateway, current_user, body.plan_id, body.coupon_code)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except GatewayError as e:
        logger.error(f"[QUOTE] Could not open checkout session for user {current_user.id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider unavailable")

    quote = result.quote
    return QuoteResponse(
        session_id=result.intent.session_id,
        final_price=quote.final_price,
        base_price=quote.base_price,
        discount=quote.discount_percent,
        coupon_applied=quote.coupon_code is not None,
        coupon_error=quote.coupon_rejection.value if quote.coupon_rejection else None,
        free_access=result.free_access,
        checkout_url=result.checkout_url,
    )


@router.post("/process", response_model=ChargeResponse, response_model_by_alias=True)
def process_payment(
    body: ChargeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway=Depends(get_gateway),
):
    """
    Charge the instrument for a quoted session.
    200 approved, 202 in_review (settled later by webhook), 400 declined.
    """
    try:
        result = charge_submitter.submit(
            db,
            gateway,
            user_id=current_user.id,
            session_id=body.session_id,
            instrument_token=body.instrument_token,
            billing_meta=body.billing_meta.model_dump(),
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except GatewayError as e:
        logger.error(f"[CHARGE] Gateway error for session {body.session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error")

    response = ChargeResponse(status=result.status.value, charge_id=result.charge_id, message=result.message)
    return JSONResponse(
        status_code=_STATUS_CODES[result.status],
        content=response.model_dump(mode="json", by_alias=True),
    )


@router.get("/intents/{session_id}", response_model=IntentStatusResponse, response_model_by_alias=True)
def get_intent_status(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Latest attempt for a session, for the success/failure pages to poll."""
    intent = payment_intents.find_by_session_id(db, session_id, user_id=current_user.id)
    if intent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment session not found")
    return IntentStatusResponse(
        session_id=intent.session_id,
        attempt=intent.attempt,
        status=intent.status,
        status_detail=intent.status_detail,
        charge_id=intent.charge_id,
        plan_id=intent.plan_id,
        final_price=cents_to_decimal(intent.final_price_cents),
        expires_at=intent.expires_at,
    )
