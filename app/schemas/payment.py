from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from decimal import Decimal

from app.models.plan import PlanId


class QuoteRequest(BaseModel):
    plan_id: str = Field(alias="planId")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")

    class Config:
        populate_by_name = True


class QuoteResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    final_price: Decimal = Field(alias="finalPrice")
    base_price: Decimal = Field(alias="basePrice")
    discount: Decimal  # Percentage actually applied
    coupon_applied: bool = Field(alias="couponApplied")
    coupon_error: Optional[str] = Field(default=None, alias="couponError")
    free_access: bool = Field(default=False, alias="freeAccess")
    checkout_url: Optional[str] = Field(default=None, alias="checkoutUrl")

    class Config:
        populate_by_name = True


class BillingMeta(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    identification: Optional[Dict[str, Any]] = None
    installments: int = 1


class ChargeRequest(BaseModel):
    session_id: str = Field(alias="sessionId")
    instrument_token: str = Field(alias="instrumentToken", min_length=1)
    billing_meta: BillingMeta = Field(default_factory=BillingMeta, alias="billingMeta")

    class Config:
        populate_by_name = True


class ChargeResponse(BaseModel):
    status: str  # approved | in_review | declined
    charge_id: Optional[str] = Field(default=None, alias="chargeId")
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class IntentStatusResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    attempt: int
    status: str
    status_detail: Optional[str] = Field(default=None, alias="statusDetail")
    charge_id: Optional[str] = Field(default=None, alias="chargeId")
    plan_id: str = Field(alias="planId")
    final_price: Decimal = Field(alias="finalPrice")
    expires_at: datetime = Field(alias="expiresAt")

    class Config:
        populate_by_name = True


class ChargeMetadata(BaseModel):
    """
    Strict view of the free-form metadata carried by a gateway charge.
    Validated before any business logic reads it.
    """
    user_id: str = Field(min_length=1)
    plan_id: PlanId
    coupon_code: Optional[str] = None
    discount: Decimal = Decimal(0)
    expires_at: Optional[datetime] = None
    session_id: Optional[str] = None
    base_price_cents: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_blank_values(cls, data: Any) -> Any:
        # Gateways store missing values as empty strings
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v not in ("", None)}
        return data

    @field_validator("coupon_code")
    @classmethod
    def _normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        return v.strip().upper() or None

    @field_validator("discount")
    @classmethod
    def _discount_range(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("discount must be between 0 and 100")
        return v

    @field_validator("base_price_cents")
    @classmethod
    def _positive_price(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("base_price_cents must not be negative")
        return v

    @field_validator("expires_at")
    @classmethod
    def _naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v
