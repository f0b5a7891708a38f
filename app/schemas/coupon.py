from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal


class CouponValidationResponse(BaseModel):
    valid: bool
    code: Optional[str] = None
    discount: Optional[Decimal] = None
    description: Optional[str] = None
    error: Optional[str] = None


class CouponStatsBody(BaseModel):
    total_uses: int = Field(alias="totalUses")
    total_uses_approved: int = Field(alias="totalUsesApproved")
    unique_users: int = Field(alias="uniqueUsers")
    unique_users_approved: int = Field(alias="uniqueUsersApproved")
    total_discount: Decimal = Field(alias="totalDiscount")
    total_discount_approved: Decimal = Field(alias="totalDiscountApproved")

    class Config:
        populate_by_name = True


class CouponStatsResponse(BaseModel):
    success: bool = True
    stats: CouponStatsBody
