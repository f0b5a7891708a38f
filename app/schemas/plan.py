from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal
from datetime import datetime


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    duration_months: int = Field(alias="durationMonths")

    class Config:
        populate_by_name = True


class PlanListResponse(BaseModel):
    success: bool = True
    plans: List[PlanResponse]


class ExpiredPlanResponse(BaseModel):
    expired: bool
    plan: Optional[str] = None
    plan_expires_at: Optional[datetime] = Field(default=None, alias="planExpiresAt")
    days_remaining: Optional[int] = Field(default=None, alias="daysRemaining")

    class Config:
        populate_by_name = True


class GrantAccessRequest(BaseModel):
    plan: str


class GrantAccessResponse(BaseModel):
    success: bool = True
    message: str
    plan: str
    expires_at: datetime = Field(alias="expiresAt")

    class Config:
        populate_by_name = True


class RemovePlanResponse(BaseModel):
    success: bool = True
    message: str
