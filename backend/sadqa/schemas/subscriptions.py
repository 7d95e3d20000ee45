"""Pydantic schemas for Sadqa subscriptions"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional


class CreateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cadence: Literal["daily", "weekly", "monthly", "yearly"] = Field(alias="planType")
    amount: int = Field(gt=0, description="Amount per cadence period, in paise")
    user_name: Optional[str] = Field(None, alias="userName")
    user_email: Optional[str] = Field(None, alias="userEmail")
    user_phone: Optional[str] = Field(None, alias="userPhone")
    total_cycles: Optional[int] = Field(None, gt=0, alias="totalCycles")


class LifecycleRequest(BaseModel):
    reason: Optional[str] = None


class AdminActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["pause", "resume", "cancel"]
    reason: str = Field(min_length=1)
    admin_notes: Optional[str] = Field(None, alias="adminNotes")
