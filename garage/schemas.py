"""Request and response bodies of the HTTP API."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from garage.models.appointment import AppointmentStatus, ServiceType
from garage.models.loyalty import LoyaltyTransactionType
from pydantic import BaseModel, ConfigDict, Field, field_validator


class VehicleIn(BaseModel):
    make: str = Field(..., min_length=1, max_length=50)
    model: str = Field(..., min_length=1, max_length=50)
    plate: str = Field(..., min_length=1, max_length=20, description="License plate")

    @field_validator("plate")
    @classmethod
    def normalize_plate(cls, v):
        return v.strip().upper()


class BookAppointmentRequest(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=200)
    service_type: str = Field(..., description="maintenance, repair, reprogramming (or the French labels)")
    scheduled_at: datetime = Field(..., description="ISO 8601 instant with a UTC offset")
    vehicle: VehicleIn
    notes: Optional[str] = Field(None, max_length=2000)
    user_id: Optional[int] = Field(None, description="Book on behalf of another user (staff only)")


class ModifyAppointmentRequest(BaseModel):
    scheduled_at: Optional[datetime] = None
    service_type: Optional[str] = None
    customer_notes: Optional[str] = Field(None, max_length=2000)
    vehicle: Optional[VehicleIn] = None


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    customer_name: str
    scheduled_at: datetime
    service_type: ServiceType
    vehicle_make: str
    vehicle_model: str
    vehicle_plate: str
    customer_notes: Optional[str] = None
    status: AppointmentStatus
    reminder_sent: bool
    reminder_sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class CanModifyResponse(BaseModel):
    can_modify: bool
    message: str
    scheduled_at: datetime


class CompletionResponse(BaseModel):
    appointment: AppointmentResponse
    loyalty_credited: bool
    loyalty_points_awarded: int = 0
    loyalty_error: Optional[str] = None


class AvailableSlotsResponse(BaseModel):
    date: date
    timezone: str
    slots: List[datetime]


class LoyaltyTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    points: int
    type: LoyaltyTransactionType
    description: str
    related_appointment_id: Optional[int] = None
    related_reward_id: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime


class LoyaltyBalanceResponse(BaseModel):
    user_id: int
    loyalty_points: int


class LoyaltyAdjustmentRequest(BaseModel):
    points: int = Field(..., description="Signed number of points to add or remove")
    reason: str = Field(..., min_length=1, max_length=255)


class RedemptionRequest(BaseModel):
    points: int = Field(..., gt=0)
    reward_id: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=255)


class SweepResponse(BaseModel):
    success: bool = True
    report: Dict[str, Any]
