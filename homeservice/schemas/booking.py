from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime
from typing import List, Optional

class BookingStatus(str, Enum):
    pending     = "pending"
    confirmed   = "confirmed"
    in_progress = "in_progress"
    completed   = "completed"
    cancelled   = "cancelled"
    disputed    = "disputed"

class StatusAlias(str, Enum):
    """Vocabulario que usa la app del proveedor para actualizar el estado."""
    on_the_way  = "on_the_way"
    arrived     = "arrived"
    in_progress = "in_progress"
    completed   = "completed"

class BookingCreate(BaseModel):
    service_id: str
    address_id: str
    scheduled_at: datetime
    provider_id: Optional[str] = None
    special_instructions: Optional[str] = Field(None, max_length=2000)

class AcceptRequest(BaseModel):
    estimated_arrival: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)

class DeclineRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)

class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)

class StatusUpdate(BaseModel):
    status: StatusAlias
    notes: Optional[str] = Field(None, max_length=1000)
    photo_urls: List[str] = []

class BookingOut(BaseModel):
    id: str
    booking_number: str
    customer_id: str
    provider_id: Optional[str] = None
    service_id: str
    address_id: str
    scheduled_at: datetime
    status: BookingStatus
    service_price: float
    vat_amount: float
    vat_percentage: float
    total_amount: float
    currency: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    special_instructions: Optional[str] = None
    provider_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    completion_photos: List[str] = []

class BookingHistoryOut(BaseModel):
    id: str
    booking_id: str
    status: BookingStatus
    changed_by: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    changed_at: datetime

class CancellationOut(BaseModel):
    booking: BookingOut
    refund_percentage: int
    refund_amount: float = 0.0
    refund_status: str  # not_applicable | processed | failed
