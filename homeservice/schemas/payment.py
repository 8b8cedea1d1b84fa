from pydantic import BaseModel, Field, field_validator
from enum import Enum
from datetime import datetime
from typing import Optional
import re

class PaymentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"
    partially_refunded = "partially_refunded"

class PaymentMethod(str, Enum):
    card = "card"
    wallet = "wallet"
    cash = "cash"
    bank_transfer = "bank_transfer"

def _validate_object_id(v: str) -> str:
    if not re.match(r'^[0-9a-fA-F]{24}$', v):
        raise ValueError("Formato de booking_id inválido")
    return v

class PaymentIntentCreate(BaseModel):
    booking_id: str = Field(..., description="ID de la reserva a pagar")

    @field_validator('booking_id')
    @classmethod
    def validate_booking_id(cls, v: str) -> str:
        return _validate_object_id(v)

class PaymentCreate(BaseModel):
    booking_id: str = Field(..., description="ID de la reserva a pagar")
    amount: float = Field(..., gt=0, le=100000, description="Monto a cobrar")
    payment_method: PaymentMethod = Field(PaymentMethod.card, description="Método de pago")
    payment_token: Optional[str] = Field(None, description="Token de tarjeta emitido por la pasarela")

    @field_validator('booking_id')
    @classmethod
    def validate_booking_id(cls, v: str) -> str:
        """Valida que el booking_id tenga formato ObjectId válido"""
        return _validate_object_id(v)

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: float) -> float:
        # Redondear a 2 decimales
        return round(v, 2)

class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0, description="Si se omite, se reembolsa lo pendiente")
    reason: str = Field("Reembolso solicitado por administración", max_length=500)

class PaymentOut(BaseModel):
    id: str
    booking_id: str
    customer_id: str
    provider_id: Optional[str] = None
    amount: float
    currency: str
    platform_fee: float
    provider_earnings: float
    status: PaymentStatus
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    gateway_response: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None

class PaymentIntentOut(BaseModel):
    payment_id: str
    intent_id: str
    client_secret: str
    amount: float
    currency: str
