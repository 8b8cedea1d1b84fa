# homeservice/routers/payments.py
from fastapi import APIRouter, Depends, Path, Request, status
from fastapi.responses import JSONResponse
from typing import Optional

from ..deps import get_settlement_service
from ..schemas.common import Result
from ..schemas.payment import (
    PaymentCreate,
    PaymentIntentCreate,
    PaymentIntentOut,
    PaymentOut,
    PaymentStatus,
    RefundRequest,
)
from ..security import get_current_admin, get_current_user
from ..settlement.service import SettlementService
from ..middleware.rate_limit import apply_rate_limit
from ..utils import to_id
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

OBJECT_ID = r"^[0-9a-fA-F]{24}$"


@router.post("/create-intent", response_model=Result[PaymentIntentOut], status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    request: Request,
    payload: PaymentIntentCreate,
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    # Rate limiting: máximo 10 intents por minuto por IP
    apply_rate_limit(request, "10/minute")
    outcome = await service.create_payment_intent(payload.booking_id, current)
    return Result[PaymentIntentOut].ok({
        "payment_id": str(outcome.payment["_id"]),
        "intent_id": outcome.intent_id,
        "client_secret": outcome.client_secret,
        "amount": outcome.payment["amount"],
        "currency": outcome.payment["currency"],
    })

@router.post("/process", response_model=Result[PaymentOut], status_code=status.HTTP_201_CREATED)
async def process_payment(
    request: Request,
    payload: PaymentCreate,
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    # Rate limiting: máximo 10 pagos por minuto por IP
    apply_rate_limit(request, "10/minute")
    doc = await service.process_payment(
        payload.booking_id, payload.amount, payload.payment_method, current, payload.payment_token,
    )
    if doc["status"] == PaymentStatus.failed.value:
        # El intento queda registrado; el cliente recibe el motivo del rechazo
        body = Result[PaymentOut](
            is_success=False,
            data=to_id(doc),
            message=doc.get("failure_reason") or "El pago fue rechazado",
        )
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return Result[PaymentOut].ok(to_id(doc), message="Pago procesado")

@router.get("/booking/{booking_id}", response_model=Result[Optional[PaymentOut]])
async def get_booking_payment(
    booking_id: str = Path(..., pattern=OBJECT_ID),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    doc = await service.payment_for_booking(booking_id, current)
    if not doc:
        return Result[Optional[PaymentOut]].ok(None, message="La reserva no tiene pagos")
    return Result[Optional[PaymentOut]].ok(to_id(doc))

@router.get("/{payment_id}/verify", response_model=Result[PaymentOut])
async def verify_payment(
    payment_id: str = Path(..., pattern=OBJECT_ID),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    doc = await service.verify_payment(payment_id, current)
    return Result[PaymentOut].ok(to_id(doc))

@router.post("/{payment_id}/refund", response_model=Result[PaymentOut])
async def refund_payment(
    request: Request,
    body: RefundRequest,
    payment_id: str = Path(..., pattern=OBJECT_ID),
    service: SettlementService = Depends(get_settlement_service),
    admin=Depends(get_current_admin),
):
    apply_rate_limit(request, "10/minute")
    doc = await service.refund_payment(payment_id, admin, body.amount, body.reason)
    return Result[PaymentOut].ok(to_id(doc), message="Reembolso procesado")
