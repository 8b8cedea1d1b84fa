# homeservice/routers/bookings.py
from fastapi import APIRouter, Depends, status, Path, Request
from typing import List

from ..deps import get_settlement_service
from ..schemas.booking import (
    AcceptRequest,
    BookingCreate,
    BookingHistoryOut,
    BookingOut,
    CancelRequest,
    CancellationOut,
    DeclineRequest,
    StatusUpdate,
)
from ..schemas.common import Result
from ..security import get_current_user
from ..settlement.service import CancellationOutcome, SettlementService
from ..middleware.rate_limit import apply_rate_limit
from ..utils import to_id
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_out(doc: dict) -> dict:
    d = to_id(doc)
    d.setdefault("completion_photos", [])
    return d


def _cancellation_out(outcome: CancellationOutcome) -> Result[CancellationOut]:
    return Result[CancellationOut].ok(
        {
            "booking": _to_out(outcome.booking),
            "refund_percentage": outcome.refund_percentage,
            "refund_amount": outcome.refund_amount,
            "refund_status": outcome.refund_status,
        },
        message=outcome.message,
    )

# ---------- Endpoints ----------

@router.post("", response_model=Result[BookingOut], status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: Request,
    payload: BookingCreate,
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    # Rate limiting: máximo 15 reservas por minuto por IP
    apply_rate_limit(request, "15/minute")
    doc = await service.create_booking(current, payload)
    return Result[BookingOut].ok(_to_out(doc), message="Reserva creada")

@router.get("/{booking_id}", response_model=Result[BookingOut])
async def get_booking(
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    doc = await service.get_booking(booking_id, current)
    return Result[BookingOut].ok(_to_out(doc))

@router.get("/{booking_id}/history", response_model=Result[List[BookingHistoryOut]])
async def get_history(
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    rows = await service.booking_history(booking_id, current)
    return Result[List[BookingHistoryOut]].ok([to_id(r) for r in rows])

@router.post("/{booking_id}/accept", response_model=Result[BookingOut])
async def accept_booking(
    body: AcceptRequest,
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    doc = await service.accept(booking_id, current, body.estimated_arrival, body.notes)
    return Result[BookingOut].ok(_to_out(doc), message="Reserva aceptada")

@router.post("/{booking_id}/decline", response_model=Result[CancellationOut])
async def decline_booking(
    body: DeclineRequest,
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    outcome = await service.decline(booking_id, current["id"], body.reason, body.notes)
    return _cancellation_out(outcome)

@router.post("/{booking_id}/cancel", response_model=Result[CancellationOut])
async def cancel_booking(
    body: CancelRequest,
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    outcome = await service.cancel(booking_id, current["id"], body.reason)
    return _cancellation_out(outcome)

@router.patch("/{booking_id}/status", response_model=Result[BookingOut])
async def patch_status(
    body: StatusUpdate,
    booking_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    service: SettlementService = Depends(get_settlement_service),
    current=Depends(get_current_user),
):
    doc = await service.update_status(booking_id, current["id"], body.status, body.notes, body.photo_urls)
    return Result[BookingOut].ok(_to_out(doc), message="Estado actualizado")
