# homeservice/routers/webhooks.py
from fastapi import APIRouter, Depends, Header, Request
from typing import Optional
import logging

from ..deps import get_settlement_service
from ..schemas.common import Result
from ..settlement.service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe", response_model=Result[dict])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: SettlementService = Depends(get_settlement_service),
):
    """
    Webhook anónimo de la pasarela. El cuerpo se lee en crudo porque la firma
    se calcula sobre los bytes exactos recibidos.
    """
    payload = await request.body()
    outcome = await service.handle_webhook(payload, stripe_signature)
    return Result[dict].ok({"outcome": outcome})
