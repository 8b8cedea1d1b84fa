"""
Contrato de la pasarela de pago.

La pasarela es un colaborador externo: la capa de liquidación solo ve estos
resultados y el estado ya traducido a PaymentStatus.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import json
import logging

import stripe

from ..schemas.payment import PaymentStatus
from ..settlement.errors import WebhookError

logger = logging.getLogger(__name__)

GATEWAY_TO_PAYMENT_STATUS = {
    "succeeded": PaymentStatus.completed,
    "paid": PaymentStatus.completed,
    "processing": PaymentStatus.processing,
    "pending": PaymentStatus.pending,
    "requires_payment_method": PaymentStatus.pending,
    "requires_confirmation": PaymentStatus.pending,
    "requires_action": PaymentStatus.pending,
    "requires_capture": PaymentStatus.pending,
    "failed": PaymentStatus.failed,
    "canceled": PaymentStatus.failed,
    "cancelled": PaymentStatus.failed,
}


def map_gateway_status(gateway_status: Optional[str]) -> PaymentStatus:
    """Los estados desconocidos quedan en pending, nunca en completed."""
    if not gateway_status:
        return PaymentStatus.pending
    return GATEWAY_TO_PAYMENT_STATUS.get(gateway_status.lower(), PaymentStatus.pending)


@dataclass
class IntentResult:
    intent_id: str
    client_secret: str


@dataclass
class ChargeResult:
    transaction_id: Optional[str]
    status: PaymentStatus
    gateway_response: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class RefundResult:
    refund_id: Optional[str]
    status: str
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("succeeded", "pending") and not self.error_message


@dataclass
class GatewayEvent:
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway:
    """Interfaz común de las pasarelas (Stripe y mock)."""

    name = "base"

    def __init__(self, webhook_secret: str):
        self.webhook_secret = webhook_secret

    async def create_intent(self, amount: float, currency: str, booking_id: str,
                            metadata: Optional[Dict[str, str]] = None) -> IntentResult:
        raise NotImplementedError

    async def charge(self, amount: float, currency: str, token: Optional[str], booking_id: str,
                     idempotency_key: Optional[str] = None) -> ChargeResult:
        raise NotImplementedError

    async def get_status(self, transaction_id: str) -> str:
        raise NotImplementedError

    async def refund(self, transaction_id: str, amount: float, reason: str,
                     idempotency_key: Optional[str] = None) -> RefundResult:
        raise NotImplementedError

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """
        Verifica la firma con el esquema de Stripe (t=...,v1=HMAC-SHA256).
        Lanza WebhookError si falta la firma, no cuadra o el cuerpo no es JSON.
        """
        if not signature:
            raise WebhookError("Falta la firma del webhook")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            body = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Firma de webhook inválida: {e}")
            raise WebhookError("Firma de webhook inválida")
        except ValueError as e:
            raise WebhookError(f"Payload de webhook inválido: {e}")

        event_id = body.get("id")
        event_type = body.get("type")
        if not event_id or not event_type:
            raise WebhookError("Evento de webhook sin id o tipo")
        return GatewayEvent(id=event_id, type=event_type, data=(body.get("data") or {}).get("object") or {})
