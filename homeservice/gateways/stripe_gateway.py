"""
Adaptador de Stripe.
El SDK de Stripe es síncrono: cada llamada se ejecuta en un hilo con
asyncio.to_thread para no bloquear el event loop.
"""
from typing import Dict
import asyncio
import logging

import stripe

from ..settlement.calculator import to_minor_units
from ..settlement.errors import GatewayError
from .base import ChargeResult, IntentResult, PaymentGateway, RefundResult, map_gateway_status

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str):
        super().__init__(webhook_secret)
        if not secret_key:
            raise ValueError("STRIPE_SECRET_KEY no está configurada")
        stripe.api_key = secret_key

    async def create_intent(self, amount, currency, booking_id, metadata=None) -> IntentResult:
        meta: Dict[str, str] = {"booking_id": str(booking_id)}
        meta.update(metadata or {})
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method_types=["card"],
                metadata=meta,
                description=f"Pago de la reserva {booking_id}",
                idempotency_key=f"intent-{booking_id}-{to_minor_units(amount)}",
            )
        except stripe.StripeError as e:
            logger.error(f"Error de Stripe creando intent para reserva {booking_id}: {e}", exc_info=True)
            raise GatewayError(f"Error de la pasarela: {e.user_message or str(e)}")

        logger.info(f"Stripe payment intent creado: {intent['id']} para reserva {booking_id}")
        return IntentResult(intent_id=intent["id"], client_secret=intent["client_secret"])

    async def charge(self, amount, currency, token, booking_id, idempotency_key=None) -> ChargeResult:
        if not token:
            return ChargeResult(None, map_gateway_status("failed"), None, "Falta el token de pago")
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method=token,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"booking_id": str(booking_id)},
                description=f"Pago de la reserva {booking_id}",
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.warning(f"Tarjeta rechazada para reserva {booking_id}: {e.user_message}")
            return ChargeResult(None, map_gateway_status("failed"), e.code, e.user_message or str(e))
        except stripe.StripeError as e:
            logger.error(f"Error de Stripe cobrando reserva {booking_id}: {e}", exc_info=True)
            raise GatewayError(f"Error de la pasarela: {e.user_message or str(e)}")

        logger.info(f"Stripe cobro {intent['id']} para reserva {booking_id}: {intent['status']}")
        return ChargeResult(intent["id"], map_gateway_status(intent["status"]), intent["status"])

    async def get_status(self, transaction_id: str) -> str:
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, transaction_id)
        except stripe.StripeError as e:
            logger.error(f"Error consultando el pago {transaction_id}: {e}", exc_info=True)
            raise GatewayError(f"Error de la pasarela: {e.user_message or str(e)}")
        return intent["status"]

    async def refund(self, transaction_id, amount, reason, idempotency_key=None) -> RefundResult:
        params = {
            "amount": to_minor_units(amount),
            "reason": "requested_by_customer",
            "metadata": {"reason": reason[:500]},
            "idempotency_key": idempotency_key,
        }
        # Los cobros antiguos son ch_..., los nuevos pi_...
        if transaction_id.startswith("ch_"):
            params["charge"] = transaction_id
        else:
            params["payment_intent"] = transaction_id
        try:
            refund = await asyncio.to_thread(stripe.Refund.create, **params)
        except stripe.StripeError as e:
            logger.error(f"Error reembolsando {transaction_id}: {e}", exc_info=True)
            return RefundResult(None, "failed", e.user_message or str(e))

        logger.info(f"Stripe reembolso {refund['id']} para {transaction_id}: {refund['status']}")
        return RefundResult(refund["id"], refund["status"])
