"""
Pasarela de pago simulada para desarrollo y tests.
Deterministica: el token decide el resultado del cobro.
"""
from typing import Dict, Optional
import logging
import uuid

from ..schemas.payment import PaymentStatus
from ..settlement.errors import GatewayError
from .base import ChargeResult, IntentResult, PaymentGateway, RefundResult

logger = logging.getLogger(__name__)

DECLINED_TOKEN = "tok_chargeDeclined"
ERROR_TOKEN = "tok_error"


class MockGateway(PaymentGateway):
    name = "mock"

    def __init__(self, webhook_secret: str):
        super().__init__(webhook_secret)
        # transaction_id -> estado de pasarela
        self.transactions: Dict[str, str] = {}
        # idempotency_key -> resultado ya devuelto
        self._charges: Dict[str, ChargeResult] = {}
        self._refunds: Dict[str, RefundResult] = {}

    async def create_intent(self, amount, currency, booking_id, metadata=None) -> IntentResult:
        intent_id = f"mock_pi_{uuid.uuid4().hex[:16]}"
        self.transactions[intent_id] = "requires_payment_method"
        return IntentResult(intent_id=intent_id, client_secret=f"{intent_id}_secret_mock")

    async def charge(self, amount, currency, token, booking_id, idempotency_key=None) -> ChargeResult:
        if idempotency_key and idempotency_key in self._charges:
            return self._charges[idempotency_key]
        if token == ERROR_TOKEN:
            raise GatewayError("Pasarela no disponible (mock)")

        transaction_id = f"mock_ch_{uuid.uuid4().hex[:16]}"
        if token == DECLINED_TOKEN:
            self.transactions[transaction_id] = "failed"
            result = ChargeResult(transaction_id, PaymentStatus.failed, "card_declined",
                                  "La tarjeta fue rechazada")
        else:
            self.transactions[transaction_id] = "succeeded"
            result = ChargeResult(transaction_id, PaymentStatus.completed, "succeeded")
        if idempotency_key:
            self._charges[idempotency_key] = result
        logger.info(f"Cobro mock {transaction_id} para reserva {booking_id}: {result.status.value}")
        return result

    async def get_status(self, transaction_id: str) -> str:
        return self.transactions.get(transaction_id, "unknown")

    async def refund(self, transaction_id, amount, reason, idempotency_key=None) -> RefundResult:
        if idempotency_key and idempotency_key in self._refunds:
            return self._refunds[idempotency_key]
        if self.transactions.get(transaction_id) not in ("succeeded", None):
            return RefundResult(None, "failed", f"La transacción {transaction_id} no admite reembolso")
        result = RefundResult(f"mock_re_{uuid.uuid4().hex[:16]}", "succeeded")
        if idempotency_key:
            self._refunds[idempotency_key] = result
        return result

    def set_status(self, transaction_id: str, gateway_status: Optional[str]) -> None:
        """Permite simular cambios de estado que llegarían por webhook."""
        self.transactions[transaction_id] = gateway_status
