"""
Orquestador de liquidación: casos de uso de reservas y pagos.

Cada operación:
1. lee la reserva (y el pago) y valida con la máquina de estados,
2. calcula importes con la calculadora,
3. llama a la pasarela FUERA de la transacción,
4. persiste en una única unidad de trabajo con escrituras condicionadas,
5. notifica a la otra parte después del commit.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from ..config import Settings
from ..db import unit_of_work
from ..gateways.base import ChargeResult, PaymentGateway, map_gateway_status
from ..notifications import NotificationDispatcher
from ..schemas.booking import BookingCreate, BookingStatus, StatusAlias
from ..schemas.payment import PaymentMethod, PaymentStatus
from ..utils import booking_number, naive_utc, to_object_id, utcnow
from . import state_machine as sm
from .calculator import Calculator, CommissionPolicy, to_cents, to_decimal, to_minor_units
from .errors import (
    AlreadyInStatusError,
    ConcurrencyError,
    GatewayError,
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    PaymentConflictError,
    SettlementError,
    UnauthorizedError,
)
from .stores import BookingStore, HistoryStore, PaymentStore, WebhookEventStore

logger = logging.getLogger(__name__)

P = PaymentStatus

# Un webhook/verificación solo puede avanzar pagos que sigan abiertos
ADVANCE_FROM: dict[PaymentStatus, list[str]] = {
    P.processing: [P.pending.value],
    P.completed: [P.pending.value, P.processing.value],
    P.failed: [P.pending.value, P.processing.value],
}

REFUNDABLE = [P.completed.value, P.partially_refunded.value]

WEBHOOK_EVENTS = {
    "payment_intent.succeeded": P.completed,
    "payment_intent.processing": P.processing,
    "payment_intent.payment_failed": P.failed,
    "payment_intent.canceled": P.failed,
}


@dataclass
class CancellationOutcome:
    booking: dict
    refund_percentage: int
    refund_amount: float
    refund_status: str  # not_applicable | processed | failed
    message: str


@dataclass
class PaymentIntentOutcome:
    payment: dict
    intent_id: str
    client_secret: str


def _money(value) -> float:
    return float(to_cents(value))


def _is_admin(user: dict) -> bool:
    return bool(user.get("is_admin"))


class SettlementService:
    def __init__(self, db: AsyncIOMotorDatabase, gateway: PaymentGateway,
                 dispatcher: NotificationDispatcher, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.settings = settings
        self.calculator = Calculator(CommissionPolicy.from_settings(settings))
        self.bookings = BookingStore(db)
        self.payments = PaymentStore(db)
        self.history = HistoryStore(db)
        self.events = WebhookEventStore(db, settings.webhook_lease_seconds)

    # ---------- Lecturas ----------

    async def get_booking(self, booking_id: str, user: dict) -> dict:
        booking = await self._load_booking(booking_id)
        self._ensure_can_view(booking, user)
        return booking

    async def booking_history(self, booking_id: str, user: dict) -> List[dict]:
        booking = await self.get_booking(booking_id, user)
        return await self.history.for_booking(booking["_id"])

    async def payment_for_booking(self, booking_id: str, user: dict) -> Optional[dict]:
        booking = await self.get_booking(booking_id, user)
        return await self.payments.latest_for_booking(booking["_id"])

    # ---------- Reservas ----------

    async def create_booking(self, customer: dict, payload: BookingCreate) -> dict:
        service = await self.db.services.find_one({"_id": to_object_id(payload.service_id, "service_id")})
        if not service:
            raise NotFoundError("Servicio no encontrado")

        now = utcnow()
        if naive_utc(payload.scheduled_at) <= now:
            raise SettlementError("La fecha de la reserva debe ser futura")

        price = to_cents(service.get("base_price", 0))
        if price <= 0:
            raise InvalidAmountError("El servicio no tiene un precio válido")
        vat_amount, total = self.calculator.vat(price)
        provider_id = payload.provider_id or service.get("provider_id")

        doc = {
            "booking_number": booking_number(now),
            "customer_id": customer["id"],
            "provider_id": str(provider_id) if provider_id else None,
            "service_id": payload.service_id,
            "address_id": payload.address_id,
            "scheduled_at": naive_utc(payload.scheduled_at),
            "status": BookingStatus.pending.value,
            "service_price": _money(price),
            "vat_amount": _money(vat_amount),
            "vat_percentage": float(self.calculator.policy.vat_percentage),
            "total_amount": _money(total),
            "currency": service.get("currency") or self.settings.default_currency,
            "special_instructions": payload.special_instructions,
            "created_at": now,
            "updated_at": now,
        }
        async with unit_of_work(self.db) as session:
            await self.bookings.insert(doc, session=session)
            await self.history.record(doc["_id"], BookingStatus.pending.value, customer["id"], now,
                                      notes="Reserva creada", session=session)

        logger.info(f"Reserva {doc['_id']} creada por {customer['id']}")
        if doc["provider_id"]:
            self.dispatcher.publish(doc["provider_id"], str(doc["_id"]), BookingStatus.pending.value,
                                    "Tienes una nueva solicitud de reserva")
        return doc

    async def accept(self, booking_id: str, provider: dict,
                     estimated_arrival: Optional[datetime] = None, notes: Optional[str] = None) -> dict:
        booking = await self._load_booking(booking_id)
        now = utcnow()
        eta = naive_utc(estimated_arrival) if estimated_arrival else None
        transition = sm.accept(booking, provider, now, eta, notes)

        async with unit_of_work(self.db) as session:
            updated = await self._commit(booking, transition, provider["id"], now,
                                         notes=notes, session=session)

        logger.info(f"Reserva {booking_id} aceptada por el proveedor {provider['id']}")
        self.dispatcher.publish(updated["customer_id"], booking_id, BookingStatus.confirmed.value,
                                "El proveedor ha aceptado tu reserva")
        return updated

    async def decline(self, booking_id: str, provider_id: str, reason: str,
                      notes: Optional[str] = None) -> CancellationOutcome:
        # TODO: reasignar a otro proveedor disponible en vez de cancelar
        booking = await self._load_booking(booking_id)
        now = utcnow()
        transition = sm.decline(booking, provider_id, reason, now, notes)
        return await self._settle_cancellation(booking, transition, 100, provider_id, reason,
                                               notify_user=booking.get("customer_id"), now=now)

    async def cancel(self, booking_id: str, actor_id: str, reason: str,
                     is_customer_initiated: Optional[bool] = None) -> CancellationOutcome:
        booking = await self._load_booking(booking_id)
        now = utcnow()
        if is_customer_initiated is None:
            is_customer_initiated = str(booking.get("customer_id")) == actor_id

        hours = (booking["scheduled_at"] - now).total_seconds() / 3600
        transition, percentage = sm.cancel(
            booking, actor_id, reason, is_customer_initiated,
            lambda status: self.calculator.refund_percentage(status, hours), now,
        )
        counterparty = booking.get("provider_id") if is_customer_initiated else booking.get("customer_id")
        return await self._settle_cancellation(booking, transition, percentage, actor_id, reason,
                                               notify_user=counterparty, now=now)

    async def update_status(self, booking_id: str, provider_id: str, alias: StatusAlias,
                            notes: Optional[str] = None, photo_urls: Optional[List[str]] = None) -> dict:
        booking = await self._load_booking(booking_id)
        now = utcnow()
        transition = sm.update_status(booking, provider_id, alias, now, notes, photo_urls)

        async with unit_of_work(self.db) as session:
            updated = await self._commit(booking, transition, provider_id, now, notes=notes, session=session)

        logger.info(
            f"Reserva {booking_id}: {transition.source.value} → {transition.target.value} "
            f"por el proveedor {provider_id}"
        )
        self.dispatcher.publish(updated["customer_id"], booking_id, transition.target.value)
        return updated

    # ---------- Pagos ----------

    async def create_payment_intent(self, booking_id: str, user: dict) -> PaymentIntentOutcome:
        booking = await self._load_booking(booking_id)
        self._ensure_payer(booking, user)
        self._ensure_payable(booking)
        if await self.payments.find_completed(booking["_id"]):
            raise PaymentConflictError("Ya existe un pago completado para esta reserva")

        intent = await self.gateway.create_intent(
            booking["total_amount"], booking["currency"], str(booking["_id"]),
            metadata={"booking_number": booking.get("booking_number", "")},
        )
        now = utcnow()
        doc = self._payment_doc(booking, booking["total_amount"], PaymentMethod.card, now,
                                status=P.pending, transaction_id=intent.intent_id,
                                gateway_response="requires_payment_method")
        await self.payments.insert(doc)
        logger.info(f"Intent {intent.intent_id} creado para la reserva {booking_id} por {user['id']}")
        return PaymentIntentOutcome(doc, intent.intent_id, intent.client_secret)

    async def process_payment(self, booking_id: str, amount: float, method: PaymentMethod,
                              user: dict, token: Optional[str]) -> dict:
        booking = await self._load_booking(booking_id)
        self._ensure_payer(booking, user)
        self._ensure_payable(booking)
        if not 0 < to_decimal(amount) <= to_decimal(booking["total_amount"]):
            raise InvalidAmountError(
                f"El importe debe ser mayor que 0 y no superar {booking['total_amount']} {booking['currency']}"
            )
        if await self.payments.find_completed(booking["_id"]):
            raise PaymentConflictError("Ya existe un pago completado para esta reserva")

        now = utcnow()
        if not await self.bookings.acquire_payment_lock(booking["_id"], now, self.settings.payment_lock_seconds):
            raise PaymentConflictError("Ya hay un cobro en curso para esta reserva")
        try:
            # Otra petición pudo completar el pago mientras esperábamos el lock
            if await self.payments.find_completed(booking["_id"]):
                raise PaymentConflictError("Ya existe un pago completado para esta reserva")

            payment_id = ObjectId()
            try:
                result = await self.gateway.charge(amount, booking["currency"], token, str(booking["_id"]),
                                                   idempotency_key=f"payment-{payment_id}")
            except GatewayError as e:
                logger.error(f"Fallo de pasarela cobrando la reserva {booking_id}: {e.message}", exc_info=True)
                result = ChargeResult(None, P.failed, "gateway_error", e.message)

            now = utcnow()
            doc = self._payment_doc(booking, amount, method, now, status=result.status,
                                    transaction_id=result.transaction_id,
                                    gateway_response=result.gateway_response,
                                    failure_reason=result.error_message)
            doc["_id"] = payment_id
            doc["created_by"] = user["id"]

            async with unit_of_work(self.db) as session:
                try:
                    await self.payments.insert(doc, session=session)
                except DuplicateKeyError:
                    logger.critical(f"Cobro duplicado para la reserva {booking_id}; transacción {result.transaction_id}")
                    raise PaymentConflictError("Ya existe un pago completado para esta reserva")
                if result.status == P.completed:
                    await self._confirm_booking_by_payment(booking["_id"], user["id"], doc, now, session)
        finally:
            await self.bookings.release_payment_lock(booking["_id"])

        logger.info(f"Pago {result.status.value} para la reserva {booking_id}: transacción {result.transaction_id}")
        if result.status == P.completed:
            self.dispatcher.publish(booking.get("provider_id"), booking_id, "payment_completed",
                                    "El cliente ha pagado la reserva")
        return doc

    async def verify_payment(self, payment_id: str, user: dict) -> dict:
        payment = await self._load_payment(payment_id)
        booking = await self.bookings.get(payment["booking_id"])
        if booking:
            self._ensure_can_view(booking, user)
        elif not _is_admin(user):
            raise UnauthorizedError("No tienes acceso a este pago")

        if not payment.get("transaction_id"):
            return payment
        gateway_status = await self.gateway.get_status(payment["transaction_id"])
        new_status = map_gateway_status(gateway_status)
        if new_status.value == payment["status"] or new_status not in ADVANCE_FROM:
            return payment

        updated = await self._advance_payment(payment, new_status, gateway_status, user["id"])
        return updated or await self._load_payment(payment_id)

    async def refund_payment(self, payment_id: str, user: dict, amount: Optional[float],
                             reason: str) -> dict:
        if not _is_admin(user):
            raise UnauthorizedError("Solo un administrador puede emitir reembolsos")
        payment = await self._load_payment(payment_id)
        if payment["status"] not in REFUNDABLE:
            raise InvalidTransitionError(
                f"No se puede reembolsar un pago {payment['status']}; solo pagos completados"
            )
        if not payment.get("transaction_id"):
            raise InvalidTransitionError("El pago no tiene transacción asociada")

        paid = to_cents(payment["amount"])
        previous = to_cents(payment.get("refund_amount") or 0)
        requested = to_cents(amount) if amount is not None else paid - previous
        total = previous + requested
        if requested <= 0 or total > paid:
            raise InvalidAmountError(f"El reembolso ({total}) no puede superar el importe cobrado ({paid})")

        result = await self.gateway.refund(payment["transaction_id"], float(requested), reason,
                                           idempotency_key=f"refund-{payment['_id']}-{to_minor_units(total)}")
        if not result.succeeded:
            logger.error(f"Reembolso fallido para el pago {payment_id}: {result.error_message}")
            raise GatewayError(f"El reembolso falló: {result.error_message}")

        now = utcnow()
        changes = self._refund_changes(paid, total, reason, result.refund_id, now)
        async with unit_of_work(self.db) as session:
            updated = await self.payments.update_if(
                payment["_id"], [payment["status"]], changes,
                extra_filter={"refund_amount": payment.get("refund_amount")}, session=session,
            )
            if updated is None:
                updated = await self._record_refund_after_race(payment, paid, requested, total, reason,
                                                               result.refund_id, now, session)
            await self.history.record(payment["booking_id"], await self._booking_status(payment["booking_id"]),
                                      user["id"], now, reason=reason,
                                      notes=f"Reembolso {requested} {payment['currency']}. Id: {result.refund_id}",
                                      session=session)

        logger.info(f"Reembolso de {requested} {payment['currency']} para el pago {payment_id} ({result.refund_id})")
        self.dispatcher.publish(payment.get("customer_id"), str(payment["booking_id"]), updated["status"],
                                f"Se ha procesado un reembolso de {requested} {payment['currency']}")
        return updated

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> str:
        """Devuelve applied | ignored | duplicate."""
        event = self.gateway.verify_webhook(payload, signature)
        now = utcnow()
        if not await self.events.claim(event.id, event.type, now):
            logger.info(f"Webhook {event.id} ({event.type}) ya procesado; se ignora")
            return "duplicate"
        try:
            outcome = await self._apply_event(event.type, event.data)
        except Exception:
            # Se libera para que el reintento de la pasarela lo vuelva a procesar
            await self.events.release(event.id)
            raise
        await self.events.mark_processed(event.id, utcnow())
        logger.info(f"Webhook {event.id} ({event.type}): {outcome}")
        return outcome

    # ---------- Internos ----------

    async def _load_booking(self, booking_id) -> dict:
        booking = await self.bookings.get(booking_id)
        if not booking:
            raise NotFoundError("Reserva no encontrada")
        return booking

    async def _load_payment(self, payment_id) -> dict:
        payment = await self.payments.get(payment_id)
        if not payment:
            raise NotFoundError("Pago no encontrado")
        return payment

    async def _booking_status(self, booking_id) -> str:
        booking = await self.bookings.get(booking_id)
        return booking["status"] if booking else BookingStatus.cancelled.value

    def _ensure_can_view(self, booking: dict, user: dict) -> None:
        parties = {str(booking.get("customer_id")), str(booking.get("provider_id"))}
        if user["id"] not in parties and not _is_admin(user):
            raise UnauthorizedError("Sin acceso a esta reserva")

    def _ensure_payer(self, booking: dict, user: dict) -> None:
        if str(booking.get("customer_id")) != user["id"] and not _is_admin(user):
            raise UnauthorizedError("Solo el cliente puede pagar esta reserva")

    def _ensure_payable(self, booking: dict) -> None:
        status = booking.get("status")
        if status in (BookingStatus.cancelled.value, BookingStatus.disputed.value):
            raise InvalidTransitionError(f"No se puede pagar una reserva {status}")

    async def _commit(self, booking: dict, transition: sm.Transition, actor_id: str, now: datetime,
                      reason: Optional[str] = None, notes: Optional[str] = None, session=None) -> dict:
        """Escribe la transición si el estado sigue siendo el leído y deja rastro en el historial."""
        updated = await self.bookings.update_if_status(
            booking["_id"], transition.source.value, transition.changes, session=session,
        )
        if updated is None:
            fresh = await self.bookings.get(booking["_id"])
            if fresh and fresh.get("status") == transition.target.value:
                raise AlreadyInStatusError(transition.target.value)
            raise ConcurrencyError("La reserva cambió mientras se procesaba; vuelve a intentarlo")
        await self.history.record(booking["_id"], transition.target.value, actor_id, now,
                                  reason=reason, notes=notes, session=session)
        return updated

    async def _settle_cancellation(self, booking: dict, transition: sm.Transition, percentage: int,
                                   actor_id: str, reason: str, notify_user: Optional[str],
                                   now: datetime) -> CancellationOutcome:
        payment = await self.payments.find_completed(booking["_id"])
        refund_status = "not_applicable"
        refunded = Decimal("0")
        refund_changes: Optional[Dict[str, Any]] = None

        if payment and percentage > 0:
            refunded = self.calculator.refund_amount(payment["amount"], percentage)
            refund_status, refund_changes = await self._refund_for_cancellation(
                payment, refunded, percentage, reason, now,
            )

        try:
            async with unit_of_work(self.db) as session:
                updated = await self._commit(booking, transition, actor_id, now, reason=reason,
                                             session=session)
                if refund_changes:
                    await self._record_cancellation_refund(payment, refund_changes, session)
        except SettlementError:
            if refund_changes:
                # El dinero ya salió en la pasarela: el pago tiene que reflejarlo aunque la reserva no cambie
                logger.error(
                    f"La reserva {booking['_id']} cambió tras reembolsar {refunded} del pago {payment['_id']}; "
                    f"se registra el reembolso y la reserva queda para revisión manual"
                )
                async with unit_of_work(self.db) as session:
                    await self._record_cancellation_refund(payment, refund_changes, session)
            raise

        booking_id = str(booking["_id"])
        logger.info(f"Reserva {booking_id} cancelada por {actor_id}. Reembolso: {percentage}% ({refund_status})")

        if refund_status == "failed":
            message = "Reserva cancelada; el reembolso falló y se revisará manualmente"
        elif refund_status == "processed":
            message = f"Reserva cancelada. Se reembolsará el {percentage}% del pago"
        else:
            message = "Reserva cancelada correctamente"

        self.dispatcher.publish(notify_user, booking_id, BookingStatus.cancelled.value, message)
        if refund_status == "processed" and notify_user != booking.get("customer_id"):
            self.dispatcher.publish(booking.get("customer_id"), booking_id, refund_changes["status"],
                                    f"Se ha procesado un reembolso de {refunded} {payment['currency']}")
        return CancellationOutcome(updated, percentage, _money(refunded) if refund_status == "processed" else 0.0,
                                   refund_status, message)

    async def _record_cancellation_refund(self, payment: dict, changes: Dict[str, Any], session) -> None:
        saved = await self.payments.update_if(payment["_id"], [P.completed.value], changes, session=session)
        if saved is None:
            logger.warning(f"El pago {payment['_id']} cambió antes de registrar el reembolso de la cancelación")

    async def _record_refund_after_race(self, payment: dict, paid: Decimal, requested: Decimal,
                                        expected_total: Decimal, reason: str, refund_id: Optional[str],
                                        now: datetime, session) -> dict:
        """
        Otro reembolso escribió el pago entre la lectura y la escritura. La pasarela
        ya devolvió el dinero, así que se vuelve a leer y se acumula sobre lo nuevo.
        """
        fresh = await self.payments.get(payment["_id"], session=session)
        fresh_previous = to_cents(fresh.get("refund_amount") or 0)
        if fresh_previous >= expected_total:
            # Misma clave de idempotencia: la pasarela devolvió el mismo reembolso
            return fresh
        total = min(fresh_previous + requested, paid)
        if fresh_previous + requested > paid:
            logger.error(f"Reembolsos concurrentes superan lo cobrado en el pago {payment['_id']}; revisar en la pasarela")
        changes = self._refund_changes(paid, total, reason, refund_id, now)
        updated = await self.payments.update_if(
            payment["_id"], REFUNDABLE, changes,
            extra_filter={"refund_amount": fresh.get("refund_amount")}, session=session,
        )
        if updated is None:
            logger.error(f"No se pudo registrar el reembolso {refund_id} del pago {payment['_id']}")
            raise ConcurrencyError("El pago cambió mientras se reembolsaba; revisa su estado")
        logger.warning(f"Reembolso {refund_id} del pago {payment['_id']} registrado tras una escritura concurrente")
        return updated

    async def _refund_for_cancellation(self, payment: dict, amount: Decimal, percentage: int,
                                       reason: str, now: datetime):
        """Reembolso en la pasarela antes de abrir la transacción. Un fallo no bloquea la cancelación."""
        try:
            result = await self.gateway.refund(
                payment["transaction_id"], float(amount), f"Reserva cancelada: {reason}",
                idempotency_key=f"refund-{payment['_id']}-{to_minor_units(amount)}",
            )
        except Exception as e:
            logger.error(f"Error reembolsando el pago {payment['_id']}: {e}", exc_info=True)
            return "failed", None

        if not result.succeeded:
            logger.error(f"Reembolso fallido para el pago {payment['_id']}: {result.error_message}")
            return "failed", None

        logger.info(f"Reembolso {result.refund_id}: {amount} {payment['currency']} ({percentage}%)")
        changes = self._refund_changes(to_cents(payment["amount"]), amount, reason, result.refund_id, now)
        return "processed", changes

    def _refund_changes(self, paid: Decimal, total_refunded: Decimal, reason: str,
                        refund_id: Optional[str], now: datetime) -> Dict[str, Any]:
        status = P.refunded if total_refunded >= paid else P.partially_refunded
        return {
            "status": status.value,
            "refund_amount": _money(min(total_refunded, paid)),
            "refunded_at": now,
            "refund_reason": reason,
            "refund_id": refund_id,
            "updated_at": now,
        }

    def _payment_doc(self, booking: dict, amount, method: PaymentMethod, now: datetime,
                     status: PaymentStatus, transaction_id: Optional[str] = None,
                     gateway_response: Optional[str] = None,
                     failure_reason: Optional[str] = None) -> dict:
        price = booking.get("service_price", 0)
        return {
            "booking_id": booking["_id"],
            "customer_id": booking["customer_id"],
            "provider_id": booking.get("provider_id"),
            "amount": _money(amount),
            "currency": booking["currency"],
            "platform_fee": _money(self.calculator.commission(price)),
            "provider_earnings": _money(self.calculator.provider_earnings(price)),
            "status": status.value,
            "payment_method": PaymentMethod(method).value,
            "transaction_id": transaction_id,
            "gateway_response": gateway_response,
            "failure_reason": failure_reason,
            "created_at": now,
            "updated_at": now,
            "processed_at": now if status == P.completed else None,
            "refund_amount": None,
        }

    async def _confirm_booking_by_payment(self, booking_id: ObjectId, actor_id: str, payment: dict,
                                          now: datetime, session) -> None:
        booking = await self.bookings.get(booking_id, session=session)
        if not booking:
            return
        transition = sm.confirm_by_payment(booking, now)
        note = f"Pago completado. Transacción: {payment.get('transaction_id')}"
        if transition is None:
            await self.history.record(booking_id, booking["status"], actor_id, now, notes=note, session=session)
            return
        updated = await self.bookings.update_if_status(booking_id, transition.source.value,
                                                       transition.changes, session=session)
        if updated is None:
            # Otra petición la movió (p. ej. el proveedor la aceptó); el pago sigue siendo válido
            logger.info(f"Reserva {booking_id} ya no estaba pendiente al confirmar el pago")
        await self.history.record(booking_id, BookingStatus.confirmed.value if updated else booking["status"],
                                  actor_id, now, notes=note, session=session)

    async def _advance_payment(self, payment: dict, new_status: PaymentStatus,
                               gateway_response: Optional[str], actor_id: str,
                               failure_reason: Optional[str] = None) -> Optional[dict]:
        """
        Avanza un pago abierto (pending/processing) al estado que informa la pasarela.
        Un estado terminal nunca se sobrescribe. None si no se aplicó nada.
        """
        now = utcnow()
        changes: Dict[str, Any] = {"status": new_status.value, "gateway_response": gateway_response,
                                   "updated_at": now}
        if new_status == P.completed:
            changes["processed_at"] = now
        if new_status == P.failed:
            changes["failure_reason"] = failure_reason or "La pasarela rechazó el pago"

        async with unit_of_work(self.db) as session:
            if new_status == P.completed:
                other = await self.payments.find_completed(payment["booking_id"], session=session)
                if other and other["_id"] != payment["_id"]:
                    logger.error(
                        f"La reserva {payment['booking_id']} ya tiene el pago {other['_id']} completado; "
                        f"el pago {payment['_id']} requiere revisión manual"
                    )
                    return None
            updated = await self.payments.update_if(payment["_id"], ADVANCE_FROM[new_status], changes,
                                                    session=session)
            if updated is None:
                return None
            if new_status == P.completed:
                await self._confirm_booking_by_payment(payment["booking_id"], actor_id, updated, now, session)

        if new_status == P.completed:
            self.dispatcher.publish(payment.get("provider_id"), str(payment["booking_id"]), "payment_completed",
                                    "El cliente ha pagado la reserva")
        elif new_status == P.failed:
            self.dispatcher.publish(payment.get("customer_id"), str(payment["booking_id"]), "payment_failed",
                                    changes["failure_reason"])
        return updated

    async def _apply_event(self, event_type: str, obj: dict) -> str:
        if event_type in WEBHOOK_EVENTS:
            payment = await self.payments.find_by_transaction(obj.get("id", ""))
            if not payment:
                logger.warning(f"Webhook {event_type}: no hay pago para la transacción {obj.get('id')}")
                return "ignored"
            failure = (obj.get("last_payment_error") or {}).get("message")
            updated = await self._advance_payment(payment, WEBHOOK_EVENTS[event_type], obj.get("status"),
                                                  "gateway", failure)
            return "applied" if updated else "ignored"

        if event_type == "charge.refunded":
            return await self._apply_gateway_refund(obj)

        logger.info(f"Webhook {event_type} no gestionado")
        return "ignored"

    async def _apply_gateway_refund(self, charge: dict) -> str:
        payment = None
        for key in ("payment_intent", "id"):
            if charge.get(key):
                payment = await self.payments.find_by_transaction(charge[key])
                if payment:
                    break
        if not payment:
            logger.warning(f"Webhook charge.refunded: no hay pago para {charge.get('id')}")
            return "ignored"
        if payment["status"] not in REFUNDABLE:
            return "ignored"

        paid = to_cents(payment["amount"])
        refunded_total = min(to_decimal(charge.get("amount_refunded", 0)) / 100, paid)
        if refunded_total <= to_cents(payment.get("refund_amount") or 0):
            # Ya registrado (p. ej. por la propia cancelación)
            return "ignored"

        now = utcnow()
        changes = self._refund_changes(paid, refunded_total, payment.get("refund_reason") or "Reembolso en pasarela",
                                       payment.get("refund_id"), now)
        async with unit_of_work(self.db) as session:
            updated = await self.payments.update_if(
                payment["_id"], REFUNDABLE, changes,
                extra_filter={"refund_amount": payment.get("refund_amount")}, session=session,
            )
            if updated is None:
                return "ignored"
            await self.history.record(payment["booking_id"], await self._booking_status(payment["booking_id"]),
                                      "gateway", now, notes=f"Reembolso confirmado por la pasarela: {refunded_total}",
                                      session=session)
        return "applied"
