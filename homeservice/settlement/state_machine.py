"""
Máquina de estados de la reserva.

Valida quién puede mover una reserva y hacia dónde, y calcula los campos que
cambian con cada transición. No escribe en base de datos: el orquestador
aplica el resultado con una actualización condicionada al estado leído.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..schemas.booking import BookingStatus, StatusAlias
from .errors import AlreadyInStatusError, InvalidTransitionError, UnauthorizedError

S = BookingStatus

TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    S.pending: {S.confirmed, S.cancelled},
    S.confirmed: {S.in_progress, S.completed, S.cancelled},
    S.in_progress: {S.completed},
    S.completed: set(),
    S.cancelled: set(),
    S.disputed: set(),
}

TERMINAL = {S.completed, S.cancelled, S.disputed}

ALIASES: dict[StatusAlias, BookingStatus] = {
    StatusAlias.on_the_way: S.confirmed,
    StatusAlias.arrived: S.confirmed,
    StatusAlias.in_progress: S.in_progress,
    StatusAlias.completed: S.completed,
}

_REJECTIONS = {
    S.completed: "No se puede modificar una reserva completada",
    S.cancelled: "No se puede modificar una reserva cancelada",
    S.disputed: "La reserva está en disputa",
}


@dataclass
class Transition:
    """Resultado de validar una transición: estado origen, destino y campos a escribir."""
    source: BookingStatus
    target: BookingStatus
    changes: Dict[str, Any] = field(default_factory=dict)


def resolve_alias(alias: StatusAlias | str) -> BookingStatus:
    try:
        return ALIASES[StatusAlias(alias)]
    except ValueError:
        valid = ", ".join(a.value for a in StatusAlias)
        raise InvalidTransitionError(f"Estado no válido: {alias}. Valores válidos: {valid}")


def current_status(booking: dict) -> BookingStatus:
    raw = booking.get("status")
    try:
        return BookingStatus(raw)
    except ValueError:
        raise InvalidTransitionError(f"Estado de reserva inválido: {raw}")


def ensure_transition(source: BookingStatus, target: BookingStatus) -> None:
    if source == target:
        raise AlreadyInStatusError(target.value)
    if source in _REJECTIONS:
        raise InvalidTransitionError(_REJECTIONS[source])
    if target not in TRANSITIONS[source]:
        if source == S.pending:
            raise InvalidTransitionError("Primero hay que aceptar la reserva")
        if source == S.in_progress and target == S.cancelled:
            raise InvalidTransitionError("No se puede cancelar una reserva en curso")
        raise InvalidTransitionError(f"Transición no permitida: {source.value} → {target.value}")


def can_transition(source: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(source, set())


# ---------- Autorización ----------

def ensure_provider(booking: dict, actor_id: str, action: str) -> None:
    provider_id = booking.get("provider_id")
    if not provider_id or str(provider_id) != actor_id:
        raise UnauthorizedError(f"No tienes permiso para {action} esta reserva")


def ensure_party(booking: dict, actor_id: str) -> None:
    parties = {str(booking.get("customer_id")), str(booking.get("provider_id"))}
    if actor_id not in parties:
        raise UnauthorizedError("No tienes permiso para cancelar esta reserva")


# ---------- Transiciones ----------

def accept(booking: dict, provider: dict, now: datetime,
           estimated_arrival: Optional[datetime] = None, notes: Optional[str] = None) -> Transition:
    """
    Pendiente → confirmada. Una reserva sin proveedor asignado la puede
    reclamar cualquier proveedor; si ya tiene uno, solo ese.
    """
    provider_id = provider["id"]
    if booking.get("provider_id"):
        ensure_provider(booking, provider_id, "aceptar")
    elif not provider.get("is_provider"):
        raise UnauthorizedError("Solo un proveedor puede aceptar reservas")

    source = current_status(booking)
    ensure_transition(source, S.confirmed)
    changes: Dict[str, Any] = {
        "status": S.confirmed.value,
        "provider_id": provider_id,
        "accepted_at": now,
        "updated_at": now,
    }
    if estimated_arrival:
        changes["estimated_arrival"] = estimated_arrival
    if notes:
        changes["provider_notes"] = notes
    return Transition(source, S.confirmed, changes)


def decline(booking: dict, provider_id: str, reason: str, now: datetime,
            notes: Optional[str] = None) -> Transition:
    ensure_provider(booking, provider_id, "rechazar")
    source = current_status(booking)
    if source != S.pending:
        if source == S.cancelled:
            raise AlreadyInStatusError(source.value)
        raise InvalidTransitionError(f"No se puede rechazar una reserva {source.value}")
    note = f"Rechazada por el proveedor. Motivo: {reason}."
    if notes:
        note += f" Notas: {notes}"
    changes = _cancel_changes(booking, reason, note, now)
    return Transition(source, S.cancelled, changes)


def cancel(booking: dict, actor_id: str, reason: str, is_customer: bool,
           refund_percentage_of, now: datetime) -> tuple[Transition, int]:
    """
    Cancela desde pendiente o confirmada. refund_percentage_of(status) devuelve
    el porcentaje a reembolsar; solo se llama tras validar la transición.
    """
    ensure_party(booking, actor_id)
    source = current_status(booking)
    ensure_transition(source, S.cancelled)
    percentage = refund_percentage_of(source)
    who = "el cliente" if is_customer else "el proveedor"
    note = f"Cancelada por {who}. Motivo: {reason}. Reembolso: {percentage}%"
    return Transition(source, S.cancelled, _cancel_changes(booking, reason, note, now)), percentage


def update_status(booking: dict, provider_id: str, alias: StatusAlias | str, now: datetime,
                  notes: Optional[str] = None, photo_urls: Optional[list[str]] = None) -> Transition:
    ensure_provider(booking, provider_id, "actualizar")
    target = resolve_alias(alias)
    source = current_status(booking)
    # Pendiente → confirmada solo por accept(), que fija proveedor y accepted_at
    if source == S.pending:
        raise InvalidTransitionError("Primero hay que aceptar la reserva")
    ensure_transition(source, target)

    changes: Dict[str, Any] = {"status": target.value, "updated_at": now}
    if target in (S.in_progress, S.completed) and not booking.get("started_at"):
        changes["started_at"] = now
    if target == S.completed and not booking.get("completed_at"):
        changes["completed_at"] = now
    if notes:
        changes["provider_notes"] = notes
    if photo_urls and target == S.completed:
        changes["completion_photos"] = list(photo_urls)
    return Transition(source, target, changes)


def confirm_by_payment(booking: dict, now: datetime) -> Optional[Transition]:
    """Un pago completado confirma la reserva si seguía pendiente."""
    source = current_status(booking)
    if source != S.pending:
        return None
    return Transition(source, S.confirmed, {"status": S.confirmed.value, "updated_at": now})


def _cancel_changes(booking: dict, reason: str, note: str, now: datetime) -> Dict[str, Any]:
    previous = booking.get("special_instructions")
    return {
        "status": S.cancelled.value,
        "cancelled_at": now,
        "updated_at": now,
        "cancellation_reason": reason,
        # Texto acumulativo: nunca se pisa lo que escribió el cliente
        "special_instructions": f"{previous}\n\n{note}" if previous else note,
    }
