"""
Tests de la máquina de estados de la reserva (sin base de datos)
"""
from datetime import datetime, timedelta

import pytest

from homeservice.schemas.booking import BookingStatus, StatusAlias
from homeservice.settlement import state_machine as sm
from homeservice.settlement.errors import (
    AlreadyInStatusError,
    InvalidTransitionError,
    UnauthorizedError,
)

NOW = datetime(2026, 3, 1, 10, 0, 0)
PROVIDER = {"id": "prov-1", "is_provider": True}


def _booking(status="pending", provider_id="prov-1", **extra):
    doc = {
        "_id": "b1",
        "customer_id": "cust-1",
        "provider_id": provider_id,
        "status": status,
        "scheduled_at": NOW + timedelta(days=2),
        "special_instructions": None,
    }
    doc.update(extra)
    return doc


@pytest.mark.parametrize("source", list(BookingStatus))
def test_transition_table_is_enforced(source):
    """Solo las transiciones de la tabla son válidas; el resto se rechaza"""
    for target in BookingStatus:
        if sm.can_transition(source, target):
            sm.ensure_transition(source, target)
        else:
            with pytest.raises(InvalidTransitionError):
                sm.ensure_transition(source, target)


def test_terminal_states_have_no_exits():
    for status in sm.TERMINAL:
        assert sm.TRANSITIONS[status] == set()


def test_accept_binds_provider_and_sets_confirmed():
    eta = NOW + timedelta(hours=3)
    t = sm.accept(_booking(), PROVIDER, NOW, eta, "Llevo herramientas")
    assert t.source == BookingStatus.pending
    assert t.target == BookingStatus.confirmed
    assert t.changes["provider_id"] == "prov-1"
    assert t.changes["accepted_at"] == NOW
    assert t.changes["estimated_arrival"] == eta
    assert t.changes["provider_notes"] == "Llevo herramientas"


def test_accept_by_other_provider_is_unauthorized():
    with pytest.raises(UnauthorizedError):
        sm.accept(_booking(), {"id": "prov-2", "is_provider": True}, NOW)


def test_unassigned_booking_can_be_claimed_only_by_providers():
    t = sm.accept(_booking(provider_id=None), {"id": "prov-9", "is_provider": True}, NOW)
    assert t.changes["provider_id"] == "prov-9"
    with pytest.raises(UnauthorizedError):
        sm.accept(_booking(provider_id=None), {"id": "cust-1"}, NOW)


def test_accept_twice_fails_with_already_in_status():
    with pytest.raises(AlreadyInStatusError):
        sm.accept(_booking(status="confirmed"), PROVIDER, NOW)


def test_decline_only_from_pending():
    t = sm.decline(_booking(), "prov-1", "Sin disponibilidad", NOW)
    assert t.target == BookingStatus.cancelled
    assert t.changes["cancellation_reason"] == "Sin disponibilidad"
    assert "Rechazada por el proveedor" in t.changes["special_instructions"]
    with pytest.raises(InvalidTransitionError):
        sm.decline(_booking(status="confirmed"), "prov-1", "x", NOW)
    with pytest.raises(AlreadyInStatusError):
        sm.decline(_booking(status="cancelled"), "prov-1", "x", NOW)


def test_decline_unassigned_booking_is_unauthorized():
    with pytest.raises(UnauthorizedError):
        sm.decline(_booking(provider_id=None), "prov-1", "x", NOW)


def test_cancel_appends_to_notes_and_asks_for_refund_percentage():
    booking = _booking(status="confirmed", special_instructions="Timbre roto")
    t, pct = sm.cancel(booking, "cust-1", "Cambio de planes", True, lambda s: 50, NOW)
    assert pct == 50
    assert t.changes["cancelled_at"] == NOW
    notes = t.changes["special_instructions"]
    assert notes.startswith("Timbre roto")
    assert "Cancelada por el cliente" in notes and "Reembolso: 50%" in notes


def test_cancel_in_progress_is_rejected():
    with pytest.raises(InvalidTransitionError) as exc:
        sm.cancel(_booking(status="in_progress"), "cust-1", "x", True, lambda s: 0, NOW)
    assert "en curso" in exc.value.message


def test_cancel_by_stranger_is_unauthorized():
    with pytest.raises(UnauthorizedError):
        sm.cancel(_booking(status="confirmed"), "someone", "x", True, lambda s: 100, NOW)


def test_complete_from_confirmed_sets_started_and_completed():
    t = sm.update_status(_booking(status="confirmed"), "prov-1", StatusAlias.completed, NOW,
                         photo_urls=["https://cdn/x.jpg"])
    assert t.target == BookingStatus.completed
    assert t.changes["started_at"] == NOW
    assert t.changes["completed_at"] == NOW
    assert t.changes["completion_photos"] == ["https://cdn/x.jpg"]


def test_complete_keeps_existing_started_at():
    started = NOW - timedelta(hours=1)
    t = sm.update_status(_booking(status="in_progress", started_at=started), "prov-1", "completed", NOW)
    assert "started_at" not in t.changes
    assert t.changes["completed_at"] == NOW


@pytest.mark.parametrize("alias", [StatusAlias.on_the_way, StatusAlias.arrived])
def test_progress_aliases_on_confirmed_are_already_in_status(alias):
    with pytest.raises(AlreadyInStatusError):
        sm.update_status(_booking(status="confirmed"), "prov-1", alias, NOW)


@pytest.mark.parametrize("alias", list(StatusAlias))
def test_update_status_on_pending_requires_accept_first(alias):
    """Ningún alias confirma una reserva pendiente: eso solo lo hace accept()"""
    with pytest.raises(InvalidTransitionError) as exc:
        sm.update_status(_booking(), "prov-1", alias, NOW)
    assert not isinstance(exc.value, AlreadyInStatusError)
    assert "aceptar" in exc.value.message


def test_unknown_alias_is_rejected():
    with pytest.raises(InvalidTransitionError):
        sm.resolve_alias("teleported")


def test_confirm_by_payment_only_from_pending():
    assert sm.confirm_by_payment(_booking(), NOW).target == BookingStatus.confirmed
    assert sm.confirm_by_payment(_booking(status="confirmed"), NOW) is None
