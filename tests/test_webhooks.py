"""
Tests del webhook de la pasarela
"""
from datetime import timedelta

from fastapi import status

from conftest import auth_headers, sign_webhook, webhook_event
from homeservice.utils import utcnow


async def _post(client, payload: bytes, signature: str = None):
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign_webhook(payload)
    return await client.post("/webhooks/stripe", content=payload, headers=headers)


async def _intent(client, booking, customer) -> dict:
    r = await client.post("/payments/create-intent", headers=auth_headers(customer),
                          json={"booking_id": str(booking["_id"])})
    return r.json()["data"]


async def test_bad_signature_is_400(client):
    payload = webhook_event("evt_1", "payment_intent.succeeded", {"id": "pi_x"})
    r = await _post(client, payload, signature=sign_webhook(payload, secret="whsec_otro"))
    assert r.status_code == status.HTTP_400_BAD_REQUEST
    assert r.json()["isSuccess"] is False


async def test_missing_signature_is_400(client):
    payload = webhook_event("evt_1", "payment_intent.succeeded", {"id": "pi_x"})
    r = await client.post("/webhooks/stripe", content=payload)
    assert r.status_code == status.HTTP_400_BAD_REQUEST


async def test_succeeded_completes_payment_and_confirms_booking(client, db, make_booking, customer):
    booking = await make_booking()
    intent = await _intent(client, booking, customer)

    payload = webhook_event("evt_ok", "payment_intent.succeeded",
                            {"id": intent["intent_id"], "object": "payment_intent", "status": "succeeded"})
    r = await _post(client, payload)
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "applied"

    payment = await db.payments.find_one({"transaction_id": intent["intent_id"]})
    assert payment["status"] == "completed"
    assert (await db.bookings.find_one({"_id": booking["_id"]}))["status"] == "confirmed"


async def test_duplicate_event_is_not_applied_twice(client, db, make_booking, customer):
    booking = await make_booking()
    intent = await _intent(client, booking, customer)
    payload = webhook_event("evt_dup", "payment_intent.succeeded", {"id": intent["intent_id"]})

    first = await _post(client, payload)
    second = await _post(client, payload)
    assert first.json()["data"]["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["data"]["outcome"] == "duplicate"
    assert await db.booking_history.count_documents({"booking_id": booking["_id"]}) == 1


async def test_late_failure_does_not_overwrite_completed(client, db, make_booking, make_payment):
    booking = await make_booking(status="confirmed")
    payment = await make_payment(booking, transaction_id="pi_done")
    payload = webhook_event("evt_late", "payment_intent.payment_failed",
                            {"id": "pi_done", "last_payment_error": {"message": "insufficient_funds"}})
    r = await _post(client, payload)
    assert r.json()["data"]["outcome"] == "ignored"
    assert (await db.payments.find_one({"_id": payment["_id"]}))["status"] == "completed"


async def test_failed_event_marks_pending_payment(client, db, make_booking, customer):
    booking = await make_booking()
    intent = await _intent(client, booking, customer)
    payload = webhook_event("evt_fail", "payment_intent.payment_failed",
                            {"id": intent["intent_id"], "last_payment_error": {"message": "Tarjeta caducada"}})
    await _post(client, payload)
    payment = await db.payments.find_one({"transaction_id": intent["intent_id"]})
    assert payment["status"] == "failed"
    assert payment["failure_reason"] == "Tarjeta caducada"
    assert (await db.bookings.find_one({"_id": booking["_id"]}))["status"] == "pending"


async def test_charge_refunded_in_gateway_dashboard(client, db, make_booking, make_payment):
    booking = await make_booking(status="completed")
    payment = await make_payment(booking, transaction_id="pi_paid")
    payload = webhook_event("evt_ref", "charge.refunded",
                            {"id": "ch_1", "payment_intent": "pi_paid", "amount_refunded": 5750})
    r = await _post(client, payload)
    assert r.json()["data"]["outcome"] == "applied"
    saved = await db.payments.find_one({"_id": payment["_id"]})
    assert saved["status"] == "partially_refunded"
    assert saved["refund_amount"] == 57.5


async def test_charge_refunded_already_recorded_is_ignored(client, db, make_booking, make_payment, customer):
    """El reembolso de la propia cancelación vuelve por webhook y no se duplica"""
    booking = await make_booking(status="confirmed", hours_ahead=48)
    payment = await make_payment(booking, transaction_id="pi_cancel")
    r = await client.post(f"/bookings/{booking['_id']}/cancel", headers=auth_headers(customer),
                          json={"reason": "Viaje"})
    assert r.json()["data"]["refund_status"] == "processed"

    payload = webhook_event("evt_ref2", "charge.refunded",
                            {"id": "ch_2", "payment_intent": "pi_cancel", "amount_refunded": 11500})
    r = await _post(client, payload)
    assert r.json()["data"]["outcome"] == "ignored"
    saved = await db.payments.find_one({"_id": payment["_id"]})
    assert saved["status"] == "refunded" and saved["refund_amount"] == 115.0


async def test_unknown_event_is_acknowledged(client):
    payload = webhook_event("evt_other", "customer.created", {"id": "cus_1"})
    r = await _post(client, payload)
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "ignored"


async def test_event_stuck_in_processing_is_reclaimed_after_lease(client, db, make_booking, customer):
    """Un proceso murió entre el registro del evento y su aplicación: la redelivery lo aplica"""
    booking = await make_booking()
    intent = await _intent(client, booking, customer)
    await db.webhook_events.insert_one({
        "event_id": "evt_stuck",
        "type": "payment_intent.succeeded",
        "status": "processing",
        "received_at": utcnow() - timedelta(hours=1),
        "lease_until": utcnow() - timedelta(minutes=30),
    })

    payload = webhook_event("evt_stuck", "payment_intent.succeeded", {"id": intent["intent_id"]})
    r = await _post(client, payload)
    assert r.json()["data"]["outcome"] == "applied"
    assert (await db.payments.find_one({"transaction_id": intent["intent_id"]}))["status"] == "completed"
    assert (await db.webhook_events.find_one({"event_id": "evt_stuck"}))["status"] == "processed"


async def test_event_in_processing_within_lease_is_duplicate(client, db):
    await db.webhook_events.insert_one({
        "event_id": "evt_busy",
        "type": "payment_intent.succeeded",
        "status": "processing",
        "received_at": utcnow(),
        "lease_until": utcnow() + timedelta(minutes=5),
    })
    payload = webhook_event("evt_busy", "payment_intent.succeeded", {"id": "pi_x"})
    r = await _post(client, payload)
    assert r.json()["data"]["outcome"] == "duplicate"
