"""
Tests para endpoints de pagos
"""
import pytest
from fastapi import status
from pydantic import ValidationError

from conftest import auth_headers
from homeservice.gateways.mock_gateway import DECLINED_TOKEN
from homeservice.schemas.payment import PaymentCreate


def test_payment_amount_validation():
    """Test de validación de monto en PaymentCreate"""
    with pytest.raises(ValidationError):
        PaymentCreate(booking_id="507f1f77bcf86cd799439011", amount=-10.0)
    with pytest.raises(ValidationError):
        PaymentCreate(booking_id="507f1f77bcf86cd799439011", amount=0.0)
    with pytest.raises(ValidationError):
        PaymentCreate(booking_id="no-es-un-id", amount=10.0)

    payment = PaymentCreate(booking_id="507f1f77bcf86cd799439011", amount=100.456)
    assert payment.amount == 100.46
    assert payment.payment_method == "card"


async def test_process_payment_requires_auth(client):
    r = await client.post("/payments/process", json={
        "booking_id": "507f1f77bcf86cd799439011",
        "amount": 100.0,
    })
    assert r.status_code == status.HTTP_401_UNAUTHORIZED


async def test_process_payment(client, make_booking, customer):
    booking = await make_booking()
    r = await client.post("/payments/process", headers=auth_headers(customer), json={
        "booking_id": str(booking["_id"]),
        "amount": 115.0,
        "payment_method": "card",
        "payment_token": "tok_visa",
    })
    assert r.status_code == status.HTTP_201_CREATED
    body = r.json()
    assert body["isSuccess"] is True
    assert body["data"]["status"] == "completed"
    assert body["data"]["platform_fee"] == 18.0

    r = await client.post("/payments/process", headers=auth_headers(customer), json={
        "booking_id": str(booking["_id"]),
        "amount": 115.0,
    })
    assert r.status_code == status.HTTP_409_CONFLICT
    assert r.json()["isSuccess"] is False


async def test_declined_payment_returns_402_with_attempt(client, make_booking, customer):
    booking = await make_booking()
    r = await client.post("/payments/process", headers=auth_headers(customer), json={
        "booking_id": str(booking["_id"]),
        "amount": 115.0,
        "payment_token": DECLINED_TOKEN,
    })
    assert r.status_code == status.HTTP_402_PAYMENT_REQUIRED
    body = r.json()
    assert body["isSuccess"] is False
    assert body["data"]["status"] == "failed"
    assert body["message"] == "La tarjeta fue rechazada"


async def test_amount_above_total_is_400(client, make_booking, customer):
    booking = await make_booking()
    r = await client.post("/payments/process", headers=auth_headers(customer), json={
        "booking_id": str(booking["_id"]),
        "amount": 500.0,
    })
    assert r.status_code == status.HTTP_400_BAD_REQUEST


async def test_create_intent_and_lookup_by_booking(client, make_booking, customer):
    booking = await make_booking()
    r = await client.post("/payments/create-intent", headers=auth_headers(customer),
                          json={"booking_id": str(booking["_id"])})
    assert r.status_code == status.HTTP_201_CREATED
    intent = r.json()["data"]
    assert intent["amount"] == 115.0 and intent["currency"] == "SAR"

    r = await client.get(f"/payments/booking/{booking['_id']}", headers=auth_headers(customer))
    data = r.json()["data"]
    assert data["id"] == intent["payment_id"]
    assert data["status"] == "pending"


async def test_verify_endpoint(client, gateway, make_booking, customer):
    booking = await make_booking()
    r = await client.post("/payments/create-intent", headers=auth_headers(customer),
                          json={"booking_id": str(booking["_id"])})
    intent = r.json()["data"]
    gateway.set_status(intent["intent_id"], "processing")

    r = await client.get(f"/payments/{intent['payment_id']}/verify", headers=auth_headers(customer))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "processing"


async def test_refund_endpoint_is_admin_only(client, make_booking, make_payment, customer, admin):
    booking = await make_booking(status="completed")
    payment = await make_payment(booking)
    url = f"/payments/{payment['_id']}/refund"

    r = await client.post(url, headers=auth_headers(customer), json={"amount": 10})
    assert r.status_code == status.HTTP_403_FORBIDDEN

    r = await client.post(url, headers=auth_headers(admin), json={"amount": 15, "reason": "Retraso"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "partially_refunded"
    assert data["refund_amount"] == 15.0
