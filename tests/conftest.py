"""
Configuración de pytest para tests
"""
from datetime import timedelta
import hashlib
import hmac
import json
import time

import pytest
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

from homeservice.config import get_settings
from homeservice.db import get_db
from homeservice.deps import get_dispatcher
from homeservice.gateways.factory import get_gateway
from homeservice.gateways.mock_gateway import MockGateway
from homeservice.main import app
from homeservice.notifications import ConnectionManager, NotificationDispatcher
from homeservice.security import create_access_token
from homeservice.settlement.service import SettlementService
from homeservice.utils import booking_number, to_id, utcnow

WEBHOOK_SECRET = "whsec_test"

_UNSET = object()


@pytest.fixture(autouse=True)
def disable_rate_limiting():
    """Deshabilita rate limiting para todos los tests"""
    app.state.limiter = None


@pytest.fixture
def db():
    """Base de datos Mongo en memoria, nueva para cada test"""
    client = AsyncMongoMockClient()
    return client["homeservice_test"]


@pytest.fixture
def gateway():
    return MockGateway(WEBHOOK_SECRET)


@pytest.fixture
def dispatcher(db):
    return NotificationDispatcher(db, ConnectionManager())


@pytest.fixture
def service(db, gateway, dispatcher):
    return SettlementService(db, gateway, dispatcher, get_settings())


@pytest.fixture
async def client(db, gateway, dispatcher):
    """Cliente HTTP contra la app con las dependencias apuntando a la base en memoria"""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create_user(db, name: str, email: str, **flags) -> dict:
    doc = {"name": name, "email": email, "is_provider": False, "is_admin": False, "created_at": utcnow()}
    doc.update(flags)
    res = await db.users.insert_one(doc)
    doc["_id"] = res.inserted_id
    return to_id(doc)


@pytest.fixture
async def customer(db):
    return await _create_user(db, "Cliente", "cliente@example.com")


@pytest.fixture
async def provider(db):
    return await _create_user(db, "Proveedor", "proveedor@example.com", is_provider=True)


@pytest.fixture
async def other_provider(db):
    return await _create_user(db, "Otro proveedor", "otro@example.com", is_provider=True)


@pytest.fixture
async def admin(db):
    return await _create_user(db, "Admin", "admin@example.com", is_admin=True)


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user['id'])}"}


@pytest.fixture
def make_booking(db, customer, provider):
    """Factoría de reservas: make_booking(status="confirmed", hours_ahead=30)"""
    async def _make(status: str = "pending", hours_ahead: float = 48, provider_id=_UNSET, **extra) -> dict:
        now = utcnow()
        doc = {
            "booking_number": booking_number(now),
            "customer_id": customer["id"],
            "provider_id": provider["id"] if provider_id is _UNSET else provider_id,
            "service_id": "64b7f0a1c2d3e4f5a6b7c8d9",
            "address_id": "64b7f0a1c2d3e4f5a6b7c8da",
            "scheduled_at": now + timedelta(hours=hours_ahead),
            "status": status,
            "service_price": 100.0,
            "vat_amount": 15.0,
            "vat_percentage": 15.0,
            "total_amount": 115.0,
            "currency": "SAR",
            "special_instructions": None,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(extra)
        res = await db.bookings.insert_one(doc)
        doc["_id"] = res.inserted_id
        return doc
    return _make


@pytest.fixture
def make_payment(db):
    """Inserta un pago ya cobrado para una reserva"""
    async def _make(booking: dict, status: str = "completed", amount: float = 115.0,
                    transaction_id: str = "mock_ch_seeded", **extra) -> dict:
        now = utcnow()
        doc = {
            "booking_id": booking["_id"],
            "customer_id": booking["customer_id"],
            "provider_id": booking.get("provider_id"),
            "amount": amount,
            "currency": booking["currency"],
            "platform_fee": 18.0,
            "provider_earnings": 82.0,
            "status": status,
            "payment_method": "card",
            "transaction_id": transaction_id,
            "gateway_response": "succeeded",
            "failure_reason": None,
            "created_at": now,
            "updated_at": now,
            "processed_at": now,
            "refund_amount": None,
        }
        doc.update(extra)
        res = await db.payments.insert_one(doc)
        doc["_id"] = res.inserted_id
        return doc
    return _make


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Cabecera Stripe-Signature (t=...,v1=HMAC-SHA256) para un payload"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def webhook_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}).encode()
