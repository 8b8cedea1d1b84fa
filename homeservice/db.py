from contextlib import asynccontextmanager
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from .config import get_settings

_settings = get_settings()
_client: AsyncIOMotorClient | None = None
_db: AsyncIOMotorDatabase | None = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(_settings.mongodb_uri)
        _db = _client[_settings.db_name]
        await ensure_indexes(_db)
    return _db


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db.bookings.create_index("booking_number", unique=True)
    await db.bookings.create_index([("customer_id", 1), ("provider_id", 1)])
    await db.payments.create_index([("booking_id", 1), ("status", 1)])
    await db.payments.create_index("transaction_id")
    # Como mucho un pago completado por reserva
    await db.payments.create_index(
        "booking_id",
        name="one_completed_payment_per_booking",
        unique=True,
        partialFilterExpression={"status": "completed"},
    )
    await db.booking_history.create_index([("booking_id", 1), ("changed_at", 1)])
    await db.webhook_events.create_index("event_id", unique=True)
    await db.notifications.create_index([("user_id", 1), ("read", 1)])


@asynccontextmanager
async def unit_of_work(db: AsyncIOMotorDatabase):
    """
    Unidad de trabajo por operación.
    Con MONGO_TRANSACTIONS abre una sesión y una transacción multi-documento;
    sin ella devuelve None y cada escritura es atómica a nivel de documento.
    """
    if not _settings.mongo_transactions:
        yield None
        return
    async with await db.client.start_session() as session:
        async with session.start_transaction():
            yield session
