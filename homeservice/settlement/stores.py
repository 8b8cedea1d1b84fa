"""
Acceso a Mongo por agregado. Solo el orquestador de liquidación los usa.
Todas las escrituras de estado son condicionales (compare-and-swap sobre
"status") para que dos peticiones concurrentes no se pisen.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..utils import to_object_id


def _s(session) -> dict:
    # Sin transacción no se pasa session a Motor
    return {"session": session} if session is not None else {}


class BookingStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.col = db.bookings

    async def get(self, booking_id, session=None) -> Optional[dict]:
        return await self.col.find_one({"_id": to_object_id(booking_id, "booking_id")}, **_s(session))

    async def insert(self, doc: dict, session=None) -> dict:
        res = await self.col.insert_one(doc, **_s(session))
        doc["_id"] = res.inserted_id
        return doc

    async def update_if_status(self, booking_id: ObjectId, expected_status: str,
                               changes: Dict[str, Any], session=None) -> Optional[dict]:
        """Aplica changes solo si la reserva sigue en expected_status. None si perdió la carrera."""
        return await self.col.find_one_and_update(
            {"_id": booking_id, "status": expected_status},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
            **_s(session),
        )

    async def acquire_payment_lock(self, booking_id: ObjectId, now: datetime, seconds: int) -> bool:
        """Concesión temporal para serializar cobros de una misma reserva."""
        doc = await self.col.find_one_and_update(
            {
                "_id": booking_id,
                "$or": [{"payment_lock_until": None}, {"payment_lock_until": {"$lt": now}}],
            },
            {"$set": {"payment_lock_until": now + timedelta(seconds=seconds)}},
        )
        return doc is not None

    async def release_payment_lock(self, booking_id: ObjectId) -> None:
        await self.col.update_one({"_id": booking_id}, {"$set": {"payment_lock_until": None}})


class PaymentStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.col = db.payments

    async def get(self, payment_id, session=None) -> Optional[dict]:
        return await self.col.find_one({"_id": to_object_id(payment_id, "payment_id")}, **_s(session))

    async def find_completed(self, booking_id: ObjectId, session=None) -> Optional[dict]:
        return await self.col.find_one({"booking_id": booking_id, "status": "completed"}, **_s(session))

    async def find_by_transaction(self, transaction_id: str) -> Optional[dict]:
        return await self.col.find_one({"transaction_id": transaction_id})

    async def latest_for_booking(self, booking_id: ObjectId) -> Optional[dict]:
        docs = await self.col.find({"booking_id": booking_id}).sort("created_at", -1).to_list(1)
        return docs[0] if docs else None

    async def insert(self, doc: dict, session=None) -> dict:
        res = await self.col.insert_one(doc, **_s(session))
        doc["_id"] = res.inserted_id
        return doc

    async def update_if(self, payment_id: ObjectId, expected_statuses: Iterable[str],
                        changes: Dict[str, Any], extra_filter: Optional[dict] = None,
                        session=None) -> Optional[dict]:
        """Actualiza solo si el pago sigue en uno de expected_statuses."""
        query: Dict[str, Any] = {"_id": payment_id, "status": {"$in": list(expected_statuses)}}
        if extra_filter:
            query.update(extra_filter)
        return await self.col.find_one_and_update(
            query,
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
            **_s(session),
        )


class HistoryStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.col = db.booking_history

    async def record(self, booking_id: ObjectId, status: str, changed_by: Optional[str],
                     changed_at: datetime, reason: Optional[str] = None,
                     notes: Optional[str] = None, session=None) -> None:
        await self.col.insert_one({
            "booking_id": booking_id,
            "status": status,
            "changed_by": changed_by,
            "reason": reason,
            "notes": notes,
            "changed_at": changed_at,
        }, **_s(session))

    async def for_booking(self, booking_id: ObjectId) -> List[dict]:
        return await self.col.find({"booking_id": booking_id}).sort("changed_at", 1).to_list(500)


class WebhookEventStore:
    def __init__(self, db: AsyncIOMotorDatabase, lease_seconds: int = 300):
        self.col = db.webhook_events
        self.lease_seconds = lease_seconds

    async def claim(self, event_id: str, event_type: str, now: datetime) -> bool:
        """
        Registra el evento. False si ya se procesó o si otro proceso lo tiene en curso.
        Un evento en "processing" cuya concesión caducó (el proceso murió a mitad)
        se puede volver a reclamar. Depende del índice único sobre event_id.
        """
        lease_until = now + timedelta(seconds=self.lease_seconds)
        existing = await self.col.find_one({"event_id": event_id})
        if existing:
            if existing.get("status") != "processing":
                return False
            taken = await self.col.find_one_and_update(
                {
                    "event_id": event_id,
                    "status": "processing",
                    "$or": [{"lease_until": None}, {"lease_until": {"$lt": now}}],
                },
                {"$set": {"lease_until": lease_until, "received_at": now}},
            )
            return taken is not None
        try:
            await self.col.insert_one({
                "event_id": event_id,
                "type": event_type,
                "status": "processing",
                "received_at": now,
                "lease_until": lease_until,
            })
        except DuplicateKeyError:
            return False
        return True

    async def mark_processed(self, event_id: str, now: datetime) -> None:
        await self.col.update_one(
            {"event_id": event_id},
            {"$set": {"status": "processed", "processed_at": now, "lease_until": None}},
        )

    async def release(self, event_id: str) -> None:
        await self.col.delete_one({"event_id": event_id})
