# homeservice/notifications.py
"""
Canal de notificaciones: bandeja en Mongo + push por WebSocket.
Se invoca después del commit; un fallo aquí se registra y nunca se propaga.
"""
import asyncio
from typing import Dict, Optional, Set
import logging

from fastapi import WebSocket
from motor.motor_asyncio import AsyncIOMotorDatabase

from .utils import to_id, utcnow

logger = logging.getLogger(__name__)

STATUS_TITLES = {
    "confirmed": "Reserva confirmada",
    "in_progress": "Servicio en curso",
    "completed": "Servicio completado",
    "cancelled": "Reserva cancelada",
    "payment_completed": "Pago recibido",
    "payment_failed": "Pago rechazado",
    "refunded": "Reembolso procesado",
    "partially_refunded": "Reembolso parcial procesado",
}


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self.active_connections[user_id] = websocket

    def disconnect(self, user_id: str):
        if user_id in self.active_connections:
            del self.active_connections[user_id]

    async def send_personal_message(self, message: dict, user_id: str):
        if user_id in self.active_connections:
            try:
                await self.active_connections[user_id].send_json(message)
            except Exception as e:
                logger.error(f"Error sending to {user_id}: {e}", exc_info=True)
                self.disconnect(user_id)


manager = ConnectionManager()


class NotificationDispatcher:
    def __init__(self, db: AsyncIOMotorDatabase, connections: ConnectionManager = manager):
        self.db = db
        self.connections = connections
        self._tasks: Set[asyncio.Task] = set()

    async def notify_status_change(self, user_id: Optional[str], booking_id: str, status: str,
                                   message: Optional[str] = None) -> None:
        if not user_id:
            return
        doc = {
            "user_id": user_id,
            "booking_id": booking_id,
            "status": status,
            "title": STATUS_TITLES.get(status, "Actualización de reserva"),
            "message": message or f"Tu reserva ha cambiado a: {status}",
            "read": False,
            "created_at": utcnow(),
        }
        res = await self.db.notifications.insert_one(doc)
        doc["_id"] = res.inserted_id
        payload = to_id(doc)
        payload["created_at"] = doc["created_at"].isoformat()
        await self.connections.send_personal_message({"type": "booking_status", "notification": payload}, user_id)

    def publish(self, user_id: Optional[str], booking_id: str, status: str,
                message: Optional[str] = None) -> None:
        """Dispara la notificación en segundo plano (fire-and-forget)."""
        task = asyncio.create_task(self._safe_notify(user_id, booking_id, status, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _safe_notify(self, user_id, booking_id, status, message) -> None:
        try:
            await self.notify_status_change(user_id, booking_id, status, message)
        except Exception as e:
            logger.error(f"No se pudo notificar a {user_id} sobre la reserva {booking_id}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Espera a las notificaciones pendientes (apagado y tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
