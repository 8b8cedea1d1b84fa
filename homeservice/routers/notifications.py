# homeservice/routers/notifications.py
from fastapi import APIRouter, Depends, HTTPException, Path, WebSocket, WebSocketDisconnect
from typing import List
from motor.motor_asyncio import AsyncIOMotorDatabase
import logging

from ..db import get_db
from ..notifications import manager
from ..schemas.common import Result
from ..schemas.notification import NotificationOut
from ..security import decode_user_id, get_current_user
from ..utils import to_id, to_object_id, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/notifications/mine", response_model=Result[List[NotificationOut]])
async def list_my_notifications(
    unread: bool = False,
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    query = {"user_id": current["id"]}
    if unread:
        query["read"] = False
    docs = await db.notifications.find(query).sort("created_at", -1).to_list(200)
    return Result[List[NotificationOut]].ok([to_id(d) for d in docs])

@router.patch("/notifications/{notification_id}/read", response_model=Result[NotificationOut])
async def mark_read(
    notification_id: str = Path(..., pattern=r"^[0-9a-fA-F]{24}$"),
    db: AsyncIOMotorDatabase = Depends(get_db),
    current=Depends(get_current_user),
):
    res = await db.notifications.update_one(
        {"_id": to_object_id(notification_id), "user_id": current["id"]},
        {"$set": {"read": True, "read_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise HTTPException(404, "Notificación no encontrada")
    doc = await db.notifications.find_one({"_id": to_object_id(notification_id)})
    return Result[NotificationOut].ok(to_id(doc))

@router.websocket("/ws/{token}")
async def websocket_endpoint(websocket: WebSocket, token: str):
    """
    Canal en tiempo real de cambios de reserva y pago.
    El token se pasa como parámetro en la URL.
    """
    user_id = decode_user_id(token)
    if not user_id:
        await websocket.close(code=1008, reason="Invalid token")
        return

    await manager.connect(websocket, user_id)
    try:
        await websocket.send_json({
            "type": "connected",
            "message": "Conectado a las notificaciones",
            "user_id": user_id,
        })
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(user_id)
    except Exception as e:
        logger.error(f"Error en WebSocket: {e}", exc_info=True)
        manager.disconnect(user_id)
