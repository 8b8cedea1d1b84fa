# homeservice/deps.py
"""
Dependencias de FastAPI para la capa de liquidación.
Los tests las sustituyen con app.dependency_overrides.
"""
from typing import Optional

from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from .config import get_settings
from .db import get_db
from .gateways.base import PaymentGateway
from .gateways.factory import get_gateway
from .notifications import NotificationDispatcher
from .settlement.service import SettlementService

_dispatcher: Optional[NotificationDispatcher] = None


async def get_dispatcher(db: AsyncIOMotorDatabase = Depends(get_db)) -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(db)
    return _dispatcher


async def get_settlement_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> SettlementService:
    return SettlementService(db, gateway, dispatcher, get_settings())
