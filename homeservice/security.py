"""
Identidad del usuario que actúa sobre reservas y pagos.

Los tokens los emite el servicio de identidad (login/OTP) con el mismo
JWT_SECRET; aquí solo se validan y se resuelve el usuario en Mongo.
Claims: sub (id del usuario), typ ("access") y exp.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId

from .config import get_settings
from .db import get_db
from .utils import to_id

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "access"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def _unauthorized(detail: str = "Token inválido") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, expires_hours: Optional[int] = None) -> str:
    """Emite un token de acceso; lo usan los tests y las herramientas internas."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "typ": TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(hours=expires_hours or settings.jwt_expires_hours),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Claims del token. Lanza 401 si la firma, la caducidad o el tipo no cuadran."""
    try:
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Token caducado")
    except JWTError:
        raise _unauthorized()
    # Tokens sin typ se aceptan por compatibilidad con los emitidos antes
    if claims.get("typ", TOKEN_TYPE) != TOKEN_TYPE or not ObjectId.is_valid(str(claims.get("sub", ""))):
        raise _unauthorized()
    return claims


def decode_user_id(token: str) -> Optional[str]:
    """Para el WebSocket: None en vez de excepción, el endpoint cierra con 1008."""
    try:
        return str(decode_token(token)["sub"])
    except HTTPException:
        return None


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> dict:
    user_id = decode_token(token)["sub"]
    doc = await db.users.find_one({"_id": ObjectId(user_id)})
    if not doc:
        raise _unauthorized("Usuario no encontrado")
    if doc.get("is_active") is False:
        logger.warning(f"Acceso rechazado para el usuario desactivado {user_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Usuario desactivado")
    return to_id(doc)


async def get_current_admin(current: dict = Depends(get_current_user)) -> dict:
    if not current.get("is_admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Solo administradores")
    return current
