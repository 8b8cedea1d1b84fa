# homeservice/utils.py
from typing import Any, Dict, Optional
import secrets
from bson import ObjectId
from datetime import datetime, timezone
from fastapi import HTTPException

def to_id(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Convierte _id -> id (str) y todos los ObjectIds a strings.
    Si doc es None, devuelve {}.
    Los datetime se dejan tal cual; pydantic los serializa en las respuestas.
    """
    if doc is None:
        return {}
    d = dict(doc)

    if "_id" in d:
        d["id"] = str(d.pop("_id"))

    for key, value in d.items():
        if isinstance(value, ObjectId):
            d[key] = str(value)
        elif isinstance(value, dict):
            d[key] = to_id(value)
        elif isinstance(value, list):
            d[key] = [
                str(item) if isinstance(item, ObjectId)
                else to_id(item) if isinstance(item, dict)
                else item
                for item in value
            ]

    return d

def to_object_id(value: str, field_name: str = "id") -> ObjectId:
    """
    Convierte un string a ObjectId con validación.
    Centraliza la lógica de conversión para evitar duplicación.
    """
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}: {value}")
    return ObjectId(value)

def utcnow() -> datetime:
    """UTC sin tzinfo, igual que lo devuelve Mongo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def booking_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"BK-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

def naive_utc(value: datetime) -> datetime:
    """Normaliza un datetime recibido por la API a UTC sin tzinfo."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
