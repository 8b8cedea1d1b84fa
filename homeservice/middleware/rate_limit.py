"""
Rate limiting por endpoint con slowapi.
Los comandos de pago lo llaman al principio: apply_rate_limit(request, "10/minute").
"""
from fastapi import Request, HTTPException
from limits import parse
from slowapi.util import get_remote_address
import logging

logger = logging.getLogger(__name__)


def apply_rate_limit(request: Request, limit: str):
    """
    Consume una unidad del límite para la IP del cliente y el path.
    Sin limiter en app.state (tests) no hace nada.
    """
    limiter = getattr(request.app.state, "limiter", None)
    if limiter is None:
        return

    key = f"{get_remote_address(request)}:{request.url.path}"
    if not limiter.limiter.hit(parse(limit), key):
        logger.warning(f"Rate limit {limit} superado por {key}")
        raise HTTPException(
            status_code=429,
            detail=f"Demasiadas solicitudes. Límite: {limit}. Intenta más tarde."
        )
