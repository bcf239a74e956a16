"""
Rate limiting por endpoint usando el backend de slowapi.

El almacenamiento lo decide RATE_LIMIT_STORAGE_URI (memory://, redis://...),
así que con varias réplicas el contador se comparte si apunta a Redis.
"""
from typing import Optional

from fastapi import Request, HTTPException
from limits import parse
from slowapi.util import get_remote_address

def apply_rate_limit(request: Request, limit: str, scope: str, user_id: Optional[str] = None):
    """
    Aplica rate limiting a un endpoint específico.
    Uso: apply_rate_limit(request, "10/minute", "bookings:create", user_id)

    Si el limiter no está configurado (por ejemplo, en tests), la función no hace nada.
    """
    limiter = getattr(request.app.state, "limiter", None)
    if limiter is None:
        return

    key = user_id or get_remote_address(request)
    if not limiter.limiter.hit(parse(limit), scope, key):
        raise HTTPException(
            status_code=429,
            detail=f"Too many requests. Limit: {limit}. Please try again later.",
        )
