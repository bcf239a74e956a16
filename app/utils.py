# app/utils.py
from typing import Any, Dict, Optional
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone

from .errors import ValidationError

def to_id(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Convierte _id -> id (str) y los ObjectIds de primer nivel a strings.
    Si doc es None, devuelve {}.
    """
    if doc is None:
        return {}
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for key, value in d.items():
        if isinstance(value, ObjectId):
            d[key] = str(value)
    return d

def to_object_id(value: str, field_name: str = "id") -> ObjectId:
    """
    Convierte un string a ObjectId con validación.
    Centraliza la lógica de conversión para evitar duplicación.
    """
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {field_name}: {value}")

# ==================== Fechas ====================
# MongoDB guarda datetimes en UTC sin zona; trabajamos siempre así internamente.

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: datetime) -> datetime:
    """Normaliza un datetime (con o sin zona) a UTC sin tzinfo."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
