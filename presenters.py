"""Turn stored documents into response representations."""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId

import config

SECRET_FIELDS = ("password", "password_changed_at")


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out: Dict[str, Any] = {}
    if "_id" in doc:
        out["id"] = str(doc["_id"])
    for k, v in doc.items():
        if k == "_id" or k in SECRET_FIELDS:
            continue
        out[k] = _plain(v)
    return out


def image_url(name: Optional[str], folder: str) -> Optional[str]:
    if not name or name.startswith("http"):
        return name
    return f"{config.BASE_URL}/uploads/{folder}/{name}"


def present(doc: Optional[Dict[str, Any]], image_fields: Iterable[str] = (), image_folder: str = "") -> Optional[Dict[str, Any]]:
    """Serialize a document and qualify its image names as absolute URLs.

    The stored document is left untouched; only the returned copy carries
    display URLs.
    """
    out = serialize_doc(doc)
    if not out:
        return out
    for field in image_fields:
        value = out.get(field)
        if isinstance(value, list):
            out[field] = [image_url(v, image_folder) for v in value]
        elif value is not None:
            out[field] = image_url(value, image_folder)
    return out


def order_status(order: Dict[str, Any]) -> str:
    if order.get("is_delivered"):
        return "delivered"
    if order.get("is_paid"):
        return "paid"
    return "pending"
