"""Helpers for turning request payloads into MongoDB documents and back."""
import math
import re
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PRODUCT_FIELDS = ("name", "description", "price", "category", "image", "inStock")
PRODUCT_REQUIRED_FIELDS = ("name", "price", "category")
PRODUCT_TEXT_FIELDS = ("name", "description", "category", "image")
FALSE_STRINGS = {"false", "0", "no", "off"}


def utcnow() -> datetime:
    # MongoDB hands datetimes back as naive UTC, so store them that way too.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def normalize_object_id_value(value):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def normalize_product_reference(value) -> str:
    """Canonical wishlist product reference: the id as a trimmed string."""
    if value is None:
        return ""
    return str(value).strip()


def safe_float(value, default=0.0):
    if isinstance(value, bool):
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def parse_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_STRINGS
    return value is not False and value != 0


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {str(key): serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_document(document):
    """Render a stored document as JSON-safe data with ``_id`` exposed as ``id``."""
    if not document:
        return document
    serialized = serialize_value(dict(document))
    if "_id" in serialized:
        serialized["id"] = serialized.pop("_id")
    return serialized


def normalize_product_payload(
    payload: Dict, partial: bool = False
) -> Tuple[Optional[Dict], Optional[str]]:
    """Pick the known product fields out of ``payload`` and coerce them.

    Returns ``(fields, None)`` on success or ``(None, message)`` when the
    payload is invalid. With ``partial`` only the provided fields are checked,
    which is what updates need.
    """
    if not isinstance(payload, dict):
        return None, "Product data must be a JSON object."

    fields = {key: payload[key] for key in PRODUCT_FIELDS if key in payload}

    for key in PRODUCT_TEXT_FIELDS:
        if key in fields:
            fields[key] = str(fields[key] if fields[key] is not None else "").strip()

    if not partial:
        missing = [
            key for key in PRODUCT_REQUIRED_FIELDS if fields.get(key) in (None, "")
        ]
        if missing:
            return None, "Missing required fields: name, price, category"
    else:
        for key in ("name", "category"):
            if key in fields and not fields[key]:
                return None, f"Product {key} cannot be empty."

    if "price" in fields:
        price_value = safe_float(fields["price"], None)
        if price_value is None:
            return None, "Price must be a valid number."
        if price_value <= 0:
            return None, "Price must be greater than zero."
        fields["price"] = round(price_value, 2)

    if "inStock" in fields:
        fields["inStock"] = parse_bool(fields["inStock"])

    return fields, None
