from __future__ import annotations
from pydantic import BaseModel, Field
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional
import hashlib
import json
from signalforge.config import get_settings
from signalforge.errors import ValidationError, PayloadTooLarge


EVENT_NAME_MAP: dict[str, str] = {
    "page_view": "page_view",
    "pageview": "page_view",
    "page": "page_view",
    "view_item": "product_view",
    "product_viewed": "product_view",
    "product_view": "product_view",
    "view_product": "product_view",
    "collection_view": "collection_view",
    "collection_viewed": "collection_view",
    "add_to_cart": "add_to_cart",
    "product_added": "add_to_cart",
    "added_to_cart": "add_to_cart",
    "remove_from_cart": "remove_from_cart",
    "product_removed": "remove_from_cart",
    "begin_checkout": "begin_checkout",
    "checkout_started": "begin_checkout",
    "started_checkout": "begin_checkout",
    "initiate_checkout": "begin_checkout",
    "purchase": "purchase",
    "order_completed": "purchase",
    "placed_order": "purchase",
    "complete_purchase": "purchase",
}

TRANSACTION_EVENT_TYPES = {"add_to_cart", "begin_checkout", "purchase"}
# Checked in this order; first non-empty value wins
TRANSACTION_ID_FIELDS = ("checkout_id", "checkout_token", "cart_token", "order_id", "order_number", "token")
DEDUPE_BUCKET_MINUTES = 5


class EventIn(BaseModel):
    event: str = Field(min_length=1, max_length=256)
    properties: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    consent: Optional[Dict[str, Any]] = None
    anonymous_id: Optional[str] = Field(None, max_length=128)
    session_id: Optional[str] = Field(None, max_length=128)


class IdentifyIn(BaseModel):
    anonymous_id: Optional[str] = Field(None, max_length=128)
    user_id: Optional[str] = Field(None, max_length=128)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=64)
    traits: Dict[str, Any] = Field(default_factory=dict)


class ServerEventIn(EventIn):
    client_ip: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = Field(None, max_length=1024)
    transaction_id: Optional[str] = Field(None, max_length=256)
    email: Optional[str] = Field(None, max_length=320)
    customer_id: Optional[str] = Field(None, max_length=128)
    phone: Optional[str] = Field(None, max_length=64)


def normalize_event_type(event_name: str, properties: dict | None = None, context: dict | None = None) -> str:
    """Map an external event name onto the canonical event-type vocabulary."""
    key = (event_name or "").strip().lower().replace(" ", "_")
    event_type = EVENT_NAME_MAP.get(key, "custom")
    if event_type == "page_view":
        page = (context or {}).get("page")
        if isinstance(page, dict):
            page = page.get("path") or page.get("url")
        path = page or (properties or {}).get("path") or ""
        if isinstance(path, str) and "/products/" in path:
            return "product_view"
    return event_type


def extract_transaction_id(properties: dict | None) -> str | None:
    props = properties or {}
    for field in TRANSACTION_ID_FIELDS:
        val = props.get(field)
        if val not in (None, ""):
            return str(val)
    return None


def _depth(obj: Any, level: int = 0) -> int:
    if isinstance(obj, dict):
        return max([_depth(v, level + 1) for v in obj.values()], default=level + 1)
    if isinstance(obj, list):
        return max([_depth(v, level + 1) for v in obj], default=level + 1)
    return level


def check_payload_limits(name: str, payload: dict | None):
    """Reject free-form maps over the configured byte size or nesting depth."""
    if not payload:
        return
    s = get_settings()
    size = len(json.dumps(payload, default=str, separators=(",", ":")).encode())
    if size > s.max_payload_bytes:
        raise PayloadTooLarge(f"{name}_too_large")
    if _depth(payload) > s.max_payload_depth:
        raise ValidationError(f"{name}_too_deep")


def to_utc_naive(ts: datetime | str | int | float | None) -> datetime:
    if ts is None or ts == "":
        return datetime.utcnow()
    if isinstance(ts, (int, float)):
        # epoch seconds, or milliseconds from JS clients
        seconds = ts / 1000.0 if ts > 1e11 else float(ts)
        return datetime.utcfromtimestamp(seconds)
    if isinstance(ts, str):
        try:
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("invalid_timestamp")
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def bucket_timestamp(ts: datetime, minutes: int = DEDUPE_BUCKET_MINUTES) -> str:
    floored = ts - timedelta(minutes=ts.minute % minutes, seconds=ts.second, microseconds=ts.microsecond)
    return floored.strftime("%Y-%m-%d-%H-%M")


def compute_dedupe_key(
    workspace_id: str,
    event_name: str,
    event_type: str,
    properties: dict | None,
    anonymous_id: str | None,
    session_id: str | None,
    event_time: datetime,
    transaction_id: str | None = None,
) -> str:
    """Deterministic idempotency key.

    Transaction-shaped events key on their transaction id. Everything else keys on
    (tenant, name, anonymous id, session, 5-minute bucket). A transaction-shaped event
    with neither a transaction id nor an anonymous id has no safe key and is rejected.
    """
    if event_type in TRANSACTION_EVENT_TYPES:
        txn = transaction_id or extract_transaction_id(properties)
        if txn:
            raw = f"{workspace_id}::{event_name}::{txn}"
            return hashlib.md5(raw.encode()).hexdigest()
        if not anonymous_id:
            raise ValidationError("missing_transaction_id")
    raw = f"{workspace_id}::{event_name}::{anonymous_id or ''}::{session_id or ''}::{bucket_timestamp(event_time)}"
    return hashlib.md5(raw.encode()).hexdigest()
