"""Behavioral scoring engine.

`update_computed_traits` is a pure function of (previous computed traits, event): it
never touches the database. Callers read the profile, compute, and write the new map
back in a single assignment (last write wins under concurrent updates).
"""
from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any

INTENT_WEIGHTS: dict[str, int] = {
    "page_view": 1,
    "product_view": 5,
    "collection_view": 3,
    "add_to_cart": 15,
    "remove_from_cart": -5,
    "begin_checkout": 25,
}
DEFAULT_WEIGHT = 1
PURCHASE_INTENT = 100
DECAY_RATE_PER_DAY = 0.95

DROP_OFF_STAGES = ("visitor", "browse_abandoned", "cart_abandoned", "checkout_abandoned", "completed")
STAGE_FOR_EVENT = {
    "product_view": "browse_abandoned",
    "collection_view": "browse_abandoned",
    "add_to_cart": "cart_abandoned",
    "begin_checkout": "checkout_abandoned",
    "purchase": "completed",
}

CATEGORY_FIELDS = ("product_type", "category", "collection_handle")
PRODUCT_ID_FIELDS = ("product_id", "variant_id", "sku", "product_handle", "handle")
VALUE_FIELDS = ("total_price", "value", "revenue", "total")

# Trait families used by the merge engine
NUMERIC_TRAITS = (
    "intent_score", "frequency_score", "depth_score", "lifetime_value", "orders_count",
    "unique_products_viewed", "unique_categories_viewed", "session_count_30d", "atc_count_7d",
)
TIMESTAMP_TRAITS = (
    "last_activity_at", "last_computed_at", "last_product_view_at", "last_cart_at",
    "checkout_started_at", "last_order_at", "cart_abandoned_at", "checkout_abandoned_at",
)
STRING_TRAITS = ("top_category", "drop_off_stage")

MAX_TRACKED_PRODUCTS = 200
SESSION_WINDOW_DAYS = 30
ATC_WINDOW_DAYS = 7


def clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def decay_intent(score: float, last_activity: datetime | None, now: datetime) -> float:
    """Multiplicative per-day decay: score * 0.95 ** elapsed_days."""
    if not score or last_activity is None or now <= last_activity:
        return score or 0
    elapsed_days = (now - last_activity).total_seconds() / 86400.0
    return score * (DECAY_RATE_PER_DAY ** elapsed_days)


def frequency_from_sessions(session_count: int) -> int:
    if session_count >= 10:
        return 100
    if session_count >= 5:
        return 70
    if session_count >= 3:
        return 40
    if session_count >= 2:
        return 25
    return 10


def depth_from_views(products_viewed: int, categories_viewed: int) -> int:
    return min(products_viewed * 5 + categories_viewed * 10, 100)


def stage_rank(stage: str | None) -> int:
    try:
        return DROP_OFF_STAGES.index(stage)  # type: ignore[arg-type]
    except ValueError:
        return 0


def advance_stage(current: str | None, candidate: str | None) -> str:
    """Return the more advanced of two stages; never regresses."""
    current = current if current in DROP_OFF_STAGES else "visitor"
    if candidate is None or candidate not in DROP_OFF_STAGES:
        return current
    return candidate if stage_rank(candidate) > stage_rank(current) else current


def category_of(properties: dict) -> str | None:
    for field in CATEGORY_FIELDS:
        val = properties.get(field)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


def top_category(counts: dict[str, int]) -> str | None:
    best, best_count = None, 0
    # dicts preserve insertion order, so strict '>' keeps the first-inserted on ties
    for cat, count in counts.items():
        if count > best_count:
            best, best_count = cat, count
    return best


def order_value(properties: dict) -> float:
    for field in VALUE_FIELDS:
        val = properties.get(field)
        if val in (None, ""):
            continue
        try:
            return max(float(val), 0.0)
        except (TypeError, ValueError):
            continue
    return 0.0


def _product_key(properties: dict) -> str | None:
    for field in PRODUCT_ID_FIELDS:
        val = properties.get(field)
        if val not in (None, ""):
            return str(val)
    return None


def _prune_times(stamps: dict[str, str] | list[str], since: datetime):
    if isinstance(stamps, dict):
        return {k: v for k, v in stamps.items() if (parse_ts(v) or since) >= since}
    return [v for v in stamps if (parse_ts(v) or since) >= since]


def update_computed_traits(
    computed: dict | None,
    event_type: str,
    event_name: str,
    properties: dict | None,
    now: datetime,
    session_id: str | None = None,
) -> dict:
    """Return a new computed-traits map after applying one event."""
    prev = dict(computed or {})
    props = properties or {}
    out = dict(prev)
    iso_now = now.isoformat()
    last_activity = parse_ts(prev.get("last_activity_at"))

    # Intent: decay then add weight; purchase short-circuits to the max
    if event_type == "purchase":
        intent = float(PURCHASE_INTENT)
    else:
        decayed = decay_intent(float(prev.get("intent_score") or 0), last_activity, now)
        intent = clamp(decayed + INTENT_WEIGHTS.get(event_type, DEFAULT_WEIGHT))
    out["intent_score"] = round(intent, 2)

    # Frequency over distinct sessions in the trailing window
    sessions = _prune_times(dict(prev.get("sessions_30d") or {}), now - timedelta(days=SESSION_WINDOW_DAYS))
    session_key = session_id or now.date().isoformat()
    sessions[session_key] = iso_now
    out["sessions_30d"] = sessions
    out["session_count_30d"] = len(sessions)
    out["frequency_score"] = frequency_from_sessions(len(sessions))

    # Depth and top category
    viewed = list(prev.get("viewed_products") or [])
    if event_type == "product_view":
        pkey = _product_key(props)
        if pkey and pkey not in viewed:
            viewed = (viewed + [pkey])[-MAX_TRACKED_PRODUCTS:]
        out["last_product_view_at"] = iso_now
    counts = dict(prev.get("category_counts") or {})
    cat = category_of(props)
    if cat:
        counts[cat] = counts.get(cat, 0) + 1
    out["viewed_products"] = viewed
    out["category_counts"] = counts
    out["unique_products_viewed"] = len(viewed)
    out["unique_categories_viewed"] = len(counts)
    out["depth_score"] = depth_from_views(len(viewed), len(counts))
    out["top_category"] = top_category(counts) or prev.get("top_category")

    # Funnel timestamps
    cart_adds = _prune_times(list(prev.get("recent_cart_adds") or []), now - timedelta(days=ATC_WINDOW_DAYS))
    if event_type == "add_to_cart":
        cart_adds.append(iso_now)
        out["last_cart_at"] = iso_now
        out["cart_abandoned_at"] = None
    elif event_type == "begin_checkout":
        out["checkout_started_at"] = iso_now
        out["cart_abandoned_at"] = None
        out["checkout_abandoned_at"] = None
    elif event_type == "purchase":
        out["last_order_at"] = iso_now
        out["cart_abandoned_at"] = None
        out["checkout_abandoned_at"] = None
        out["orders_count"] = int(prev.get("orders_count") or 0) + 1
        out["lifetime_value"] = round(float(prev.get("lifetime_value") or 0) + order_value(props), 2)
    out["recent_cart_adds"] = cart_adds
    out["atc_count_7d"] = len(cart_adds)
    out.setdefault("orders_count", 0)
    out.setdefault("lifetime_value", 0.0)

    out["drop_off_stage"] = advance_stage(prev.get("drop_off_stage"), STAGE_FOR_EVENT.get(event_type))
    out["last_event_type"] = event_type
    out["last_event_name"] = event_name
    if last_activity is None or now >= last_activity:
        out["last_activity_at"] = iso_now
    out["recency_days"] = 0
    out["last_computed_at"] = datetime.utcnow().isoformat()
    return out


def touch_computed(computed: dict | None, now: datetime) -> dict:
    """Refresh recency for a re-delivered event without re-adding its weight."""
    out = dict(computed or {})
    last_activity = parse_ts(out.get("last_activity_at"))
    if last_activity is not None and now <= last_activity:
        return out
    out["intent_score"] = round(clamp(decay_intent(float(out.get("intent_score") or 0), last_activity, now)), 2)
    out["last_activity_at"] = now.isoformat()
    out["recency_days"] = 0
    return out


def recency_days(last_seen: datetime | None, now: datetime) -> int:
    if last_seen is None:
        return 0
    return max((now - last_seen).days, 0)
