from __future__ import annotations
import hashlib
from datetime import datetime
from .base import DestinationClient, DeliveryItem, logger
from signalforge.errors import ConfigurationError
from signalforge.models.tables import UnifiedProfile, Event

GRAPH_API = "https://graph.facebook.com"
DEFAULT_GRAPH_VERSION = "v18.0"
_EPOCH = datetime(1970, 1, 1)

META_EVENT_NAMES = {
    "page_view": "PageView",
    "product_view": "ViewContent",
    "add_to_cart": "AddToCart",
    "begin_checkout": "InitiateCheckout",
    "purchase": "Purchase",
}


def hash_for_meta(value: str) -> str:
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def user_data(profile: UnifiedProfile | None, event: Event) -> dict:
    context = event.context or {}
    data: dict = {}
    ip = context.get("ip") or context.get("ip_address")
    ua = context.get("user_agent")
    if ip:
        data["client_ip_address"] = ip
    if ua:
        data["client_user_agent"] = ua
    if profile is not None:
        if profile.primary_email:
            data["em"] = [hash_for_meta(profile.primary_email)]
        if profile.phone:
            data["ph"] = [hash_for_meta(profile.phone)]
        data["external_id"] = [hash_for_meta(profile.id)]
    for cookie in ("fbc", "fbp"):
        if context.get(cookie):
            data[cookie] = context[cookie]
    return data


def custom_data(event: Event) -> dict:
    props = event.properties or {}
    data: dict = {"currency": props.get("currency") or "USD"}
    value = props.get("value") or props.get("total_price") or props.get("total")
    if value not in (None, ""):
        try:
            data["value"] = float(value)
        except (TypeError, ValueError):
            pass
    if props.get("product_name") or props.get("name"):
        data["content_name"] = props.get("product_name") or props.get("name")
    if props.get("category"):
        data["content_category"] = props["category"]
    if props.get("product_id"):
        data["content_ids"] = [str(props["product_id"])]
        data["content_type"] = "product"
    if props.get("order_id"):
        data["order_id"] = str(props["order_id"])
    if props.get("quantity"):
        try:
            data["num_items"] = int(props["quantity"])
        except (TypeError, ValueError):
            pass
    items = props.get("line_items")
    if isinstance(items, list) and items:
        contents = []
        for li in items:
            if not isinstance(li, dict):
                continue
            try:
                quantity = int(li.get("quantity") or 1)
            except (TypeError, ValueError):
                quantity = 1
            entry = {"id": str(li.get("product_id") or li.get("sku") or li.get("id")), "quantity": quantity}
            if li.get("price") not in (None, ""):
                try:
                    entry["item_price"] = float(li["price"])
                except (TypeError, ValueError):
                    pass
            contents.append(entry)
        data["contents"] = contents
        data["content_ids"] = [c["id"] for c in contents]
        data["num_items"] = sum(c["quantity"] for c in contents)
    return data


def build_event(profile: UnifiedProfile | None, event: Event) -> dict:
    out = {
        "event_name": META_EVENT_NAMES.get(event.event_type, event.event_name),
        "event_time": int(event.event_time.timestamp()) if event.event_time.tzinfo else int((event.event_time - _EPOCH).total_seconds()),
        "event_id": event.id,
        "action_source": "website",
        "user_data": user_data(profile, event),
        "custom_data": custom_data(event),
    }
    url = (event.properties or {}).get("url") or (event.context or {}).get("page_url")
    if url:
        out["event_source_url"] = url
    return out


class MetaClient(DestinationClient):
    type = "meta"

    @classmethod
    def resolve_credentials(cls, config: dict, defaults: dict) -> dict:
        config, defaults = config or {}, defaults or {}
        pixel_id = config.get("pixel_id") or defaults.get("meta_pixel_id")
        token = config.get("access_token") or defaults.get("meta_access_token")
        if not pixel_id or not token:
            raise ConfigurationError("Meta pixel_id/access_token not configured")
        return {
            "pixel_id": pixel_id,
            "access_token": token,
            "test_event_code": config.get("test_event_code") or defaults.get("meta_test_event_code"),
            "graph_version": config.get("graph_version") or defaults.get("meta_graph_version") or DEFAULT_GRAPH_VERSION,
        }

    def deliver(self, items: list[DeliveryItem]) -> dict[int, str]:
        notes: dict[int, str] = {}
        data = []
        for item in items:
            if item.job.job_type != "event_track":
                notes[item.job.id] = "skipped:profile_only"
                continue
            if item.event is None:
                notes[item.job.id] = "skipped:event_missing"
                continue
            data.append(build_event(item.profile, item.event))
        if not data:
            return notes
        body: dict = {"data": data, "access_token": self.credentials["access_token"]}
        if self.credentials.get("test_event_code"):
            body["test_event_code"] = self.credentials["test_event_code"]
        url = f"{GRAPH_API}/{self.credentials['graph_version']}/{self.credentials['pixel_id']}/events"
        resp = self.request("post", url, json=body)
        logger.info("meta accepted %s events (status=%s)", len(data), resp.status_code)
        return notes
