from __future__ import annotations
from .base import DestinationClient, DeliveryItem, logger
from signalforge.errors import ConfigurationError, DeliveryError
from signalforge.models.tables import UnifiedProfile, Event

KLAVIYO_API = "https://a.klaviyo.com/api"
DEFAULT_REVISION = "2024-02-15"

METRIC_NAMES = {
    "page_view": "SF Page View",
    "product_view": "SF Viewed Product",
    "collection_view": "SF Viewed Category",
    "add_to_cart": "SF Added to Cart",
    "remove_from_cart": "SF Removed from Cart",
    "begin_checkout": "SF Started Checkout",
    "purchase": "SF Placed Order",
}

# computed trait -> Klaviyo custom property
PROFILE_PROPERTIES = {
    "intent_score": "sf_intent_score",
    "frequency_score": "sf_frequency_score",
    "depth_score": "sf_depth_score",
    "recency_days": "sf_recency_days",
    "drop_off_stage": "sf_drop_off_stage",
    "top_category": "sf_top_category",
    "lifetime_value": "sf_lifetime_value",
    "orders_count": "sf_orders_count",
    "unique_products_viewed": "sf_products_viewed_count",
    "session_count_30d": "sf_session_count_30d",
    "cart_abandoned_at": "sf_cart_abandoned_at",
    "checkout_abandoned_at": "sf_checkout_abandoned_at",
    "last_activity_at": "sf_last_activity_at",
}


def metric_name(event: Event) -> str:
    return METRIC_NAMES.get(event.event_type) or f"SF {event.event_name}"


def profile_properties(profile: UnifiedProfile, trigger: dict | None = None) -> dict:
    computed = profile.computed or {}
    props = {prop: computed.get(trait) for trait, prop in PROFILE_PROPERTIES.items() if computed.get(trait) is not None}
    for key, val in (profile.traits or {}).items():
        if isinstance(val, (str, int, float, bool)):
            props[f"sf_trait_{key}"] = val
    if trigger:
        if trigger.get("signal_type"):
            props["sf_last_signal"] = trigger["signal_type"]
        if trigger.get("flow_name"):
            props["sf_flow"] = trigger["flow_name"]
        if trigger.get("abandonment_type"):
            props["sf_abandonment_type"] = trigger["abandonment_type"]
    return props


def profile_attributes(profile: UnifiedProfile, trigger: dict | None = None) -> dict:
    traits = profile.traits or {}
    attrs: dict = {"email": profile.primary_email, "external_id": profile.id}
    if profile.phone:
        attrs["phone_number"] = profile.phone
    for src, dst in (("first_name", "first_name"), ("last_name", "last_name")):
        if traits.get(src):
            attrs[dst] = traits[src]
    attrs["properties"] = profile_properties(profile, trigger)
    return attrs


class KlaviyoClient(DestinationClient):
    type = "klaviyo"

    @classmethod
    def resolve_credentials(cls, config: dict, defaults: dict) -> dict:
        api_key = (config or {}).get("api_key") or (defaults or {}).get("klaviyo_api_key")
        if not api_key:
            raise ConfigurationError("Klaviyo API key not configured")
        revision = (config or {}).get("revision") or (defaults or {}).get("klaviyo_api_revision") or DEFAULT_REVISION
        return {"api_key": api_key, "revision": revision}

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Klaviyo-API-Key {self.credentials['api_key']}",
            "revision": self.credentials.get("revision") or DEFAULT_REVISION,
            "accept": "application/json",
            "content-type": "application/json",
        }

    def upsert_profile(self, profile: UnifiedProfile, trigger: dict | None = None) -> str | None:
        body = {"data": {"type": "profile", "attributes": profile_attributes(profile, trigger)}}
        resp = self.request("post", f"{KLAVIYO_API}/profiles/", json=body, headers=self.headers, accept=(409,))
        if resp.status_code != 409:
            return None
        # Profile exists already: update it by the id Klaviyo reports
        try:
            dup_id = resp.json()["errors"][0]["meta"]["duplicate_profile_id"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise DeliveryError("Klaviyo 409 without duplicate_profile_id")
        body["data"]["id"] = dup_id
        self.request("patch", f"{KLAVIYO_API}/profiles/{dup_id}/", json=body, headers=self.headers)
        return dup_id

    def track_event(self, profile: UnifiedProfile, event: Event):
        props = {
            **(event.properties or {}),
            "sf_event_id": event.id,
            "sf_session_id": event.session_id,
            "sf_anonymous_id": event.anonymous_id,
            "sf_event_source": event.source,
        }
        attrs = {
            "metric": {"data": {"type": "metric", "attributes": {"name": metric_name(event)}}},
            "profile": {"data": {"type": "profile", "attributes": {"email": profile.primary_email, "external_id": profile.id}}},
            "properties": props,
            "time": event.event_time.isoformat(),
            "unique_id": event.id,
        }
        value = (event.properties or {}).get("value") or (event.properties or {}).get("total_price")
        if value not in (None, ""):
            try:
                attrs["value"] = float(value)
            except (TypeError, ValueError):
                pass
        self.request("post", f"{KLAVIYO_API}/events/", json={"data": {"type": "event", "attributes": attrs}}, headers=self.headers)

    def deliver(self, items: list[DeliveryItem]) -> dict[int, str]:
        notes: dict[int, str] = {}
        for item in items:
            profile = item.profile
            if profile is None or not profile.primary_email:
                notes[item.job.id] = "skipped:no_email"
                continue
            if item.job.job_type == "profile_upsert":
                self.upsert_profile(profile, item.job.payload)
            elif item.job.job_type == "event_track":
                if item.event is None:
                    notes[item.job.id] = "skipped:event_missing"
                    continue
                self.track_event(profile, item.event)
            else:
                notes[item.job.id] = f"skipped:unknown_job_type:{item.job.job_type}"
        if notes:
            logger.info("klaviyo skipped %s of %s jobs", len(notes), len(items))
        return notes
