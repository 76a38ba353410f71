from datetime import datetime, timedelta
import hashlib

import pytest
import requests

from helpers import FakeResponse
from signalforge.destinations.klaviyo import KlaviyoClient, metric_name, profile_properties
from signalforge.destinations.meta import MetaClient, build_event, custom_data
from signalforge.errors import ConfigurationError
from signalforge.ingestion import identify, ingest_event
from signalforge.models.tables import Destination, Event, SyncJob, UnifiedProfile
from signalforge.tasks.sync import backoff_delay, claim_jobs, dispatch_pending_jobs


class Recorder:
    """Stand-in for requests.<method>; records calls and replays canned responses."""

    def __init__(self, *responses):
        self.calls = []
        self.responses = list(responses) or [FakeResponse(200)]

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _soon(minutes=0):
    return datetime.utcnow() + timedelta(seconds=1, minutes=minutes)


def _purchase(db, workspace, email="buyer@example.com"):
    result = ingest_event(db, workspace.id, {
        "event": "Placed Order", "email": email, "anonymous_id": "anon-1",
        "properties": {
            "order_id": "o-1", "total_price": "49.90", "currency": "EUR",
            "line_items": [{"product_id": 11, "quantity": 2, "price": "20.00"}, {"sku": "S-2", "quantity": 1}],
        },
        "context": {"ip": "1.2.3.4", "user_agent": "UA", "fbp": "fb.1.123"},
    })
    db.commit()
    return result


def test_backoff_is_exponential_in_minutes():
    assert backoff_delay(1) == timedelta(minutes=2)
    assert backoff_delay(3) == timedelta(minutes=8)


def test_klaviyo_event_delivery_marks_event_synced(db, workspace, klaviyo_destination, monkeypatch):
    post = Recorder(FakeResponse(202))
    monkeypatch.setattr(requests, "post", post)
    result = _purchase(db, workspace)

    stats = dispatch_pending_jobs(db, now=_soon())

    assert stats["completed"] == 1
    url, kwargs = post.calls[0]
    assert url == "https://a.klaviyo.com/api/events/"
    assert kwargs["headers"]["Authorization"] == "Klaviyo-API-Key pk_test"
    assert kwargs["headers"]["revision"] == "2024-02-15"
    attrs = kwargs["json"]["data"]["attributes"]
    assert attrs["metric"]["data"]["attributes"]["name"] == "SF Placed Order"
    assert attrs["unique_id"] == result.event_id
    assert attrs["value"] == 49.9
    assert kwargs["timeout"] == 30.0
    job = db.query(SyncJob).one()
    assert job.status == "completed" and job.attempts == 1 and job.last_error is None
    assert db.get(Event, result.event_id).status == "synced"
    dest = db.get(Destination, klaviyo_destination.id)
    assert dest.last_sync_at is not None and dest.last_error is None


def test_failures_back_off_then_fail_at_ceiling(db, workspace, klaviyo_destination, monkeypatch):
    post = Recorder(FakeResponse(500, text="upstream down"))
    monkeypatch.setattr(requests, "post", post)
    _purchase(db, workspace)

    first = dispatch_pending_jobs(db, now=_soon())
    job = db.query(SyncJob).one()
    assert first["retried"] == 1
    assert job.status == "pending" and job.attempts == 1
    assert "HTTP 500" in job.last_error
    assert job.scheduled_at > _soon()

    # not due yet
    assert dispatch_pending_jobs(db, now=_soon())["status"] == "idle"

    dispatch_pending_jobs(db, now=_soon(minutes=3))
    assert job.attempts == 2 and job.status == "pending"
    last = dispatch_pending_jobs(db, now=_soon(minutes=30))
    assert last["failed"] == 1
    assert job.status == "failed" and job.attempts == 3
    assert dispatch_pending_jobs(db, now=_soon(minutes=120))["status"] == "idle"
    assert db.get(Destination, klaviyo_destination.id).last_error.startswith("klaviyo HTTP 500")


def test_missing_credentials_fail_without_consuming_attempts(db, workspace, monkeypatch):
    post = Recorder()
    monkeypatch.setattr(requests, "post", post)
    dest = Destination(workspace_id=workspace.id, type="klaviyo", config={}, enabled=True)
    db.add(dest)
    db.commit()
    _purchase(db, workspace)

    stats = dispatch_pending_jobs(db, now=_soon())

    assert stats["failed"] == 1
    db.expire_all()
    job = db.query(SyncJob).one()
    assert job.status == "failed" and job.attempts == 0
    assert job.last_error == "Klaviyo API key not configured"
    assert post.calls == []


def test_tenant_defaults_supply_credentials(db, workspace, monkeypatch):
    post = Recorder(FakeResponse(202))
    monkeypatch.setattr(requests, "post", post)
    workspace.settings = {"klaviyo_api_key": "pk_tenant"}
    db.add(Destination(workspace_id=workspace.id, type="klaviyo", config={}, enabled=True))
    db.commit()
    _purchase(db, workspace)
    dispatch_pending_jobs(db, now=_soon())
    assert post.calls[0][1]["headers"]["Authorization"] == "Klaviyo-API-Key pk_tenant"


def test_klaviyo_profile_conflict_patches_existing(db, workspace, klaviyo_destination, monkeypatch):
    conflict = FakeResponse(409, payload={"errors": [{"meta": {"duplicate_profile_id": "01KLAV"}}]})
    post = Recorder(conflict)
    patch = Recorder(FakeResponse(200))
    monkeypatch.setattr(requests, "post", post)
    monkeypatch.setattr(requests, "patch", patch)
    identify(db, workspace.id, email="vip@x.com", traits={"first_name": "Vi", "tier": "gold"})
    db.commit()

    stats = dispatch_pending_jobs(db, now=_soon())

    assert stats["completed"] == 1
    assert post.calls[0][0] == "https://a.klaviyo.com/api/profiles/"
    url, kwargs = patch.calls[0]
    assert url == "https://a.klaviyo.com/api/profiles/01KLAV/"
    body = kwargs["json"]["data"]
    assert body["id"] == "01KLAV"
    assert body["attributes"]["email"] == "vip@x.com"
    assert body["attributes"]["first_name"] == "Vi"
    assert body["attributes"]["properties"]["sf_trait_tier"] == "gold"


def test_klaviyo_skips_profiles_without_email(db, workspace, klaviyo_destination, monkeypatch):
    post = Recorder()
    monkeypatch.setattr(requests, "post", post)
    ingest_event(db, workspace.id, {"event": "page_view", "anonymous_id": "anon-q"})
    db.commit()
    dispatch_pending_jobs(db, now=_soon())
    job = db.query(SyncJob).one()
    assert job.status == "completed" and job.last_error == "skipped:no_email"
    assert post.calls == []


def test_meta_capi_payload(db, workspace, meta_destination, monkeypatch):
    post = Recorder(FakeResponse(200, payload={"events_received": 1}))
    monkeypatch.setattr(requests, "post", post)
    result = _purchase(db, workspace, email=" Buyer@Example.com ")

    dispatch_pending_jobs(db, now=_soon())

    url, kwargs = post.calls[0]
    assert url == "https://graph.facebook.com/v18.0/123456/events"
    body = kwargs["json"]
    assert body["access_token"] == "tok"
    assert "test_event_code" not in body
    event = body["data"][0]
    assert event["event_name"] == "Purchase"
    assert event["event_id"] == result.event_id
    assert event["action_source"] == "website"
    assert event["user_data"]["em"] == [hashlib.sha256(b"buyer@example.com").hexdigest()]
    assert event["user_data"]["client_ip_address"] == "1.2.3.4"
    assert event["user_data"]["fbp"] == "fb.1.123"
    custom = event["custom_data"]
    assert custom["currency"] == "EUR"
    assert custom["value"] == 49.9
    assert custom["content_ids"] == ["11", "S-2"]
    assert custom["num_items"] == 3
    assert custom["order_id"] == "o-1"


def test_meta_skips_profile_jobs(db, workspace, meta_destination, monkeypatch):
    post = Recorder()
    monkeypatch.setattr(requests, "post", post)
    identify(db, workspace.id, email="a@x.com")
    db.commit()
    dispatch_pending_jobs(db, now=_soon())
    job = db.query(SyncJob).one()
    assert job.status == "completed" and job.last_error == "skipped:profile_only"
    assert post.calls == []


def test_disabled_destination_fails_pending_jobs(db, workspace, klaviyo_destination):
    _purchase(db, workspace)
    klaviyo_destination.enabled = False
    db.commit()
    dispatch_pending_jobs(db, now=_soon())
    db.expire_all()
    job = db.query(SyncJob).one()
    assert job.status == "failed" and job.last_error == "Destination disabled"


def test_credential_resolution():
    with pytest.raises(ConfigurationError):
        MetaClient.resolve_credentials({"pixel_id": "1"}, {})
    creds = MetaClient.resolve_credentials({}, {"meta_pixel_id": "9", "meta_access_token": "t", "meta_test_event_code": "TEST1"})
    assert creds["graph_version"] == "v18.0" and creds["test_event_code"] == "TEST1"
    assert KlaviyoClient.resolve_credentials({"api_key": "k"}, {})["revision"] == "2024-02-15"


def test_payload_helpers():
    profile = UnifiedProfile(id="p1", primary_email="a@x.com", phone=None, traits={"vip": True, "tags": ["x"]},
                             computed={"intent_score": 42.5, "drop_off_stage": "cart_abandoned", "unique_products_viewed": 3})
    props = profile_properties(profile, {"signal_type": "churn_risk", "flow_name": "SF Win-Back Campaign"})
    assert props["sf_intent_score"] == 42.5
    assert props["sf_products_viewed_count"] == 3
    assert props["sf_trait_vip"] is True and "sf_trait_tags" not in props
    assert props["sf_last_signal"] == "churn_risk"
    ev = Event(id="e1", event_type="custom", event_name="Wishlist Add", properties={}, context={}, event_time=datetime(2024, 1, 1))
    assert metric_name(ev) == "SF Wishlist Add"
    built = build_event(None, ev)
    assert built["event_name"] == "Wishlist Add"
    assert built["event_time"] == 1704067200


def test_second_claim_of_running_job_wins_nothing(db, workspace, klaviyo_destination):
    _purchase(db, workspace)
    job = db.query(SyncJob).one()
    now = _soon()

    won = claim_jobs(db, [job.id], now, 3)
    again = claim_jobs(db, [job.id], now, 3)

    assert [j.id for j in won] == [job.id]
    assert again == []
    db.expire_all()
    job = db.query(SyncJob).one()
    assert job.status == "running" and job.attempts == 1


def test_meta_tolerates_bad_line_item_quantity():
    ev = Event(id="e2", event_type="purchase", event_name="purchase", context={}, event_time=datetime(2024, 1, 1),
               properties={"line_items": [{"sku": "A", "quantity": "two"}, {"sku": "B", "quantity": 2}]})
    data = custom_data(ev)
    assert data["contents"] == [{"id": "A", "quantity": 1}, {"id": "B", "quantity": 2}]
    assert data["num_items"] == 3
