from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, date
import logging
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from prometheus_client import Counter, Histogram
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import Event, Destination, SyncJob, BillingUsage
from signalforge.identity import normalize_fragments, resolve_identity
from signalforge.scoring import update_computed_traits, touch_computed
from signalforge.errors import ValidationError
from signalforge.validation.events import (
    normalize_event_type, compute_dedupe_key, check_payload_limits, to_utc_naive,
)

EVENTS_RECEIVED = Counter('ingest_events_received_total', 'Events received before dedupe', ['source'], registry=_api_registry)
EVENTS_PERSISTED = Counter('ingest_events_persisted_total', 'Events successfully persisted', ['event_type'], registry=_api_registry)
EVENTS_DUPLICATE = Counter('ingest_events_duplicate_total', 'Re-delivered events absorbed by the dedupe key', registry=_api_registry)
EVENTS_REJECTED = Counter('ingest_events_rejected_total', 'Events rejected at validation', ['reason'], registry=_api_registry)
SYNC_JOBS_ENQUEUED = Counter('sync_jobs_enqueued_total', 'Sync jobs created', ['job_type'], registry=_api_registry)
INGEST_LATENCY = Histogram('ingest_event_latency_seconds', 'Latency to ingest one event', buckets=(0.005,0.01,0.05,0.1,0.25,0.5,1,2), registry=_api_registry)

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    event_id: str
    duplicate: bool
    sync_jobs_queued: int
    profile_id: str | None = None


def enabled_destinations(session: Session, workspace_id: str) -> list[Destination]:
    return session.query(Destination).filter(
        Destination.workspace_id == workspace_id, Destination.enabled.is_(True)
    ).order_by(Destination.id).all()


def enqueue_event_jobs(session: Session, event: Event, destinations: list[Destination] | None = None) -> int:
    """One event_track job per enabled destination; existing (event, destination) pairs are skipped."""
    destinations = enabled_destinations(session, event.workspace_id) if destinations is None else destinations
    if not destinations:
        return 0
    existing = {
        d for (d,) in session.query(SyncJob.destination_id).filter(SyncJob.event_id == event.id).all()
    }
    created = 0
    for dest in destinations:
        if dest.id in existing:
            continue
        session.add(SyncJob(
            workspace_id=event.workspace_id, destination_id=dest.id, profile_id=event.profile_id,
            event_id=event.id, job_type="event_track", status="pending", attempts=0,
            scheduled_at=datetime.utcnow(), payload={"event_type": event.event_type},
        ))
        created += 1
    if created:
        SYNC_JOBS_ENQUEUED.labels("event_track").inc(created)
    return created


def enqueue_profile_jobs(session: Session, workspace_id: str, profile_id: str, payload: dict | None = None) -> int:
    destinations = enabled_destinations(session, workspace_id)
    for dest in destinations:
        session.add(SyncJob(
            workspace_id=workspace_id, destination_id=dest.id, profile_id=profile_id,
            job_type="profile_upsert", status="pending", attempts=0,
            scheduled_at=datetime.utcnow(), payload=dict(payload or {}),
        ))
    if destinations:
        SYNC_JOBS_ENQUEUED.labels("profile_upsert").inc(len(destinations))
    return len(destinations)


def increment_billing_usage(session: Session, workspace_id: str, now: datetime | None = None, amount: int = 1):
    """Add to the current monthly period's event counter, creating the period row if absent."""
    now = now or datetime.utcnow()
    period = date(now.year, now.month, 1)
    updated = session.query(BillingUsage).filter(
        BillingUsage.workspace_id == workspace_id, BillingUsage.period_start == period
    ).update({BillingUsage.events_count: BillingUsage.events_count + amount, BillingUsage.updated_at: now}, synchronize_session="fetch")
    if updated:
        return
    try:
        with session.begin_nested():
            session.add(BillingUsage(workspace_id=workspace_id, period_start=period, events_count=amount, updated_at=now))
    except IntegrityError:
        session.query(BillingUsage).filter(
            BillingUsage.workspace_id == workspace_id, BillingUsage.period_start == period
        ).update({BillingUsage.events_count: BillingUsage.events_count + amount}, synchronize_session="fetch")


def _find_by_dedupe(session: Session, workspace_id: str, dedupe_key: str) -> Event | None:
    return session.query(Event).filter(Event.workspace_id == workspace_id, Event.dedupe_key == dedupe_key).first()


def _absorb_duplicate(session: Session, existing: Event, profile, now: datetime) -> IngestResult:
    existing.dupe_count = (existing.dupe_count or 0) + 1
    if profile is not None:
        profile.computed = touch_computed(profile.computed, now)
    EVENTS_DUPLICATE.inc()
    return IngestResult(event_id=existing.id, duplicate=True, sync_jobs_queued=0, profile_id=existing.profile_id)


def ingest_event(
    session: Session,
    workspace_id: str,
    payload: dict,
    transport: dict | None = None,
    source: str = "js",
) -> IngestResult:
    """Validate, dedupe, persist and score a single event. Flushes; the caller commits.

    Re-delivery of the same logical event returns the stored event with duplicate=True
    and only refreshes recency on the owning profile.

    payload keys: event, properties, context, timestamp, consent, anonymous_id, session_id,
    plus optional transaction_id / email / customer_id / phone on server calls.
    """
    with INGEST_LATENCY.time():
        EVENTS_RECEIVED.labels(source).inc()
        transport = transport or {}
        properties = dict(payload.get("properties") or {})
        context = dict(payload.get("context") or {})
        try:
            check_payload_limits("properties", properties)
            check_payload_limits("context", context)
        except ValidationError as e:
            EVENTS_REJECTED.labels(e.message).inc()
            raise
        event_name = str(payload.get("event") or "").strip()
        if not event_name:
            EVENTS_REJECTED.labels("missing_event").inc()
            raise ValidationError("missing_event")
        event_type = normalize_event_type(event_name, properties, context)
        anonymous_id = payload.get("anonymous_id") or context.get("anonymous_id") or properties.get("anonymous_id")
        session_id = payload.get("session_id") or context.get("session_id")
        event_time = to_utc_naive(payload.get("timestamp"))
        if transport.get("ip"):
            context.setdefault("ip", transport["ip"])
        if transport.get("user_agent"):
            context.setdefault("user_agent", transport["user_agent"])
        try:
            dedupe_key = compute_dedupe_key(
                workspace_id, event_name, event_type, properties, anonymous_id, session_id, event_time,
                transaction_id=payload.get("transaction_id"),
            )
        except ValidationError as e:
            EVENTS_REJECTED.labels(e.message).inc()
            raise

        fragments = normalize_fragments(
            email=payload.get("email"), customer_id=payload.get("customer_id"),
            phone=payload.get("phone"), anonymous_id=anonymous_id,
        )
        profile = None
        if fragments:
            profile = resolve_identity(session, workspace_id, fragments, source=source, now=event_time).profile

        existing = _find_by_dedupe(session, workspace_id, dedupe_key)
        if existing is not None:
            return _absorb_duplicate(session, existing, profile, event_time)

        now = datetime.utcnow()
        event = Event(
            workspace_id=workspace_id, profile_id=profile.id if profile else None,
            event_type=event_type, event_name=event_name, properties=properties, context=context,
            anonymous_id=anonymous_id, session_id=session_id, source=source, status="processed",
            dedupe_key=dedupe_key, dupe_count=0, consent=payload.get("consent"),
            event_time=event_time, processed_at=now,
        )
        try:
            with session.begin_nested():
                session.add(event)
        except IntegrityError:
            # Concurrent delivery of the same logical event won the insert
            existing = _find_by_dedupe(session, workspace_id, dedupe_key)
            if existing is None:
                raise
            return _absorb_duplicate(session, existing, profile, event_time)

        if profile is not None:
            profile.computed = update_computed_traits(
                profile.computed, event_type, event_name, properties, event_time, session_id=session_id
            )
        queued = enqueue_event_jobs(session, event)
        increment_billing_usage(session, workspace_id, now)
        session.flush()
        EVENTS_PERSISTED.labels(event_type).inc()
        return IngestResult(event_id=event.id, duplicate=False, sync_jobs_queued=queued, profile_id=event.profile_id)


def identify(
    session: Session,
    workspace_id: str,
    anonymous_id: str | None = None,
    user_id: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    traits: dict | None = None,
    source: str = "identify",
) -> dict:
    """Resolve (and merge) identities, attach orphan events, schedule profile upserts."""
    fragments = normalize_fragments(email=email, customer_id=user_id, phone=phone, anonymous_id=anonymous_id)
    if not fragments:
        raise ValidationError("missing_identifier")
    traits = dict(traits or {})
    check_payload_limits("traits", traits)

    prior_owners: dict[str, str | None] = {}
    if fragments.get("anonymous_id"):
        prior_owners = dict(session.query(Event.id, Event.profile_id).filter(
            Event.workspace_id == workspace_id, Event.anonymous_id == fragments["anonymous_id"]
        ).all())

    resolution = resolve_identity(session, workspace_id, fragments, source=source)
    profile = resolution.profile
    if traits:
        profile.traits = {**(profile.traits or {}), **traits}
    if not profile.primary_email and fragments.get("email"):
        profile.primary_email = fragments["email"]

    to_link = [eid for eid, owner in prior_owners.items() if owner != profile.id]
    if to_link:
        session.query(Event).filter(Event.id.in_(to_link)).update(
            {Event.profile_id: profile.id}, synchronize_session="fetch"
        )
    jobs = enqueue_profile_jobs(session, workspace_id, profile.id, {"trigger": "identify"})
    session.flush()
    logger.info("identify resolved profile=%s new=%s linked=%s", profile.id, resolution.is_new, len(to_link))
    return {
        "unified_user_id": profile.id,
        "is_new_user": resolution.is_new,
        "events_linked": len(to_link),
        "sync_jobs_created": jobs,
    }

