"""Sync dispatcher: drain due SyncJob rows and deliver them per destination.

Jobs are claimed with a conditional UPDATE (pending -> running, attempts + 1) and the
claim is committed before any outbound call, so two dispatcher instances never send
the same job and a crash mid-call still leaves the attempt recorded (delivery is
at-least-once).
"""
from __future__ import annotations
from celery import shared_task
from collections import defaultdict
from datetime import datetime, timedelta
import logging
from sqlalchemy.orm import Session
from prometheus_client import Counter, Histogram
from signalforge.config import get_settings
from signalforge.errors import ConfigurationError, DeliveryError
from signalforge.infrastructure.db import SessionLocal
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import SyncJob, Destination, Workspace, UnifiedProfile, Event
from signalforge.destinations.base import DestinationClient, DeliveryItem
from signalforge.destinations.klaviyo import KlaviyoClient
from signalforge.destinations.meta import MetaClient

SYNC_JOB_OUTCOMES = Counter('sync_job_outcomes_total', 'Sync job outcomes by destination type', ['destination', 'outcome'], registry=_api_registry)
DISPATCH_LATENCY = Histogram('sync_dispatch_latency_seconds', 'Latency of a dispatcher pass', buckets=(0.1,0.5,1,2,5,10,30,60), registry=_api_registry)

CLIENTS: dict[str, type[DestinationClient]] = {
    KlaviyoClient.type: KlaviyoClient,
    MetaClient.type: MetaClient,
}

logger = logging.getLogger(__name__)


def backoff_delay(attempts: int) -> timedelta:
    return timedelta(minutes=2 ** attempts)


def fetch_due_jobs(session: Session, now: datetime, limit: int, max_attempts: int) -> list[SyncJob]:
    return (
        session.query(SyncJob)
        .filter(SyncJob.status == "pending", SyncJob.scheduled_at <= now, SyncJob.attempts < max_attempts)
        .order_by(SyncJob.scheduled_at, SyncJob.id)
        .limit(limit)
        .all()
    )


def claim_jobs(session: Session, job_ids: list[int], now: datetime, max_attempts: int) -> list[SyncJob]:
    """Atomically move each job pending -> running; returns only the jobs this caller won."""
    won: list[int] = []
    for job_id in job_ids:
        updated = session.query(SyncJob).filter(
            SyncJob.id == job_id, SyncJob.status == "pending", SyncJob.attempts < max_attempts
        ).update(
            {SyncJob.status: "running", SyncJob.attempts: SyncJob.attempts + 1, SyncJob.started_at: now},
            synchronize_session=False,
        )
        if updated == 1:
            won.append(job_id)
    session.commit()
    if not won:
        return []
    return session.query(SyncJob).filter(SyncJob.id.in_(won)).order_by(SyncJob.id).populate_existing().all()


def tenant_defaults(workspace: Workspace | None) -> dict:
    """Tenant-wide credentials: workspace settings first, then process-wide settings."""
    s = get_settings()
    defaults = {
        "klaviyo_api_key": s.klaviyo_api_key,
        "klaviyo_api_revision": s.klaviyo_api_revision,
        "meta_pixel_id": s.meta_pixel_id,
        "meta_access_token": s.meta_access_token,
        "meta_test_event_code": s.meta_test_event_code,
        "meta_graph_version": s.meta_graph_version,
    }
    if workspace is not None:
        defaults.update({k: v for k, v in (workspace.settings or {}).items() if v})
    return defaults


def _fail_terminal(session: Session, destination: Destination | None, jobs: list[SyncJob], error: str, now: datetime):
    # Conditional so a job another dispatcher already claimed is left alone
    session.query(SyncJob).filter(SyncJob.id.in_([j.id for j in jobs]), SyncJob.status == "pending").update(
        {SyncJob.status: "failed", SyncJob.last_error: error, SyncJob.completed_at: now}
    )
    if destination is not None:
        destination.last_error = error
    SYNC_JOB_OUTCOMES.labels(destination.type if destination else "unknown", "config_failed").inc(len(jobs))
    session.commit()


def _load_items(session: Session, jobs: list[SyncJob]) -> list[DeliveryItem]:
    profile_ids = {j.profile_id for j in jobs if j.profile_id}
    event_ids = {j.event_id for j in jobs if j.event_id}
    profiles = {p.id: p for p in session.query(UnifiedProfile).filter(UnifiedProfile.id.in_(profile_ids)).all()} if profile_ids else {}
    events = {e.id: e for e in session.query(Event).filter(Event.id.in_(event_ids)).all()} if event_ids else {}
    items = []
    for job in jobs:
        event = events.get(job.event_id) if job.event_id else None
        profile = profiles.get(job.profile_id) if job.profile_id else None
        if profile is None and event is not None and event.profile_id:
            profile = session.get(UnifiedProfile, event.profile_id)
        items.append(DeliveryItem(job=job, profile=profile, event=event))
    return items


def dispatch_destination(session: Session, destination: Destination, jobs: list[SyncJob], now: datetime) -> dict:
    s = get_settings()
    if not destination.enabled:
        _fail_terminal(session, destination, jobs, "Destination disabled", now)
        return {"failed": len(jobs)}
    client_cls = CLIENTS.get(destination.type)
    try:
        if client_cls is None:
            raise ConfigurationError(f"Unsupported destination type: {destination.type}")
        workspace = session.get(Workspace, destination.workspace_id)
        credentials = client_cls.resolve_credentials(destination.config or {}, tenant_defaults(workspace))
    except ConfigurationError as e:
        # Retrying cannot fix a missing credential
        _fail_terminal(session, destination, jobs, e.message, now)
        logger.warning("destination %s not configured: %s", destination.id, e.message)
        return {"failed": len(jobs)}

    claimed = claim_jobs(session, [j.id for j in jobs], now, s.sync_max_attempts)
    if not claimed:
        return {"claimed": 0}
    client = client_cls(credentials, timeout=s.destination_timeout_seconds)
    try:
        notes = client.deliver(_load_items(session, claimed))
    except Exception as e:
        error = e.message if isinstance(e, DeliveryError) else f"{e.__class__.__name__}: {e}"
        if not isinstance(e, DeliveryError):
            logger.exception("unexpected delivery failure destination=%s", destination.id)
        failed = retried = 0
        for job in claimed:
            job.last_error = error
            if job.attempts >= s.sync_max_attempts:
                job.status = "failed"
                job.completed_at = now
                failed += 1
            else:
                job.status = "pending"
                job.scheduled_at = now + backoff_delay(job.attempts)
                retried += 1
        destination.last_error = error
        session.commit()
        SYNC_JOB_OUTCOMES.labels(destination.type, "failed").inc(failed)
        SYNC_JOB_OUTCOMES.labels(destination.type, "retried").inc(retried)
        logger.warning("delivery to destination=%s failed (%s jobs): %s", destination.id, len(claimed), error)
        return {"claimed": len(claimed), "failed": failed, "retried": retried}

    event_ids = [j.event_id for j in claimed if j.event_id and j.job_type == "event_track" and j.id not in notes]
    for job in claimed:
        job.status = "completed"
        job.completed_at = now
        job.last_error = notes.get(job.id)
    if event_ids:
        session.query(Event).filter(Event.id.in_(event_ids), Event.status == "processed").update(
            {Event.status: "synced"}, synchronize_session="fetch"
        )
    destination.last_sync_at = now
    destination.last_error = None
    session.commit()
    SYNC_JOB_OUTCOMES.labels(destination.type, "completed").inc(len(claimed))
    return {"claimed": len(claimed), "completed": len(claimed), "skipped": len(notes)}


def dispatch_pending_jobs(session: Session, now: datetime | None = None, limit: int | None = None) -> dict:
    """One dispatcher pass over due jobs, grouped by destination."""
    s = get_settings()
    now = now or datetime.utcnow()
    with DISPATCH_LATENCY.time():
        jobs = fetch_due_jobs(session, now, limit or s.sync_batch_size, s.sync_max_attempts)
        if not jobs:
            return {"status": "idle", "jobs": 0}
        by_destination: dict[int, list[SyncJob]] = defaultdict(list)
        for job in jobs:
            by_destination[job.destination_id].append(job)
        totals: dict[str, int] = defaultdict(int)
        for destination_id, batch in by_destination.items():
            destination = session.get(Destination, destination_id)
            try:
                if destination is None:
                    _fail_terminal(session, None, batch, "Destination not found", now)
                    totals["failed"] += len(batch)
                    continue
                for k, v in dispatch_destination(session, destination, batch, now).items():
                    totals[k] += v
            except Exception as e:
                # One destination's failure must not block the others
                session.rollback()
                logger.warning("dispatch failed destination=%s: %s", destination_id, e)
                totals["errors"] += 1
        return {"status": "ok", "jobs": len(jobs), **totals}


@shared_task
def dispatch_sync_jobs(limit: int | None = None):
    session: Session = SessionLocal()
    try:
        return dispatch_pending_jobs(session, limit=limit)
    finally:
        session.close()
