"""Data-subject erasure.

Implements:
 - erase_profile(): removes a unified profile and everything that identifies it.
   Events are kept for aggregate counts but detached and stripped of PII properties.
"""
from __future__ import annotations
from celery import shared_task
import logging
from sqlalchemy.orm import Session
from prometheus_client import Counter
from signalforge.errors import NotFoundError
from signalforge.infrastructure.db import SessionLocal
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import UnifiedProfile, IdentityLink, Event, SyncJob, PredictiveSignal

ERASURES = Counter('gdpr_erasures_total', 'Profiles erased on data-subject request', registry=_api_registry)

PII_PROPERTY_KEYS = {"email", "phone", "first_name", "last_name", "name", "address", "customer_email", "customer_id"}

logger = logging.getLogger(__name__)


def _strip_pii(props: dict | None) -> dict:
    return {k: v for k, v in (props or {}).items() if k.lower() not in PII_PROPERTY_KEYS}


def erase_profile(session: Session, workspace_id: str, profile_id: str) -> dict:
    profile = session.query(UnifiedProfile).filter(
        UnifiedProfile.workspace_id == workspace_id, UnifiedProfile.id == profile_id
    ).first()
    if profile is None:
        raise NotFoundError("profile_not_found")
    links = session.query(IdentityLink).filter(IdentityLink.profile_id == profile_id).delete(synchronize_session="fetch")
    events = session.query(Event).filter(Event.profile_id == profile_id).all()
    for ev in events:
        ev.profile_id = None
        ev.anonymous_id = None
        ev.properties = _strip_pii(ev.properties)
        ctx = dict(ev.context or {})
        for key in ("ip", "ip_address", "user_agent", "fbc", "fbp"):
            ctx.pop(key, None)
        ev.context = ctx
    session.flush()
    jobs = session.query(SyncJob).filter(SyncJob.profile_id == profile_id).delete(synchronize_session="fetch")
    signals = session.query(PredictiveSignal).filter(PredictiveSignal.profile_id == profile_id).delete(synchronize_session="fetch")
    session.delete(profile)
    session.flush()
    ERASURES.inc()
    logger.info("erased profile=%s links=%s events=%s jobs=%s", profile_id, links, len(events), jobs)
    return {
        "profile_id": profile_id, "identities_deleted": links, "events_anonymized": len(events),
        "sync_jobs_deleted": jobs, "signals_deleted": signals,
    }


@shared_task
def erase_profile_task(workspace_id: str, profile_id: str):
    s = SessionLocal()
    try:
        result = erase_profile(s, workspace_id, profile_id)
        s.commit()
        return {"status": "ok", **result}
    except NotFoundError:
        s.rollback()
        return {"status": "not_found", "profile_id": profile_id}
    finally:
        s.close()
