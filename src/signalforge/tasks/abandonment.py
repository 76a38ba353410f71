from __future__ import annotations
from celery import shared_task
from datetime import datetime, timedelta
import logging
from sqlalchemy.orm import Session
from prometheus_client import Counter
from signalforge.config import get_settings
from signalforge.infrastructure.db import SessionLocal
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import UnifiedProfile
from signalforge.scoring import parse_ts, advance_stage
from signalforge.ingestion import enqueue_profile_jobs

ABANDONMENTS_DETECTED = Counter('abandonments_detected_total', 'Cart/checkout abandonments detected', ['abandonment_type'], registry=_api_registry)

logger = logging.getLogger(__name__)


def _after(ts: datetime | None, ref: datetime | None) -> bool:
    return ts is not None and ref is not None and ts >= ref


def classify_abandonment(computed: dict, now: datetime, cart_minutes: int, checkout_minutes: int) -> str | None:
    """Pure: 'checkout' or 'cart' when the profile newly qualifies, else None.

    Checkout abandonment takes precedence because it is the further funnel step.
    """
    last_cart = parse_ts(computed.get("last_cart_at"))
    checkout_started = parse_ts(computed.get("checkout_started_at"))
    last_order = parse_ts(computed.get("last_order_at"))
    if (
        checkout_started is not None
        and now - checkout_started >= timedelta(minutes=checkout_minutes)
        and not _after(last_order, checkout_started)
        and not computed.get("checkout_abandoned_at")
    ):
        return "checkout"
    if (
        last_cart is not None
        and now - last_cart >= timedelta(minutes=cart_minutes)
        and not _after(checkout_started, last_cart)
        and not _after(last_order, last_cart)
        and not computed.get("cart_abandoned_at")
    ):
        return "cart"
    return None


def detect_abandonments_pass(session: Session, workspace_id: str | None = None, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    s = get_settings()
    # Nothing older than the predictive window can still be a fresh abandonment
    q = session.query(UnifiedProfile).filter(
        UnifiedProfile.last_seen_at >= now - timedelta(days=s.predictive_window_days)
    )
    if workspace_id:
        q = q.filter(UnifiedProfile.workspace_id == workspace_id)
    found = {"cart": 0, "checkout": 0}
    jobs = failures = 0
    for profile in q.order_by(UnifiedProfile.id).all():
        try:
            computed = dict(profile.computed or {})
            kind = classify_abandonment(computed, now, s.cart_abandon_minutes, s.checkout_abandon_minutes)
            if kind is None:
                continue
            computed[f"{kind}_abandoned_at"] = now.isoformat()
            stage = "checkout_abandoned" if kind == "checkout" else "cart_abandoned"
            computed["drop_off_stage"] = advance_stage(computed.get("drop_off_stage"), stage)
            profile.computed = computed
            if profile.primary_email:
                jobs += enqueue_profile_jobs(session, profile.workspace_id, profile.id, {
                    "trigger": "abandonment-detector", "abandonment_type": kind,
                })
            session.commit()
            found[kind] += 1
            ABANDONMENTS_DETECTED.labels(kind).inc()
        except Exception as e:
            session.rollback()
            failures += 1
            logger.warning("abandonment detection failed profile=%s: %s", profile.id, e)
    return {"status": "ok", "cart_abandoned": found["cart"], "checkout_abandoned": found["checkout"], "sync_jobs_created": jobs, "failures": failures}


@shared_task
def detect_abandonments(workspace_id: str | None = None):
    session: Session = SessionLocal()
    try:
        return detect_abandonments_pass(session, workspace_id=workspace_id)
    finally:
        session.close()
