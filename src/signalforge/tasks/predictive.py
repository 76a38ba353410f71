"""Predictive rule engine.

The rule catalog is a fixed list of `PredictiveRule` records: each has a pure predicate
over a profile snapshot, a confidence constant, an expiry, an optional outbound flow
name and an optional payload extractor. `run_predictive_pass` evaluates the catalog
uniformly over recently active profiles, upserts one live signal per
(workspace, profile, rule), and deletes expired signals on every pass.
"""
from __future__ import annotations
from celery import shared_task
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable
from sqlalchemy.orm import Session
from prometheus_client import Counter, Histogram
from signalforge.config import get_settings
from signalforge.errors import NotFoundError
from signalforge.infrastructure.db import SessionLocal
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import UnifiedProfile, PredictiveSignal
from signalforge.scoring import parse_ts, recency_days
from signalforge.ingestion import enqueue_profile_jobs

PREDICTIVE_RUNS = Counter('predictive_runs_total', 'Predictive engine passes', registry=_api_registry)
SIGNALS_UPSERTED = Counter('predictive_signals_upserted_total', 'Predictive signals created or refreshed', ['signal_type'], registry=_api_registry)
SIGNALS_EXPIRED = Counter('predictive_signals_expired_total', 'Expired predictive signals deleted', registry=_api_registry)
FLOWS_TRIGGERED = Counter('predictive_flows_triggered_total', 'Outbound flows triggered by signals', ['signal_type'], registry=_api_registry)
PROFILE_FAILURES = Counter('predictive_profile_failures_total', 'Profiles that failed evaluation', registry=_api_registry)
PREDICTIVE_LATENCY = Histogram('predictive_pass_latency_seconds', 'Latency of a predictive pass', buckets=(0.1,0.5,1,2,5,10,30,60), registry=_api_registry)

logger = logging.getLogger(__name__)


@dataclass
class ProfileSnapshot:
    intent: float
    frequency: float
    depth: float
    recency: int
    stage: str
    top_category: str | None
    orders: int
    atc: int
    products: int
    categories: int
    sessions: int
    lifetime_value: float
    checkout_abandoned_at: datetime | None
    now: datetime

    @classmethod
    def from_profile(cls, profile: UnifiedProfile, now: datetime) -> "ProfileSnapshot":
        c = profile.computed or {}
        return cls(
            intent=float(c.get("intent_score") or 0),
            frequency=float(c.get("frequency_score") or 0),
            depth=float(c.get("depth_score") or 0),
            recency=recency_days(profile.last_seen_at, now),
            stage=c.get("drop_off_stage") or "visitor",
            top_category=c.get("top_category"),
            orders=int(c.get("orders_count") or 0),
            atc=int(c.get("atc_count_7d") or 0),
            products=int(c.get("unique_products_viewed") or 0),
            categories=int(c.get("unique_categories_viewed") or 0),
            sessions=int(c.get("session_count_30d") or 1),
            lifetime_value=float(c.get("lifetime_value") or 0),
            checkout_abandoned_at=parse_ts(c.get("checkout_abandoned_at")),
            now=now,
        )


@dataclass(frozen=True)
class PredictiveRule:
    id: str
    name: str
    predicate: Callable[[ProfileSnapshot], bool]
    confidence: int
    expires_hours: int
    flow_name: str | None = None
    payload: Callable[[ProfileSnapshot], dict] | None = None


def _checkout_urgent(s: ProfileSnapshot) -> bool:
    if s.orders != 0:
        return False
    if s.stage == "checkout_abandoned":
        return s.checkout_abandoned_at is None or (s.now - s.checkout_abandoned_at) <= timedelta(hours=48)
    return s.intent >= 70


RULES: tuple[PredictiveRule, ...] = (
    PredictiveRule(
        id="high_intent_cart",
        name="High intent cart",
        predicate=lambda s: (s.intent >= 40 or s.atc >= 1) and (s.stage == "cart_abandoned" or s.atc >= 1) and s.recency <= 7,
        confidence=75,
        expires_hours=72,
        flow_name="SF High Intent Cart Recovery",
        payload=lambda s: {"intent_score": s.intent, "atc_count_7d": s.atc, "recency_days": s.recency},
    ),
    PredictiveRule(
        id="checkout_urgency",
        name="Urgent checkout abandonment",
        predicate=_checkout_urgent,
        confidence=85,
        expires_hours=48,
        flow_name="SF Checkout Abandonment Urgent",
        payload=lambda s: {
            "intent_score": s.intent,
            "checkout_abandoned_at": s.checkout_abandoned_at.isoformat() if s.checkout_abandoned_at else None,
        },
    ),
    PredictiveRule(
        id="browse_warming",
        name="Browse warming",
        predicate=lambda s: (s.products >= 2 or s.intent >= 20) and s.recency <= 14 and s.orders == 0,
        confidence=60,
        expires_hours=168,
        flow_name="SF Browse Warming Nurture",
        payload=lambda s: {"session_count": s.sessions, "products_viewed": s.products, "intent_score": s.intent},
    ),
    PredictiveRule(
        id="churn_risk",
        name="Churn risk",
        predicate=lambda s: s.orders >= 1 and s.recency >= 30 and s.intent <= 30,
        confidence=75,
        expires_hours=336,
        flow_name="SF Win-Back Campaign",
        payload=lambda s: {"orders_count": s.orders, "recency_days": s.recency, "lifetime_value": s.lifetime_value},
    ),
    PredictiveRule(
        id="category_interest",
        name="Category interest",
        predicate=lambda s: bool(s.top_category) and s.products >= 3 and s.categories <= 3,
        confidence=70,
        expires_hours=168,
        payload=lambda s: {"category": s.top_category, "products_in_category": s.products},
    ),
    PredictiveRule(
        id="about_to_purchase",
        name="About to purchase",
        predicate=lambda s: s.intent >= 80 and s.depth >= 50 and s.atc >= 1 and s.recency <= 2 and s.orders == 0,
        confidence=88,
        expires_hours=48,
        flow_name="SF About to Purchase",
        payload=lambda s: {"intent_score": s.intent, "depth_score": s.depth, "atc_count_7d": s.atc},
    ),
)
RULES_BY_ID = {r.id: r for r in RULES}


def evaluate_rules(snapshot: ProfileSnapshot, rules: tuple[PredictiveRule, ...] = RULES) -> list[tuple[PredictiveRule, dict]]:
    """Pure: matching rules with their payload snapshots."""
    matches: list[tuple[PredictiveRule, dict]] = []
    for rule in rules:
        if rule.predicate(snapshot):
            matches.append((rule, rule.payload(snapshot) if rule.payload else {}))
    return matches


def _has_fragment(p: UnifiedProfile) -> bool:
    return bool(p.primary_email or p.emails or p.customer_ids or p.phone or p.anonymous_ids)


def delete_expired_signals(session: Session, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    deleted = session.query(PredictiveSignal).filter(PredictiveSignal.expires_at <= now).delete(synchronize_session="fetch")
    if deleted:
        SIGNALS_EXPIRED.inc(deleted)
    return deleted or 0


def upsert_signal(session: Session, profile: UnifiedProfile, rule: PredictiveRule, payload: dict, now: datetime) -> PredictiveSignal:
    """Create the live signal for (workspace, profile, rule) or refresh it in place.

    A refreshed signal keeps its expiry and its flow_triggered_at, so a flow fires at
    most once per signal instance.
    """
    sig = session.query(PredictiveSignal).filter(
        PredictiveSignal.workspace_id == profile.workspace_id,
        PredictiveSignal.profile_id == profile.id,
        PredictiveSignal.signal_type == rule.id,
    ).first()
    if sig is not None and sig.expires_at <= now:
        session.delete(sig)
        session.flush()
        sig = None
    if sig is None:
        sig = PredictiveSignal(
            workspace_id=profile.workspace_id, profile_id=profile.id, signal_type=rule.id,
            confidence=rule.confidence, payload=payload, flow_name=rule.flow_name,
            should_trigger_flow=bool(rule.flow_name), flow_triggered_at=None,
            expires_at=now + timedelta(hours=rule.expires_hours), created_at=now, updated_at=now,
        )
        session.add(sig)
    else:
        sig.confidence = rule.confidence
        sig.payload = payload
        sig.flow_name = rule.flow_name
        sig.should_trigger_flow = bool(rule.flow_name) and sig.flow_triggered_at is None
        sig.updated_at = now
    SIGNALS_UPSERTED.labels(rule.id).inc()
    return sig


def mark_flow_triggered(session: Session, signal_id: int, now: datetime | None = None) -> PredictiveSignal:
    sig = session.get(PredictiveSignal, signal_id)
    if sig is None:
        raise NotFoundError("signal_not_found")
    if sig.flow_triggered_at is None:
        sig.flow_triggered_at = now or datetime.utcnow()
    sig.should_trigger_flow = False
    return sig


def _trigger_flow(session: Session, profile: UnifiedProfile, sig: PredictiveSignal, now: datetime) -> int:
    if not sig.should_trigger_flow or not profile.primary_email:
        return 0
    jobs = enqueue_profile_jobs(session, profile.workspace_id, profile.id, {
        "trigger": "predictive-engine", "signal_type": sig.signal_type, "flow_name": sig.flow_name,
    })
    mark_flow_triggered(session, sig.id, now)
    FLOWS_TRIGGERED.labels(sig.signal_type).inc()
    return jobs


def run_predictive_pass(session: Session, workspace_id: str | None = None, now: datetime | None = None) -> dict:
    """Evaluate the rule catalog over active profiles. Commits per profile."""
    now = now or datetime.utcnow()
    PREDICTIVE_RUNS.inc()
    with PREDICTIVE_LATENCY.time():
        expired = delete_expired_signals(session, now)
        session.commit()
        window_start = now - timedelta(days=get_settings().predictive_window_days)
        q = session.query(UnifiedProfile).filter(UnifiedProfile.last_seen_at >= window_start)
        if workspace_id:
            q = q.filter(UnifiedProfile.workspace_id == workspace_id)
        evaluated = signals = flows = failures = 0
        for profile in q.order_by(UnifiedProfile.id).all():
            if not _has_fragment(profile):
                continue
            try:
                snapshot = ProfileSnapshot.from_profile(profile, now)
                profile.computed = {**(profile.computed or {}), "recency_days": snapshot.recency}
                for rule, payload in evaluate_rules(snapshot):
                    sig = upsert_signal(session, profile, rule, payload, now)
                    session.flush()
                    flows += _trigger_flow(session, profile, sig, now)
                    signals += 1
                session.commit()
                evaluated += 1
            except Exception as e:
                # One profile's failure must not block the sweep
                session.rollback()
                failures += 1
                PROFILE_FAILURES.inc()
                logger.warning("predictive evaluation failed profile=%s: %s", profile.id, e)
        return {
            "status": "ok", "profiles_evaluated": evaluated, "signals_upserted": signals,
            "flow_jobs_created": flows, "expired_deleted": expired, "failures": failures,
        }


@shared_task
def run_predictive_engine(workspace_id: str | None = None):
    session: Session = SessionLocal()
    try:
        return run_predictive_pass(session, workspace_id=workspace_id)
    finally:
        session.close()


@shared_task
def cleanup_expired_signals():
    session: Session = SessionLocal()
    try:
        deleted = delete_expired_signals(session)
        session.commit()
        return {"status": "ok", "deleted": deleted}
    finally:
        session.close()
