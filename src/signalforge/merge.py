"""Identity merge engine.

A merge is two explicit steps: pick a primary with a deterministic total order
(`select_primary`), then reassign ownership of links, events and jobs to it with
bulk updates and delete the losers. Both steps run under row locks taken in id
order so two merges touching the same profile serialize instead of interleaving.
"""
from __future__ import annotations
from datetime import datetime
import logging
from typing import Iterable, Sequence
from sqlalchemy.orm import Session
from prometheus_client import Counter
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import UnifiedProfile, IdentityLink, Event, SyncJob, PredictiveSignal
from signalforge.scoring import (
    NUMERIC_TRAITS, TIMESTAMP_TRAITS, STRING_TRAITS, MAX_TRACKED_PRODUCTS, parse_ts, recency_days,
)

IDENTITY_MERGES = Counter('identity_merges_total', 'Unified profiles absorbed into a primary', registry=_api_registry)
IDENTITY_LINKS_REPOINTED = Counter('identity_links_repointed_total', 'Identity links moved to a merge primary', registry=_api_registry)
IDENTITY_EVENTS_REWRITTEN = Counter('identity_events_rewritten_total', 'Event rows re-attributed by merges', registry=_api_registry)

logger = logging.getLogger(__name__)


def _primary_sort_key(p: UnifiedProfile):
    has_email = bool(p.primary_email or p.emails)
    has_customer = bool(p.customer_ids)
    return (
        0 if has_email else 1,
        0 if has_customer else 1,
        p.first_seen_at or datetime.max,
        p.id,
    )


def order_for_merge(profiles: Iterable[UnifiedProfile]) -> list[UnifiedProfile]:
    """Profiles sorted primary-first; the order is independent of input order."""
    return sorted(profiles, key=_primary_sort_key)


def select_primary(profiles: Sequence[UnifiedProfile]) -> UnifiedProfile:
    if not profiles:
        raise ValueError("select_primary requires at least one profile")
    return order_for_merge(profiles)[0]


def _union(lists: Iterable[Iterable]) -> list:
    out: list = []
    for items in lists:
        for item in items or []:
            if item not in out:
                out.append(item)
    return out


def merge_computed(ordered: Sequence[dict], primary_last_seen: datetime | None, now: datetime) -> dict:
    """Combine computed-trait maps; `ordered` must be primary-first.

    Numeric traits take the max, timestamps the latest non-null value, single-valued
    strings the first non-null. recency_days comes from the primary's last_seen.
    """
    merged: dict = {}
    # Any other key: primary's value wins, gaps filled from the rest
    for c in reversed(ordered):
        merged.update({k: v for k, v in (c or {}).items() if v is not None})

    for key in NUMERIC_TRAITS:
        values = [c.get(key) for c in ordered if isinstance((c or {}).get(key), (int, float))]
        if values:
            merged[key] = max(values)
    for key in TIMESTAMP_TRAITS:
        stamps = [(parse_ts(c.get(key)), c.get(key)) for c in ordered if (c or {}).get(key)]
        stamps = [s for s in stamps if s[0] is not None]
        if stamps:
            merged[key] = max(stamps, key=lambda s: s[0])[1]
        else:
            merged.pop(key, None)
    for key in STRING_TRAITS:
        merged[key] = next((c.get(key) for c in ordered if (c or {}).get(key)), None)

    sessions: dict = {}
    for c in ordered:
        for sid, ts in ((c or {}).get("sessions_30d") or {}).items():
            if sid not in sessions or (parse_ts(ts) or now) > (parse_ts(sessions[sid]) or now):
                sessions[sid] = ts
    if sessions:
        merged["sessions_30d"] = sessions
    viewed = _union((c or {}).get("viewed_products") for c in ordered)
    if viewed:
        merged["viewed_products"] = viewed[-MAX_TRACKED_PRODUCTS:]
    counts: dict = {}
    for c in ordered:
        for cat, n in ((c or {}).get("category_counts") or {}).items():
            counts[cat] = counts.get(cat, 0) + n
    if counts:
        merged["category_counts"] = counts
    cart_adds = sorted(_union((c or {}).get("recent_cart_adds") for c in ordered))
    if cart_adds:
        merged["recent_cart_adds"] = cart_adds

    merged["recency_days"] = recency_days(primary_last_seen, now)
    return merged


def merge_snapshots(profiles: Sequence[UnifiedProfile], now: datetime) -> tuple[UnifiedProfile, dict]:
    """Pure half of a merge: chosen primary and the merged computed traits."""
    ordered = order_for_merge(profiles)
    primary = ordered[0]
    return primary, merge_computed([p.computed or {} for p in ordered], primary.last_seen_at, now)


def _lock_profiles(session: Session, workspace_id: str, profile_ids: Iterable[str]) -> list[UnifiedProfile]:
    # Lock in id order to avoid deadlocks between concurrent merges (no-op on sqlite)
    return (
        session.query(UnifiedProfile)
        .filter(UnifiedProfile.workspace_id == workspace_id, UnifiedProfile.id.in_(sorted(set(profile_ids))))
        .order_by(UnifiedProfile.id)
        .with_for_update()
        .populate_existing()
        .all()
    )


def merge_profiles(session: Session, workspace_id: str, profile_ids: Iterable[str], now: datetime | None = None) -> UnifiedProfile:
    """Absorb every listed profile into the deterministic primary. Flushes, does not commit."""
    now = now or datetime.utcnow()
    session.flush()
    profiles = _lock_profiles(session, workspace_id, profile_ids)
    if not profiles:
        raise ValueError("no profiles to merge")
    if len(profiles) == 1:
        return profiles[0]
    primary, computed = merge_snapshots(profiles, now)
    ordered = order_for_merge(profiles)
    losers = ordered[1:]
    loser_ids = [p.id for p in losers]

    primary.emails = _union(p.emails for p in ordered)
    primary.primary_email = primary.primary_email or next((p.primary_email for p in ordered if p.primary_email), None)
    if not primary.primary_email and primary.emails:
        primary.primary_email = primary.emails[0]
    primary.customer_ids = _union(p.customer_ids for p in ordered)
    primary.anonymous_ids = _union(p.anonymous_ids for p in ordered)
    primary.phone = primary.phone or next((p.phone for p in ordered if p.phone), None)
    traits: dict = {}
    for p in reversed(ordered):
        traits.update(p.traits or {})
    primary.traits = traits
    primary.computed = computed
    primary.first_seen_at = min(p.first_seen_at for p in ordered if p.first_seen_at)

    links = session.query(IdentityLink).filter(
        IdentityLink.workspace_id == workspace_id, IdentityLink.profile_id.in_(loser_ids)
    ).update({IdentityLink.profile_id: primary.id}, synchronize_session="fetch")
    events = session.query(Event).filter(
        Event.workspace_id == workspace_id, Event.profile_id.in_(loser_ids)
    ).update({Event.profile_id: primary.id}, synchronize_session="fetch")
    session.query(SyncJob).filter(SyncJob.profile_id.in_(loser_ids)).update(
        {SyncJob.profile_id: primary.id}, synchronize_session="fetch"
    )
    # Signals are re-derived for the primary on the next predictive pass
    session.query(PredictiveSignal).filter(PredictiveSignal.profile_id.in_(loser_ids)).delete(synchronize_session="fetch")
    for loser in losers:
        session.delete(loser)
    session.flush()

    IDENTITY_MERGES.inc(len(losers))
    IDENTITY_LINKS_REPOINTED.inc(links or 0)
    IDENTITY_EVENTS_REWRITTEN.inc(events or 0)
    logger.info("merged profiles %s into %s (links=%s events=%s)", loser_ids, primary.id, links, events)
    return primary
