"""Identity store: fragment -> unified profile resolution."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
import logging
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from prometheus_client import Counter
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import UnifiedProfile, IdentityLink
from signalforge.merge import merge_profiles

IDENTITY_LINKS_CREATED = Counter('identity_links_created_total', 'Identity fragments linked to a profile', ['identity_type'], registry=_api_registry)
PROFILES_CREATED = Counter('unified_profiles_created_total', 'Unified profiles created', registry=_api_registry)

logger = logging.getLogger(__name__)

FRAGMENT_PRIORITY = ("email", "customer_id", "phone", "anonymous_id")


@dataclass
class Resolution:
    profile: UnifiedProfile
    is_new: bool
    merged_ids: list[str] = field(default_factory=list)


def normalize_fragments(
    email: str | None = None,
    customer_id: str | None = None,
    phone: str | None = None,
    anonymous_id: str | None = None,
) -> dict[str, str]:
    raw = {"email": email, "customer_id": customer_id, "phone": phone, "anonymous_id": anonymous_id}
    out: dict[str, str] = {}
    for kind in FRAGMENT_PRIORITY:
        val = raw[kind]
        if val is None:
            continue
        val = str(val).strip()
        if kind == "email":
            val = val.lower()
        if val:
            out[kind] = val
    return out


def _apply_fragment(profile: UnifiedProfile, kind: str, value: str):
    # JSON columns are reassigned (not mutated) so the ORM sees the change
    if kind == "email":
        if value not in (profile.emails or []):
            profile.emails = list(profile.emails or []) + [value]
        if not profile.primary_email:
            profile.primary_email = value
    elif kind == "customer_id":
        if value not in (profile.customer_ids or []):
            profile.customer_ids = list(profile.customer_ids or []) + [value]
    elif kind == "phone":
        if not profile.phone:
            profile.phone = value
    elif kind == "anonymous_id":
        if value not in (profile.anonymous_ids or []):
            profile.anonymous_ids = list(profile.anonymous_ids or []) + [value]


def _find_links(session: Session, workspace_id: str, fragments: dict[str, str]) -> dict[str, IdentityLink]:
    if not fragments:
        return {}
    clauses = [and_(IdentityLink.identity_type == k, IdentityLink.identity_value == v) for k, v in fragments.items()]
    rows = session.query(IdentityLink).filter(IdentityLink.workspace_id == workspace_id, or_(*clauses)).all()
    return {r.identity_type: r for r in rows}


def link_fragment(
    session: Session,
    workspace_id: str,
    profile: UnifiedProfile,
    kind: str,
    value: str,
    source: str | None = None,
    confidence: float = 1.0,
) -> str:
    """Idempotently bind a fragment to `profile`.

    Returns the id of the profile that owns the fragment afterwards. That is normally
    `profile.id`; a different id means another writer claimed it first and the caller
    should merge.
    """
    existing = session.query(IdentityLink).filter(
        IdentityLink.workspace_id == workspace_id,
        IdentityLink.identity_type == kind,
        IdentityLink.identity_value == value,
    ).first()
    if existing:
        return existing.profile_id
    try:
        with session.begin_nested():
            session.add(IdentityLink(
                workspace_id=workspace_id, identity_type=kind, identity_value=value,
                profile_id=profile.id, source=source, confidence=confidence,
            ))
    except IntegrityError:
        # Lost a race on the unique (workspace, type, value) index; not an error
        owner = session.query(IdentityLink.profile_id).filter(
            IdentityLink.workspace_id == workspace_id,
            IdentityLink.identity_type == kind,
            IdentityLink.identity_value == value,
        ).scalar()
        return owner or profile.id
    _apply_fragment(profile, kind, value)
    IDENTITY_LINKS_CREATED.labels(kind).inc()
    return profile.id


def resolve_identity(
    session: Session,
    workspace_id: str,
    fragments: dict[str, str],
    source: str | None = None,
    now: datetime | None = None,
) -> Resolution:
    """Resolve presented fragments to exactly one profile, creating or merging as needed.

    Fragments are checked in priority order (email, customer_id, phone, anonymous_id).
    If they point at more than one existing profile those profiles are merged. Flushes,
    does not commit.
    """
    if not fragments:
        raise ValueError("at least one identity fragment is required")
    now = now or datetime.utcnow()
    links = _find_links(session, workspace_id, fragments)
    owner_ids: list[str] = []
    for kind in FRAGMENT_PRIORITY:
        link = links.get(kind)
        if link and link.profile_id not in owner_ids:
            owner_ids.append(link.profile_id)

    is_new = False
    merged: list[str] = []
    if not owner_ids:
        profile = UnifiedProfile(workspace_id=workspace_id, first_seen_at=now, last_seen_at=now, computed={}, traits={})
        session.add(profile)
        session.flush()
        is_new = True
        PROFILES_CREATED.inc()
    elif len(owner_ids) == 1:
        profile = session.get(UnifiedProfile, owner_ids[0])
    else:
        profile = merge_profiles(session, workspace_id, owner_ids, now=now)
        merged = [pid for pid in owner_ids if pid != profile.id]

    for kind in FRAGMENT_PRIORITY:
        value = fragments.get(kind)
        if not value or kind in links:
            continue
        owner = link_fragment(session, workspace_id, profile, kind, value, source=source)
        if owner != profile.id:
            prev_id = profile.id
            profile = merge_profiles(session, workspace_id, [prev_id, owner], now=now)
            merged.append(owner if profile.id == prev_id else prev_id)
            _apply_fragment(profile, kind, value)

    for kind, value in fragments.items():
        _apply_fragment(profile, kind, value)
    if profile.last_seen_at is None or now > profile.last_seen_at:
        profile.last_seen_at = now
    session.flush()
    return Resolution(profile=profile, is_new=is_new, merged_ids=merged)
