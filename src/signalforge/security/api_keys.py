from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
import hashlib
import secrets
from sqlalchemy.orm import Session
from signalforge.config import get_settings, parse_scopes, format_scopes
from signalforge.errors import AuthenticationError, ScopeError
from signalforge.models.tables import ApiKey

KEY_PREFIX = "sf_"
KNOWN_SCOPES = {"collect", "identify", "server_track", "admin"}
# A scope is also satisfied by any of these
SCOPE_IMPLIED_BY = {"server_track": {"collect"}}


@dataclass
class AuthContext:
    workspace_id: str
    api_key_id: int
    scopes: set[str]


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key(session: Session, workspace_id: str, name: str | None = None, scopes=None, expires_at: datetime | None = None) -> tuple[str, ApiKey]:
    """Create a key; the raw value is returned once and only its hash is stored."""
    raw = KEY_PREFIX + secrets.token_hex(24)
    scope_set = set(scopes) if scopes else parse_scopes(get_settings().default_api_key_scopes)
    unknown = scope_set - KNOWN_SCOPES
    if unknown:
        raise ValueError(f"unknown scopes: {sorted(unknown)}")
    row = ApiKey(
        workspace_id=workspace_id, name=name, key_prefix=raw[:10], key_hash=hash_key(raw),
        scopes=format_scopes(scope_set), expires_at=expires_at,
    )
    session.add(row)
    session.flush()
    return raw, row


def revoke_api_key(session: Session, api_key_id: int, now: datetime | None = None):
    row = session.get(ApiKey, api_key_id)
    if row is not None and row.revoked_at is None:
        row.revoked_at = now or datetime.utcnow()


def has_scope(scopes: set[str], required: str) -> bool:
    return required in scopes or bool(scopes & SCOPE_IMPLIED_BY.get(required, set()))


def authenticate(session: Session, raw_key: str | None, required_scope: str, now: datetime | None = None) -> AuthContext:
    if not raw_key:
        raise AuthenticationError("missing_api_key")
    if not raw_key.startswith(KEY_PREFIX):
        raise AuthenticationError("invalid_api_key")
    row = session.query(ApiKey).filter(ApiKey.key_hash == hash_key(raw_key)).first()
    if row is None:
        raise AuthenticationError("invalid_api_key")
    now = now or datetime.utcnow()
    if row.revoked_at is not None:
        raise AuthenticationError("api_key_revoked")
    if row.expires_at is not None and row.expires_at <= now:
        raise AuthenticationError("api_key_expired")
    scopes = parse_scopes(row.scopes)
    if not has_scope(scopes, required_scope):
        raise ScopeError("forbidden:missing_scope")
    row.last_used_at = now
    return AuthContext(workspace_id=row.workspace_id, api_key_id=row.id, scopes=scopes)
