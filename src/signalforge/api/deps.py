from __future__ import annotations
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from signalforge.config import get_settings
from signalforge.infrastructure.db import SessionLocal
from signalforge.security.api_keys import AuthContext, authenticate
from signalforge.security.hmac import verify_hmac


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _extract_key(x_api_key: str | None, authorization: str | None) -> str | None:
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def require_scope(scope: str):
    """Dependency factory: authenticate the caller's API key and require `scope`.

    Raises AuthenticationError / ScopeError, rendered as 401 / 403 by the app.
    """
    def _dep(
        request: Request,
        db: Session = Depends(get_db),
        x_api_key: str | None = Header(None, alias="X-API-Key"),
        authorization: str | None = Header(None, alias="Authorization"),
    ) -> AuthContext:
        ctx = authenticate(db, _extract_key(x_api_key, authorization), scope)
        db.commit()  # persist last_used_at
        request.state.workspace_id = ctx.workspace_id
        return ctx
    return _dep


async def verify_ingest_signature(
    request: Request,
    x_signature: str | None = Header(None, alias="X-SignalForge-Signature"),
):
    """Require a timestamped body signature when INGEST_SECRET is set."""
    secret = get_settings().ingest_secret
    if not secret:
        return
    if not x_signature:
        raise HTTPException(status_code=401, detail="missing signature")
    verify_hmac(x_signature, await request.body(), secret)
