from __future__ import annotations
from fastapi import APIRouter, Depends, Request
import hashlib
from sqlalchemy.orm import Session
from signalforge.api.deps import get_db, require_scope, verify_ingest_signature
from signalforge.ingestion import ingest_event, identify as identify_profile
from signalforge.security.api_keys import AuthContext
from signalforge.validation.events import EventIn, IdentifyIn, ServerEventIn

router = APIRouter(prefix="/v1", tags=["events"])


def _client_ip(request: Request) -> str | None:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else None


def server_fingerprint(ip: str | None, user_agent: str | None) -> str | None:
    """Stable visitor id for server-side calls that carry no anonymous id."""
    if not ip and not user_agent:
        return None
    digest = hashlib.sha256(f"{ip or ''}|{user_agent or ''}".encode()).hexdigest()
    return f"fp_{digest[:32]}"


@router.post("/collect")
def collect(
    body: EventIn,
    request: Request,
    auth: AuthContext = Depends(require_scope("collect")),
    db: Session = Depends(get_db),
):
    transport = {"ip": _client_ip(request), "user_agent": request.headers.get("user-agent")}
    result = ingest_event(db, auth.workspace_id, body.model_dump(), transport=transport, source="js")
    db.commit()
    return {
        "success": True,
        "event_id": result.event_id,
        "duplicate": result.duplicate,
        "sync_jobs_queued": result.sync_jobs_queued,
    }


@router.post("/identify")
def identify(
    body: IdentifyIn,
    auth: AuthContext = Depends(require_scope("identify")),
    db: Session = Depends(get_db),
):
    result = identify_profile(
        db, auth.workspace_id, anonymous_id=body.anonymous_id, user_id=body.user_id,
        email=body.email, phone=body.phone, traits=body.traits,
    )
    db.commit()
    return {"success": True, **result}


@router.post("/server-track", dependencies=[Depends(verify_ingest_signature)])
def server_track(
    body: ServerEventIn,
    request: Request,
    auth: AuthContext = Depends(require_scope("server_track")),
    db: Session = Depends(get_db),
):
    payload = body.model_dump()
    ip = body.client_ip or _client_ip(request)
    ua = body.user_agent or request.headers.get("user-agent")
    if not payload.get("anonymous_id") and not (payload.get("context") or {}).get("anonymous_id"):
        # Only an explicit client ip/ua is a meaningful visitor fingerprint
        payload["anonymous_id"] = server_fingerprint(body.client_ip, body.user_agent)
    result = ingest_event(db, auth.workspace_id, payload, transport={"ip": ip, "user_agent": ua}, source="server")
    db.commit()
    return {
        "success": True,
        "event_id": result.event_id,
        "duplicate": result.duplicate,
        "sync_jobs_queued": result.sync_jobs_queued,
        "unified_user_id": result.profile_id,
    }
