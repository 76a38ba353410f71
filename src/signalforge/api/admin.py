from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from signalforge.api.deps import get_db, require_scope
from signalforge.config import get_settings
from signalforge.errors import NotFoundError
from signalforge.infrastructure.celery_app import celery_app
from signalforge.models.tables import PredictiveSignal
from signalforge.security.api_keys import AuthContext
from signalforge.tasks.abandonment import detect_abandonments
from signalforge.tasks.lifecycle import erase_profile
from signalforge.tasks.predictive import mark_flow_triggered, run_predictive_engine
from signalforge.tasks.sync import dispatch_sync_jobs

router = APIRouter(prefix="/v1", tags=["admin"])

# Pipeline stages an operator may re-run on demand
STAGE_TASKS = {
    "dispatch": dispatch_sync_jobs,
    "predictive": run_predictive_engine,
    "abandonment": detect_abandonments,
}


@router.delete("/profiles/{profile_id}")
def delete_profile(
    profile_id: str,
    auth: AuthContext = Depends(require_scope("admin")),
    db: Session = Depends(get_db),
):
    result = erase_profile(db, auth.workspace_id, profile_id)
    db.commit()
    return {"success": True, **result}


@router.post("/signals/{signal_id}/flow-triggered")
def flow_triggered(
    signal_id: int,
    auth: AuthContext = Depends(require_scope("admin")),
    db: Session = Depends(get_db),
):
    sig = db.get(PredictiveSignal, signal_id)
    if sig is None or sig.workspace_id != auth.workspace_id:
        raise NotFoundError("signal_not_found")
    sig = mark_flow_triggered(db, signal_id)
    db.commit()
    return {"success": True, "signal_id": sig.id, "flow_triggered_at": sig.flow_triggered_at.isoformat()}


@router.post("/pipeline/{stage}/run")
def run_stage(stage: str, auth: AuthContext = Depends(require_scope("admin"))):
    task = STAGE_TASKS.get(stage)
    if task is None:
        raise HTTPException(status_code=404, detail="unknown stage")
    kwargs = {} if stage == "dispatch" else {"workspace_id": auth.workspace_id}
    # If running in test environment without broker, call task function directly
    if get_settings().app_env == "test":
        return {"stage": stage, "task_id": None, "result": task(**kwargs)}
    result = celery_app.send_task(task.name, kwargs=kwargs)
    return {"stage": stage, "task_id": result.id}
