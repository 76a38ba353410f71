from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import hashlib
import json
import logging
import time
import uuid
import redis
from signalforge.api.admin import router as admin_router
from signalforge.api.events import router as events_router
from signalforge.api.webhooks import router as webhooks_router
from signalforge.config import get_settings
from signalforge.errors import SignalForgeError
from signalforge.infrastructure.db import healthcheck
from signalforge.infrastructure.metrics import registry, REQUESTS, LATENCY, RATE_LIMIT_HITS

app = FastAPI(title="SignalForge API", version="0.1.0")
app.include_router(events_router)
app.include_router(webhooks_router)
app.include_router(admin_router)

_UNMETERED = ("/health", "/metrics")


@app.exception_handler(SignalForgeError)
async def domain_exception_handler(request: Request, exc: SignalForgeError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


def _rate_limit_identifier(request: Request) -> str | None:
    key = request.headers.get("X-API-Key")
    if not key:
        auth = request.headers.get("Authorization") or ""
        key = auth[7:].strip() if auth.lower().startswith("bearer ") else None
    if key:
        # Never put raw keys into redis or metric labels
        return "key:" + hashlib.sha256(key.encode()).hexdigest()[:16]
    return "ip:" + (request.client.host if request.client else "unknown")


def _over_rate_limit(identifier: str, per_minute: int) -> bool:
    try:
        r = redis.Redis.from_url(get_settings().redis_url)
        bucket = f"ratelimit:{identifier}:{int(time.time()//60)}"
        current = r.incr(bucket, 1)
        if current == 1:
            r.expire(bucket, 60)
    except redis.RedisError:
        return False  # fail open
    return current > per_minute


@app.middleware("http")
async def metrics_and_rate_limit(request: Request, call_next):
    settings = get_settings()
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id
    if request.url.path not in _UNMETERED and settings.app_env != "test" and settings.rate_limit_per_minute > 0:
        identifier = _rate_limit_identifier(request)
        if _over_rate_limit(identifier, settings.rate_limit_per_minute):
            RATE_LIMIT_HITS.labels(identifier).inc()
            return JSONResponse(status_code=429, content={"error": "rate limit exceeded"}, headers={"X-Correlation-ID": correlation_id})
    start = time.time()
    response = await call_next(request)
    duration = time.time() - start
    ep = request.url.path
    REQUESTS.labels(endpoint=ep).inc()
    LATENCY.labels(endpoint=ep).observe(duration)
    if 'X-Process-Time' not in response.headers:
        response.headers['X-Process-Time'] = f"{duration:.4f}"
    response.headers['X-Correlation-ID'] = correlation_id
    logging.getLogger("app").info(json.dumps({
        "event": "request",
        "path": request.url.path,
        "method": request.method,
        "status": response.status_code,
        "duration_ms": int(duration*1000),
        "workspace_id": getattr(request.state, "workspace_id", None),
        "correlation_id": correlation_id,
    }))
    # Security headers (baseline; API only serves JSON)
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('X-Frame-Options', 'DENY')
    response.headers.setdefault('Referrer-Policy', 'no-referrer')
    response.headers.setdefault('Cache-Control', 'no-store')
    return response


@app.on_event("startup")
def startup():
    settings = get_settings()
    # Configure structured logger once
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")


@app.get("/health")
def health():
    return {"db": healthcheck(), "status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
