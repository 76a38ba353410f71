from __future__ import annotations
import base64
import hmac
import hashlib
import time
from fastapi import HTTPException


def verify_hmac(signature: str, body: bytes, secret: str, tolerance_seconds: int = 300):
    """Timestamped signature header of the form `<unix_ts>,<hex sha256 of "ts." + body>`."""
    try:
        ts_str, sig = signature.split(",", 1)
        ts = int(ts_str)
    except Exception:
        raise HTTPException(status_code=400, detail="invalid signature header")
    if abs(time.time() - ts) > tolerance_seconds:
        raise HTTPException(status_code=401, detail="signature timestamp expired")
    expected = hmac.new(secret.encode(), msg=f"{ts}.".encode() + body, digestmod=hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        raise HTTPException(status_code=401, detail="invalid signature")


def shopify_signature(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).digest()).decode()


def verify_shopify_hmac(signature: str | None, body: bytes, secret: str):
    """Shopify sends base64(HMAC-SHA256(raw body)) in X-Shopify-Hmac-Sha256."""
    if not signature:
        raise HTTPException(status_code=401, detail="missing signature")
    if not hmac.compare_digest(shopify_signature(body, secret), signature.strip()):
        raise HTTPException(status_code=401, detail="invalid signature")
