from __future__ import annotations
from fastapi import APIRouter, Depends, Header, HTTPException, Request
import json
import logging
from sqlalchemy.orm import Session
from signalforge.api.deps import get_db
from signalforge.config import get_settings
from signalforge.ingestion import ingest_event, identify
from signalforge.models.tables import Workspace
from signalforge.security.hmac import verify_shopify_hmac

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def _shopify_anonymous_id(body: dict) -> str | None:
    customer = body.get("customer") or {}
    ref = customer.get("id") or body.get("token") or body.get("id")
    return f"shopify_{ref}" if ref else None


def _customer_fields(body: dict) -> dict:
    customer = body.get("customer") or {}
    return {
        "email": body.get("email") or customer.get("email"),
        "customer_id": str(customer["id"]) if customer.get("id") else None,
        "phone": body.get("phone") or customer.get("phone"),
    }


def map_shopify_webhook(topic: str, body: dict) -> tuple[str, dict]:
    """Translate a Shopify topic + body into ('event', payload) or ('identify', fields)."""
    topic = (topic or "").strip().lower()
    anonymous_id = _shopify_anonymous_id(body)
    if topic in ("orders/create", "orders/paid"):
        line_items = [
            {"product_id": li.get("product_id"), "sku": li.get("sku"), "quantity": li.get("quantity"), "price": li.get("price"), "title": li.get("title")}
            for li in body.get("line_items") or [] if isinstance(li, dict)
        ]
        return "event", {
            "event": "Placed Order",
            "anonymous_id": anonymous_id,
            "properties": {
                "order_id": str(body.get("id")) if body.get("id") else None,
                "order_number": body.get("order_number"),
                "checkout_token": body.get("checkout_token"),
                "total_price": body.get("total_price"),
                "currency": body.get("currency"),
                "line_items": line_items,
            },
            "timestamp": body.get("created_at"),
            **_customer_fields(body),
        }
    if topic in ("checkouts/create", "checkouts/update"):
        return "event", {
            "event": "begin_checkout",
            "anonymous_id": anonymous_id,
            "properties": {
                "checkout_id": str(body.get("id")) if body.get("id") else None,
                "checkout_token": body.get("token"),
                "total_price": body.get("total_price"),
                "currency": body.get("currency"),
            },
            **_customer_fields(body),
        }
    if topic in ("carts/create", "carts/update"):
        return "event", {
            "event": "add_to_cart",
            "anonymous_id": anonymous_id,
            "properties": {"cart_token": body.get("token") or body.get("id")},
        }
    if topic in ("customers/create", "customers/update"):
        traits = {k: body.get(k) for k in ("first_name", "last_name", "accepts_marketing") if body.get(k) is not None}
        return "identify", {
            "user_id": str(body["id"]) if body.get("id") else None,
            "email": body.get("email"),
            "phone": body.get("phone"),
            "traits": traits,
        }
    return "event", {
        "event": topic or "shopify_webhook",
        "anonymous_id": anonymous_id,
        "properties": {"topic": topic, "resource_id": body.get("id")},
    }


@router.post("/shopify/{workspace_id}")
async def shopify_webhook(
    workspace_id: str,
    request: Request,
    db: Session = Depends(get_db),
    x_shopify_topic: str | None = Header(None, alias="X-Shopify-Topic"),
    x_shopify_hmac: str | None = Header(None, alias="X-Shopify-Hmac-Sha256"),
    x_shopify_shop_domain: str | None = Header(None, alias="X-Shopify-Shop-Domain"),
):
    workspace = db.get(Workspace, workspace_id)
    if workspace is None:
        raise HTTPException(status_code=404, detail="workspace not found")
    raw = await request.body()
    secret = workspace.shopify_webhook_secret or get_settings().shopify_webhook_secret
    if secret:
        verify_shopify_hmac(x_shopify_hmac, raw, secret)
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid json")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid json")
    kind, data = map_shopify_webhook(x_shopify_topic or "", body)
    if kind == "identify":
        result = identify(db, workspace_id, source="webhook", **data)
        db.commit()
        return {"success": True, "topic": x_shopify_topic, **result}
    data["context"] = {"shop_domain": x_shopify_shop_domain, "topic": x_shopify_topic}
    result = ingest_event(db, workspace_id, data, source="webhook")
    db.commit()
    logger.info("shopify webhook topic=%s workspace=%s event=%s duplicate=%s", x_shopify_topic, workspace_id, result.event_id, result.duplicate)
    return {"success": True, "topic": x_shopify_topic, "event_id": result.event_id, "duplicate": result.duplicate}
