"""Shopify webhooks for server-side conversion tracking.

WHAT:
    Turns Shopify's own order/checkout/cart notifications into tracked events
    and runs them through the same ingestion pipeline as the pixel.

WHY:
    Webhooks are adblocker-proof: the purchase is recorded (and forwarded to
    Meta) even when the storefront pixel never fired.

WEBHOOKS:
    1. orders/create    -> "purchase"          (one event per order)
    2. checkouts/create -> "initiateCheckout"  (one event per checkout)
    3. carts/create     -> "addToCart"         (one event per line item)

FLOW:
    1. Verify HMAC signature (401 on failure)
    2. Parse JSON (400 on failure)
    3. Find the app for X-Shopify-Shop-Domain (200 when there is none, so
       Shopify does not retry-storm us for stores we no longer serve)
    4. pipeline.process(...) without geo lookup; CAPI runs as a background task

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - https://shopify.dev/docs/api/admin-rest/latest/resources/webhook
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from pixelrelay.deps import Settings, get_ingestion_pipeline, get_settings
from pixelrelay.services.ingestion_pipeline import (
    ClientContext,
    IngestionError,
    IngestionPipeline,
    InboundEvent,
    UNKNOWN_IP,
)
from pixelrelay.telemetry import capture_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Shopify Webhooks"])

WEBHOOK_SOURCE = "webhook"
WEBHOOK_USER_AGENT = "Shopify Webhook"


# =============================================================================
# HMAC VERIFICATION
# =============================================================================

def verify_shopify_webhook(request_body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify that webhook request came from Shopify using HMAC.

    WHAT: Base64 HMAC-SHA256 of the raw body, compared in constant time
    WHY: Prevent unauthorized webhook calls from malicious actors

    Args:
        request_body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-SHA256 header value
        secret: The app's API secret key

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.error("[SHOPIFY_WEBHOOK] SHOPIFY_API_SECRET not configured")
        return False

    if not hmac_header:
        logger.warning("[SHOPIFY_WEBHOOK] Missing HMAC header")
        return False

    computed_hmac = base64.b64encode(
        hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).digest()
    ).decode("utf-8")

    is_valid = hmac.compare_digest(computed_hmac, hmac_header)

    if not is_valid:
        logger.warning("[SHOPIFY_WEBHOOK] Invalid HMAC signature")

    return is_valid


async def _read_verified_payload(request: Request, settings: Settings, topic: str) -> Dict[str, Any]:
    """Verify the signature and parse the body.

    Raises:
        HTTPException: 401 on a bad signature, 400 on a non-object JSON body
    """
    body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-SHA256")

    if not verify_shopify_webhook(body, hmac_header, settings.SHOPIFY_API_SECRET):
        logger.warning(f"[SHOPIFY_WEBHOOK] {topic} - Invalid signature")
        capture_message(
            "Rejected Shopify webhook signature",
            level="warning",
            extra={"topic": topic, "shop_domain": request.headers.get("X-Shopify-Shop-Domain")},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        payload = await request.json()
    except ValueError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] {topic} - Failed to parse JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    return payload


# =============================================================================
# PAYLOAD MAPPING
# =============================================================================

def _parse_price(raw: Any) -> float:
    try:
        return float(raw or 0)
    except (TypeError, ValueError):
        return 0.0


def _str_or_none(raw: Any) -> Optional[str]:
    return str(raw) if raw not in (None, "") else None


def _line_item_products(line_items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    products = []
    for item in line_items or []:
        products.append({
            "id": _str_or_none(item.get("product_id")),
            "name": item.get("title"),
            "price": _parse_price(item.get("price")),
            "quantity": item.get("quantity"),
            "sku": item.get("sku"),
        })
    return products


def _content_fields(products: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "content_ids": [p["id"] for p in products if p["id"]],
        "contents": [{"id": p["id"], "quantity": p["quantity"]} for p in products if p["id"]],
    }


def client_from_payload(payload: Dict[str, Any]) -> ClientContext:
    """Shopper IP/UA as Shopify recorded them at checkout, when present."""
    client_details = payload.get("client_details") or {}
    ip = payload.get("browser_ip") or client_details.get("browser_ip") or UNKNOWN_IP
    user_agent = client_details.get("user_agent") or payload.get("user_agent") or WEBHOOK_USER_AGENT
    return ClientContext(ip=ip, user_agent=user_agent)


def order_to_event(order: Dict[str, Any]) -> InboundEvent:
    """orders/create -> purchase."""
    total_price = _parse_price(order.get("total_price"))
    currency = order.get("currency") or "USD"
    order_id = _str_or_none(order.get("id")) or order.get("name")
    products = _line_item_products(order.get("line_items"))
    customer_email = order.get("email") or (order.get("customer") or {}).get("email")

    return InboundEvent(
        event_name="purchase",
        url=order.get("order_status_url"),
        value=total_price,
        currency=currency,
        product_id=order_id,
        product_name=f"Order {order.get('name')}",
        quantity=len(products),
        custom_data={
            "order_id": order_id,
            "order_name": order.get("name"),
            "customer_email": customer_email,
            "products": products,
            "shipping": order.get("shipping_lines"),
            "discount_codes": order.get("discount_codes"),
            "source": WEBHOOK_SOURCE,
        },
        email=customer_email,
        external_id=_str_or_none((order.get("customer") or {}).get("id")),
        # Stable id so Meta can dedupe against a browser Purchase for the same order
        capi_event_id=f"order_{order_id}" if order_id else None,
        forward_data={
            "currency": currency,
            "value": total_price,
            "order_id": order_id,
            "num_items": len(products),
            **_content_fields(products),
        },
        source=WEBHOOK_SOURCE,
    )


def checkout_to_event(checkout: Dict[str, Any]) -> InboundEvent:
    """checkouts/create -> initiateCheckout."""
    total_price = _parse_price(checkout.get("total_price"))
    currency = checkout.get("currency") or "USD"
    products = _line_item_products(checkout.get("line_items"))

    return InboundEvent(
        event_name="initiateCheckout",
        url=checkout.get("abandoned_checkout_url"),
        value=total_price,
        currency=currency,
        quantity=len(products),
        custom_data={
            "checkout_token": checkout.get("token"),
            "products": products,
            "source": WEBHOOK_SOURCE,
        },
        email=checkout.get("email"),
        forward_data={
            "currency": currency,
            "value": total_price,
            "num_items": len(products),
            **_content_fields(products),
        },
        source=WEBHOOK_SOURCE,
    )


def cart_to_events(cart: Dict[str, Any]) -> List[InboundEvent]:
    """carts/create -> one addToCart per line item."""
    currency = cart.get("currency") or "USD"
    events = []

    for item in cart.get("line_items") or []:
        product_id = _str_or_none(item.get("product_id"))
        price = _parse_price(item.get("price"))
        forward_data = {
            "content_type": "product",
            "content_name": item.get("title"),
            "value": price,
            "currency": currency,
            "num_items": item.get("quantity"),
        }
        if product_id:
            forward_data["content_ids"] = [product_id]

        events.append(InboundEvent(
            event_name="addToCart",
            value=price,
            currency=currency,
            product_id=product_id,
            product_name=item.get("title"),
            quantity=item.get("quantity"),
            custom_data={
                "variant_id": item.get("variant_id"),
                "sku": item.get("sku"),
                "source": WEBHOOK_SOURCE,
            },
            forward_data=forward_data,
            source=WEBHOOK_SOURCE,
        ))

    return events


# =============================================================================
# WEBHOOK ENDPOINTS
# =============================================================================

async def _ingest_webhook_events(
    request: Request,
    topic: str,
    events: List[InboundEvent],
    client: ClientContext,
    pipeline: IngestionPipeline,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    shop_domain = request.headers.get("X-Shopify-Shop-Domain")

    try:
        app = pipeline.gateway.get_tenant_by_shop_domain(shop_domain)
    except SQLAlchemyError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] {topic} - App lookup failed for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable"
        )

    if not app:
        logger.info(f"[SHOPIFY_WEBHOOK] {topic} - No app registered for shop {shop_domain}")
        return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "tracked": 0})

    tracked = 0
    for event in events:
        try:
            await pipeline.process(
                app,
                event,
                client,
                background_tasks=background_tasks,
                resolve_location=False,
            )
        except IngestionError as e:
            logger.error(f"[SHOPIFY_WEBHOOK] {topic} - Failed to record '{event.event_name}': {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        tracked += 1

    logger.info(
        f"[SHOPIFY_WEBHOOK] {topic} - Tracked {tracked} event(s) for app {app.app_id}",
        extra={"shop_domain": shop_domain, "app_id": app.app_id},
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "tracked": tracked})


@router.post("/orders/create")
@router.post("/orders-create")
async def handle_orders_create(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    settings: Settings = Depends(get_settings),
):
    """Handle orders/create - server-side Purchase tracking."""
    order = await _read_verified_payload(request, settings, "orders/create")
    return await _ingest_webhook_events(
        request, "orders/create", [order_to_event(order)], client_from_payload(order), pipeline, background_tasks
    )


@router.post("/checkouts/create")
@router.post("/checkouts-create")
async def handle_checkouts_create(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    settings: Settings = Depends(get_settings),
):
    """Handle checkouts/create - server-side InitiateCheckout tracking."""
    checkout = await _read_verified_payload(request, settings, "checkouts/create")
    return await _ingest_webhook_events(
        request, "checkouts/create", [checkout_to_event(checkout)], client_from_payload(checkout), pipeline, background_tasks
    )


@router.post("/carts/create")
@router.post("/carts-create")
async def handle_carts_create(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    settings: Settings = Depends(get_settings),
):
    """Handle carts/create - one AddToCart per line item.

    Carts carry no shopper IP/UA, so the client context is the webhook itself.
    """
    cart = await _read_verified_payload(request, settings, "carts/create")
    return await _ingest_webhook_events(
        request,
        "carts/create",
        cart_to_events(cart),
        ClientContext(ip=UNKNOWN_IP, user_agent=WEBHOOK_USER_AGENT),
        pipeline,
        background_tasks,
    )
