"""Tracking endpoints for the storefront pixel.

WHAT:
    Receives events from the storefront snippet over three transports and
    hands each one to the ingestion pipeline:
    1. POST /track (alias /api/track) - JSON body, also used by sendBeacon
    2. GET  /track?d=<base64 json>    - image-pixel fallback, always a 1x1 GIF
    3. POST /apps/proxy/track         - same body via the Shopify app proxy

WHY:
    Shops call these cross-origin from any storefront domain, and ad blockers
    or network hiccups must never surface as a broken page. Hence permissive
    CORS on every response and an unconditional GIF on the image path.

REFERENCES:
    - pixelrelay/services/ingestion_pipeline.py (all semantics live there)
    - https://shopify.dev/docs/apps/build/online-store/display-dynamic-data
"""

import base64
import binascii
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from pixelrelay.deps import Settings, get_ingestion_pipeline, get_settings
from pixelrelay.schemas import TrackResponse
from pixelrelay.services.ingestion_pipeline import (
    ClientContext,
    DatastoreUnavailableError,
    IngestionError,
    IngestionPipeline,
    InvalidPayloadError,
)
from pixelrelay.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tracking"])

# 1x1 transparent GIF
TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


# =============================================================================
# CORS HELPERS
# =============================================================================
# WHAT: The snippet runs on every merchant storefront, so any origin is allowed
# WHY: Only Content-Type is needed; no credentials are ever sent


def add_cors_headers(response: Response) -> Response:
    """Add CORS headers to a tracking response."""
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Max-Age"] = "86400"  # Cache preflight for 24h
    return response


def _error_response(error: IngestionError, settings: Settings) -> JSONResponse:
    """Translate a pipeline error into the snippet's {success, error} shape."""
    message = error.message
    if error.status_code >= 500 and not isinstance(error, DatastoreUnavailableError):
        message = f"{error.message}: {error.detail}" if settings.is_development and error.detail else "Internal error"

    body = TrackResponse(success=False, error=message).model_dump(by_alias=True, exclude_none=True)
    response = JSONResponse(status_code=error.status_code, content=body)

    if isinstance(error, DatastoreUnavailableError):
        response.headers["Retry-After"] = str(error.retry_after)

    return add_cors_headers(response)


def _decode_body(raw: bytes) -> Any:
    if not raw:
        raise InvalidPayloadError("Invalid payload", detail="empty body")
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidPayloadError("Invalid payload", detail="malformed JSON") from e


def decode_pixel_param(encoded: str) -> Any:
    """Decode the image-pixel `d` parameter (standard or URL-safe base64 JSON)."""
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        if "-" in padded or "_" in padded:
            raw = base64.urlsafe_b64decode(padded)
        else:
            raw = base64.b64decode(padded)
        return json.loads(raw)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise InvalidPayloadError("Invalid payload", detail="undecodable pixel data") from e


async def _handle_post(
    request: Request,
    pipeline: IngestionPipeline,
    settings: Settings,
    background_tasks: BackgroundTasks,
    transport: str,
) -> Response:
    client = ClientContext.from_request(request)

    try:
        body = _decode_body(await request.body())
        result = await pipeline.ingest(body, client, background_tasks=background_tasks)
    except IngestionError as e:
        log = logger.error if e.status_code >= 500 else logger.warning
        log(f"[TRACK] {transport} rejected ({e.status_code}): {e.message}", extra={"detail": e.detail})
        return _error_response(e, settings)
    except Exception as e:
        logger.exception(f"[TRACK] {transport} unexpected error: {e}")
        capture_exception(e, extra={"transport": transport})
        return _error_response(IngestionError("Internal error", detail=str(e)), settings)

    body = TrackResponse(success=True, event_id=str(result.event_id)).model_dump(by_alias=True, exclude_none=True)
    return add_cors_headers(JSONResponse(status_code=status.HTTP_200_OK, content=body))


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.options("/track")
@router.options("/api/track")
@router.options("/apps/proxy/track")
async def track_preflight():
    """Handle CORS preflight.

    WHAT: Answers OPTIONS with CORS headers and no body
    WHY: Browsers preflight cross-origin JSON POSTs; nothing else is touched
    """
    return add_cors_headers(Response(status_code=status.HTTP_204_NO_CONTENT))


@router.post("/track")
@router.post("/api/track")
async def track_event(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    settings: Settings = Depends(get_settings),
):
    """Record one event from the storefront snippet.

    Accepts either the event object itself or a GraphQL-style envelope
    `{"query": ..., "variables": {"input": {...}}}`.

    Returns:
        200 {"success": true, "eventId": "..."}
        400 missing appId/eventName or malformed JSON
        404 unknown appId
        503 datastore unavailable (with Retry-After)
        500 event could not be stored

    Meta CAPI forwarding runs after the response is sent.
    """
    return await _handle_post(request, pipeline, settings, background_tasks, transport="track")


@router.get("/track")
@router.get("/api/track")
async def track_pixel(
    request: Request,
    background_tasks: BackgroundTasks,
    d: Optional[str] = None,
    e: Optional[str] = None,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
):
    """Image-pixel fallback.

    WHAT: Event JSON arrives base64-encoded in `d`; `e` may carry the event
          name when the payload omits it
    WHY: Works where fetch/sendBeacon are blocked. The response is always the
         GIF so tracking failures never show on the page.
    """
    client = ClientContext.from_request(request)

    try:
        if not d:
            raise InvalidPayloadError("Invalid payload", detail="missing d parameter")
        payload = decode_pixel_param(d)
        if e and isinstance(payload, dict) and not payload.get("eventName"):
            payload["eventName"] = e
        await pipeline.ingest(payload, client, background_tasks=background_tasks)
    except IngestionError as err:
        logger.warning(f"[TRACK] pixel GET dropped ({err.status_code}): {err.message}", extra={"detail": err.detail})
    except Exception as err:
        logger.exception(f"[TRACK] pixel GET unexpected error: {err}")
        capture_exception(err, extra={"transport": "pixel"})

    return Response(
        content=TRANSPARENT_GIF,
        media_type="image/gif",
        headers={
            "Cache-Control": "no-store, no-cache, must-revalidate",
            "Access-Control-Allow-Origin": "*",
        },
    )


@router.post("/apps/proxy/track")
async def track_event_via_app_proxy(
    request: Request,
    background_tasks: BackgroundTasks,
    shop: Optional[str] = None,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    settings: Settings = Depends(get_settings),
):
    """Same as POST /track, reached through the Shopify app proxy.

    The proxy path lets the snippet post same-origin from the storefront
    (`/apps/<subpath>/track`); Shopify appends `shop` to the query string.
    """
    logger.debug(f"[TRACK] App proxy request from shop {shop}")
    return await _handle_post(request, pipeline, settings, background_tasks, transport="app_proxy")
