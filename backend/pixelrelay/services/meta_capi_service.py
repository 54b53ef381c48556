"""Meta Conversions API (CAPI) forwarder.

WHAT:
    Sends one normalised server-side event per tracked event to Meta's
    Conversions API, using the app's own pixel id and access token.

WHY:
    - Server-side events survive ad blockers and iOS tracking limits
    - Order webhooks have no browser at all; CAPI is the only way to report them

HOW:
    POST https://graph.facebook.com/{version}/{pixel_id}/events
    Body: {"data": [event], "access_token": ..., "test_event_code"?: ...}

FAILURE POLICY:
    `forward()` never raises. Network errors, non-200 responses and
    API-reported errors are logged with app / event context and swallowed.
    No retries: at-most-once, best effort.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_API_VERSION = "v18.0"
ACTION_SOURCE_WEBSITE = "website"

# Keys Meta expects as numbers in custom_data
NUMERIC_CUSTOM_DATA_KEYS = ("value", "quantity", "num_items")


class MetaCAPIError(Exception):
    """Base exception for Meta CAPI errors."""
    pass


@dataclass(frozen=True)
class CAPICredentials:
    """Per-app credentials for one submission."""
    pixel_id: str
    access_token: str
    test_event_code: Optional[str] = None


@dataclass
class ConversionEvent:
    """A normalised event ready for submission.

    `email` and `phone` are raw here and hashed by `build_event`; they are
    never sent in plaintext.
    """
    event_name: str
    event_time: int = field(default_factory=lambda: int(time.time()))
    event_source_url: Optional[str] = None
    action_source: str = ACTION_SOURCE_WEBSITE
    event_id: Optional[str] = None
    client_ip: Optional[str] = None
    client_user_agent: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    external_id: Optional[str] = None
    custom_data: Dict[str, Any] = field(default_factory=dict)


def _is_template(value: str) -> bool:
    """Unrendered Liquid template, e.g. "{{ product.price }}"."""
    return "{{" in value and "}}" in value


def sanitize_custom_data(data: Any) -> Dict[str, Any]:
    """Clean request-supplied custom data before it is sent to Meta.

    WHAT:
        - drops None values and unrendered Liquid templates
        - coerces value/quantity/num_items strings to numbers (drops junk)
        - filters template strings out of lists, recurses into objects
    WHY:
        Theme snippets often ship "{{ product.price }}" literally when the
        Liquid context is missing; Meta rejects the whole event for it.
    """
    if not isinstance(data, dict):
        return {}

    sanitized: Dict[str, Any] = {}

    for key, value in data.items():
        if value is None:
            continue

        if key in NUMERIC_CUSTOM_DATA_KEYS:
            if isinstance(value, bool):
                continue
            if isinstance(value, (int, float)):
                sanitized[key] = value
            elif isinstance(value, str) and not _is_template(value):
                try:
                    sanitized[key] = float(value)
                except ValueError:
                    logger.debug(f"[META_CAPI] Dropping non-numeric {key}: {value!r}")
            continue

        if isinstance(value, str):
            if not _is_template(value):
                sanitized[key] = value
        elif isinstance(value, (bool, int, float)):
            sanitized[key] = value
        elif isinstance(value, list):
            items = [
                item for item in value
                if not (isinstance(item, str) and _is_template(item)) and item is not None
            ]
            if items:
                sanitized[key] = items
        elif isinstance(value, dict):
            nested = sanitize_custom_data(value)
            if nested:
                sanitized[key] = nested

    return sanitized


class MetaCAPIService:
    """Service for sending server-side events to Meta Conversions API.

    Usage:
        ```python
        service = MetaCAPIService(graph_api_version="v18.0")
        await service.forward(
            CAPICredentials(pixel_id="123456", access_token="token"),
            ConversionEvent(event_name="AddToCart", custom_data={"value": 10, "currency": "USD"}),
            app_id="pixel_1",
        )
        ```
    """

    def __init__(
        self,
        graph_api_version: str = DEFAULT_GRAPH_API_VERSION,
        timeout_seconds: float = 30.0,
    ):
        self.graph_base_url = f"https://graph.facebook.com/{graph_api_version}"
        self.timeout_seconds = timeout_seconds

    def events_url(self, pixel_id: str) -> str:
        return f"{self.graph_base_url}/{pixel_id}/events"

    async def forward(
        self,
        credentials: CAPICredentials,
        event: ConversionEvent,
        app_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Submit one event; log and swallow every failure.

        Args:
            credentials: Pixel id, access token and optional test event code
            event: Normalised event
            app_id: Public app id, for log context only

        Returns:
            Meta's response body on success, None on any failure
        """
        try:
            event_data = self.build_event(event)
            return await self.send_events(credentials, [event_data])
        except MetaCAPIError as e:
            logger.error(
                f"[META_CAPI] Forwarding failed for app {app_id} event '{event.event_name}': {e}",
                extra={
                    "app_id": app_id,
                    "event_name": event.event_name,
                    "pixel_id": credentials.pixel_id,
                    "reason": str(e),
                },
            )
        except Exception as e:
            # Anything else (bad payload types, JSON encoding) is still not the caller's problem
            logger.exception(
                f"[META_CAPI] Unexpected error forwarding app {app_id} event '{event.event_name}': {e}",
                extra={"app_id": app_id, "event_name": event.event_name},
            )
        return None

    def build_event(self, event: ConversionEvent) -> Dict[str, Any]:
        """Build a single event payload.

        WHAT: Constructs the event object with user data hashing
        WHY: Meta requires specific format with SHA256-hashed PII
        """
        user_data: Dict[str, Any] = {}

        if event.email:
            user_data["em"] = self._sha256_hash(event.email.lower().strip())

        if event.phone:
            normalized_phone = "".join(filter(str.isdigit, event.phone))
            if normalized_phone:
                user_data["ph"] = self._sha256_hash(normalized_phone)

        if event.client_ip:
            user_data["client_ip_address"] = event.client_ip

        if event.client_user_agent:
            user_data["client_user_agent"] = event.client_user_agent

        if event.external_id:
            user_data["external_id"] = event.external_id

        payload: Dict[str, Any] = {
            "event_name": event.event_name,
            "event_time": int(event.event_time),
            "action_source": event.action_source,
            "user_data": user_data,
        }

        if event.event_id:
            payload["event_id"] = event.event_id  # Deduplication with the browser pixel

        if event.event_source_url:
            payload["event_source_url"] = event.event_source_url

        if event.custom_data:
            payload["custom_data"] = event.custom_data

        return payload

    async def send_events(
        self,
        credentials: CAPICredentials,
        events: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """POST a batch to the Conversions API.

        Raises:
            MetaCAPIError: If the request fails or Meta reports an error
        """
        payload: Dict[str, Any] = {
            "data": events,
            "access_token": credentials.access_token,
        }

        if credentials.test_event_code:
            payload["test_event_code"] = credentials.test_event_code

        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {credentials.pixel_id}",
            extra={
                "event_names": [e["event_name"] for e in events],
                "test_mode": bool(credentials.test_event_code),
            }
        )

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.events_url(credentials.pixel_id),
                    json=payload,
                    timeout=self.timeout_seconds,
                )
        except httpx.HTTPError as e:
            raise MetaCAPIError(f"Network error sending to Meta CAPI: {e.__class__.__name__}: {e}") from e

        try:
            result = response.json() if response.text else {}
        except ValueError:
            result = {}

        if response.status_code != 200:
            error = result.get("error", {}) if isinstance(result, dict) else {}
            error_message = error.get("message") if isinstance(error, dict) else None
            raise MetaCAPIError(
                f"Meta CAPI error {response.status_code}: {error_message or response.text}"
            )

        if isinstance(result, dict) and result.get("error"):
            raise MetaCAPIError(f"Meta CAPI error: {result['error']}")

        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={
                "events_received": result.get("events_received", 0),
                "fbtrace_id": result.get("fbtrace_id", ""),
            }
        )

        return result

    @staticmethod
    def _sha256_hash(value: str) -> str:
        """Lowercase hex SHA256 of a UTF-8 string."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()
