"""Event ingestion pipeline.

WHAT:
    The single code path every tracked event goes through, whatever the
    transport (pixel POST, image-pixel GET, app proxy, Shopify webhook):

        validate -> resolve tenant -> enrich -> persist event
                 -> stitch session -> roll up daily stats -> forward to CAPI

WHY:
    Recording the event is the product; everything after the primary write
    is best effort. A Meta outage, a geo timeout or a session-table hiccup
    must never cost us the event itself.

FAILURE POLICY:
    - validate:        InvalidPayloadError (400), nothing written
    - resolve tenant:  TenantNotFoundError (404) / DatastoreUnavailableError (503)
    - enrich:          degrades to null fields, never raises
    - persist event:   EventPersistenceError (500), the only stage that fails the request
    - stitch/rollup:   rolled back, logged, request still succeeds
    - forward:         logged and swallowed (see MetaCAPIService.forward)

CONCURRENCY:
    Sessions and daily stats are only ever mutated through INSERT ... ON
    CONFLICT / UPDATE col = col + n statements, never read-then-write, so
    simultaneous requests for the same app/day/session cannot lose counts.

NOTES:
    No deduplication: a retried beacon or redelivered webhook is a new
    event and increments aggregates again.

REFERENCES:
    - pixelrelay/routers/track.py, pixelrelay/routers/shopify_webhooks.py (transports)
    - pixelrelay/services/tenant_config.py (tenant data)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pixelrelay.models import AnalyticsSession, App, DailyStats, TrackedEvent
from pixelrelay.schemas import TrackPayload
from pixelrelay.services.device_parser import (
    DEFAULT_MOBILE_MAX_WIDTH,
    DEFAULT_TABLET_MAX_WIDTH,
    DeviceInfo,
    parse_user_agent,
)
from pixelrelay.services.event_taxonomy import (
    EventTaxonomyMapper,
    ResolvedEvent,
    is_pageview,
    is_purchase,
)
from pixelrelay.services.geo_service import GeoLocation
from pixelrelay.services.meta_capi_service import (
    CAPICredentials,
    ConversionEvent,
    sanitize_custom_data,
)
from pixelrelay.services.tenant_config import TenantForwardingConfig
from pixelrelay.telemetry import capture_exception

logger = logging.getLogger(__name__)

UNKNOWN_IP = "0.0.0.0"

FORWARD_SENT = "sent"
FORWARD_SCHEDULED = "scheduled"
FORWARD_SKIPPED = "skipped"
FORWARD_FAILED = "failed"

# Never forwarded as custom_data: hashed into user_data or internal only
_PII_KEYS = ("email", "customer_email", "phone")
_INTERNAL_KEYS = ("test_event",)


# =============================================================================
# ERRORS
# =============================================================================

class IngestionError(Exception):
    """Base class for pipeline errors that map to an HTTP status."""
    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class InvalidPayloadError(IngestionError):
    """Body missing, unparseable, or lacking appId / eventName."""
    status_code = 400


class TenantNotFoundError(IngestionError):
    """No app with the given public id."""
    status_code = 404


class DatastoreUnavailableError(IngestionError):
    """Datastore probe failed or timed out; the client should retry later."""
    status_code = 503

    def __init__(self, message: str, detail: Optional[str] = None, retry_after: int = 5):
        super().__init__(message, detail)
        self.retry_after = retry_after


class EventPersistenceError(IngestionError):
    """The primary TrackedEvent write failed."""
    status_code = 500


# =============================================================================
# DATA CARRIERS
# =============================================================================

@dataclass
class ClientContext:
    """Who sent the event: client IP and User-Agent."""
    ip: str = UNKNOWN_IP
    user_agent: str = ""

    @classmethod
    def from_request(cls, request) -> "ClientContext":
        """Extract client IP (X-Forwarded-For > X-Real-IP > peer) and UA."""
        headers = request.headers
        ip = None

        forwarded_for = headers.get("x-forwarded-for")
        if forwarded_for:
            ip = forwarded_for.split(",")[0].strip() or None
        if not ip:
            ip = (headers.get("x-real-ip") or "").strip() or None
        if not ip and request.client:
            ip = request.client.host

        return cls(ip=ip or UNKNOWN_IP, user_agent=headers.get("user-agent") or "")


@dataclass
class InboundEvent:
    """Transport-independent event, before enrichment.

    `forward_data`, when set, is the complete request-side custom data for
    CAPI and replaces the properties/custom_data layers (webhooks use it so
    stored order details are not forwarded verbatim).
    """
    event_name: str
    url: Optional[str] = None
    referrer: Optional[str] = None
    session_id: Optional[str] = None
    visitor_id: Optional[str] = None
    fingerprint: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    language: Optional[str] = None
    page_title: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Optional[int] = None
    custom_data: Optional[Dict[str, Any]] = None
    properties: Optional[Dict[str, Any]] = None

    # Forwarding-only fields
    email: Optional[str] = None
    external_id: Optional[str] = None
    capi_event_id: Optional[str] = None
    forward_data: Optional[Dict[str, Any]] = None
    source: str = "pixel"

    @property
    def is_test_event(self) -> bool:
        return bool(self.custom_data) and self.custom_data.get("test_event") is True

    @property
    def stored_custom_data(self) -> Optional[Dict[str, Any]]:
        return self.custom_data if self.custom_data is not None else self.properties


@dataclass
class IngestionResult:
    event_id: UUID
    session_created: bool = False
    forwarding: str = FORWARD_SKIPPED
    skip_reasons: List[str] = field(default_factory=list)


# =============================================================================
# VALIDATION
# =============================================================================

def unwrap_payload(body: Any) -> Any:
    """Accept a direct JSON body or a GraphQL envelope {query, variables: {input}}."""
    if isinstance(body, dict) and "query" in body and isinstance(body.get("variables"), dict):
        return body["variables"].get("input")
    return body


def parse_track_payload(body: Any) -> TrackPayload:
    """Validate a decoded request body.

    Raises:
        InvalidPayloadError: Not an object, or appId / eventName missing
    """
    data = unwrap_payload(body)
    if not isinstance(data, dict):
        raise InvalidPayloadError("Invalid payload")

    try:
        return TrackPayload.model_validate(data)
    except ValidationError as e:
        missing = [
            ".".join(str(part) for part in err["loc"])
            for err in e.errors()
        ]
        raise InvalidPayloadError("Missing required fields", detail=", ".join(missing)) from e


def inbound_event_from_payload(payload: TrackPayload) -> InboundEvent:
    return InboundEvent(
        event_name=payload.event_name,
        url=payload.url,
        referrer=payload.referrer,
        session_id=payload.session_id,
        visitor_id=payload.visitor_id,
        fingerprint=payload.fingerprint,
        screen_width=payload.screen_width,
        screen_height=payload.screen_height,
        language=payload.language,
        page_title=payload.page_title,
        utm_source=payload.utm_source,
        utm_medium=payload.utm_medium,
        utm_campaign=payload.utm_campaign,
        utm_term=payload.utm_term,
        utm_content=payload.utm_content,
        value=payload.value,
        currency=payload.currency,
        product_id=payload.product_id,
        product_name=payload.product_name,
        quantity=payload.quantity,
        custom_data=payload.custom_data,
        properties=payload.properties,
        capi_event_id=payload.event_id,
    )


def forwarding_skip_reasons(
    config: TenantForwardingConfig,
    event: InboundEvent,
    now: Optional[datetime] = None,
) -> List[str]:
    """Why an event would not be forwarded. Empty list means forward."""
    reasons = []
    if not config.forwarding_enabled:
        reasons.append("Meta Pixel not enabled")
    if not config.verified:
        reasons.append("Meta Pixel not verified")
    if not config.pixel_id:
        reasons.append("No Meta Pixel ID")
    if not config.access_token:
        reasons.append("No Meta Access Token")
    elif config.token_expired(now):
        reasons.append("Meta Access Token expired")
    if event.is_test_event and not config.test_event_code:
        reasons.append("Test event without test event code")
    return reasons


# =============================================================================
# PIPELINE
# =============================================================================

class IngestionPipeline:
    """Request-scoped ingestion orchestrator.

    Collaborators are injected so tests can substitute fakes:

    Args:
        db: Session for this request
        gateway: TenantConfigGateway (or fake)
        geo_resolver: object with `async resolve(ip) -> GeoLocation | None`
        forwarder: object with `async forward(credentials, event, app_id=...)`
        probe_timeout_seconds: Bound on the datastore probe
        retry_after_seconds: Retry-After hint returned with 503
    """

    def __init__(
        self,
        db: Session,
        gateway,
        geo_resolver,
        forwarder,
        probe_timeout_seconds: float = 3.0,
        retry_after_seconds: int = 5,
        mobile_max_width: int = DEFAULT_MOBILE_MAX_WIDTH,
        tablet_max_width: int = DEFAULT_TABLET_MAX_WIDTH,
    ):
        self.db = db
        self.gateway = gateway
        self.geo_resolver = geo_resolver
        self.forwarder = forwarder
        self.probe_timeout_seconds = probe_timeout_seconds
        self.retry_after_seconds = retry_after_seconds
        self.mobile_max_width = mobile_max_width
        self.tablet_max_width = tablet_max_width
        self.mapper = EventTaxonomyMapper(gateway)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def ingest(
        self,
        body: Any,
        client: ClientContext,
        background_tasks=None,
    ) -> IngestionResult:
        """Full pipeline for pixel / beacon / app-proxy transports."""
        payload = parse_track_payload(body)
        app = await self.resolve_tenant(payload.app_id)
        return await self.process(app, inbound_event_from_payload(payload), client, background_tasks=background_tasks)

    async def check_datastore(self) -> None:
        """Bounded connectivity probe.

        Raises:
            DatastoreUnavailableError: Probe failed or exceeded its timeout
        """
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.gateway.probe),
                timeout=self.probe_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"[PIPELINE] Datastore probe timed out after {self.probe_timeout_seconds}s")
            raise DatastoreUnavailableError(
                "Database temporarily unavailable",
                detail="probe timeout",
                retry_after=self.retry_after_seconds,
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"[PIPELINE] Datastore probe failed: {e}")
            raise DatastoreUnavailableError(
                "Database temporarily unavailable",
                detail=str(e),
                retry_after=self.retry_after_seconds,
            ) from e

    async def resolve_tenant(self, public_id: str) -> App:
        """Probe the datastore, then look up the app by its public id.

        Raises:
            DatastoreUnavailableError: Datastore unreachable (503)
            TenantNotFoundError: Unknown app id (404)
        """
        await self.check_datastore()

        try:
            app = self.gateway.get_tenant_by_public_id(public_id)
        except SQLAlchemyError as e:
            logger.error(f"[PIPELINE] App lookup failed for {public_id}: {e}")
            raise DatastoreUnavailableError(
                "Database temporarily unavailable",
                detail=str(e),
                retry_after=self.retry_after_seconds,
            ) from e

        if not app:
            logger.warning(f"[PIPELINE] Unknown app_id: {public_id}")
            raise TenantNotFoundError("App not found")

        return app

    async def process(
        self,
        app: App,
        event: InboundEvent,
        client: ClientContext,
        background_tasks=None,
        resolve_location: bool = True,
    ) -> IngestionResult:
        """Run enrich -> persist -> stitch -> rollup -> forward for a resolved app.

        Args:
            app: Tenant, already resolved
            event: Normalised inbound event
            client: Client IP / UA
            background_tasks: When given, the CAPI request runs after the response
            resolve_location: False skips geo lookup entirely (webhooks)
        """
        config = self.gateway.get_forwarding_config(app.id) or TenantForwardingConfig()

        # 3. Enrich
        device = parse_user_agent(
            client.user_agent,
            event.screen_width,
            mobile_max_width=self.mobile_max_width,
            tablet_max_width=self.tablet_max_width,
        )
        geo = None
        if resolve_location and config.record_location:
            geo = await self._resolve_geo(client.ip)
        stored_ip = client.ip if config.record_ip else None

        # 4. Persist (must succeed)
        event_pk = self.persist_event(app, event, client, device, geo, stored_ip)

        # 5. Stitch session (best effort)
        session_created = False
        if event.session_id and config.record_session:
            session_created = self.stitch_session(app, event, client, device, geo, stored_ip)

        # 6. Roll up daily stats (best effort)
        self.roll_up_daily_stats(app, event, session_created)

        # 7. Forward (best effort)
        result = IngestionResult(event_id=event_pk, session_created=session_created)
        result.skip_reasons = forwarding_skip_reasons(config, event)
        if result.skip_reasons:
            logger.info(
                f"[PIPELINE] SKIPPED: Meta CAPI not sent for event '{event.event_name}' - "
                f"Reasons: {', '.join(result.skip_reasons)}",
                extra={"app_id": app.app_id, "event_name": event.event_name},
            )
            result.forwarding = FORWARD_SKIPPED
        else:
            result.forwarding = await self.forward(app, config, event, client, event_pk, background_tasks)

        logger.info(
            f"[PIPELINE] Processed event '{event.event_name}' for app {app.app_id}",
            extra={
                "event_id": str(event_pk),
                "app_id": app.app_id,
                "source": event.source,
                "session_created": session_created,
                "forwarding": result.forwarding,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _resolve_geo(self, ip: str) -> Optional[GeoLocation]:
        try:
            return await self.geo_resolver.resolve(ip)
        except Exception as e:
            # Resolver contract is "never raises"; a broken fake/provider still must not
            logger.warning(f"[PIPELINE] Geo resolution failed for {ip}: {e}")
            return None

    def persist_event(
        self,
        app: App,
        event: InboundEvent,
        client: ClientContext,
        device: DeviceInfo,
        geo: Optional[GeoLocation],
        stored_ip: Optional[str],
    ) -> UUID:
        """Insert the TrackedEvent row and commit.

        Raises:
            EventPersistenceError: The insert or commit failed
        """
        row = TrackedEvent(
            app_id=app.id,
            event_name=event.event_name,
            url=event.url,
            referrer=event.referrer,
            page_title=event.page_title,
            session_id=event.session_id,
            fingerprint=event.fingerprint or event.visitor_id,
            ip_address=stored_ip,
            user_agent=client.user_agent or None,
            browser=device.browser,
            browser_version=device.browser_version,
            os=device.os,
            os_version=device.os_version,
            device_type=device.device_type,
            screen_width=event.screen_width,
            screen_height=event.screen_height,
            language=event.language,
            utm_source=event.utm_source,
            utm_medium=event.utm_medium,
            utm_campaign=event.utm_campaign,
            utm_term=event.utm_term,
            utm_content=event.utm_content,
            value=event.value,
            currency=event.currency,
            product_id=event.product_id,
            product_name=event.product_name,
            quantity=event.quantity,
            city=geo.city if geo else None,
            region=geo.region if geo else None,
            country=geo.country if geo else None,
            country_code=geo.country_code if geo else None,
            timezone=geo.timezone if geo else None,
            custom_data=event.stored_custom_data,
        )

        try:
            self.db.add(row)
            self.db.flush()
            event_pk = row.id
            self.db.commit()
        except Exception as e:
            # Driver errors on bind (e.g. OverflowError) are not SQLAlchemyError
            self.db.rollback()
            logger.exception(f"[PIPELINE] Failed to store event '{event.event_name}' for app {app.app_id}")
            raise EventPersistenceError("Failed to record event", detail=str(e)) from e

        logger.debug(f"[PIPELINE] Stored event {event_pk} for app {app.app_id}")
        return event_pk

    def stitch_session(
        self,
        app: App,
        event: InboundEvent,
        client: ClientContext,
        device: DeviceInfo,
        geo: Optional[GeoLocation],
        stored_ip: Optional[str],
    ) -> bool:
        """Create the session or touch it; returns True when it was created.

        Insert-if-absent first, then an atomic increment update, so two
        requests racing on a new session id yield one row and both counts.
        """
        now = datetime.utcnow()
        pageview_increment = 1 if is_pageview(event.event_name) else 0

        try:
            insert_stmt = self._insert(AnalyticsSession).values(
                app_id=app.id,
                session_id=event.session_id,
                fingerprint=event.fingerprint or event.visitor_id or "unknown",
                ip_address=stored_ip,
                user_agent=client.user_agent or None,
                browser=device.browser,
                os=device.os,
                device_type=device.device_type,
                country=geo.country if geo else None,
                pageviews=pageview_increment,
                first_seen=now,
                last_seen=now,
            ).on_conflict_do_nothing(index_elements=["app_id", "session_id"])

            created = self.db.execute(insert_stmt).rowcount == 1

            if not created:
                values = {"last_seen": now}
                if pageview_increment:
                    values["pageviews"] = AnalyticsSession.pageviews + pageview_increment
                self.db.execute(
                    update(AnalyticsSession)
                    .where(
                        AnalyticsSession.app_id == app.id,
                        AnalyticsSession.session_id == event.session_id,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PIPELINE] Session processing error for session {event.session_id}: {e}")
            capture_exception(e, extra={"app_id": app.app_id, "session_id": event.session_id})
            return False

        if created:
            logger.debug(f"[PIPELINE] Created session {event.session_id} for app {app.app_id}")
        return created

    def roll_up_daily_stats(self, app: App, event: InboundEvent, session_created: bool) -> None:
        """Increment today's DailyStats row with one atomic upsert."""
        now = datetime.utcnow()
        pageviews = 1 if is_pageview(event.event_name) else 0
        new_sessions = 1 if session_created else 0
        purchases = 1 if is_purchase(event.event_name) else 0
        revenue = _to_decimal(event.value) if purchases else Decimal("0")

        try:
            stmt = self._insert(DailyStats).values(
                app_id=app.id,
                date=now.date(),
                pageviews=pageviews,
                sessions=new_sessions,
                unique_users=new_sessions,
                purchases=purchases,
                revenue=revenue,
                updated_at=now,
            )
            table = DailyStats.__table__
            stmt = stmt.on_conflict_do_update(
                index_elements=["app_id", "date"],
                set_={
                    "pageviews": table.c.pageviews + stmt.excluded.pageviews,
                    "sessions": table.c.sessions + stmt.excluded.sessions,
                    "unique_users": table.c.unique_users + stmt.excluded.unique_users,
                    "purchases": table.c.purchases + stmt.excluded.purchases,
                    "revenue": table.c.revenue + stmt.excluded.revenue,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PIPELINE] Daily stats rollup failed for app {app.app_id}: {e}")
            capture_exception(e, extra={"app_id": app.app_id})

    async def forward(
        self,
        app: App,
        config: TenantForwardingConfig,
        event: InboundEvent,
        client: ClientContext,
        event_pk: UUID,
        background_tasks=None,
    ) -> str:
        """Resolve the standard event name and hand the event to the forwarder.

        Taxonomy resolution reads the DB, so it always happens here, inside the
        request; only the outbound HTTP call may be deferred.
        """
        try:
            resolved = self.mapper.resolve(app.id, event.event_name)
        except SQLAlchemyError as e:
            logger.error(f"[PIPELINE] Custom event lookup failed for '{event.event_name}': {e}")
            return FORWARD_FAILED

        conversion = build_conversion_event(resolved, event, client, event_pk)
        credentials = CAPICredentials(
            pixel_id=config.pixel_id,
            access_token=config.access_token,
            test_event_code=config.test_event_code,
        )

        logger.info(
            f"[PIPELINE] Forwarding '{event.event_name}' as '{resolved.standard_name}'",
            extra={
                "app_id": app.app_id,
                "mapping_used": resolved.mapping_used,
                "custom_data_keys": sorted(conversion.custom_data.keys()),
            },
        )

        if background_tasks is not None:
            background_tasks.add_task(self._forward_safely, credentials, conversion, app.app_id)
            return FORWARD_SCHEDULED

        return await self._forward_safely(credentials, conversion, app.app_id)

    async def _forward_safely(
        self,
        credentials: CAPICredentials,
        conversion: ConversionEvent,
        app_id: str,
    ) -> str:
        try:
            await self.forwarder.forward(credentials, conversion, app_id=app_id)
        except Exception as e:
            logger.error(
                f"[PIPELINE] FAILED: Meta CAPI forwarding error for app {app_id} "
                f"event '{conversion.event_name}': {e}",
                extra={"app_id": app_id, "event_name": conversion.event_name, "reason": str(e)},
            )
            capture_exception(e, extra={"app_id": app_id, "event_name": conversion.event_name})
            return FORWARD_FAILED
        return FORWARD_SENT

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _insert(self, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite.insert(model)
        return postgresql.insert(model)


def _to_decimal(value: Optional[float]) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def build_conversion_event(
    resolved: ResolvedEvent,
    event: InboundEvent,
    client: ClientContext,
    event_pk: UUID,
) -> ConversionEvent:
    """Layer custom data and pull PII out into hashed user data.

    Layers, later wins: custom event template, request properties,
    e-commerce fields, request customData. Webhooks supply `forward_data`
    instead of the two request layers.
    """
    data: Dict[str, Any] = dict(resolved.template_data)

    if event.forward_data is not None:
        data.update(event.forward_data)
        request_custom: Dict[str, Any] = {}
    else:
        data.update(event.properties or {})
        if event.value is not None:
            data["value"] = event.value
        if event.currency:
            data["currency"] = event.currency
        if event.product_id:
            data["content_ids"] = [event.product_id]
            data.setdefault("content_type", "product")
        if event.product_name:
            data["content_name"] = event.product_name
        if event.quantity is not None:
            data["num_items"] = event.quantity
        request_custom = dict(event.custom_data or {})
        data.update(request_custom)

    email = event.email or _first_str(data, "email", "customer_email")
    phone = _first_str(data, "phone")
    for key in _PII_KEYS + _INTERNAL_KEYS:
        data.pop(key, None)

    return ConversionEvent(
        event_name=resolved.standard_name,
        event_source_url=event.url,
        event_id=event.capi_event_id or str(event_pk),
        client_ip=client.ip if client.ip and client.ip != UNKNOWN_IP else None,
        client_user_agent=client.user_agent or None,
        email=email,
        phone=phone,
        external_id=event.external_id or event.fingerprint or event.visitor_id,
        custom_data=sanitize_custom_data(data),
    )


def _first_str(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
