"""Tenant configuration gateway (read-only).

WHAT:
    The ingestion pipeline's only view of tenant data: app lookup by public
    id or shop domain, the privacy/forwarding configuration, and active
    custom events.

WHY:
    Keeps the pipeline free of ORM queries so tests can hand it a fake,
    and keeps credential decryption in one place.

NOTES:
    Nothing here writes. Apps, settings and custom events are managed by the
    dashboard; the pipeline only consumes them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from pixelrelay.models import App, AppSettings, CustomEvent, Shop
from pixelrelay.security import decrypt_secret  # Validates TOKEN_ENCRYPTION_KEY at startup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantForwardingConfig:
    """Per-app settings the pipeline branches on.

    Defaults mirror a freshly created app: all recording on, forwarding off.
    """
    record_ip: bool = True
    record_location: bool = True
    record_session: bool = True
    forwarding_enabled: bool = False
    verified: bool = False
    pixel_id: Optional[str] = None
    access_token: Optional[str] = None
    test_event_code: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    def token_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.token_expires_at:
            return False
        return (now or datetime.utcnow()) > self.token_expires_at


class TenantConfigGateway:
    """SQLAlchemy-backed gateway over apps, app_settings and custom_events."""

    def __init__(self, db: Session):
        self.db = db
        # Resolved here, in the request's thread; probe() may run in a worker
        self.engine = db.get_bind()

    def probe(self) -> None:
        """Round-trip to the datastore. Raises on connectivity failure.

        Uses its own pooled connection, never the request Session; it runs
        in a worker thread that can outlive a timed-out request.
        """
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def get_tenant_by_public_id(self, public_id: str) -> Optional[App]:
        return self.db.query(App).filter(App.app_id == public_id).first()

    def get_tenant_by_shop_domain(self, shop_domain: Optional[str]) -> Optional[App]:
        """First app registered for a shop (webhooks identify the store only)."""
        if not shop_domain:
            return None
        shop = self.db.query(Shop).filter(Shop.shop_domain == shop_domain).first()
        if not shop:
            return None
        return (
            self.db.query(App)
            .filter(App.shop_id == shop.id)
            .order_by(App.created_at)
            .first()
        )

    def get_forwarding_config(self, app_pk: UUID) -> Optional[TenantForwardingConfig]:
        """Build the forwarding config for an app.

        Returns None when the app has no settings row; callers fall back to
        `TenantForwardingConfig()` defaults.
        """
        settings = self.db.query(AppSettings).filter(AppSettings.app_id == app_pk).first()
        if not settings:
            return None

        access_token = None
        if settings.meta_access_token_enc:
            try:
                access_token = decrypt_secret(
                    settings.meta_access_token_enc,
                    context=f"meta_pixel:{settings.meta_pixel_id}",
                )
            except ValueError:
                logger.error(
                    f"[TENANT_CONFIG] Stored Meta access token for app {app_pk} cannot be decrypted"
                )

        return TenantForwardingConfig(
            record_ip=bool(settings.record_ip),
            record_location=bool(settings.record_location),
            record_session=bool(settings.record_session),
            forwarding_enabled=bool(settings.meta_pixel_enabled),
            verified=bool(settings.meta_verified),
            pixel_id=settings.meta_pixel_id or None,
            access_token=access_token,
            test_event_code=settings.meta_test_event_code or None,
            token_expires_at=settings.meta_token_expires_at,
        )

    def find_active_custom_event(self, app_pk: UUID, name: str) -> Optional[CustomEvent]:
        """Exact, case-sensitive match on an active custom event."""
        return (
            self.db.query(CustomEvent)
            .filter(
                CustomEvent.app_id == app_pk,
                CustomEvent.name == name,
                CustomEvent.is_active.is_(True),
            )
            .first()
        )
