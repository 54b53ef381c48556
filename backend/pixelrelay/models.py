"""SQLAlchemy ORM models.

This module defines the tracking schema using UUID primary keys and explicit
relationships. An `App` is the tenant: one store's tracking integration,
addressed publicly by its `app_id`. Everything else hangs off an App.

Tables written by the ingestion pipeline:
    - tracked_events:      append-only raw event log
    - analytics_sessions:  one row per (app, session_id), upserted
    - daily_stats:         one row per (app, day), upserted with increments

Tables read by the pipeline (managed by the dashboard CRUD surface):
    - shops, apps, app_settings, custom_events
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


# =============================================================================
# TENANT CONFIGURATION (read-only for the pipeline)
# =============================================================================

class Shop(Base):
    """A Shopify store that installed the app.

    WHAT: Maps the `X-Shopify-Shop-Domain` webhook header to its apps
    WHY: Order/checkout webhooks identify the store, not the pixel
    """
    __tablename__ = "shops"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_domain = Column(String, nullable=False, unique=True)  # e.g. mystore.myshopify.com
    created_at = Column(DateTime, default=datetime.utcnow)

    apps = relationship("App", back_populates="shop", order_by="App.created_at")

    def __str__(self):
        return self.shop_domain


class App(Base):
    """App represents one tracking pixel (the tenant).

    The public `app_id` is what the browser snippet sends; the UUID `id`
    is what every other table references.
    """
    __tablename__ = "apps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    app_id = Column(String, nullable=False, unique=True)  # Public identifier, e.g. "pixel_1"
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=True)
    shop = relationship("Shop", back_populates="apps")

    settings = relationship("AppSettings", back_populates="app", uselist=False, cascade="all, delete-orphan")
    custom_events = relationship("CustomEvent", back_populates="app", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name} ({self.app_id})"


class AppSettings(Base):
    """Per-app privacy flags and Meta forwarding configuration.

    WHAT: Privacy switches (IP / location / session recording) and the
          Conversions API credentials for this pixel
    WHY: The pipeline branches on these on every event
    """
    __tablename__ = "app_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    app_id = Column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=False, unique=True)
    app = relationship("App", back_populates="settings")

    # Privacy
    record_ip = Column(Boolean, nullable=False, default=True)
    record_location = Column(Boolean, nullable=False, default=True)
    record_session = Column(Boolean, nullable=False, default=True)

    # Meta Conversions API
    meta_pixel_id = Column(String, nullable=True)
    meta_access_token_enc = Column(Text, nullable=True)  # Fernet ciphertext, see pixelrelay.security
    meta_pixel_enabled = Column(Boolean, nullable=False, default=False)
    meta_verified = Column(Boolean, nullable=False, default=False)
    meta_test_event_code = Column(String, nullable=True)
    meta_token_expires_at = Column(DateTime, nullable=True)


class CustomEvent(Base):
    """Merchant-defined event with an optional Meta standard-event override.

    `event_data` holds a JSON object (as text) that is used as the base layer
    of the forwarded custom data.
    """
    __tablename__ = "custom_events"
    __table_args__ = (
        UniqueConstraint("app_id", "name", name="uq_custom_event_app_name"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    app_id = Column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=False)
    app = relationship("App", back_populates="custom_events")

    name = Column(String, nullable=False)  # Raw event name sent by the snippet
    display_name = Column(String, nullable=False)
    meta_event_name = Column(String, nullable=True)  # e.g. "Lead", "AddToCart"
    event_data = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.name} -> {self.meta_event_name or self.name}"


# =============================================================================
# PIPELINE OUTPUT
# =============================================================================

class TrackedEvent(Base):
    """Immutable raw event log (one row per ingested event).

    WHAT: Every event from the pixel, beacon, app proxy or Shopify webhooks
    WHY: Primary side effect of ingestion; aggregates can be rebuilt from it
    """
    __tablename__ = "tracked_events"
    __table_args__ = (
        Index("ix_tracked_events_app_created", "app_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    app_id = Column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=False)
    event_name = Column(String, nullable=False, index=True)

    # Page context
    url = Column(String, nullable=True)
    referrer = Column(String, nullable=True)
    page_title = Column(String, nullable=True)

    # Identity
    session_id = Column(String, nullable=True)
    fingerprint = Column(String, nullable=True)

    # Client (ip_address is null when the app disables IP recording)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    browser = Column(String, nullable=True)
    browser_version = Column(String, nullable=True)
    os = Column(String, nullable=True)
    os_version = Column(String, nullable=True)
    device_type = Column(String, nullable=True, index=True)
    screen_width = Column(Integer, nullable=True)
    screen_height = Column(Integer, nullable=True)
    language = Column(String, nullable=True)

    # UTM parameters
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)

    # E-commerce
    value = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    product_id = Column(String, nullable=True)
    product_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=True)

    # Geo (null when location recording is off or lookup failed)
    city = Column(String, nullable=True)
    region = Column(String, nullable=True)
    country = Column(String, nullable=True, index=True)
    country_code = Column(String, nullable=True)
    timezone = Column(String, nullable=True)

    custom_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.event_name} - {self.session_id} - {self.created_at}"


class AnalyticsSession(Base):
    """A stitched visit, keyed by the client-supplied session id.

    Never read-then-written: see ingestion_pipeline.stitch_session.
    """
    __tablename__ = "analytics_sessions"
    __table_args__ = (
        UniqueConstraint("app_id", "session_id", name="uq_analytics_session_app_session"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    app_id = Column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=False)
    session_id = Column(String, nullable=False)

    fingerprint = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    browser = Column(String, nullable=True)
    os = Column(String, nullable=True)
    device_type = Column(String, nullable=True)
    country = Column(String, nullable=True)

    pageviews = Column(Integer, nullable=False, default=0)
    first_seen = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __str__(self):
        return f"Session {self.session_id} - {self.pageviews} pageviews"


class DailyStats(Base):
    """Per-app, per-day rollup. Counters only ever increase."""
    __tablename__ = "daily_stats"
    __table_args__ = (
        UniqueConstraint("app_id", "date", name="uq_daily_stats_app_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    app_id = Column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=False)
    date = Column(Date, nullable=False)  # UTC calendar day

    pageviews = Column(Integer, nullable=False, default=0)
    sessions = Column(Integer, nullable=False, default=0)
    unique_users = Column(Integer, nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.date} - {self.pageviews} pageviews"
