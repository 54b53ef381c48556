"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .services.geo_service import DEFAULT_GEO_LOOKUP_URL, GeoResolver
from .services.ingestion_pipeline import IngestionPipeline
from .services.meta_capi_service import DEFAULT_GRAPH_API_VERSION, MetaCAPIService
from .services.tenant_config import TenantConfigGateway


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"

    # Shopify webhook signing secret (the app's API secret key)
    SHOPIFY_API_SECRET: Optional[str] = None

    # Meta Conversions API
    META_GRAPH_API_VERSION: str = DEFAULT_GRAPH_API_VERSION
    META_CAPI_TIMEOUT_SECONDS: float = 30.0

    # Geo lookup
    GEO_LOOKUP_URL: str = DEFAULT_GEO_LOOKUP_URL
    GEO_LOOKUP_TIMEOUT_SECONDS: float = 3.0

    # Datastore probe before tenant lookup; a stall becomes a fast 503
    DB_PROBE_TIMEOUT_SECONDS: float = 3.0
    RETRY_AFTER_SECONDS: int = 5

    # Device classification thresholds (CSS pixels)
    MOBILE_MAX_SCREEN_WIDTH: int = 768
    TABLET_MAX_SCREEN_WIDTH: int = 1024

    SENTRY_DSN: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() in ("development", "dev", "local")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_geo_resolver(settings: Settings = Depends(get_settings)) -> GeoResolver:
    return GeoResolver(
        base_url=settings.GEO_LOOKUP_URL,
        timeout_seconds=settings.GEO_LOOKUP_TIMEOUT_SECONDS,
    )


def get_forwarder(settings: Settings = Depends(get_settings)) -> MetaCAPIService:
    return MetaCAPIService(
        graph_api_version=settings.META_GRAPH_API_VERSION,
        timeout_seconds=settings.META_CAPI_TIMEOUT_SECONDS,
    )


def get_tenant_gateway(db: Session = Depends(get_db)) -> TenantConfigGateway:
    return TenantConfigGateway(db)


def get_ingestion_pipeline(
    db: Session = Depends(get_db),
    gateway: TenantConfigGateway = Depends(get_tenant_gateway),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
    forwarder: MetaCAPIService = Depends(get_forwarder),
    settings: Settings = Depends(get_settings),
) -> IngestionPipeline:
    """Request-scoped pipeline wired with this request's session."""
    return IngestionPipeline(
        db=db,
        gateway=gateway,
        geo_resolver=geo_resolver,
        forwarder=forwarder,
        probe_timeout_seconds=settings.DB_PROBE_TIMEOUT_SECONDS,
        retry_after_seconds=settings.RETRY_AFTER_SECONDS,
        mobile_max_width=settings.MOBILE_MAX_SCREEN_WIDTH,
        tablet_max_width=settings.TABLET_MAX_SCREEN_WIDTH,
    )
