"""
Telemetry Module
================

Error tracking for the ingestion service (Sentry).

Usage:
    from pixelrelay.telemetry import init_sentry, capture_exception

    init_sentry()  # once, in create_app()
"""

from pixelrelay.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
