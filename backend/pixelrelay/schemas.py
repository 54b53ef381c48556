"""Pydantic schemas for request/response payloads."""

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


class TrackPayload(BaseModel):
    """Event body sent by the storefront snippet.

    WHAT: The pixel's camelCase JSON, tolerant of sloppy types
    WHY: Theme snippets send whatever the Liquid context produced; a bad
         `value` or `screenWidth` must not cost us the event, so numeric
         junk becomes null instead of a 400. Only appId/eventName are required.

    Example:
        {
            "appId": "pixel_1",
            "eventName": "addToCart",
            "url": "https://mystore.com/products/shirt",
            "sessionId": "s_1",
            "fingerprint": "fp_abc",
            "screenWidth": 390,
            "value": "29.99",
            "currency": "USD",
            "productId": 8812,
            "customData": {"color": "blue"}
        }
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    app_id: str = Field(..., alias="appId", min_length=1)
    event_name: str = Field(..., alias="eventName", min_length=1)

    url: Optional[str] = None
    referrer: Optional[str] = None
    page_title: Optional[str] = Field(None, alias="pageTitle")
    session_id: Optional[str] = Field(None, alias="sessionId")
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    fingerprint: Optional[str] = None
    event_id: Optional[str] = Field(None, alias="eventId", description="Client id for browser/server dedup")

    screen_width: Optional[int] = Field(None, alias="screenWidth")
    screen_height: Optional[int] = Field(None, alias="screenHeight")
    language: Optional[str] = None

    utm_source: Optional[str] = Field(None, alias="utmSource")
    utm_medium: Optional[str] = Field(None, alias="utmMedium")
    utm_campaign: Optional[str] = Field(None, alias="utmCampaign")
    utm_term: Optional[str] = Field(None, alias="utmTerm")
    utm_content: Optional[str] = Field(None, alias="utmContent")

    value: Optional[float] = None
    currency: Optional[str] = None
    product_id: Optional[str] = Field(None, alias="productId")
    product_name: Optional[str] = Field(None, alias="productName")
    quantity: Optional[int] = None

    custom_data: Optional[Dict[str, Any]] = Field(None, alias="customData")
    properties: Optional[Dict[str, Any]] = None

    @field_validator("app_id", "event_name", mode="before")
    @classmethod
    def _strip_required(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator(
        "url", "referrer", "page_title", "session_id", "visitor_id", "fingerprint",
        "event_id", "language", "utm_source", "utm_medium", "utm_campaign",
        "utm_term", "utm_content", "currency", "product_id", "product_name",
        mode="before",
    )
    @classmethod
    def _coerce_optional_str(cls, v):
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, (int, float)):
            return str(v)
        if isinstance(v, str):
            return v or None
        return None

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_float(cls, v):
        return _to_number(v, float)

    @field_validator("screen_width", "screen_height", "quantity", mode="before")
    @classmethod
    def _coerce_int(cls, v):
        number = _to_number(v, float)
        if number is None:
            return None
        number = int(number)
        # Integer columns are 32-bit; anything wider is junk, not a count
        return number if INT32_MIN <= number <= INT32_MAX else None

    @field_validator("custom_data", "properties", mode="before")
    @classmethod
    def _coerce_object(cls, v):
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return None
        return v if isinstance(v, dict) else None


def _to_number(v, cast):
    """Numbers and numeric strings pass; anything else (incl. "{{ price }}") is None."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        number = cast(v)
    elif isinstance(v, str):
        try:
            number = cast(v.strip())
        except ValueError:
            return None
    else:
        return None
    # NaN / inf are not storable amounts
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


class TrackResponse(BaseModel):
    """Response for /track.

    WHAT: Success flag plus the stored event id, or an error message
    WHY: The snippet only checks `success`; `eventId` helps merchants debug
    """
    success: bool
    event_id: Optional[str] = Field(None, serialization_alias="eventId")
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    database: str
