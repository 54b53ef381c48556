"""Unit tests for the ingestion pipeline building blocks.

WHAT: Payload validation, client IP extraction, the forwarding gate,
      conversion-event layering and primary-write failure handling
WHY: These decide what is stored and what reaches Meta; they are tested
     here without HTTP so each rule is pinned down on its own
"""

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError

from pixelrelay.models import TrackedEvent
from pixelrelay.services.event_taxonomy import MAPPING_CUSTOM, ResolvedEvent
from pixelrelay.services.ingestion_pipeline import (
    ClientContext,
    FORWARD_SCHEDULED,
    EventPersistenceError,
    InboundEvent,
    IngestionPipeline,
    InvalidPayloadError,
    build_conversion_event,
    forwarding_skip_reasons,
    inbound_event_from_payload,
    parse_track_payload,
)
from pixelrelay.services.tenant_config import TenantConfigGateway, TenantForwardingConfig
from conftest import FakeForwarder, FakeGeoResolver

LIVE_CONFIG = TenantForwardingConfig(
    forwarding_enabled=True,
    verified=True,
    pixel_id="123",
    access_token="token",
)


def _request(headers=None, host="10.1.1.1"):
    return SimpleNamespace(
        headers={k.lower(): v for k, v in (headers or {}).items()},
        client=SimpleNamespace(host=host) if host else None,
    )


class TestParseTrackPayload:
    def test_camel_case_fields(self):
        payload = parse_track_payload({
            "appId": "pixel_1",
            "eventName": "addToCart",
            "sessionId": 42,
            "screenWidth": "1280.0",
            "value": "19.5",
            "customData": '{"color": "red"}',
        })

        assert payload.app_id == "pixel_1"
        assert payload.session_id == "42"
        assert payload.screen_width == 1280
        assert payload.value == 19.5
        assert payload.custom_data == {"color": "red"}

    def test_bad_numbers_become_none(self):
        payload = parse_track_payload({
            "appId": "pixel_1",
            "eventName": "purchase",
            "value": "{{ checkout.total_price }}",
            "quantity": "lots",
            "screenWidth": True,
            "customData": "not json",
        })

        assert payload.value is None
        assert payload.quantity is None
        assert payload.screen_width is None
        assert payload.custom_data is None

    def test_integers_outside_32_bit_become_none(self):
        payload = parse_track_payload({
            "appId": "pixel_1",
            "eventName": "addToCart",
            "quantity": 1e20,
            "screenWidth": "99999999999999999999",
            "screenHeight": 2 ** 31 - 1,
        })

        assert payload.quantity is None
        assert payload.screen_width is None
        assert payload.screen_height == 2 ** 31 - 1

    @pytest.mark.parametrize(
        "body",
        [
            {"eventName": "pageview"},
            {"appId": "pixel_1"},
            {"appId": "", "eventName": "pageview"},
            {"appId": "pixel_1", "eventName": None},
            "pageview",
            None,
            {"query": "mutation", "variables": {"input": "nope"}},
        ],
    )
    def test_invalid_payloads(self, body):
        with pytest.raises(InvalidPayloadError) as exc:
            parse_track_payload(body)
        assert exc.value.status_code == 400

    def test_graphql_envelope(self):
        payload = parse_track_payload({
            "query": "mutation { track }",
            "variables": {"input": {"appId": "pixel_1", "eventName": "pageview"}},
        })
        assert payload.event_name == "pageview"

    def test_inbound_event_carries_client_event_id(self):
        payload = parse_track_payload({"appId": "a", "eventName": "Purchase", "eventId": "evt_1"})
        assert inbound_event_from_payload(payload).capi_event_id == "evt_1"


class TestClientContext:
    def test_forwarded_for_first_entry_wins(self):
        request = _request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "198.51.100.4"})
        assert ClientContext.from_request(request).ip == "203.0.113.7"

    def test_real_ip_then_peer(self):
        assert ClientContext.from_request(_request({"X-Real-IP": "198.51.100.4"})).ip == "198.51.100.4"
        assert ClientContext.from_request(_request()).ip == "10.1.1.1"

    def test_unknown_when_nothing_available(self):
        context = ClientContext.from_request(_request(host=None))
        assert context.ip == "0.0.0.0"
        assert context.user_agent == ""


class TestForwardingGate:
    def test_live_config_forwards(self):
        assert forwarding_skip_reasons(LIVE_CONFIG, InboundEvent(event_name="pageview")) == []

    def test_default_config_lists_every_reason(self):
        reasons = forwarding_skip_reasons(TenantForwardingConfig(), InboundEvent(event_name="pageview"))
        assert "Meta Pixel not enabled" in reasons
        assert "Meta Pixel not verified" in reasons
        assert "No Meta Pixel ID" in reasons
        assert "No Meta Access Token" in reasons

    def test_expired_token(self):
        config = TenantForwardingConfig(
            forwarding_enabled=True,
            verified=True,
            pixel_id="123",
            access_token="token",
            token_expires_at=datetime.utcnow() - timedelta(minutes=1),
        )
        assert forwarding_skip_reasons(config, InboundEvent(event_name="pageview")) == ["Meta Access Token expired"]

    def test_test_event_needs_code(self):
        event = InboundEvent(event_name="pageview", custom_data={"test_event": True})
        assert forwarding_skip_reasons(LIVE_CONFIG, event) == ["Test event without test event code"]

        with_code = TenantForwardingConfig(
            forwarding_enabled=True, verified=True, pixel_id="123", access_token="token", test_event_code="TEST1"
        )
        assert forwarding_skip_reasons(with_code, event) == []

    def test_truthy_non_boolean_is_not_a_test_event(self):
        event = InboundEvent(event_name="pageview", custom_data={"test_event": "true"})
        assert forwarding_skip_reasons(LIVE_CONFIG, event) == []


class TestBuildConversionEvent:
    def test_layering_order(self):
        """WHAT: template < properties < e-commerce fields < customData"""
        resolved = ResolvedEvent(
            standard_name="Lead",
            template_data={"content_category": "template", "currency": "EUR", "a": 1},
            mapping_used=MAPPING_CUSTOM,
        )
        event = InboundEvent(
            event_name="quote",
            url="https://mystore.com/quote",
            value=12.5,
            currency="USD",
            product_id="p1",
            product_name="Widget",
            quantity=3,
            properties={"a": 2, "b": 2},
            custom_data={"b": 3, "test_event": False},
            visitor_id="v1",
        )
        pk = uuid4()

        conversion = build_conversion_event(resolved, event, ClientContext(ip="203.0.113.7", user_agent="UA"), pk)

        assert conversion.event_name == "Lead"
        assert conversion.event_id == str(pk)
        assert conversion.event_source_url == "https://mystore.com/quote"
        assert conversion.external_id == "v1"
        assert conversion.custom_data == {
            "content_category": "template",
            "currency": "USD",
            "a": 2,
            "b": 3,
            "value": 12.5,
            "content_ids": ["p1"],
            "content_type": "product",
            "content_name": "Widget",
            "num_items": 3,
        }

    def test_forward_data_replaces_request_layers(self):
        event = InboundEvent(
            event_name="purchase",
            value=99.0,
            custom_data={"customer_email": "a@b.com", "shipping": [{"price": "5.00"}]},
            forward_data={"value": 99.0, "currency": "USD", "order_id": "1001"},
            email="a@b.com",
            capi_event_id="order_1001",
        )

        conversion = build_conversion_event(
            ResolvedEvent(standard_name="Purchase"), event, ClientContext(), uuid4()
        )

        assert conversion.custom_data == {"value": 99.0, "currency": "USD", "order_id": "1001"}
        assert conversion.email == "a@b.com"
        assert conversion.event_id == "order_1001"
        assert conversion.client_ip is None  # 0.0.0.0 is never sent


class TestPrimaryWrite:
    def test_persist_failure_raises_and_skips_later_stages(self):
        """WHAT: The TrackedEvent insert fails
        WHY: The only stage allowed to fail the request; nothing is forwarded
        """
        db = MagicMock()
        db.flush.side_effect = SQLAlchemyError("disk full")
        gateway = MagicMock()
        gateway.get_forwarding_config.return_value = LIVE_CONFIG
        forwarder = FakeForwarder()
        pipeline = IngestionPipeline(db=db, gateway=gateway, geo_resolver=FakeGeoResolver(), forwarder=forwarder)
        app = SimpleNamespace(id=uuid4(), app_id="pixel_1")

        with pytest.raises(EventPersistenceError) as exc:
            asyncio.run(pipeline.process(app, InboundEvent(event_name="pageview", session_id="s1"), ClientContext()))

        assert exc.value.status_code == 500
        db.rollback.assert_called_once()
        db.execute.assert_not_called()
        assert forwarder.calls == []

    def test_driver_error_on_insert_rolls_back(self):
        """WHAT: The DB driver raises a non-SQLAlchemy error while binding the row
        WHY: Still rolled back and reported as a persistence failure, not a crash
        """
        db = MagicMock()
        db.flush.side_effect = OverflowError("Python int too large to convert to SQLite INTEGER")
        gateway = MagicMock()
        gateway.get_forwarding_config.return_value = LIVE_CONFIG
        forwarder = FakeForwarder()
        pipeline = IngestionPipeline(db=db, gateway=gateway, geo_resolver=FakeGeoResolver(), forwarder=forwarder)
        app = SimpleNamespace(id=uuid4(), app_id="pixel_1")

        with pytest.raises(EventPersistenceError) as exc:
            asyncio.run(pipeline.process(app, InboundEvent(event_name="pageview"), ClientContext()))

        assert "too large" in exc.value.detail
        db.rollback.assert_called_once()
        assert forwarder.calls == []

    def test_persist_failure_over_http_is_generic_500(self, client, test_db_session, test_db_engine, test_app_record):
        TrackedEvent.__table__.drop(test_db_engine)

        response = client.post("/track", json={"appId": "pixel_1", "eventName": "pageview"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal error"}

    def test_persist_failure_detail_in_development(
        self, client, test_db_engine, test_app_record, test_settings
    ):
        test_settings.ENVIRONMENT = "development"
        TrackedEvent.__table__.drop(test_db_engine)

        response = client.post("/track", json={"appId": "pixel_1", "eventName": "pageview"})

        assert response.status_code == 500
        assert response.json()["error"].startswith("Failed to record event:")


class TestGeoDegradation:
    def test_raising_resolver_does_not_fail_request(self, app, client, test_db_session, test_app_record):
        from pixelrelay.deps import get_geo_resolver

        class ExplodingResolver:
            async def resolve(self, ip):
                raise RuntimeError("provider down")

        app.dependency_overrides[get_geo_resolver] = lambda: ExplodingResolver()

        response = client.post("/track", json={"appId": "pixel_1", "eventName": "pageview"})

        assert response.status_code == 200
        assert test_db_session.query(TrackedEvent).one().country is None


class TestBackgroundForwarding:
    def test_forward_deferred_until_tasks_run(self, test_db_session, forwarding_app):
        """WHAT: ingest() given a BackgroundTasks container
        WHY: The Graph API call is queued, not awaited; the event is already stored
        """
        forwarder = FakeForwarder()
        pipeline = IngestionPipeline(
            db=test_db_session,
            gateway=TenantConfigGateway(test_db_session),
            geo_resolver=FakeGeoResolver(),
            forwarder=forwarder,
        )
        tasks = BackgroundTasks()

        result = asyncio.run(pipeline.ingest(
            {"appId": "pixel_1", "eventName": "addToCart", "value": 5, "currency": "USD"},
            ClientContext(ip="203.0.113.7", user_agent="Mozilla/5.0"),
            background_tasks=tasks,
        ))

        assert result.forwarding == FORWARD_SCHEDULED
        assert forwarder.calls == []
        assert test_db_session.query(TrackedEvent).count() == 1

        asyncio.run(tasks())

        assert len(forwarder.calls) == 1
        assert forwarder.calls[0]["event"].event_name == "AddToCart"
