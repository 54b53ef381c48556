"""Tests for IP geolocation."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from pixelrelay.services.geo_service import GEO_FIELDS, GeoLocation, GeoResolver, is_public_ip

LOOKUP_URL = "http://ip-api.com/json/8.8.8.8"


def _response(status_code, json_body=None, text=None):
    request = httpx.Request("GET", LOOKUP_URL)
    if json_body is not None:
        return httpx.Response(status_code, json=json_body, request=request)
    return httpx.Response(status_code, text=text or "", request=request)


@pytest.fixture
def mock_http():
    with patch("pixelrelay.services.geo_service.httpx.AsyncClient") as mock_cls:
        http_client = MagicMock()
        http_client.get = AsyncMock()
        mock_cls.return_value.__aenter__.return_value = http_client
        mock_cls.return_value.__aexit__.return_value = False
        http_client.client_cls = mock_cls
        yield http_client


class TestIsPublicIp:
    @pytest.mark.parametrize("ip", ["8.8.8.8", "203.0.114.1", "2606:4700:4700::1111"])
    def test_public(self, ip):
        assert is_public_ip(ip)

    @pytest.mark.parametrize("ip", [None, "", "0.0.0.0", "127.0.0.1", "10.0.0.1", "192.168.1.1", "::1", "not-an-ip"])
    def test_not_public(self, ip):
        assert not is_public_ip(ip)


class TestGeoResolver:
    def test_success(self, mock_http):
        mock_http.get.return_value = _response(200, {
            "status": "success",
            "city": "Mountain View",
            "regionName": "California",
            "country": "United States",
            "countryCode": "US",
            "timezone": "America/Los_Angeles",
        })

        geo = asyncio.run(GeoResolver(timeout_seconds=2.0).resolve("8.8.8.8"))

        assert geo == GeoLocation(
            city="Mountain View",
            region="California",
            country="United States",
            country_code="US",
            timezone="America/Los_Angeles",
        )
        args, kwargs = mock_http.get.call_args
        assert args[0] == LOOKUP_URL
        assert kwargs["params"] == {"fields": GEO_FIELDS}
        mock_http.client_cls.assert_called_once_with(timeout=2.0)

    def test_private_ip_skips_lookup(self, mock_http):
        assert asyncio.run(GeoResolver().resolve("10.0.0.1")) is None
        mock_http.get.assert_not_called()

    def test_provider_fail_status(self, mock_http):
        mock_http.get.return_value = _response(200, {"status": "fail", "message": "reserved range"})
        assert asyncio.run(GeoResolver().resolve("8.8.8.8")) is None

    def test_http_error_status(self, mock_http):
        mock_http.get.return_value = _response(429, text="rate limited")
        assert asyncio.run(GeoResolver().resolve("8.8.8.8")) is None

    def test_timeout(self, mock_http):
        mock_http.get.side_effect = httpx.ReadTimeout("slow")
        assert asyncio.run(GeoResolver().resolve("8.8.8.8")) is None

    def test_non_json_body(self, mock_http):
        mock_http.get.return_value = _response(200, text="<html>")
        assert asyncio.run(GeoResolver().resolve("8.8.8.8")) is None

    def test_custom_base_url(self, mock_http):
        mock_http.get.return_value = _response(200, {"status": "success", "country": "Netherlands"})

        geo = asyncio.run(GeoResolver(base_url="https://geo.internal/json/").resolve("8.8.8.8"))

        assert geo.country == "Netherlands"
        assert geo.city is None
        assert mock_http.get.call_args.args[0] == "https://geo.internal/json/8.8.8.8"
