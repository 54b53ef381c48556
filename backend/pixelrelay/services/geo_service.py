"""IP geolocation for tracked events.

WHAT:
    Resolves a client IP to coarse location (city, region, country,
    country code, timezone) through the ip-api.com JSON endpoint.

WHY:
    Location breakdowns in the dashboard; country is also stamped on the
    analytics session.

HOW:
    GET {GEO_LOOKUP_URL}/{ip}?fields=status,message,city,regionName,country,countryCode,timezone
    bounded by GEO_LOOKUP_TIMEOUT_SECONDS.

NOTES:
    `resolve()` never raises. Timeouts, provider errors, malformed or
    non-public IPs all yield None and the pipeline carries on. The caller
    decides whether to call it at all (the app's record_location flag).
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GEO_LOOKUP_URL = "http://ip-api.com/json"
GEO_FIELDS = "status,message,city,regionName,country,countryCode,timezone"


@dataclass(frozen=True)
class GeoLocation:
    """Coarse location for one IP."""
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    timezone: Optional[str] = None


def is_public_ip(ip: Optional[str]) -> bool:
    """True when `ip` parses and is globally routable."""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return address.is_global


class GeoResolver:
    """Looks up client IPs against the geo provider.

    Usage:
        ```python
        resolver = GeoResolver(timeout_seconds=3.0)
        geo = await resolver.resolve("8.8.8.8")
        if geo:
            print(geo.country)
        ```
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GEO_LOOKUP_URL,
        timeout_seconds: float = 3.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def resolve(self, ip: Optional[str]) -> Optional[GeoLocation]:
        """Resolve an IP to a GeoLocation, or None on any failure."""
        if not is_public_ip(ip):
            logger.debug(f"[GEO] Skipping lookup for non-public IP: {ip}")
            return None

        url = f"{self.base_url}/{ip.strip()}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(url, params={"fields": GEO_FIELDS})
        except httpx.HTTPError as e:
            # Includes TimeoutException
            logger.warning(f"[GEO] Lookup failed for {ip}: {e.__class__.__name__}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"[GEO] Provider returned {response.status_code} for {ip}")
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"[GEO] Provider returned non-JSON body for {ip}")
            return None

        if not isinstance(data, dict) or data.get("status") != "success":
            logger.info(f"[GEO] No location for {ip}: {data.get('message') if isinstance(data, dict) else data}")
            return None

        return GeoLocation(
            city=data.get("city") or None,
            region=data.get("regionName") or None,
            country=data.get("country") or None,
            country_code=data.get("countryCode") or None,
            timezone=data.get("timezone") or None,
        )
