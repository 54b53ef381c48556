"""User-agent normalisation.

WHAT:
    Turns a raw User-Agent header (plus an optional client-reported screen
    width) into browser / OS / device-type classification.

WHY:
    Every tracked event and session stores this classification so the
    dashboard can break traffic down by device without re-parsing.

NOTES:
    Pure and synchronous. Never raises: anything unrecognised degrades to
    "Unknown" names and the "unknown" device type.
"""

import re
from dataclasses import dataclass
from typing import Optional


UNKNOWN = "Unknown"

DEVICE_MOBILE = "mobile"
DEVICE_TABLET = "tablet"
DEVICE_DESKTOP = "desktop"
DEVICE_UNKNOWN = "unknown"

DEFAULT_MOBILE_MAX_WIDTH = 768
DEFAULT_TABLET_MAX_WIDTH = 1024


@dataclass(frozen=True)
class DeviceInfo:
    """Parsed user-agent classification."""
    browser: str = UNKNOWN
    browser_version: Optional[str] = None
    os: str = UNKNOWN
    os_version: Optional[str] = None
    device_type: str = DEVICE_UNKNOWN


# Order matters: Edge and Opera also advertise "Chrome", Chrome advertises "Safari".
_BROWSER_PATTERNS = [
    ("Facebook", re.compile(r"FBAV/([\d.]+)")),
    ("Instagram", re.compile(r"Instagram ([\d.]+)")),
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Samsung Internet", re.compile(r"SamsungBrowser/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
    ("Internet Explorer", re.compile(r"(?:MSIE |Trident/.*rv:)([\d.]+)")),
]

_OS_PATTERNS = [
    ("iPadOS", re.compile(r"iPad.*?OS ([\d_]+)")),
    ("iOS", re.compile(r"(?:iPhone|iPod).*?OS ([\d_]+)")),
    ("Android", re.compile(r"Android ([\d.]+)")),
    ("Windows", re.compile(r"Windows NT ([\d.]+)")),
    ("macOS", re.compile(r"Mac OS X ([\d_.]+)")),
    ("Chrome OS", re.compile(r"CrOS \S+ ([\d.]+)")),
    ("Linux", re.compile(r"Linux()")),
]

_TABLET_RE = re.compile(r"iPad|Tablet|PlayBook|Silk|Kindle", re.IGNORECASE)
_ANDROID_TABLET_RE = re.compile(r"Android(?!.*Mobile)", re.IGNORECASE)
_MOBILE_RE = re.compile(r"Mobi|iPhone|iPod|Android.*Mobile|Windows Phone|BlackBerry|Opera Mini|IEMobile", re.IGNORECASE)
_BOT_RE = re.compile(r"bot|crawler|spider|slurp|facebookexternalhit", re.IGNORECASE)

_WINDOWS_VERSIONS = {
    "10.0": "10",
    "6.3": "8.1",
    "6.2": "8",
    "6.1": "7",
}


def _match_first(patterns, user_agent: str):
    for name, pattern in patterns:
        match = pattern.search(user_agent)
        if match:
            version = next((g for g in match.groups() if g), None)
            return name, version
    return UNKNOWN, None


def classify_device_type(
    user_agent: Optional[str],
    screen_width: Optional[int] = None,
    mobile_max_width: int = DEFAULT_MOBILE_MAX_WIDTH,
    tablet_max_width: int = DEFAULT_TABLET_MAX_WIDTH,
) -> str:
    """Classify a client as mobile / tablet / desktop / unknown.

    A client-reported screen width below the mobile threshold wins over the
    UA; otherwise UA signatures decide, with the tablet band as a tiebreak.
    """
    ua = user_agent or ""

    if screen_width and screen_width > 0 and screen_width < mobile_max_width:
        return DEVICE_MOBILE

    if ua:
        # iPads also advertise "Mobile/", so tablets are checked first
        if _TABLET_RE.search(ua) or _ANDROID_TABLET_RE.search(ua):
            return DEVICE_TABLET
        if _MOBILE_RE.search(ua):
            return DEVICE_MOBILE

    if screen_width and screen_width > 0 and screen_width < tablet_max_width:
        return DEVICE_TABLET

    if not ua or _BOT_RE.search(ua):
        return DEVICE_UNKNOWN

    os_name, _ = _match_first(_OS_PATTERNS, ua)
    if os_name in ("Windows", "macOS", "Linux", "Chrome OS"):
        return DEVICE_DESKTOP
    if screen_width and screen_width >= tablet_max_width:
        return DEVICE_DESKTOP

    return DEVICE_UNKNOWN


def parse_user_agent(
    user_agent: Optional[str],
    screen_width: Optional[int] = None,
    mobile_max_width: int = DEFAULT_MOBILE_MAX_WIDTH,
    tablet_max_width: int = DEFAULT_TABLET_MAX_WIDTH,
) -> DeviceInfo:
    """Parse a User-Agent string into a DeviceInfo.

    Args:
        user_agent: Raw User-Agent header (may be empty or None)
        screen_width: Client-reported screen width in CSS pixels
        mobile_max_width: Widths below this are classified as mobile
        tablet_max_width: Widths below this (and above mobile) are tablets

    Returns:
        DeviceInfo with best-effort values; never raises.
    """
    ua = user_agent or ""
    device_type = classify_device_type(ua, screen_width, mobile_max_width, tablet_max_width)

    if not ua:
        return DeviceInfo(device_type=device_type)

    browser, browser_version = _match_first(_BROWSER_PATTERNS, ua)
    os_name, os_version = _match_first(_OS_PATTERNS, ua)

    if os_version:
        os_version = os_version.replace("_", ".")
    if os_name == "Windows" and os_version:
        os_version = _WINDOWS_VERSIONS.get(os_version, os_version)

    return DeviceInfo(
        browser=browser,
        browser_version=browser_version,
        os=os_name,
        os_version=os_version or None,
        device_type=device_type,
    )
