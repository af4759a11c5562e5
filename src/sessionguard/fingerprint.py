"""
Device fingerprinting helpers.

Everything here is pure: no I/O, no shared state.
"""

import hashlib
import ipaddress
import json

from user_agents import parse as parse_ua

from sessionguard.models import DeviceInfo

# Attributes compared by similarity()
SIMILARITY_ATTRIBUTES = ("browser_family", "os_family", "screen_resolution", "timezone")

# Mobile and desktop builds of one browser or OS share a family
_BROWSER_ALIASES = {
    "Mobile Safari": "Safari",
    "Mobile Safari UI/WKWebView": "Safari",
    "Chrome Mobile": "Chrome",
    "Chrome Mobile iOS": "Chrome",
    "Chrome Mobile WebView": "Chrome",
    "Chromium": "Chrome",
    "Firefox Mobile": "Firefox",
    "Firefox iOS": "Firefox",
    "Edge Mobile": "Edge",
}
_OS_ALIASES = {
    "Mac OS X": "macOS",
    "Ubuntu": "Linux",
    "Fedora": "Linux",
    "Debian": "Linux",
}


def parse_user_agent(user_agent: str | None) -> DeviceInfo:
    """Derive a coarse DeviceInfo from a User-Agent header.

    Families the parser cannot identify are left as None so they are excluded
    from comparisons.
    """
    if not user_agent:
        return DeviceInfo()

    parsed = parse_ua(user_agent)
    if parsed.is_tablet:
        form_factor = "tablet"
    elif parsed.is_mobile:
        form_factor = "mobile"
    else:
        form_factor = "desktop"

    return DeviceInfo(
        browser_family=_normalize_family(parsed.browser.family, _BROWSER_ALIASES),
        os_family=_normalize_family(parsed.os.family, _OS_ALIASES),
        form_factor=form_factor,
        is_mobile=form_factor == "mobile",
    )


def _normalize_family(family: str | None, aliases: dict[str, str]) -> str | None:
    if not family or family == "Other":
        return None
    return aliases.get(family, family)


def compute_fingerprint(device_info: DeviceInfo) -> str:
    """Compute a stable, comparable fingerprint for a device."""
    data = {
        "browser_family": (device_info.browser_family or "").lower(),
        "os_family": (device_info.os_family or "").lower(),
        "form_factor": (device_info.form_factor or "").lower(),
        "is_mobile": bool(device_info.is_mobile),
        "screen_resolution": device_info.screen_resolution or "",
        "timezone": device_info.timezone or "",
    }
    serialized = json.dumps(data, sort_keys=True)
    return hashlib.sha256(serialized.encode()).hexdigest()[:32]


def similarity(a: DeviceInfo, b: DeviceInfo) -> float:
    """Calculate similarity score between two devices.

    Only attributes known on both sides are compared.

    Returns:
        Similarity score (0.0 to 1.0); 0.0 when nothing is comparable
    """
    matches = 0
    total = 0

    for field_name in SIMILARITY_ATTRIBUTES:
        left = getattr(a, field_name)
        right = getattr(b, field_name)
        if not left or not right:
            continue
        total += 1
        if str(left).lower() == str(right).lower():
            matches += 1

    return matches / total if total > 0 else 0.0


def is_same_subnet(ip1: str | None, ip2: str | None, prefix: int = 24) -> bool:
    """Check whether two IPv4 addresses share a /prefix network. IPv6 must match exactly."""
    if not ip1 or not ip2:
        return False
    try:
        first = ipaddress.ip_address(ip1)
        second = ipaddress.ip_address(ip2)
    except ValueError:
        return False
    if first.version != 4 or second.version != 4:
        return first == second
    network = ipaddress.ip_network(f"{first}/{prefix}", strict=False)
    return second in network
