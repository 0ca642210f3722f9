"""
Upstream impersonation profiles.

Origins only answer requests that look like they come from the BitTV
apps, so every proxied request carries one of a small closed set of
header profiles, optionally adjusted by per-domain rules, explicit query
parameters and a custom header bundle (in increasing priority).
"""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImpersonationProfile:
    name: str
    user_agent: str
    referer: Optional[str] = None
    origin: Optional[str] = None
    extra_headers: dict[str, str] = field(default_factory=dict)

    def headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.referer:
            headers["Referer"] = self.referer
        if self.origin:
            headers["Origin"] = self.origin
        headers.update(self.extra_headers)
        return headers


# BitTV web player, Firefox based
DESKTOP_WEB = ImpersonationProfile(
    name="desktop",
    user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:119.0) Gecko/20100101 Firefox/119.0",
    referer="https://duktek.id/?device=BitTVWeb&is_genuine=true",
    origin="https://duktek.id",
)

# BitTV Android webview
ANDROID_WEB = ImpersonationProfile(
    name="android",
    user_agent=(
        "Mozilla/5.0 (Linux; Android 13; Pixel 7 Build/TQ1A.231105.002) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/119.0.0.0 Mobile Safari/537.36"
    ),
    referer="https://duktek.id/?device=BitTVAndroid&is_genuine=true",
    origin="https://duktek.id",
)

# BitTV Android app player
ANDROID_EXOPLAYER = ImpersonationProfile(
    name="exoplayer",
    user_agent="Dalvik/2.1.0 (Linux; U; Android 13; Pixel 7 Build/TQ1A.231105.002) ExoPlayerLib/2.18.2",
    referer="https://duktek.id/",
    origin="https://duktek.id",
    extra_headers={"X-Requested-With": "id.duktek.bittv"},
)

PROFILES = {profile.name: profile for profile in (DESKTOP_WEB, ANDROID_WEB, ANDROID_EXOPLAYER)}


@dataclass(frozen=True)
class DomainOverride:
    """Referer/Origin an origin insists on, matched against the target URL."""
    pattern: re.Pattern
    referer: str
    origin: str


DOMAIN_OVERRIDES = [
    DomainOverride(
        pattern=re.compile(r"transtv|trans7|cnnindonesia|cnbcindonesia|detik"),
        referer="https://www.transtv.co.id/",
        origin="https://www.transtv.co.id",
    ),
]

# Header names CDNs read the client location from
CLIENT_IP_HEADERS = ("X-Forwarded-For", "X-Real-IP", "Client-IP", "True-Client-IP", "X-Originating-IP")

TRUTHY = ("1", "true", "yes")


def is_android_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in TRUTHY


def select_profile(
    android: bool,
    default: ImpersonationProfile = DESKTOP_WEB,
    name: Optional[str] = None,
) -> ImpersonationProfile:
    """
    A named profile replaces the route's default, so child requests of a
    manifest keep the identity it was fetched with. Android mode wins over
    either, except for the Android app player itself.
    """
    profile = PROFILES.get((name or "").strip().lower(), default)
    if android and profile is not ANDROID_EXOPLAYER:
        return ANDROID_WEB
    return profile


def match_domain_override(url: str) -> Optional[DomainOverride]:
    url_lower = url.lower()
    for override in DOMAIN_OVERRIDES:
        if override.pattern.search(url_lower):
            return override
    return None


def decode_header_bundle(encoded: Optional[str]) -> dict[str, str]:
    """
    Decode a base64 (standard or url-safe) JSON header map.
    A malformed bundle is logged and ignored.
    """
    if not encoded:
        return {}
    try:
        normalized = encoded.strip().replace("-", "+").replace("_", "/")
        normalized += "=" * (-len(normalized) % 4)
        headers = json.loads(base64.b64decode(normalized).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Ignoring malformed p_headers bundle: {e}")
        return {}
    if not isinstance(headers, dict):
        logger.warning("Ignoring p_headers bundle that is not a JSON object")
        return {}
    return {str(key): str(value) for key, value in headers.items()}


def encode_header_bundle(headers: Mapping[str, str]) -> str:
    return base64.urlsafe_b64encode(json.dumps(dict(headers)).encode()).decode()


def client_ip_from(forwarded_for: Optional[str], real_ip: Optional[str]) -> Optional[str]:
    """First hop of X-Forwarded-For, else X-Real-IP."""
    raw = forwarded_for or real_ip
    if not raw:
        return None
    return raw.split(",")[0].strip() or None


def _set_or_remove(headers: dict[str, str], name: str, value: Optional[str]):
    if value is None or value == "":
        return
    if value.lower() == "none":
        headers.pop(name, None)
    else:
        headers[name] = value


def build_impersonation_headers(
    url: str,
    profile: ImpersonationProfile,
    referer: Optional[str] = None,
    origin: Optional[str] = None,
    user_agent: Optional[str] = None,
    header_bundle: Optional[dict[str, str]] = None,
    client_ip: Optional[str] = None,
) -> dict[str, str]:
    """
    Outbound identity headers, lowest priority first:
    profile < domain override < query parameters < custom bundle.
    A query value of "none" removes the header.
    """
    headers = profile.headers()

    override = match_domain_override(url)
    if override is not None:
        headers["Referer"] = override.referer
        headers["Origin"] = override.origin

    _set_or_remove(headers, "Referer", referer)
    _set_or_remove(headers, "Origin", origin)
    if user_agent and user_agent.lower() != "none":
        headers["User-Agent"] = user_agent

    if client_ip:
        for name in CLIENT_IP_HEADERS:
            headers[name] = client_ip

    for name, value in (header_bundle or {}).items():
        for existing in [key for key in headers if key.lower() == name.lower()]:
            del headers[existing]
        headers[name] = value
    return headers
