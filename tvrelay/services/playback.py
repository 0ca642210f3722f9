"""
Playback plans: how a player should open a channel through the proxy.
Resolves stream type, the license-as-stream heuristic and DRM material.
"""
import json
import logging
from typing import Optional
from urllib.parse import urlencode

from tvrelay.models.channel import Channel, DrmDirective, PlaybackPlan, StreamKind
from tvrelay.services.clearkey import clearkey_hex_map
from tvrelay.services.errors import InvalidLicenseError
from tvrelay.services.manifest_rewriter import RewriteContext, manifest_kind_from_url, ManifestKind

logger = logging.getLogger(__name__)

CLEARKEY_LICENSE_PATH = "/api/drm/clearkey"


def parse_header_map(raw: Optional[str]) -> Optional[dict[str, str]]:
    """JSON header map from a channel field; None when absent or broken."""
    if not raw:
        return None
    try:
        headers = json.loads(raw)
    except ValueError:
        logger.debug(f"Ignoring malformed header map: {raw[:80]}")
        return None
    if not isinstance(headers, dict):
        return None
    return {str(key): str(value) for key, value in headers.items()}


def _header(headers: Optional[dict[str, str]], name: str) -> Optional[str]:
    for key, value in (headers or {}).items():
        if key.lower() == name.lower() and value and value.lower() != "none":
            return value
    return None


def needs_android_mode(channel: Channel, keywords: list[str]) -> bool:
    name = channel.name.lower()
    return any(keyword in name for keyword in keywords)


def playback_kind(channel: Channel) -> StreamKind:
    """Stored kind, re-derived from the URL when the license field is the stream."""
    if channel.license_is_stream and manifest_kind_from_url(channel.playable_url()) is ManifestKind.DASH:
        return StreamKind.DASH
    if channel.license_is_stream:
        return StreamKind.HLS
    return channel.stream_kind


def build_playback_plan(channel: Channel, proxy_base: str, android_keywords: list[str]) -> PlaybackPlan:
    """Everything a player needs to start the channel via the proxy."""
    stream_url = channel.playable_url()
    kind = playback_kind(channel)
    android = needs_android_mode(channel, android_keywords)

    params: dict[str, str] = {}
    if android:
        params["android"] = "1"
    else:
        request_headers = parse_header_map(channel.request_headers)
        for param, header in (("referer", "Referer"), ("origin", "Origin"), ("user_agent", "User-Agent")):
            value = _header(request_headers, header)
            if value:
                params[param] = value

    drm = DrmDirective.NONE
    clear_keys = None
    clearkey_license_url = None
    widevine_license_url = None
    license_headers = None

    if kind is StreamKind.DASH_CLEARKEY and channel.license_ref and not channel.license_server_url():
        drm = DrmDirective.CLEARKEY
        clearkey_license_url = f"{proxy_base.rstrip('/')}{CLEARKEY_LICENSE_PATH}?{urlencode({'license': channel.license_ref})}"
        try:
            clear_keys = clearkey_hex_map(channel.license_ref)
        except InvalidLicenseError as e:
            logger.warning(f"ClearKey bundle for {channel.id} unusable: {e}")
    elif channel.license_server_url() and kind is not StreamKind.DASH_CLEARKEY:
        drm = DrmDirective.WIDEVINE
        widevine_license_url = channel.license_server_url()
        license_headers = parse_header_map(channel.license_headers)

    context = RewriteContext(original_url=stream_url, proxy_base=proxy_base, profile_params=params, drm=drm)
    return PlaybackPlan(
        channel_id=channel.id,
        stream_kind=kind,
        stream_url=stream_url,
        proxy_url=context.proxy_url(stream_url),
        drm=drm,
        android=android,
        clear_keys=clear_keys,
        clearkey_license_url=clearkey_license_url,
        widevine_license_url=widevine_license_url,
        license_headers=license_headers,
    )
