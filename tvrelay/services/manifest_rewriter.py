"""
HLS/DASH manifest rewriting.

Every URI a player can reach from a manifest is resolved against the
manifest's own location and pointed back at the proxy, so segment, key
and license requests all carry the impersonation headers. DASH manifests
can also have their DRM signaling swapped (ClearKey / Widevine).
"""
import base64
import binascii
import html
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit
from xml.sax.saxutils import escape as xml_escape

from tvrelay.models.channel import DrmDirective, is_http_url
from tvrelay.services.errors import ManifestRewriteError

logger = logging.getLogger(__name__)

PROXY_PATH = "/api/proxy"
BASE_PROXY_PATH = "/api/proxy/base"

CLEARKEY_SCHEME = "urn:uuid:e2719d58-a985-b3c9-781a-0070aaff49d2"
WIDEVINE_SCHEME = "urn:uuid:edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"
MP4_PROTECTION_SCHEME = "urn:mpeg:dash:mp4protection:2011"
CENC_NAMESPACE = "urn:mpeg:cenc:2013"

HLS_MANIFEST_TYPES = ("mpegurl",)
DASH_MANIFEST_TYPES = ("dash+xml",)

URI_ATTRIBUTE = re.compile(r'URI="([^"]*)"')
MPD_TAG = re.compile(r"<MPD\b[^>]*>", re.IGNORECASE)
BASE_URL = re.compile(r"<BaseURL([^>]*)>(.*?)</BaseURL>", re.DOTALL)
BASE_URL_SCOPE = re.compile(
    r"<BaseURL([^>]*)>(.*?)</BaseURL>|<(/?)(Period|AdaptationSet|Representation)\b[^>]*?(/?)>",
    re.DOTALL,
)
CONTENT_PROTECTION = re.compile(
    r"<ContentProtection\b[^>]*/>|<ContentProtection\b[^>]*>.*?</ContentProtection>",
    re.DOTALL | re.IGNORECASE,
)
SCHEME_ID = re.compile(r'schemeIdUri="([^"]*)"', re.IGNORECASE)
DEFAULT_KID = re.compile(r'(?:cenc:)?default_KID="([^"]+)"', re.IGNORECASE)
ADAPTATION_SET_OPEN = re.compile(r"<AdaptationSet\b[^>]*(?<!/)>")
ADAPTATION_SET_BLOCK = re.compile(r"(<AdaptationSet\b[^>]*(?<!/)>)(.*?</AdaptationSet>)", re.DOTALL)
ABSOLUTE_TEMPLATE_ATTRIBUTE = re.compile(r'\b(media|initialization|sourceURL)="(https?://[^"]+)"')


class ManifestKind(str, Enum):
    HLS = "hls"
    DASH = "dash"


def detect_manifest_kind(content_type: Optional[str], url: str) -> Optional[ManifestKind]:
    """Content-Type first, URL path suffix as fallback."""
    content_type = (content_type or "").lower()
    if any(marker in content_type for marker in HLS_MANIFEST_TYPES):
        return ManifestKind.HLS
    if any(marker in content_type for marker in DASH_MANIFEST_TYPES):
        return ManifestKind.DASH
    return manifest_kind_from_url(url)


def manifest_kind_from_url(url: str) -> Optional[ManifestKind]:
    path = urlsplit(url).path.lower()
    if path.endswith((".m3u8", ".m3u")):
        return ManifestKind.HLS
    if path.endswith(".mpd"):
        return ManifestKind.DASH
    return None


def manifest_base(url: str) -> str:
    """Directory portion of a manifest URL, with trailing slash."""
    parts = urlsplit(url)
    directory = parts.path[: parts.path.rfind("/") + 1] or "/"
    return urlunsplit((parts.scheme, parts.netloc, directory, "", ""))


def upstream_origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def encode_base_token(origin: str, params: dict[str, str], drm: DrmDirective = DrmDirective.NONE) -> str:
    """
    Path-safe token carrying an upstream origin and its impersonation.
    The upstream path follows the token in the proxy URL, so relative
    references (``../audio/``) and DASH template identifiers stay visible.
    """
    payload = {"u": origin, **params}
    if drm is not DrmDirective.NONE:
        payload["drm"] = drm.value
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_base_token(token: str) -> dict[str, str]:
    """Inverse of encode_base_token; ValueError on anything malformed."""
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base token: {e}") from e
    if not isinstance(payload, dict) or not is_http_url(payload.get("u")):
        raise ValueError("Invalid base token: missing upstream base URL")
    return {str(key): str(value) for key, value in payload.items()}


@dataclass
class RewriteContext:
    """Where the manifest came from and how child requests must look."""
    original_url: str
    proxy_base: str
    profile_params: dict[str, str] = field(default_factory=dict)
    drm: DrmDirective = DrmDirective.NONE

    def proxy_url(self, target: str) -> str:
        params = {"url": target, **self.profile_params}
        if self.drm is not DrmDirective.NONE:
            params["drm"] = self.drm.value
        return f"{self.proxy_base.rstrip('/')}{PROXY_PATH}?{urlencode(params)}"

    def base_proxy_url(self, upstream_url: str) -> str:
        """Base route URL: /api/proxy/base/{origin token}{upstream path}."""
        parts = urlsplit(upstream_url)
        token = encode_base_token(upstream_origin(upstream_url), self.profile_params, self.drm)
        query = f"?{parts.query}" if parts.query else ""
        return f"{self.proxy_base.rstrip('/')}{BASE_PROXY_PATH}/{token}{parts.path or '/'}{query}"


# ==================== HLS ====================

def _proxied_reference(reference: str, context: RewriteContext) -> str:
    scheme = urlsplit(reference).scheme.lower()
    # data:, skd: and friends are not fetchable through the proxy
    if scheme and scheme not in ("http", "https"):
        return reference
    return context.proxy_url(urljoin(context.original_url, reference))


def rewrite_hls(text: str, context: RewriteContext) -> str:
    """Rewrite media lines and URI="..." attributes, keep everything else."""
    body = text.lstrip("\ufeff")
    if not body.lstrip().startswith("#EXTM3U"):
        raise ManifestRewriteError("HLS playlist does not start with #EXTM3U")

    rewritten = []
    for line in body.splitlines(keepends=True):
        content = line.rstrip("\r\n")
        ending = line[len(content):]
        stripped = content.strip()

        if not stripped:
            rewritten.append(line)
        elif stripped.startswith("#"):
            if 'URI="' in content:
                content = URI_ATTRIBUTE.sub(
                    lambda m: f'URI="{_proxied_reference(m.group(1), context)}"', content
                )
            rewritten.append(content + ending)
        else:
            rewritten.append(_proxied_reference(stripped, context) + ending)

    return "".join(rewritten)


# ==================== DASH ====================

def _rewrite_base_urls(text: str, context: RewriteContext) -> str:
    base_dir = manifest_base(context.original_url)

    if not BASE_URL.search(text):
        match = MPD_TAG.search(text)
        injected = f"\n  <BaseURL>{xml_escape(context.base_proxy_url(base_dir))}</BaseURL>"
        return text[: match.end()] + injected + text[match.end():]

    # One [inherited, own] pair per open Period/AdaptationSet/Representation;
    # a BaseURL resolves against the nearest enclosing BaseURL
    scopes = [[base_dir, None]]

    def absolutize(match: re.Match) -> str:
        if match.group(4) is None:
            inherited, own = scopes[-1]
            absolute = urljoin(inherited, html.unescape(match.group(2).strip()))
            if own is None:
                scopes[-1][1] = absolute
            return f"<BaseURL{match.group(1)}>{xml_escape(context.base_proxy_url(absolute))}</BaseURL>"
        if match.group(3):
            if len(scopes) > 1:
                scopes.pop()
        elif not match.group(5):
            inherited, own = scopes[-1]
            scopes.append([own or inherited, None])
        return match.group(0)

    return BASE_URL_SCOPE.sub(absolutize, text)


def _rewrite_absolute_templates(text: str, context: RewriteContext) -> str:
    def proxify(match: re.Match) -> str:
        proxied = context.base_proxy_url(html.unescape(match.group(2)))
        return f'{match.group(1)}="{xml_escape(proxied)}"'

    return ABSOLUTE_TEMPLATE_ATTRIBUTE.sub(proxify, text)


def _scheme_of(element: str) -> str:
    match = SCHEME_ID.search(element)
    return match.group(1).lower() if match else ""


def inject_clearkey(text: str) -> str:
    """Replace all ContentProtection signaling with a single ClearKey entry."""
    kid_match = DEFAULT_KID.search(text)
    kid_attrs = ""
    if kid_match:
        logger.info(f"Found default_KID: {kid_match.group(1)}")
        kid_attrs = f' cenc:default_KID="{kid_match.group(1)}" xmlns:cenc="{CENC_NAMESPACE}"'

    text, stripped = CONTENT_PROTECTION.subn("", text)
    logger.info(f"Stripped {stripped} ContentProtection blocks")

    element = f'\n      <ContentProtection schemeIdUri="{CLEARKEY_SCHEME}" value="ClearKey"{kid_attrs}/>'
    text, injected = ADAPTATION_SET_OPEN.subn(lambda m: m.group(0) + element, text)
    if not injected:
        logger.warning("No AdaptationSet found to inject ClearKey into")
    return text


def inject_widevine(text: str) -> str:
    """Keep only Widevine signaling, adding it where an AdaptationSet lacks it."""
    keep = (WIDEVINE_SCHEME, MP4_PROTECTION_SCHEME)

    def filter_protection(match: re.Match) -> str:
        return match.group(0) if _scheme_of(match.group(0)) in keep else ""

    text = CONTENT_PROTECTION.sub(filter_protection, text)

    element = f'\n      <ContentProtection schemeIdUri="{WIDEVINE_SCHEME}" value="Widevine"/>'

    def ensure_widevine(match: re.Match) -> str:
        if WIDEVINE_SCHEME in match.group(2).lower():
            return match.group(0)
        return match.group(1) + element + match.group(2)

    return ADAPTATION_SET_BLOCK.sub(ensure_widevine, text)


def rewrite_dash(text: str, context: RewriteContext) -> str:
    """Anchor relative addressing on the proxy and apply the DRM directive."""
    if not MPD_TAG.search(text):
        raise ManifestRewriteError("DASH manifest has no <MPD> element")

    text = _rewrite_base_urls(text, context)
    text = _rewrite_absolute_templates(text, context)

    if context.drm is DrmDirective.CLEARKEY:
        text = inject_clearkey(text)
    elif context.drm is DrmDirective.WIDEVINE:
        text = inject_widevine(text)
    return text


def rewrite_manifest(kind: ManifestKind, text: str, context: RewriteContext) -> str:
    """Single entry point used by the proxy."""
    if kind is ManifestKind.HLS:
        return rewrite_hls(text, context)
    return rewrite_dash(text, context)
