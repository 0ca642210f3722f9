"""
Streaming reverse proxy for playback, segment and license requests.
Forwards with impersonation headers, rewrites manifests, streams the rest.
"""
import asyncio
import httpx
import logging
from typing import Optional, AsyncIterator, Mapping
from urllib.parse import urlsplit

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from tvrelay.config import get_settings
from tvrelay.models.channel import DrmDirective
from tvrelay.models.proxy import ProxiedRequestContext
from tvrelay.services.errors import UpstreamFetchError
from tvrelay.services.impersonation import (
    ImpersonationProfile,
    build_impersonation_headers,
    client_ip_from,
    decode_header_bundle,
    is_android_flag,
    select_profile,
)
from tvrelay.services.manifest_rewriter import (
    ManifestKind,
    RewriteContext,
    detect_manifest_kind,
    manifest_kind_from_url,
    rewrite_manifest,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Range, User-Agent, X-Requested-With",
    "Access-Control-Expose-Headers": "Content-Length, Content-Range, Accept-Ranges",
    "Cross-Origin-Resource-Policy": "cross-origin",
}

HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}

MANIFEST_MEDIA_TYPES = {
    ManifestKind.HLS: "application/vnd.apple.mpegurl",
    ManifestKind.DASH: "application/dash+xml",
}

BODY_METHODS = ("POST", "PUT", "PATCH")


def cors_headers(methods: str = "GET, HEAD, OPTIONS") -> dict[str, str]:
    headers = dict(CORS_HEADERS)
    headers["Access-Control-Allow-Methods"] = methods
    return headers


def preflight_response(methods: str = "GET, HEAD, OPTIONS") -> Response:
    """Empty CORS preflight answer."""
    headers = cors_headers(methods)
    headers["Access-Control-Max-Age"] = "86400"
    return Response(status_code=204, headers=headers)


def needs_forced_range(url: str) -> bool:
    """Media segments get bytes=0-; manifests and live FLV never do."""
    if manifest_kind_from_url(url) is not None:
        return False
    return not urlsplit(url).path.lower().endswith(".flv")


class ClientDisconnected(Exception):
    """Browser went away before upstream answered."""


class StreamProxyService:
    """Service to proxy streams with an impersonated network identity."""

    # Timeout for stream requests
    CONNECT_TIMEOUT = 15.0
    READ_TIMEOUT = 30.0
    DISCONNECT_POLL_INTERVAL = 0.5

    def __init__(
        self,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connect_timeout = connect_timeout or self.CONNECT_TIMEOUT
        self.read_timeout = read_timeout or self.READ_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.connect_timeout, read=self.read_timeout),
            follow_redirects=True,
            verify=False,  # Some streams have bad certs
            transport=self._transport,
        )

    def build_context(
        self,
        request: Request,
        params: Mapping[str, str],
        default_profile: ImpersonationProfile,
    ) -> ProxiedRequestContext:
        """Validate the target and assemble the outbound identity."""
        target_url = params.get("url")
        if not target_url:
            raise HTTPException(status_code=400, detail="Missing 'url' parameter")
        parts = urlsplit(target_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise HTTPException(status_code=400, detail="Invalid URL")

        android = is_android_flag(params.get("android"))
        profile = select_profile(android, default_profile, params.get("profile"))
        client_ip = client_ip_from(
            request.headers.get("x-forwarded-for"),
            request.headers.get("x-real-ip"),
        )
        header_bundle = params.get("p_headers")
        headers = build_impersonation_headers(
            target_url,
            profile,
            referer=params.get("referer"),
            origin=params.get("origin"),
            user_agent=params.get("user_agent"),
            header_bundle=decode_header_bundle(header_bundle),
            client_ip=client_ip,
        )
        return ProxiedRequestContext(
            target_url=target_url,
            profile_name=profile.name,
            headers=headers,
            android=android,
            client_ip=client_ip,
            drm=DrmDirective.parse(params.get("drm")),
            range_header=request.headers.get("range"),
            accept=request.headers.get("accept"),
            header_bundle=header_bundle,
        )

    def _outbound_headers(self, context: ProxiedRequestContext, method: str, content_type: Optional[str]) -> dict:
        headers = dict(context.headers)
        has_range = any(name.lower() == "range" for name in headers)
        if context.range_header:
            headers["Range"] = context.range_header
        elif method == "GET" and not has_range and needs_forced_range(context.target_url):
            headers["Range"] = "bytes=0-"
        headers["Accept"] = context.accept or "*/*"
        if method in BODY_METHODS and content_type:
            headers["Content-Type"] = content_type
        return headers

    def _response_headers(self, upstream: httpx.Response, methods: str, drop_length: bool = False) -> dict:
        """Upstream headers minus encoding/hop-by-hop, plus permissive CORS."""
        encoded = "content-encoding" in upstream.headers
        headers = {}
        for name, value in upstream.headers.items():
            lower = name.lower()
            if lower in HOP_BY_HOP_HEADERS or lower == "content-encoding":
                continue
            if lower.startswith("access-control-") or lower == "cross-origin-resource-policy":
                continue
            # httpx hands us decoded bytes, so an encoded length is wrong
            if lower == "content-length" and (drop_length or encoded):
                continue
            headers[name] = value
        headers.update(cors_headers(methods))
        return headers

    async def _wait_for_disconnect(self, request: Request):
        while not await request.is_disconnected():
            await asyncio.sleep(self.DISCONNECT_POLL_INTERVAL)

    async def _send(self, client: httpx.AsyncClient, upstream_request: httpx.Request, request: Request) -> httpx.Response:
        """Send upstream, cancelling it if the browser disconnects first."""
        send_task = asyncio.create_task(client.send(upstream_request, stream=True))
        watch_task = asyncio.create_task(self._wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait({send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (send_task, watch_task):
                if not task.done():
                    task.cancel()

        if send_task in done:
            return send_task.result()
        try:
            await send_task
        except (asyncio.CancelledError, httpx.HTTPError):
            pass
        raise ClientDisconnected()

    async def _close(self, upstream: Optional[httpx.Response], client: httpx.AsyncClient):
        if upstream is not None:
            await upstream.aclose()
        await client.aclose()

    async def _stream_body(self, client: httpx.AsyncClient, upstream: httpx.Response, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except asyncio.CancelledError:
            logger.info(f"[Proxy] Aborted by client: {url}")
            raise
        except httpx.HTTPError as e:
            # Headers are already out; ending the body is all that is left
            logger.warning(f"[Proxy] Upstream stream interrupted for {url}: {e}")
        finally:
            await asyncio.shield(self._close(upstream, client))

    def _error_response(self, error: UpstreamFetchError, url: str) -> JSONResponse:
        logger.error(f"[Proxy] {error} ({error.details}) for {url}")
        return JSONResponse(error.to_payload(url), status_code=error.status_code, headers=cors_headers())

    async def handle(
        self,
        request: Request,
        params: Mapping[str, str],
        default_profile: ImpersonationProfile,
        methods: str = "GET, HEAD, OPTIONS",
    ) -> Response:
        """Forward one browser request and relay the upstream answer."""
        context = self.build_context(request, params, default_profile)
        method = request.method
        body = await request.body() if method in BODY_METHODS else None
        headers = self._outbound_headers(context, method, request.headers.get("content-type"))
        logger.info(f"[Proxy] {method} {context.target_url} as {context.profile_name}")

        client = self._client()
        upstream_request = client.build_request(method, context.target_url, headers=headers, content=body)
        try:
            upstream = await self._send(client, upstream_request, request)
        except ClientDisconnected:
            await client.aclose()
            logger.info(f"[Proxy] Aborted by client: {context.target_url}")
            return Response(status_code=499)
        except httpx.TimeoutException as e:
            await client.aclose()
            return self._error_response(
                UpstreamFetchError("Streaming source timed out.", status_code=504, details=str(e) or type(e).__name__),
                context.target_url,
            )
        except httpx.TransportError as e:
            await client.aclose()
            return self._error_response(
                UpstreamFetchError(
                    "Unable to reach streaming source. This may be due to geo-blocking, "
                    "CDN issues, an expired token, or connectivity problems.",
                    details=str(e) or type(e).__name__,
                ),
                context.target_url,
            )
        except BaseException:
            await client.aclose()
            raise

        kind = detect_manifest_kind(upstream.headers.get("content-type"), context.target_url)
        if method == "GET" and kind is not None and upstream.is_success:
            return await self._rewrite_response(request, context, client, upstream, kind, methods)

        if not upstream.is_success:
            logger.warning(f"[Proxy] Upstream error {upstream.status_code} for {context.target_url}")

        # Manifest GETs are rewritten; the upstream length does not describe them
        response_headers = self._response_headers(
            upstream, methods, drop_length=method == "HEAD" and kind is not None,
        )
        if method == "HEAD":
            await self._close(upstream, client)
            return Response(status_code=upstream.status_code, headers=response_headers)

        return StreamingResponse(
            self._stream_body(client, upstream, context.target_url),
            status_code=upstream.status_code,
            headers=response_headers,
        )

    async def _rewrite_response(
        self,
        request: Request,
        context: ProxiedRequestContext,
        client: httpx.AsyncClient,
        upstream: httpx.Response,
        kind: ManifestKind,
        methods: str,
    ) -> Response:
        """Buffer a manifest, rewrite it, and answer with the new text."""
        try:
            await upstream.aread()
        except httpx.TimeoutException as e:
            return self._error_response(
                UpstreamFetchError("Streaming source timed out.", status_code=504, details=str(e) or type(e).__name__),
                context.target_url,
            )
        except httpx.TransportError as e:
            return self._error_response(
                UpstreamFetchError("Manifest download interrupted.", details=str(e) or type(e).__name__),
                context.target_url,
            )
        finally:
            await self._close(upstream, client)

        rewrite_context = RewriteContext(
            original_url=str(upstream.url),
            proxy_base=str(request.base_url).rstrip("/"),
            profile_params=context.profile_params(),
            drm=context.drm,
        )
        try:
            rewritten = rewrite_manifest(kind, upstream.text, rewrite_context)
        except Exception as e:
            # Never hand the player an unrewritten manifest
            logger.error(f"[Proxy] Manifest processing error for {context.target_url}: {e}")
            return PlainTextResponse(
                f"Proxy Processing Failed: {e}",
                status_code=500,
                headers=cors_headers(methods),
            )

        # httpx yields lowercased header names
        headers = self._response_headers(upstream, methods, drop_length=True)
        headers.pop("content-range", None)
        headers["cache-control"] = "no-cache, no-store, must-revalidate"
        if detect_manifest_kind(headers.get("content-type"), "") is None:
            headers["content-type"] = MANIFEST_MEDIA_TYPES[kind]

        # A forced bytes=0- may have produced a 206 for the whole manifest
        status = 200 if upstream.status_code == 206 else upstream.status_code
        return Response(content=rewritten.encode("utf-8"), status_code=status, headers=headers)


# Singleton
_proxy_service: Optional[StreamProxyService] = None


def get_proxy_service() -> StreamProxyService:
    """Get or create proxy service singleton."""
    global _proxy_service
    if _proxy_service is None:
        settings = get_settings()
        _proxy_service = StreamProxyService(
            connect_timeout=settings.upstream_connect_timeout,
            read_timeout=settings.upstream_read_timeout,
        )
    return _proxy_service
