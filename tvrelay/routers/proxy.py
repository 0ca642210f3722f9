"""
Streaming proxy endpoints.
Every manifest, segment and key request from the player comes through here.
"""
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Request

from tvrelay.services.impersonation import ANDROID_EXOPLAYER, DESKTOP_WEB
from tvrelay.services.manifest_rewriter import decode_base_token
from tvrelay.services.stream_proxy import get_proxy_service, preflight_response

router = APIRouter(prefix="/api", tags=["proxy"])

PROXY_METHODS = "GET, HEAD, OPTIONS"
STREAM_METHODS = "GET, HEAD, POST, PUT, PATCH, OPTIONS"

# Path params arrive decoded; re-quote without touching DASH "$...$" identifiers
PATH_SAFE = "/:@!$&'()*+,;=~"


@router.api_route("/proxy", methods=["GET", "HEAD"])
async def proxy(request: Request):
    """
    Proxy a stream URL with the BitTV web identity.

    Query: `url` (required), `referer`, `origin`, `user_agent`, `drm`,
    `android`, `profile` (desktop, android, exoplayer), `p_headers`
    (base64 JSON header map).
    """
    proxy_service = get_proxy_service()
    return await proxy_service.handle(request, request.query_params, DESKTOP_WEB, PROXY_METHODS)


@router.options("/proxy")
async def proxy_preflight():
    return preflight_response(PROXY_METHODS)


@router.api_route("/stream", methods=["GET", "HEAD", "POST", "PUT", "PATCH"])
async def stream(request: Request):
    """
    Proxy with the BitTV Android app identity; request bodies pass through
    (license servers are POSTed to).
    """
    proxy_service = get_proxy_service()
    return await proxy_service.handle(request, request.query_params, ANDROID_EXOPLAYER, STREAM_METHODS)


@router.options("/stream")
async def stream_preflight():
    return preflight_response(STREAM_METHODS)


@router.api_route("/proxy/base/{token}/{path:path}", methods=["GET", "HEAD"])
async def proxy_base(token: str, path: str, request: Request):
    """
    Proxy an upstream path addressed relative to a DASH manifest.
    The token carries the upstream origin and impersonation params; the
    rest of the path is the upstream path.
    """
    try:
        params = decode_base_token(token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    target = f"{params.pop('u').rstrip('/')}/{quote(path, safe=PATH_SAFE)}"
    if request.url.query:
        target = f"{target}?{request.url.query}"
    params["url"] = target

    proxy_service = get_proxy_service()
    return await proxy_service.handle(request, params, DESKTOP_WEB, PROXY_METHODS)


@router.options("/proxy/base/{token}/{path:path}")
async def proxy_base_preflight():
    return preflight_response(PROXY_METHODS)
