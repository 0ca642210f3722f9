"""
ClearKey license server endpoint for EME players.
"""
import json
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from tvrelay.services.clearkey import build_license_response
from tvrelay.services.errors import InvalidLicenseError
from tvrelay.services.stream_proxy import preflight_response

import logging
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/drm", tags=["drm"])

LICENSE_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


async def _requested_kids(request: Request) -> Optional[list[str]]:
    body = await request.body()
    if not body:
        return None
    try:
        kids = json.loads(body).get("kids")
    except (ValueError, AttributeError):
        logger.debug("License request body is not an EME JSON request")
        return None
    return kids if isinstance(kids, list) else None


@router.post("/clearkey")
async def clearkey_license(
    request: Request,
    license: Optional[str] = Query(None, description="base64url JSON {keys: [{kid, k}]}"),
):
    """
    Answer an EME ClearKey license request from the key bundle in `license`.
    Every key in the bundle is returned, whatever `kids` were requested.
    """
    if not license:
        return JSONResponse(
            status_code=400,
            content={"error": "Missing license parameter"},
            headers=LICENSE_CORS_HEADERS,
        )

    kids = await _requested_kids(request)
    try:
        payload = build_license_response(license, kids)
    except InvalidLicenseError as e:
        logger.warning(f"[ClearKey] Rejected license bundle: {e}")
        return JSONResponse(status_code=400, content={"error": str(e)}, headers=LICENSE_CORS_HEADERS)

    logger.info(f"[ClearKey] Returning {len(payload['keys'])} keys (requested {len(kids or [])})")
    return JSONResponse(content=payload, headers=LICENSE_CORS_HEADERS)


@router.options("/clearkey")
async def clearkey_preflight():
    return preflight_response("POST, OPTIONS")
