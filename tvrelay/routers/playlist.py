"""
Playlist API endpoints.
Serves the decrypted, normalized channel snapshot.
"""
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from tvrelay.config import get_settings
from tvrelay.rate_limit import limiter
from tvrelay.services.errors import PlaylistUnavailableError
from tvrelay.services.playback import build_playback_plan
from tvrelay.services.playlist_source import get_playlist_client

import logging
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["playlist"])
settings = get_settings()


@router.get("/playlist")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def get_playlist(
    request: Request,
    refresh: bool = Query(False, description="Bypass the cache and fetch upstream now"),
):
    """
    Get all channels grouped by category.

    Returns `{<category>: Channel[], version, lastUpdated}`. Stale data is
    served immediately while a background refresh runs.
    """
    client = get_playlist_client()
    try:
        snapshot = await client.fetch_playlist(force_refresh=refresh)
    except PlaylistUnavailableError as e:
        logger.error(f"Playlist unavailable: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})
    return snapshot.to_response()


@router.get("/playlist/{category}/{channel_id}/playback")
async def get_playback_plan(category: str, channel_id: str, request: Request):
    """
    Get the proxied URL and DRM configuration for one channel.
    """
    client = get_playlist_client()
    try:
        channel = await client.find_channel(category, channel_id)
    except PlaylistUnavailableError as e:
        return JSONResponse(status_code=500, content={"error": str(e)})

    if not channel:
        raise HTTPException(status_code=404, detail="Channel not found")

    plan = build_playback_plan(
        channel,
        proxy_base=str(request.base_url).rstrip("/"),
        android_keywords=settings.android_channel_keywords,
    )
    return plan.model_dump(mode="json", by_alias=True)
