"""
Playlist source client.

Resolves the latest upstream data version, fetches every category
payload in parallel, decrypts and normalizes the records into canonical
channels, and keeps one process-wide snapshot with stale-while-refresh
semantics.
"""
import asyncio
import hashlib
import json
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from tvrelay.config import Settings, get_settings
from tvrelay.models.channel import Channel, PlaylistSnapshot, StreamKind, is_http_url
from tvrelay.services import playlist_scanner
from tvrelay.services.errors import PlaylistUnavailableError
from tvrelay.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "default"

FetchText = Callable[[str], Awaitable[str]]

STREAM_KIND_ALIASES = {
    "hls": StreamKind.HLS,
    "m3u8": StreamKind.HLS,
    "dash": StreamKind.DASH,
    "mpd": StreamKind.DASH,
    "dash-clearkey": StreamKind.DASH_CLEARKEY,
    "clearkey": StreamKind.DASH_CLEARKEY,
    "dash-widevine": StreamKind.DASH_WIDEVINE,
    "widevine": StreamKind.DASH_WIDEVINE,
}


class PlaylistCache:
    """
    Single-slot snapshot cache with an injectable clock.

    The background refresh handle is checked and set with no await in
    between, so concurrent stale readers schedule at most one refresh.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[PlaylistSnapshot] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> Optional[PlaylistSnapshot]:
        return self._snapshot

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def is_fresh(self) -> bool:
        if self._snapshot is None:
            return False
        return self.now_ms() - self._snapshot.fetched_at < self.ttl_seconds * 1000

    def replace(self, snapshot: PlaylistSnapshot):
        self._snapshot = snapshot

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def start_background_refresh(self, refresh: Callable[[], Awaitable[None]]) -> bool:
        """Schedule ``refresh`` unless one is already running."""
        if self.refresh_in_flight:
            return False
        self._refresh_task = asyncio.create_task(refresh())
        return True

    async def wait_for_refresh(self):
        """Await the in-flight background refresh, if any."""
        if self._refresh_task is not None:
            await asyncio.shield(self._refresh_task)


def parse_version(name: str) -> Optional[tuple[int, ...]]:
    """'2.1.5', 'v3' or '20240101' -> comparable tuple; None otherwise."""
    parts = name.strip().lstrip("vV").split(".")
    if not parts or not all(part.isdigit() for part in parts):
        return None
    return tuple(int(part) for part in parts)


def pick_latest_version(entries) -> str:
    """Highest numeric folder in a directory listing, else 'default'."""
    best_name, best_key = DEFAULT_VERSION, None
    if not isinstance(entries, list):
        return DEFAULT_VERSION
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if entry.get("type", "dir") != "dir":
            continue
        name = str(entry.get("name", ""))
        key = parse_version(name)
        if key is not None and (best_key is None or key > best_key):
            best_name, best_key = name, key
    return best_name


def extract_channels(data) -> Optional[list]:
    """Channel array from any of the recognized top-level shapes."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in playlist_scanner.PLAYLIST_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
    return None


def _first(record: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _json_field(value) -> Optional[str]:
    if value in (None, ""):
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _parse_live_flag(value) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("t", "true", "1", "yes")


def infer_stream_kind(tag: Optional[str], stream_url: str, license_ref: Optional[str]) -> StreamKind:
    """Explicit tag, then license server URL, then URL suffix."""
    normalized = (tag or "").strip().lower()
    if normalized in STREAM_KIND_ALIASES:
        return STREAM_KIND_ALIASES[normalized]

    license_is_stream = not is_http_url(stream_url) and is_http_url(license_ref)
    if is_http_url(license_ref) and not license_is_stream:
        return StreamKind.DASH_WIDEVINE

    locator = license_ref if license_is_stream else stream_url
    path = locator.split("?", 1)[0].lower()
    if path.endswith(".mpd") or ".mpd" in path:
        return StreamKind.DASH
    return StreamKind.HLS


def normalize_channel(record: dict, category: str, used_ids: set[str]) -> Channel:
    """Map one heterogeneous upstream record onto the canonical Channel."""
    name = _first(record, "name", "tvg_name", "title") or "Unknown"
    stream_url = _first(record, "hls", "url", "stream_url", "link") or ""
    license_ref = _first(record, "url_license", "license")

    channel_id = _first(record, "id", "tvg_id")
    if not channel_id:
        channel_id = hashlib.md5(f"{category}{name}{stream_url}".encode()).hexdigest()[:12]
    base_id, suffix = channel_id, 1
    while channel_id in used_ids:
        suffix += 1
        channel_id = f"{base_id}-{suffix}"
    used_ids.add(channel_id)

    return Channel(
        id=channel_id,
        name=name,
        stream_url=stream_url,
        license_ref=license_ref,
        license_headers=_json_field(record.get("header_license")),
        stream_kind=infer_stream_kind(_first(record, "jenis", "type"), stream_url, license_ref),
        category=category,
        logo=_first(record, "image", "logo", "tvg_logo", "thumb"),
        tagline=_first(record, "tagline"),
        request_headers=_json_field(record.get("header_iptv")),
        is_live=_parse_live_flag(record.get("is_live")),
    )


def normalize_channels(records: list, category: str) -> list[Channel]:
    """Normalize in upstream order, dropping records with nothing to play."""
    used_ids: set[str] = set()
    channels = []
    skipped = 0
    for record in records:
        if not isinstance(record, dict):
            skipped += 1
            continue
        channel = normalize_channel(record, category, used_ids)
        if not channel.playable_url():
            skipped += 1
            continue
        channels.append(channel)
    if skipped:
        logger.debug(f"Skipped {skipped} unplayable {category} records")
    return channels


class PlaylistSourceClient:
    """Fetches, decrypts and caches the upstream channel playlist."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetch: Optional[FetchText] = None,
        cache: Optional[PlaylistCache] = None,
        store: Optional[SnapshotStore] = None,
    ):
        self.settings = settings or get_settings()
        self._fetch = fetch or self._http_fetch
        self.cache = cache or PlaylistCache(self.settings.cache_ttl_seconds)
        self.store = store
        self._seed_task: Optional[asyncio.Task] = None

    async def _http_fetch(self, url: str) -> str:
        """Plain HTTPS GET returning the body text."""
        async with httpx.AsyncClient(
            timeout=self.settings.playlist_fetch_timeout,
            follow_redirects=True,
        ) as client:
            response = await client.get(url, headers={"Cache-Control": "no-cache"})
            response.raise_for_status()
            return response.text

    def payload_url(self, version: str, filename: str) -> str:
        base = self.settings.playlist_payload_base.rstrip("/")
        if version == DEFAULT_VERSION:
            return f"{base}/{filename}"
        return f"{base}/{version}/{filename}"

    async def resolve_version(self) -> str:
        """Latest numeric version folder from the remote listing."""
        url = self.settings.playlist_listing_url
        try:
            entries = json.loads(await self._fetch(url))
        except Exception as e:
            logger.warning(f"Version listing unavailable ({url}): {e}")
            return DEFAULT_VERSION
        version = pick_latest_version(entries)
        logger.info(f"Resolved playlist version: {version}")
        return version

    def _decode_payload(self, text: str):
        try:
            return json.loads(text)
        except ValueError:
            pass
        decrypted = playlist_scanner.decrypt_payload(
            text,
            max_offset=self.settings.scan_max_offset,
            common_offset=self.settings.scan_common_offset,
        )
        try:
            return json.loads(decrypted)
        except ValueError:
            return None

    async def fetch_category(self, version: str, category: str, filename: str) -> Optional[list[Channel]]:
        """One category payload; any failure yields None, never raises."""
        url = self.payload_url(version, filename)
        logger.info(f"Fetching {category} playlist from {url}")
        try:
            text = await self._fetch(url)
        except Exception as e:
            logger.error(f"Failed to fetch {category} playlist: {e}")
            return None

        # The offset scan is CPU bound; keep it off the event loop
        data = await asyncio.to_thread(self._decode_payload, text)
        if data is None:
            logger.error(f"Could not decrypt {category} playlist payload")
            return None

        records = extract_channels(data)
        if records is None:
            logger.error(f"No channel array in {category} playlist payload")
            return None

        channels = normalize_channels(records, category)
        logger.info(f"Fetched {len(channels)} {category} channels")
        return channels

    async def _fetch_snapshot(self) -> Optional[PlaylistSnapshot]:
        version = await self.resolve_version()
        categories = self.settings.playlist_categories
        results = await asyncio.gather(*(
            self.fetch_category(version, category, filename)
            for category, filename in categories.items()
        ))
        if all(result is None for result in results):
            return None
        return PlaylistSnapshot(
            channels_by_category={
                category: result or []
                for category, result in zip(categories, results)
            },
            version_tag=version,
            fetched_at=self.cache.now_ms(),
        )

    async def refresh(self) -> PlaylistSnapshot:
        """Full synchronous fetch; replaces the cache only on success."""
        snapshot = await self._fetch_snapshot()
        if snapshot is None:
            raise PlaylistUnavailableError("Failed to fetch playlist")
        self.cache.replace(snapshot)
        logger.info(f"Playlist {snapshot.version_tag} loaded: {snapshot.total_channels} channels")
        if self.store is not None:
            await self.store.save_snapshot(snapshot)
        return snapshot

    async def _background_refresh(self):
        try:
            await self.refresh()
        except PlaylistUnavailableError:
            logger.warning("Background playlist refresh failed, keeping stale snapshot")
        except Exception as e:
            logger.error(f"Background playlist refresh crashed: {e}", exc_info=True)

    async def _seed_from_store(self):
        """Load the persisted snapshot once; concurrent first callers share the load."""
        if self.store is None:
            return
        if self._seed_task is None:
            self._seed_task = asyncio.create_task(self._load_seed())
        await asyncio.shield(self._seed_task)

    async def _load_seed(self):
        snapshot = await self.store.load_snapshot()
        if snapshot is not None and self.cache.snapshot is None:
            self.cache.replace(snapshot)
            logger.info(f"Seeded playlist cache from persisted snapshot {snapshot.version_tag}")

    async def fetch_playlist(self, force_refresh: bool = False) -> PlaylistSnapshot:
        """
        Current snapshot under the stale-while-refresh policy.

        Fresh cache is returned as-is. Stale cache is returned immediately
        with one background refresh scheduled. No cache, or a forced
        refresh, waits for a full fetch.
        """
        await self._seed_from_store()
        snapshot = self.cache.snapshot
        if snapshot is not None and not force_refresh:
            if self.cache.is_fresh():
                logger.debug("Returning playlist from cache")
            elif self.cache.start_background_refresh(self._background_refresh):
                logger.info("Playlist cache stale, refreshing in background")
            return snapshot
        return await self.refresh()

    async def find_channel(self, category: str, channel_id: str) -> Optional[Channel]:
        snapshot = await self.fetch_playlist()
        return snapshot.find_channel(category, channel_id)


# Singleton
_playlist_client: Optional[PlaylistSourceClient] = None


def get_playlist_client() -> PlaylistSourceClient:
    """Get or create the playlist client singleton."""
    global _playlist_client
    if _playlist_client is None:
        settings = get_settings()
        store = SnapshotStore(settings.snapshot_db_path) if settings.snapshot_db_path else None
        _playlist_client = PlaylistSourceClient(settings, store=store)
    return _playlist_client
