"""
Pytest configuration and fixtures for tvrelay tests.
"""
import os

# Keep tests off the on-disk snapshot store
os.environ.setdefault("TVRELAY_SNAPSHOT_DB_PATH", "")

import json
import pytest
import httpx
from fastapi.testclient import TestClient

from tvrelay.config import Settings
from tvrelay.services import obfuscation
from tvrelay.services import stream_proxy
from tvrelay.services.stream_proxy import StreamProxyService


LISTING_URL = "https://listing.test/contents"
PAYLOAD_BASE = "https://raw.test/lite"


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeUpstream:
    """Async text fetcher serving canned bodies and counting calls."""

    def __init__(self, responses: dict):
        self.responses = responses
        self.calls: list[str] = []

    async def fetch(self, url: str) -> str:
        self.calls.append(url)
        value = self.responses.get(url)
        if value is None:
            raise httpx.HTTPStatusError(
                "404 Not Found",
                request=httpx.Request("GET", url),
                response=httpx.Response(404),
            )
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def settings():
    return Settings(
        playlist_listing_url=LISTING_URL,
        playlist_payload_base=PAYLOAD_BASE,
        playlist_categories={"indonesia": "ID.json", "event": "EV.json"},
        snapshot_db_path="",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def indonesia_records():
    return [
        {"id": "rcti", "name": "RCTI", "hls": "https://cdn.test/rcti/index.m3u8", "image": "https://img.test/rcti.png"},
        {
            "id": "vidio1",
            "name": "Vidio Sport",
            "hls": "https://cdn.test/vidio/manifest.mpd",
            "jenis": "dash-clearkey",
            "url_license": "eyJrZXlzIjpbXX0",
        },
    ]


@pytest.fixture
def event_records():
    return [
        {"tvg_name": "Liga Event", "url": "https://cdn.test/event/live.m3u8", "is_live": "t"},
    ]


@pytest.fixture
def upstream_responses(indonesia_records, event_records):
    """Listing with versions, obfuscated ID payload, plain EV payload."""
    listing = json.dumps([
        {"name": "2.1.9", "type": "dir"},
        {"name": "2.1.10", "type": "dir"},
        {"name": "README.md", "type": "file"},
        {"name": "latest", "type": "dir"},
    ])
    obfuscated = "P" * 98 + obfuscation.encode(json.dumps({
        "country": "ID",
        "info": indonesia_records,
    }))
    return {
        LISTING_URL: listing,
        f"{PAYLOAD_BASE}/2.1.10/ID.json": obfuscated,
        f"{PAYLOAD_BASE}/2.1.10/EV.json": json.dumps({"data": event_records}),
    }


@pytest.fixture
def fake_upstream(upstream_responses):
    return FakeUpstream(upstream_responses)


@pytest.fixture
def sample_media_playlist():
    """HLS media playlist with relative, absolute and keyed entries."""
    return """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:4
#EXT-X-KEY:METHOD=AES-128,URI="keys/key.bin",IV=0x1
#EXTINF:4.000,
seg1.ts
#EXTINF:4.000,
http://abs.test/seg2.ts
#EXT-X-ENDLIST
"""


@pytest.fixture
def sample_widevine_mpd():
    return """<?xml version="1.0" encoding="UTF-8"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" xmlns:cenc="urn:mpeg:cenc:2013" type="dynamic">
  <Period id="1">
    <AdaptationSet mimeType="video/mp4" segmentAlignment="true">
      <ContentProtection schemeIdUri="urn:mpeg:dash:mp4protection:2011" value="cenc" cenc:default_KID="0fcb6f3a-5b2e-4a0e-9c3d-1f2e3d4c5b6a"/>
      <ContentProtection schemeIdUri="urn:uuid:edef8ba9-79d6-4ace-a3c8-27dcd51d21ed">
        <cenc:pssh>AAAANHBzc2gAAAAA7e+LqXnWSs6jyCfc1R0h7QAAABQIARIQD8tvOlsuSg6cPR8uPUxbag==</cenc:pssh>
      </ContentProtection>
      <SegmentTemplate media="video/$Number$.m4s" initialization="video/init.mp4" startNumber="1"/>
      <Representation id="v1" bandwidth="1500000" width="1280" height="720"/>
    </AdaptationSet>
  </Period>
</MPD>
"""


@pytest.fixture
def make_proxy_client(monkeypatch):
    """TestClient whose proxy talks to an httpx.MockTransport handler."""
    def factory(handler) -> TestClient:
        service = StreamProxyService(transport=httpx.MockTransport(handler))
        monkeypatch.setattr(stream_proxy, "_proxy_service", service)
        from tvrelay.main import app
        return TestClient(app)
    return factory
