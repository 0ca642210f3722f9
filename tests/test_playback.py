"""
Tests for playback plans and the playlist API endpoints.
"""
import base64
import json
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from tvrelay.models.channel import Channel, DrmDirective, StreamKind
from tvrelay.services import playlist_source
from tvrelay.services.playback import build_playback_plan, parse_header_map
from tvrelay.services.playlist_source import PlaylistCache, PlaylistSourceClient

PROXY_BASE = "http://testserver"
KEYWORDS = ["indosiar", "vidio"]


def clearkey_bundle() -> str:
    keys = {"keys": [{"kid": "AAECAwQFBgcICQoLDA0ODw==", "k": "EBESExQVFhcYGRobHB0eHw=="}]}
    return base64.urlsafe_b64encode(json.dumps(keys).encode()).decode().rstrip("=")


def query_of(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


class TestPlaybackPlan:

    def test_plain_hls(self):
        channel = Channel(
            id="rcti", name="RCTI", category="indonesia",
            stream_url="https://cdn.test/rcti/index.m3u8",
            request_headers=json.dumps({"Referer": "https://rcti.test/", "User-Agent": "none"}),
        )
        plan = build_playback_plan(channel, PROXY_BASE, KEYWORDS)

        assert plan.stream_kind is StreamKind.HLS
        assert plan.drm is DrmDirective.NONE
        query = query_of(plan.proxy_url)
        assert plan.proxy_url.startswith(f"{PROXY_BASE}/api/proxy?")
        assert query["url"] == "https://cdn.test/rcti/index.m3u8"
        assert query["referer"] == "https://rcti.test/"
        assert "user_agent" not in query

    def test_clearkey_channel(self):
        bundle = clearkey_bundle()
        channel = Channel(
            id="ck", name="Sport", category="event",
            stream_url="https://cdn.test/ck/manifest.mpd",
            license_ref=bundle,
            stream_kind=StreamKind.DASH_CLEARKEY,
        )
        plan = build_playback_plan(channel, PROXY_BASE, KEYWORDS)

        assert plan.drm is DrmDirective.CLEARKEY
        assert query_of(plan.proxy_url)["drm"] == "clearkey"
        assert plan.clear_keys == {"000102030405060708090a0b0c0d0e0f": "101112131415161718191a1b1c1d1e1f"}
        assert query_of(plan.clearkey_license_url)["license"] == bundle
        assert plan.clearkey_license_url.startswith(f"{PROXY_BASE}/api/drm/clearkey?")

    def test_widevine_channel(self):
        channel = Channel(
            id="wv", name="Movies", category="indonesia",
            stream_url="https://cdn.test/wv/manifest.mpd",
            license_ref="https://license.test/widevine",
            license_headers=json.dumps({"X-Auth": "token"}),
            stream_kind=StreamKind.DASH_WIDEVINE,
        )
        plan = build_playback_plan(channel, PROXY_BASE, KEYWORDS)

        assert plan.drm is DrmDirective.WIDEVINE
        assert plan.widevine_license_url == "https://license.test/widevine"
        assert plan.license_headers == {"X-Auth": "token"}
        assert query_of(plan.proxy_url)["drm"] == "widevine"

    def test_license_field_is_the_stream(self):
        channel = Channel(
            id="odd", name="Odd", category="indonesia",
            stream_url="",
            license_ref="https://cdn.test/odd/manifest.mpd",
            stream_kind=StreamKind.DASH_WIDEVINE,
        )
        plan = build_playback_plan(channel, PROXY_BASE, KEYWORDS)

        assert plan.stream_url == "https://cdn.test/odd/manifest.mpd"
        assert plan.stream_kind is StreamKind.DASH
        assert plan.drm is DrmDirective.NONE
        assert plan.widevine_license_url is None

    def test_android_keyword_channel(self):
        channel = Channel(id="ind", name="Indosiar HD", category="indonesia", stream_url="https://cdn.test/i.m3u8")
        plan = build_playback_plan(channel, PROXY_BASE, KEYWORDS)
        assert plan.android
        assert query_of(plan.proxy_url)["android"] == "1"

    def test_camel_case_wire_shape(self):
        channel = Channel(id="a", name="A", category="c", stream_url="https://cdn.test/a.m3u8")
        payload = build_playback_plan(channel, PROXY_BASE, KEYWORDS).model_dump(mode="json", by_alias=True)
        assert {"channelId", "streamKind", "proxyUrl", "clearKeys"} <= payload.keys()

    def test_parse_header_map(self):
        assert parse_header_map('{"A": 1}') == {"A": "1"}
        assert parse_header_map("not json") is None
        assert parse_header_map("[1]") is None
        assert parse_header_map(None) is None


@pytest.fixture
def api_client(monkeypatch, settings, fake_upstream, clock):
    source = PlaylistSourceClient(
        settings,
        fetch=fake_upstream.fetch,
        cache=PlaylistCache(ttl_seconds=300, clock=clock),
    )
    monkeypatch.setattr(playlist_source, "_playlist_client", source)
    from tvrelay.main import app
    return TestClient(app)


class TestPlaylistApi:

    def test_playlist_shape(self, api_client):
        response = api_client.get("/api/playlist")
        assert response.status_code == 200

        data = response.json()
        assert data["version"] == "2.1.10"
        assert isinstance(data["lastUpdated"], int)
        assert [ch["id"] for ch in data["indonesia"]] == ["rcti", "vidio1"]
        rcti = data["indonesia"][0]
        assert rcti["streamUrl"] == "https://cdn.test/rcti/index.m3u8"
        assert rcti["streamKind"] == "hls"
        assert rcti["logo"] == "https://img.test/rcti.png"
        assert data["event"][0]["name"] == "Liga Event"

    def test_refresh_param_forces_fetch(self, api_client, fake_upstream):
        api_client.get("/api/playlist")
        calls = len(fake_upstream.calls)
        api_client.get("/api/playlist?refresh=true")
        assert len(fake_upstream.calls) == calls * 2

    def test_playlist_unavailable(self, api_client, fake_upstream):
        fake_upstream.responses.clear()
        response = api_client.get("/api/playlist")
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch playlist"}

    def test_playback_endpoint(self, api_client):
        response = api_client.get("/api/playlist/indonesia/vidio1/playback")
        assert response.status_code == 200

        plan = response.json()
        assert plan["channelId"] == "vidio1"
        assert plan["drm"] == "clearkey"
        assert plan["android"] is True
        assert plan["proxyUrl"].startswith("http://testserver/api/proxy?")

    def test_playback_unknown_channel(self, api_client):
        response = api_client.get("/api/playlist/indonesia/missing/playback")
        assert response.status_code == 404

    def test_health(self, api_client):
        response = api_client.get("/api/health")
        assert response.json()["status"] == "healthy"
