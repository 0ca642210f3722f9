"""
Tests for impersonation profiles and outbound header precedence.
"""
import base64
import json

import pytest

from tvrelay.models.proxy import ProxiedRequestContext
from tvrelay.services.impersonation import (
    ANDROID_EXOPLAYER,
    ANDROID_WEB,
    CLIENT_IP_HEADERS,
    DESKTOP_WEB,
    build_impersonation_headers,
    client_ip_from,
    decode_header_bundle,
    encode_header_bundle,
    is_android_flag,
    select_profile,
)


class TestProfiles:

    def test_desktop_profile_headers(self):
        headers = DESKTOP_WEB.headers()
        assert "Firefox" in headers["User-Agent"]
        assert headers["Referer"] == "https://duktek.id/?device=BitTVWeb&is_genuine=true"
        assert headers["Origin"] == "https://duktek.id"

    def test_exoplayer_profile_extra_headers(self):
        headers = ANDROID_EXOPLAYER.headers()
        assert "ExoPlayerLib" in headers["User-Agent"]
        assert headers["X-Requested-With"] == "id.duktek.bittv"

    @pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("YES", True), ("0", False), (None, False)])
    def test_android_flag(self, value, expected):
        assert is_android_flag(value) is expected

    def test_android_selects_android_web(self):
        assert select_profile(True, DESKTOP_WEB) is ANDROID_WEB
        assert select_profile(False, DESKTOP_WEB) is DESKTOP_WEB
        assert select_profile(True, ANDROID_EXOPLAYER) is ANDROID_EXOPLAYER

    def test_named_profile_replaces_route_default(self):
        assert select_profile(False, DESKTOP_WEB, "exoplayer") is ANDROID_EXOPLAYER
        assert select_profile(False, ANDROID_EXOPLAYER, "Desktop") is DESKTOP_WEB
        assert select_profile(True, DESKTOP_WEB, "exoplayer") is ANDROID_EXOPLAYER
        assert select_profile(True, DESKTOP_WEB, "desktop") is ANDROID_WEB

    def test_unknown_profile_name_keeps_default(self):
        assert select_profile(False, ANDROID_EXOPLAYER, "roku") is ANDROID_EXOPLAYER
        assert select_profile(False, DESKTOP_WEB, "") is DESKTOP_WEB

    def test_context_profile_params_name_the_profile(self):
        context = ProxiedRequestContext(
            target_url="http://cdn.test/live.m3u8",
            profile_name=ANDROID_EXOPLAYER.name,
            headers=ANDROID_EXOPLAYER.headers(),
        )
        params = context.profile_params()
        assert params["profile"] == "exoplayer"
        assert params["user_agent"] == ANDROID_EXOPLAYER.user_agent
        assert "android" not in params


class TestHeaderPrecedence:

    def test_profile_only(self):
        headers = build_impersonation_headers("https://cdn.test/a.m3u8", DESKTOP_WEB)
        assert headers == DESKTOP_WEB.headers()

    def test_domain_override_beats_profile(self):
        headers = build_impersonation_headers("https://live.transtv.co.id/a.m3u8", DESKTOP_WEB)
        assert headers["Referer"] == "https://www.transtv.co.id/"
        assert headers["Origin"] == "https://www.transtv.co.id"

    def test_query_params_beat_domain_override(self):
        headers = build_impersonation_headers(
            "https://live.transtv.co.id/a.m3u8",
            DESKTOP_WEB,
            referer="https://query.test/",
            user_agent="QueryAgent",
        )
        assert headers["Referer"] == "https://query.test/"
        assert headers["Origin"] == "https://www.transtv.co.id"
        assert headers["User-Agent"] == "QueryAgent"

    def test_none_removes_header(self):
        headers = build_impersonation_headers("https://cdn.test/a", DESKTOP_WEB, referer="none", origin="NONE")
        assert "Referer" not in headers
        assert "Origin" not in headers

    def test_bundle_beats_query_params_case_insensitively(self):
        headers = build_impersonation_headers(
            "https://cdn.test/a",
            DESKTOP_WEB,
            referer="https://query.test/",
            header_bundle={"referer": "https://bundle.test/", "X-Custom": "1"},
        )
        assert headers["referer"] == "https://bundle.test/"
        assert "Referer" not in headers
        assert headers["X-Custom"] == "1"

    def test_client_ip_fanned_out(self):
        headers = build_impersonation_headers("https://cdn.test/a", DESKTOP_WEB, client_ip="203.0.113.9")
        for name in CLIENT_IP_HEADERS:
            assert headers[name] == "203.0.113.9"

    def test_client_ip_from_first_hop(self):
        assert client_ip_from("1.2.3.4, 10.0.0.1", "9.9.9.9") == "1.2.3.4"
        assert client_ip_from(None, "9.9.9.9") == "9.9.9.9"
        assert client_ip_from(None, None) is None


class TestHeaderBundle:

    def test_url_safe_round_trip(self):
        bundle = {"Referer": "https://x.test/?a=1", "Cookie": "k=v"}
        assert decode_header_bundle(encode_header_bundle(bundle)) == bundle

    def test_standard_base64_unpadded(self):
        encoded = base64.b64encode(json.dumps({"A": "b"}).encode()).decode().rstrip("=")
        assert decode_header_bundle(encoded) == {"A": "b"}

    @pytest.mark.parametrize("encoded", ["%%%", base64.b64encode(b"[1,2]").decode(), base64.b64encode(b"nope").decode()])
    def test_malformed_bundle_ignored(self, encoded):
        assert decode_header_bundle(encoded) == {}

    def test_empty_bundle(self):
        assert decode_header_bundle(None) == {}
        assert decode_header_bundle("") == {}
