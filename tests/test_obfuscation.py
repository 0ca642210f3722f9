"""
Tests for the playlist obfuscation codec.
"""
import base64

from tvrelay.services import obfuscation


class TestDecode:

    def test_round_trip_ascii(self):
        text = '{"info": [{"name": "RCTI"}]}'
        assert obfuscation.decode(obfuscation.encode(text)) == text

    def test_round_trip_non_ascii(self):
        """Channel names carry accents and emoji."""
        text = '{"name": "Télé Indonésia ⚽ 📺"}'
        assert obfuscation.decode(obfuscation.encode(text)) == text

    def test_encoded_form_is_not_plain_base64(self):
        text = "hello playlist"
        encoded = obfuscation.encode(text)
        assert encoded != base64.b64encode(text.encode()).decode()
        assert text not in encoded

    def test_invalid_base64_returns_empty(self):
        assert obfuscation.decode("not base64!!") == ""

    def test_bad_padding_returns_empty(self):
        assert obfuscation.decode("abc") == ""

    def test_second_stage_not_base64_returns_empty(self):
        # Valid first stage whose plaintext is not base64
        outer = base64.b64encode("@@@@".encode("latin-1")).decode()[::-1]
        assert obfuscation.decode(outer) == ""

    def test_invalid_utf8_returns_empty(self):
        inner = base64.b64encode(b"\xff\xfe\xfd").decode()[::-1]
        outer = base64.b64encode(inner.encode("latin-1")).decode()[::-1]
        assert obfuscation.decode(outer) == ""

    def test_empty_input(self):
        assert obfuscation.decode("") == ""
