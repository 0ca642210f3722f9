"""
Reversible obfuscation codec for upstream playlist payloads.

The payload is produced by: reverse -> base64 (UTF-8) -> reverse -> base64
(Latin-1) -> reverse. ``decode`` undoes exactly that and fails soft.
"""
import base64
import binascii


def _reverse(text: str) -> str:
    return text[::-1]


def decode(text: str) -> str:
    """
    Recover the candidate plaintext of an obfuscated string.
    Returns "" when either base64 stage or the UTF-8 stage is malformed.
    """
    try:
        stage1 = base64.b64decode(_reverse(text), validate=True).decode("latin-1")
        stage2 = base64.b64decode(_reverse(stage1), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return ""
    return _reverse(stage2)


def encode(text: str) -> str:
    """Inverse of ``decode``; used to build fixtures and test payloads."""
    stage1 = base64.b64encode(_reverse(text).encode("utf-8")).decode("ascii")
    stage2 = base64.b64encode(_reverse(stage1).encode("latin-1")).decode("ascii")
    return _reverse(stage2)
