"""
Playlist recovery scanner.

Upstream payloads carry an unknown-length prefix before the obfuscated
body and no delimiter marks where the body starts. The scanner brute
forces the start offset against the codec until valid JSON comes out.
"""
import json
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from tvrelay.services import obfuscation

logger = logging.getLogger(__name__)

DEFAULT_MAX_OFFSET = 1000
COMMON_OFFSET = 98

# Keys under which upstream ships the channel array
PLAYLIST_KEYS = ("info", "channels", "data")


@dataclass(frozen=True)
class ScanResult:
    offset: int
    json: str


def looks_like_playlist(data) -> bool:
    """A bare array, or an object holding an array under a known key."""
    if isinstance(data, list):
        return True
    if isinstance(data, dict):
        return any(isinstance(data.get(key), list) for key in PLAYLIST_KEYS)
    return False


def candidate_offsets(
    length: int,
    max_offset: int = DEFAULT_MAX_OFFSET,
    common_offset: int = COMMON_OFFSET,
) -> Iterator[int]:
    """Common offset first, then every other offset in ascending order."""
    bound = min(max_offset, length)
    if 0 <= common_offset < bound:
        yield common_offset
    for offset in range(bound):
        if offset != common_offset:
            yield offset


def _try_offset(blob: str, offset: int) -> Optional[str]:
    # Strict base64 needs whole quanta
    if (len(blob) - offset) % 4:
        return None
    trimmed = obfuscation.decode(blob[offset:]).strip()
    if not trimmed.startswith("{"):
        return None
    # Anything after the last closing brace is trailing garbage
    candidate = trimmed[: trimmed.rfind("}") + 1]
    if not candidate:
        return None
    try:
        json.loads(candidate)
    except ValueError:
        return None
    return candidate


def recover(
    blob: str,
    max_offset: int = DEFAULT_MAX_OFFSET,
    common_offset: int = COMMON_OFFSET,
) -> Optional[ScanResult]:
    """
    Find the payload offset and return the recovered JSON text.

    Plaintext playlists are accepted as-is at offset 0, since upstream may
    stop obfuscating at any time. Returns None when no offset decodes.
    """
    try:
        if looks_like_playlist(json.loads(blob)):
            return ScanResult(offset=0, json=blob)
    except ValueError:
        pass

    # Trailing newlines would break strict base64 at every offset
    body = blob.rstrip()
    for offset in candidate_offsets(len(body), max_offset, common_offset):
        candidate = _try_offset(body, offset)
        if candidate is not None:
            logger.info(f"Decrypted playlist payload at offset {offset}")
            return ScanResult(offset=offset, json=candidate)

    logger.warning(f"Offset scan exhausted {min(max_offset, len(body))} offsets without valid JSON")
    return None


def decrypt_payload(
    blob: str,
    max_offset: int = DEFAULT_MAX_OFFSET,
    common_offset: int = COMMON_OFFSET,
) -> str:
    """Recovered JSON text, or the raw blob as a last-resort fallback."""
    result = recover(blob, max_offset, common_offset)
    return result.json if result else blob
