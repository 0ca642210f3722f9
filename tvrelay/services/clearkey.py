"""
ClearKey license translation.

Channel records carry ClearKey material as a base64url JSON bundle
``{"keys": [{"kid": <b64>, "k": <b64>}]}``. EME expects JWK-style
``{"keys": [{"kty": "oct", "kid": <b64url>, "k": <b64url>}]}``.
"""
import base64
import binascii
import json
from typing import Optional

from tvrelay.services.errors import InvalidLicenseError


def _b64_normalize(value: str) -> str:
    normalized = value.strip().replace("-", "+").replace("_", "/")
    return normalized + "=" * (-len(normalized) % 4)


def to_base64url(value: str) -> str:
    """Standard or url-safe base64 -> unpadded base64url."""
    return value.strip().replace("+", "-").replace("/", "_").rstrip("=")


def b64_to_hex(value: str) -> str:
    return base64.b64decode(_b64_normalize(value)).hex()


def decode_license_bundle(license_param: str) -> list[dict[str, str]]:
    """Key entries of a license bundle; InvalidLicenseError if unusable."""
    try:
        data = json.loads(base64.b64decode(_b64_normalize(license_param)).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise InvalidLicenseError(f"Undecodable license bundle: {e}") from e

    keys = data.get("keys") if isinstance(data, dict) else None
    if not isinstance(keys, list):
        raise InvalidLicenseError("Invalid license data format")

    entries = []
    for key in keys:
        if not isinstance(key, dict) or not key.get("kid") or not key.get("k"):
            raise InvalidLicenseError("License key entry needs kid and k")
        entries.append({"kid": str(key["kid"]), "k": str(key["k"])})
    return entries


def build_license_response(license_param: str, requested_kids: Optional[list[str]] = None) -> dict:
    """
    EME ClearKey license for every key in the bundle.
    ``requested_kids`` is accepted but not used to filter.
    """
    keys = decode_license_bundle(license_param)
    return {
        "keys": [
            {"kty": "oct", "kid": to_base64url(key["kid"]), "k": to_base64url(key["k"])}
            for key in keys
        ],
        "type": "temporary",
    }


def clearkey_hex_map(license_param: str) -> dict[str, str]:
    """hex kid -> hex key, the shape player ClearKey configs take."""
    try:
        return {b64_to_hex(key["kid"]): b64_to_hex(key["k"]) for key in decode_license_bundle(license_param)}
    except binascii.Error as e:
        raise InvalidLicenseError(f"Undecodable key material: {e}") from e
