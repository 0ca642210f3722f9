"""
Error types surfaced to the HTTP boundary.
Decode and scan failures never show up here, they become empty/None results.
"""


class PlaylistUnavailableError(Exception):
    """No playlist category could be fetched and nothing is cached."""


class ManifestRewriteError(Exception):
    """Manifest text could not be rewritten; never serve it unrewritten."""


class InvalidLicenseError(ValueError):
    """ClearKey license bundle could not be decoded."""


class UpstreamFetchError(Exception):
    """Network-level failure talking to an upstream origin."""

    def __init__(self, message: str, status_code: int = 502, details: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.details = details

    def to_payload(self, url: str) -> dict:
        return {
            "error": "Network/CDN Error" if self.status_code == 502 else "Upstream Timeout",
            "message": str(self),
            "details": self.details,
            "url": url,
            "suggestion": "Try a different channel or wait a moment and refresh.",
        }
