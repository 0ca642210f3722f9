"""
Per-request proxy context.
Built once per incoming browser request and never persisted.
"""
from dataclasses import dataclass
from typing import Optional

from tvrelay.models.channel import DrmDirective


@dataclass
class ProxiedRequestContext:
    """Everything the proxy needs to forward one request upstream."""
    target_url: str
    profile_name: str
    headers: dict[str, str]
    android: bool = False
    client_ip: Optional[str] = None
    drm: DrmDirective = DrmDirective.NONE
    range_header: Optional[str] = None
    accept: Optional[str] = None
    header_bundle: Optional[str] = None  # raw p_headers value

    def profile_params(self) -> dict[str, str]:
        """Query parameters that reproduce this impersonation on child requests."""
        params = {
            "referer": self.headers.get("Referer") or "none",
            "origin": self.headers.get("Origin") or "none",
            "user_agent": self.headers.get("User-Agent", ""),
            "profile": self.profile_name,
        }
        if self.android:
            params["android"] = "1"
        if self.header_bundle:
            params["p_headers"] = self.header_bundle
        return params
