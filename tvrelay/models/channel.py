"""
Channel, playlist snapshot and playback plan models.
Canonical shapes for the heterogeneous upstream playlist records.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def is_http_url(value: Optional[str]) -> bool:
    """True for absolute http:// or https:// URLs."""
    return bool(value) and value.startswith(("http://", "https://"))


class StreamKind(str, Enum):
    HLS = "hls"
    DASH = "dash"
    DASH_CLEARKEY = "dash-clearkey"
    DASH_WIDEVINE = "dash-widevine"

    @property
    def is_dash(self) -> bool:
        return self is not StreamKind.HLS


class DrmDirective(str, Enum):
    """DRM transform requested for a proxied DASH manifest."""
    NONE = ""
    CLEARKEY = "clearkey"
    WIDEVINE = "widevine"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DrmDirective":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.NONE


class Channel(BaseModel):
    """Playable channel normalized from an upstream playlist record."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    stream_url: str = ""
    license_ref: Optional[str] = None
    license_headers: Optional[str] = None
    stream_kind: StreamKind = StreamKind.HLS
    category: str

    # Display fields carried over from upstream
    logo: Optional[str] = None
    tagline: Optional[str] = None
    request_headers: Optional[str] = None  # upstream header_iptv, JSON
    is_live: Optional[bool] = None

    @property
    def license_is_stream(self) -> bool:
        """
        Malformed records put the real stream in the license field.
        Detected when the primary locator is not a URL but the license is.
        """
        return not is_http_url(self.stream_url) and is_http_url(self.license_ref)

    def playable_url(self) -> str:
        """Best locator to hand to a player, never the license server."""
        if self.license_is_stream:
            return self.license_ref
        return self.stream_url

    def license_server_url(self) -> Optional[str]:
        """License field when it is an actual DRM license server URL."""
        if is_http_url(self.license_ref) and not self.license_is_stream:
            return self.license_ref
        return None


class PlaylistSnapshot(BaseModel):
    """Immutable batch of channels from one successful upstream fetch."""
    model_config = ConfigDict(frozen=True)

    channels_by_category: dict[str, list[Channel]] = Field(default_factory=dict)
    version_tag: str
    fetched_at: int  # epoch milliseconds

    @property
    def total_channels(self) -> int:
        return sum(len(channels) for channels in self.channels_by_category.values())

    def find_channel(self, category: str, channel_id: str) -> Optional[Channel]:
        for channel in self.channels_by_category.get(category, []):
            if channel.id == channel_id:
                return channel
        return None

    def to_response(self) -> dict:
        """Wire shape: {<category>: Channel[], version, lastUpdated}."""
        payload = {
            category: [ch.model_dump(mode="json", by_alias=True) for ch in channels]
            for category, channels in self.channels_by_category.items()
        }
        payload["version"] = self.version_tag
        payload["lastUpdated"] = self.fetched_at
        return payload

    @classmethod
    def from_response(cls, payload: dict) -> "PlaylistSnapshot":
        """Rebuild a snapshot from its wire shape."""
        channels = {
            category: [Channel.model_validate(ch) for ch in items]
            for category, items in payload.items()
            if category not in ("version", "lastUpdated") and isinstance(items, list)
        }
        return cls(
            channels_by_category=channels,
            version_tag=str(payload.get("version", "default")),
            fetched_at=int(payload.get("lastUpdated", 0)),
        )


class PlaybackPlan(BaseModel):
    """How a player should open a channel through the proxy."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channel_id: str
    stream_kind: StreamKind
    stream_url: str
    proxy_url: str
    drm: DrmDirective = DrmDirective.NONE
    android: bool = False
    clear_keys: Optional[dict[str, str]] = None  # hex kid -> hex key
    clearkey_license_url: Optional[str] = None
    widevine_license_url: Optional[str] = None
    license_headers: Optional[dict[str, str]] = None
