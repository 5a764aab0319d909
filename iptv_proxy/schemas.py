from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from iptv_proxy.const import PROPAGATED_PARAMS

TRUTHY_VALUES = ("1", "true", "yes", "on")


def is_truthy(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in TRUTHY_VALUES


def split_codecs(value: Optional[str]) -> list[str]:
    """Split a comma separated codec list into lower-cased tokens."""
    if not value:
        return []
    return [token.strip().lower() for token in value.split(",") if token.strip()]


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProxyParams(GenericParams):
    url: Optional[str] = Field(None, description="The upstream URL to fetch.")
    ua: Optional[str] = Field(None, description="User-agent alias (vlc, chrome, ...) or a literal user-agent.")
    referer: Optional[str] = Field(None, description="Referer header sent upstream.")
    origin: Optional[str] = Field(None, description="Origin header sent upstream.")
    host: Optional[str] = Field(None, description="Host header override sent upstream.")
    cap_kbps: Optional[str] = Field(None, description="Keep only variants at or below this bandwidth (kbit/s).")
    force_lowest: Optional[str] = Field(None, description="Keep only the lowest-bandwidth variant when set to 1.")
    avoid_codecs: Optional[str] = Field(None, description="Comma separated codec tokens to drop from master playlists.")
    prefer_codecs: Optional[str] = Field(None, description="Comma separated codec tokens to prefer in master playlists.")
    inspect: Optional[str] = Field(None, description="Return a JSON diagnostic instead of the content when set to 1.")

    @property
    def wants_lowest(self) -> bool:
        return is_truthy(self.force_lowest)

    @property
    def wants_inspect(self) -> bool:
        return is_truthy(self.inspect)

    @property
    def cap_bandwidth(self) -> Optional[float]:
        """The bandwidth cap in bits per second, or None when unset or not numeric."""
        if not self.cap_kbps:
            return None
        try:
            return float(self.cap_kbps) * 1000
        except ValueError:
            return None

    @property
    def avoid_codec_tokens(self) -> list[str]:
        return split_codecs(self.avoid_codecs)

    @property
    def prefer_codec_tokens(self) -> list[str]:
        return split_codecs(self.prefer_codecs)

    def propagated(self) -> dict[str, str]:
        """The parameters carried forward into every rewritten playlist URI."""
        params = {}
        for name in PROPAGATED_PARAMS:
            value = getattr(self, name)
            if name == "force_lowest":
                if self.wants_lowest:
                    params[name] = "1"
            elif value:
                params[name] = value
        return params


class CompatParams(GenericParams):
    url: Optional[str] = Field(None, description="The source stream URL.")
    mode: Literal["remux", "transcode"] = Field("remux", description="Copy video (remux) or re-encode it (transcode).")
    vbr: Optional[str] = Field(None, description="Video bitrate for transcode mode, e.g. 2500k.")
    abr: Optional[str] = Field(None, description="Audio bitrate, e.g. 128k.")
    wait: str = Field("1", description="Wait until the first segment is available when set to 1.")
    auto_fallback: str = Field("0", description="Fall back to transcode mode when remux does not become ready.")
    ua: Optional[str] = Field(None, description="User-agent alias or literal user-agent for the transcoder.")
    referer: Optional[str] = Field(None, description="Referer header sent by the transcoder.")
    origin: Optional[str] = Field(None, description="Origin header sent by the transcoder.")


class CompatResponse(BaseModel):
    id: str
    mode: Literal["remux", "transcode"]
    play: str
