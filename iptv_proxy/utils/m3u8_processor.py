import logging
import math
import re
import typing
from dataclasses import dataclass, field
from urllib import parse

from iptv_proxy.exceptions import RewriteError
from iptv_proxy.schemas import ProxyParams
from iptv_proxy.utils.request_utils import encode_proxy_url, get_proxy_endpoint

logger = logging.getLogger(__name__)

STREAM_INF_TAG = "#EXT-X-STREAM-INF"
URI_ATTRIBUTE_PATTERN = re.compile(r'URI="([^"]+)"')
ATTRIBUTE_PATTERN = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')


def is_playlist(url: str, headers: typing.Mapping[str, str]) -> bool:
    """Whether a response is an HLS playlist, judged by URL suffix or an mpegurl/m3u8 content-type."""
    path = parse.urlsplit(url).path
    content_type = headers.get("content-type", "").lower()
    return path.lower().endswith(".m3u8") or "mpegurl" in content_type or "m3u8" in content_type


def parse_attributes(line: str) -> dict[str, str]:
    """Parse the attribute list of a tag line, unquoting quoted values."""
    _, _, attributes = line.partition(":")
    return {key: value.strip('"') for key, value in ATTRIBUTE_PATTERN.findall(attributes)}


@dataclass
class Variant:
    info_line: str
    uri: str
    bandwidth: typing.Optional[int] = None
    codecs: typing.Optional[str] = None
    extra_lines: list[str] = field(default_factory=list)

    @classmethod
    def from_lines(cls, info_line: str, uri: str, extra_lines: list[str]) -> "Variant":
        attributes = parse_attributes(info_line)
        bandwidth = None
        if attributes.get("BANDWIDTH", "").isdigit():
            bandwidth = int(attributes["BANDWIDTH"])
        codecs = attributes.get("CODECS")
        return cls(info_line, uri, bandwidth, codecs.lower() if codecs else None, extra_lines)

    def matches(self, tokens: list[str]) -> bool:
        return bool(self.codecs) and any(token in self.codecs for token in tokens)

    @property
    def sort_bandwidth(self) -> float:
        return self.bandwidth if self.bandwidth is not None else math.inf


def lowest_bandwidth(variants: list[Variant]) -> Variant:
    # min() keeps the first of equal keys, so ties go to the first-seen variant.
    return min(variants, key=lambda variant: variant.sort_bandwidth)


def select_variants(
    variants: list[Variant],
    avoid_codecs: list[str] | None = None,
    prefer_codecs: list[str] | None = None,
    force_lowest: bool = False,
    cap_bandwidth: float | None = None,
) -> list[Variant]:
    """
    Apply ABR filtering to the variants of a master playlist.

    Stages run in a fixed order: avoid, prefer, then force_lowest or cap.
    Preference and cap never empty a non-empty pool; avoid may.

    Args:
        variants (list[Variant]): Variants in playlist order.
        avoid_codecs (list[str], optional): Drop variants whose codecs contain any token.
        prefer_codecs (list[str], optional): Narrow to variants matching a token, if any do.
        force_lowest (bool): Keep only the lowest-bandwidth variant.
        cap_bandwidth (float, optional): Keep variants at or below this many bits/sec.

    Returns:
        list[Variant]: Surviving variants, in playlist order.
    """
    pool = list(variants)

    if avoid_codecs:
        pool = [variant for variant in pool if not variant.matches(avoid_codecs)]

    if prefer_codecs:
        preferred = [variant for variant in pool if variant.matches(prefer_codecs)]
        if preferred:
            pool = preferred

    if not pool:
        return pool

    if force_lowest:
        return [lowest_bandwidth(pool)]

    if cap_bandwidth is not None:
        capped = [variant for variant in pool if variant.bandwidth is not None and variant.bandwidth <= cap_bandwidth]
        return capped or [lowest_bandwidth(pool)]

    return pool


@dataclass
class RewriteContext:
    base_url: str
    params: dict[str, str]
    endpoint: str

    def resolve(self, uri: str) -> str:
        return parse.urljoin(self.base_url, uri.strip())

    def proxy(self, absolute_uri: str, with_host: bool = False) -> str:
        host = None
        if with_host:
            host = parse.urlsplit(absolute_uri).netloc.rpartition("@")[2]
        return encode_proxy_url(self.endpoint, absolute_uri, self.params, host=host)


def is_proxyable(url: str) -> bool:
    return parse.urlsplit(url).scheme.lower() in ("http", "https")


class M3U8Processor:
    def __init__(self, params: ProxyParams, proxy_endpoint: str | None = None):
        """
        Initializes the M3U8Processor with the proxy parameters to carry forward.

        Args:
            params (ProxyParams): The parameters of the proxy request being served.
            proxy_endpoint (str, optional): The proxy endpoint rewritten URIs point at.
        """
        self.params = params
        self.proxy_endpoint = proxy_endpoint or get_proxy_endpoint()

    @staticmethod
    def decode(body: bytes) -> str:
        """
        Decode a playlist body.

        Raises:
            RewriteError: If the body is not valid UTF-8.
        """
        try:
            return body.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise RewriteError(f"m3u8 rewrite failed: body is not valid utf-8 ({e})")

    def process_m3u8(self, content: str, base_url: str) -> str:
        """
        Rewrites the playlist so that every URI it references goes through the proxy.

        Args:
            content (str): The playlist text.
            base_url (str): The URL the playlist was fetched from, after redirects.

        Returns:
            str: The rewritten playlist.

        Raises:
            RewriteError: If the playlist cannot be rewritten.
        """
        context = RewriteContext(base_url, self.params.propagated(), self.proxy_endpoint)
        lines = content.splitlines()
        try:
            if any(line.strip().startswith(STREAM_INF_TAG) for line in lines):
                processed_lines = self.process_master(lines, context)
            else:
                processed_lines = self.process_media(lines, context)
        except RewriteError:
            raise
        except Exception as e:
            logger.exception(f"Error rewriting playlist {base_url}")
            raise RewriteError(f"m3u8 rewrite failed: {e}")
        return "\n".join(processed_lines) + "\n"

    def process_master(self, lines: list[str], context: RewriteContext) -> list[str]:
        header_lines = []
        variants = []
        pending_info = None
        pending_extra: list[str] = []

        for line in lines:
            stripped = line.strip()
            if stripped.startswith(STREAM_INF_TAG):
                if pending_info is not None:
                    logger.warning(f"Dropping stream-info without URI: {pending_info}")
                pending_info, pending_extra = stripped, []
            elif pending_info is not None:
                if not stripped:
                    continue
                if stripped.startswith("#"):
                    pending_extra.append(self.process_tag_line(stripped, context))
                    continue
                variants.append(Variant.from_lines(pending_info, context.resolve(stripped), pending_extra))
                pending_info, pending_extra = None, []
            elif stripped and not stripped.startswith("#"):
                header_lines.append(self.proxy_content_url(stripped, context))
            else:
                header_lines.append(self.process_tag_line(line, context))

        if pending_info is not None:
            logger.warning(f"Dropping trailing stream-info without URI: {pending_info}")

        selected = select_variants(
            variants,
            avoid_codecs=self.params.avoid_codec_tokens,
            prefer_codecs=self.params.prefer_codec_tokens,
            force_lowest=self.params.wants_lowest,
            cap_bandwidth=self.params.cap_bandwidth,
        )
        logger.info(f"Rewrote master playlist {context.base_url}: kept {len(selected)} of {len(variants)} variants")

        processed_lines = header_lines
        for variant in selected:
            processed_lines.append(variant.info_line)
            processed_lines.extend(variant.extra_lines)
            if is_proxyable(variant.uri):
                processed_lines.append(context.proxy(variant.uri, with_host=True))
            else:
                processed_lines.append(variant.uri)
        return processed_lines

    def process_media(self, lines: list[str], context: RewriteContext) -> list[str]:
        processed_lines = []
        for line in lines:
            stripped = line.strip()
            if stripped and not stripped.startswith("#"):
                processed_lines.append(self.proxy_content_url(stripped, context))
            else:
                processed_lines.append(self.process_tag_line(line, context))
        return processed_lines

    def proxy_content_url(self, uri: str, context: RewriteContext) -> str:
        full_url = context.resolve(uri)
        if not is_proxyable(full_url):
            logger.debug(f"Leaving non-http URI untouched: {full_url}")
            return full_url
        return context.proxy(full_url)

    def process_tag_line(self, line: str, context: RewriteContext) -> str:
        """
        Proxies the URI attribute of a tag line (keys, renditions, init sections).
        """
        if not line.startswith("#") or "URI=" not in line:
            return line

        def replace(match: re.Match) -> str:
            full_url = context.resolve(match.group(1))
            if not is_proxyable(full_url):
                return match.group(0)
            return f'URI="{context.proxy(full_url)}"'

        return URI_ATTRIBUTE_PATTERN.sub(replace, line)
