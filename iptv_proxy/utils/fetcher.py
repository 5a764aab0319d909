"""
Redirect-following upstream fetcher.

One resolution chain walks the states below. Each hop is an independent
request on a fresh connection; hop N+1 starts only after hop N's headers
are known.

    REQUESTING -> REDIRECTING -> REQUESTING ...
    REQUESTING -> INSPECTING | REWRITING | STREAMING | FAILED

Requesting and redirecting happen inside ``fetch_with_redirects``; failures
are raised as ``ProxyError`` subclasses. ``FetchState`` names the states that
consume a successful response.
"""

import logging
import typing
from dataclasses import dataclass
from enum import Enum
from urllib import parse

import anyio
import httpx

from iptv_proxy.configs import settings
from iptv_proxy.const import REDIRECT_STATUS_CODES
from iptv_proxy.exceptions import HopLimitError, InputError, RedirectError, UpstreamError, UpstreamTimeoutError
from iptv_proxy.schemas import ProxyParams
from iptv_proxy.utils.http_utils import create_httpx_client
from iptv_proxy.utils.m3u8_processor import is_playlist
from iptv_proxy.utils.request_utils import build_outbound_request, parse_target_url

logger = logging.getLogger(__name__)


class FetchState(str, Enum):
    INSPECTING = "inspecting"
    REWRITING = "rewriting"
    STREAMING = "streaming"


@dataclass
class UpstreamResponse:
    """A successful (non-redirect) upstream response with an unread body."""

    url: str
    response: httpx.Response
    client: httpx.AsyncClient
    hops: int

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    async def aclose(self) -> None:
        with anyio.CancelScope(shield=True):
            await self.response.aclose()
            await self.client.aclose()


async def _request_hop(url: str, params: ProxyParams, inbound_headers: typing.Mapping[str, str]):
    outbound = build_outbound_request(url, params, inbound_headers)
    client = create_httpx_client()
    try:
        request = client.build_request(outbound.method, outbound.url, headers=outbound.headers)
        response = await client.send(request, stream=True)
    except httpx.TimeoutException:
        logger.warning(f"Timeout while requesting {url}")
        await _close_client(client)
        raise UpstreamTimeoutError(f"timeout while requesting {url}")
    except httpx.HTTPError as e:
        logger.error(f"Upstream error while requesting {url}: {e}")
        await _close_client(client)
        raise UpstreamError(f"upstream error: {e}")
    except BaseException:
        await _close_client(client)
        raise
    return client, response


async def _close_client(client: httpx.AsyncClient, response: httpx.Response | None = None) -> None:
    with anyio.CancelScope(shield=True):
        if response is not None:
            await response.aclose()
        await client.aclose()


async def fetch_with_redirects(
    url: str,
    params: ProxyParams,
    inbound_headers: typing.Mapping[str, str],
    max_redirects: int | None = None,
) -> UpstreamResponse:
    """
    Fetch ``url``, following redirects hop by hop.

    Args:
        url (str): The initial target URL.
        params (ProxyParams): The proxy request parameters, applied on every hop.
        inbound_headers (Mapping): Headers of the incoming client request.
        max_redirects (int, optional): Redirect bound; defaults to the configured one.

    Returns:
        UpstreamResponse: The final response, body not yet read. The caller owns it
        and must close it.

    Raises:
        InputError: If the initial target is not a valid URL.
        RedirectError: If a redirect has no usable Location header.
        HopLimitError: If more than ``max_redirects`` redirects are seen.
        UpstreamError: On transport errors.
        UpstreamTimeoutError: On outbound timeouts.
    """
    if max_redirects is None:
        max_redirects = settings.max_redirects

    hops = 0
    while True:
        client, response = await _request_hop(url, params, inbound_headers)

        if response.status_code not in REDIRECT_STATUS_CODES:
            return UpstreamResponse(url=url, response=response, client=client, hops=hops)

        # Redirect: discard the body, the connection is not reused.
        location = response.headers.get("location")
        await _close_client(client, response)
        if not location:
            logger.error(f"Redirect {response.status_code} from {url} without Location header")
            raise RedirectError("redirect without location")

        hops += 1
        if hops > max_redirects:
            logger.error(f"Redirect limit of {max_redirects} exceeded at {url}")
            raise HopLimitError(f"too many redirects (limit {max_redirects})")

        next_url = parse.urljoin(url, location)
        try:
            next_target = parse_target_url(next_url)
        except InputError:
            logger.error(f"Redirect from {url} to invalid location {location!r}")
            raise RedirectError(f"redirect to invalid location: {location}")
        if params.host and next_target.hostname != parse.urlsplit(url).hostname:
            # The Host override names the original target, not the host redirected to.
            logger.debug(f"Dropping Host override {params.host} after redirect to {next_target.hostname}")
            params = params.model_copy(update={"host": None})
        logger.info(f"Following redirect {response.status_code} ({hops}/{max_redirects}): {url} -> {next_url}")
        url = next_url


def classify(upstream: UpstreamResponse, inspect: bool = False) -> FetchState:
    """Pick the state that consumes a successful upstream response."""
    if inspect:
        return FetchState.INSPECTING
    if is_playlist(upstream.url, upstream.headers):
        return FetchState.REWRITING
    return FetchState.STREAMING


async def read_body(upstream: UpstreamResponse) -> bytes:
    """
    Buffer the whole upstream body.

    Raises:
        UpstreamError: On read errors.
        UpstreamTimeoutError: On read timeouts.
    """
    try:
        return await upstream.response.aread()
    except httpx.TimeoutException:
        logger.warning(f"Timeout while reading {upstream.url}")
        raise UpstreamTimeoutError(f"timeout while reading {upstream.url}")
    except httpx.HTTPError as e:
        logger.error(f"Upstream error while reading {upstream.url}: {e}")
        raise UpstreamError(f"upstream error: {e}")


async def inspect_upstream(upstream: UpstreamResponse, max_chunks: int | None = None) -> dict:
    """
    Build a diagnostic of the upstream response from a bounded body prefix.

    Args:
        upstream (UpstreamResponse): The resolved upstream response.
        max_chunks (int, optional): Number of chunks to buffer at most.

    Returns:
        dict: Resolved URL, status, headers, hop count, rewrite decision and body preview.
    """
    if max_chunks is None:
        max_chunks = settings.inspect_max_chunks

    chunks = []
    truncated = False
    try:
        async for chunk in upstream.response.aiter_bytes():
            chunks.append(chunk)
            if len(chunks) >= max_chunks:
                truncated = True
                break
    except httpx.HTTPError as e:
        logger.warning(f"Error while reading body prefix of {upstream.url}: {e}")
        truncated = True

    preview = b"".join(chunks).decode("utf-8", errors="replace")
    if len(preview) > settings.inspect_preview_chars:
        preview = preview[: settings.inspect_preview_chars]
        truncated = True

    return {
        "url": upstream.url,
        "status": upstream.status_code,
        "hops": upstream.hops,
        "headers": dict(upstream.headers.multi_items()),
        "rewrite": is_playlist(upstream.url, upstream.headers),
        "truncated": truncated,
        "body_preview": preview,
    }
