import logging

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .const import HLS_CONTENT_TYPE, STRIPPED_PLAYLIST_HEADERS, STRIPPED_STREAM_HEADERS
from .exceptions import ClientDisconnected, InputError, ProxyError
from .schemas import ProxyParams
from .utils.fetcher import FetchState, UpstreamResponse, classify, fetch_with_redirects, inspect_upstream, read_body
from .utils.http_utils import EnhancedStreamingResponse, Streamer, run_until_disconnect
from .utils.m3u8_processor import M3U8Processor
from .utils.request_utils import is_self_proxy_target, parse_target_url

logger = logging.getLogger(__name__)

# Non-standard status logged when the client left before an answer existed.
CLIENT_CLOSED_REQUEST = 499


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: An HTTP response corresponding to the exception type.
    """
    if isinstance(exception, ProxyError):
        logger.error(f"{type(exception).__name__} while handling request: {exception.message}")
        return Response(status_code=exception.status_code, content=exception.message)
    elif isinstance(exception, ClientDisconnected):
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    elif isinstance(exception, httpx.TimeoutException):
        logger.warning(f"Upstream timeout while handling request: {exception}")
        return Response(status_code=504, content="timeout")
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return Response(status_code=502, content=f"proxy error: {exception}")


def filter_headers(headers: httpx.Headers, stripped: list[str]) -> dict:
    return {k: v for k, v in headers.multi_items() if k.lower() not in stripped}


async def handle_proxy_request(request: Request, params: ProxyParams) -> Response:
    """
    Handle a /proxy request.

    Resolves the redirect chain, then either returns a diagnostic, rewrites a
    playlist, or streams the body through.

    Args:
        request (Request): The incoming FastAPI request object.
        params (ProxyParams): The proxy request parameters.

    Returns:
        Response: The rewritten playlist, a streaming response, a diagnostic or an error.
    """
    try:
        target = parse_target_url(params.url)
        if is_self_proxy_target(target.geturl(), request.url.hostname):
            raise InputError("refusing to proxy to this proxy")
        upstream = await run_until_disconnect(
            request, lambda: fetch_with_redirects(target.geturl(), params, request.headers)
        )
    except Exception as e:
        return handle_exceptions(e)

    state = classify(upstream, inspect=params.wants_inspect)
    logger.debug(f"Upstream {upstream.url} answered {upstream.status_code} after {upstream.hops} hops -> {state.value}")

    if state is FetchState.STREAMING:
        return stream_upstream(upstream)

    try:
        if state is FetchState.INSPECTING:
            return JSONResponse(await inspect_upstream(upstream))
        return await rewrite_playlist(upstream, params)
    except Exception as e:
        return handle_exceptions(e)
    finally:
        await upstream.aclose()


async def rewrite_playlist(upstream: UpstreamResponse, params: ProxyParams) -> Response:
    """
    Buffers and rewrites a playlist response.

    Args:
        upstream (UpstreamResponse): The resolved upstream response.
        params (ProxyParams): The proxy parameters to propagate.

    Returns:
        Response: The rewritten playlist with the upstream status.
    """
    body = await read_body(upstream)
    processor = M3U8Processor(params)
    content = processor.process_m3u8(processor.decode(body), upstream.url)

    response_headers = filter_headers(upstream.headers, STRIPPED_PLAYLIST_HEADERS)
    return Response(
        content=content,
        status_code=upstream.status_code,
        headers=response_headers,
        media_type=HLS_CONTENT_TYPE,
    )


def stream_upstream(upstream: UpstreamResponse) -> Response:
    """
    Stream a non-playlist response through without buffering.

    Args:
        upstream (UpstreamResponse): The resolved upstream response.

    Returns:
        EnhancedStreamingResponse: Streams the body and closes the upstream when done.
    """
    stripped = list(STRIPPED_STREAM_HEADERS)
    if "content-encoding" in upstream.headers:
        # Bytes are yielded decoded, so the upstream length no longer applies.
        stripped.append("content-length")
    streamer = Streamer(upstream)
    return EnhancedStreamingResponse(
        streamer.stream_content(),
        status_code=upstream.status_code,
        headers=filter_headers(upstream.headers, stripped),
        background=BackgroundTask(streamer.close),
    )
