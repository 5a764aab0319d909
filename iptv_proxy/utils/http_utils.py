import logging
import typing
from functools import partial

import anyio
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.types import Receive, Send, Scope

from iptv_proxy.configs import settings
from iptv_proxy.exceptions import ClientDisconnected, UpstreamError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


def create_httpx_client(**kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient for a single outbound hop.

    Redirects are never followed by the client, and keep-alive is disabled so
    that each hop opens a fresh connection.

    Args:
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("timeout", settings.upstream_timeout)
    kwargs.setdefault("limits", httpx.Limits(max_keepalive_connections=0))
    kwargs.setdefault("verify", not settings.transport_config.disable_ssl_verification_globally)
    return httpx.AsyncClient(
        mounts=settings.transport_config.get_mounts(),
        follow_redirects=False,
        **kwargs,
    )


async def run_until_disconnect(request: Request, func: typing.Callable[[], typing.Awaitable[T]]) -> T:
    """
    Run ``func`` while watching the client connection.

    If the client disconnects first, ``func`` is cancelled, so an in-flight
    outbound request or redirect chain is aborted.

    Raises:
        ClientDisconnected: If the client went away before ``func`` finished.
    """
    outcome: dict[str, typing.Any] = {}

    async with anyio.create_task_group() as task_group:

        async def watch() -> None:
            while True:
                message = await request.receive()
                if message["type"] == "http.disconnect":
                    logger.info("Client disconnected before the upstream answered, aborting")
                    task_group.cancel_scope.cancel()
                    return

        task_group.start_soon(watch)
        # Errors are kept out of the task group so callers see them unwrapped.
        try:
            outcome["result"] = await func()
        except Exception as e:
            outcome["error"] = e
        task_group.cancel_scope.cancel()

    if "error" in outcome:
        raise outcome["error"]
    if "result" not in outcome:
        raise ClientDisconnected()
    return outcome["result"]


class Streamer:
    def __init__(self, upstream):
        """
        Initialize a Streamer for an upstream response whose headers are known.

        Args:
            upstream (UpstreamResponse): The resolved upstream response.
        """
        self.upstream = upstream
        self.bytes_transferred = 0

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator, without buffering.
        """
        try:
            async for chunk in self.upstream.response.aiter_bytes():
                yield chunk
                self.bytes_transferred += len(chunk)
        except httpx.TimeoutException:
            logger.warning(f"Timeout while streaming {self.upstream.url}")
            raise UpstreamTimeoutError("timeout while streaming")
        except httpx.HTTPError as e:
            logger.error(f"Upstream error while streaming {self.upstream.url}: {e}")
            raise UpstreamError(f"upstream error while streaming: {e}")
        except GeneratorExit:
            logger.info(f"Streaming session stopped by the client after {self.bytes_transferred} bytes")
            raise

    async def close(self):
        """
        Close the upstream response and its client.
        """
        await self.upstream.aclose()


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterator[typing.Any]

    def __init__(
        self,
        content: typing.AsyncIterable[typing.Any],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content.__aiter__()
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0
        self.response_started = False

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming.
        """
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                break

    async def send_error(self, send: Send, error: Exception) -> None:
        status_code = getattr(error, "status_code", 502)
        await send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": [(b"content-type", b"text/plain; charset=utf-8")],
            }
        )
        self.response_started = True
        await send({"type": "http.response.body", "body": f"Streaming error: {error}".encode("utf-8")})

    async def stream_response(self, send: Send) -> None:
        """
        Stream the response body in chunks.

        The first chunk is pulled before the status line is sent, so an upstream
        failure at that point still yields an error status. A failure after
        that propagates and the server drops the connection.
        """
        try:
            first_chunk = await self.body_iterator.__anext__()
        except StopAsyncIteration:
            first_chunk = b""
        except Exception as e:
            logger.error(f"Upstream failed before any data was streamed: {e}")
            await self.send_error(send, e)
            return

        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        self.response_started = True

        try:
            if first_chunk:
                await send({"type": "http.response.body", "body": first_chunk, "more_body": True})
                self.actual_content_length += len(first_chunk)
            async for chunk in self.body_iterator:
                if not isinstance(chunk, (bytes, memoryview)):
                    chunk = chunk.encode(self.charset)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.actual_content_length += len(chunk)
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info("Client disconnected during streaming")
            return
        except Exception as e:
            logger.warning(f"Aborting stream after {self.actual_content_length} bytes: {e}")
            raise

        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        try:
            async with anyio.create_task_group() as task_group:

                async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                    await func()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(wrap, partial(self.stream_response, send))
                await wrap(partial(self.listen_for_disconnect, receive))
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            with anyio.CancelScope(shield=True):
                if aclose is not None:
                    await aclose()
                if self.background is not None:
                    await self.background()
