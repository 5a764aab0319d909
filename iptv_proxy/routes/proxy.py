from typing import Annotated

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from iptv_proxy.handlers import handle_proxy_request
from iptv_proxy.schemas import ProxyParams

proxy_router = APIRouter()


@proxy_router.get("/proxy", name="proxy_endpoint")
async def proxy_endpoint(
    request: Request,
    proxy_params: Annotated[ProxyParams, Query()],
) -> Response:
    """
    Proxify a stream, playlist or segment.

    Redirects are followed server-side. HLS playlists are rewritten so that
    every URI they reference comes back through this endpoint with the same
    headers and ABR constraints; anything else is streamed through.

    Args:
        request (Request): The incoming HTTP request.
        proxy_params (ProxyParams): The target URL and propagated parameters.

    Returns:
        Response: The rewritten playlist, the streamed content or a diagnostic.
    """
    return await handle_proxy_request(request, proxy_params)
