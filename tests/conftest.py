"""
Pytest configuration for the proxy and compatibility tests.

Upstream origins are simulated with httpx.MockTransport, and the transcoder
is replaced by an in-process fake, so no network or ffmpeg is needed.
"""

import typing

import httpx
import pytest

from iptv_proxy.configs import settings


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def mock_upstream(monkeypatch):
    """
    Factory fixture that routes every outbound hop to a request handler.

    Usage:
        def test_something(mock_upstream):
            mock_upstream(lambda request: httpx.Response(200, content=b"ok"))
    """

    def _install(handler: typing.Callable[[httpx.Request], httpx.Response]) -> None:
        def _create_client(**kwargs) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)

        monkeypatch.setattr("iptv_proxy.utils.fetcher.create_httpx_client", _create_client)

    return _install


@pytest.fixture(autouse=True)
def relative_proxy_urls(monkeypatch):
    """Rewritten playlists point at the relative /proxy endpoint in tests."""
    monkeypatch.setattr(settings, "proxy_base_url", None)
