import logging
import typing
from dataclasses import dataclass
from urllib import parse
from urllib.parse import urlencode

from iptv_proxy.configs import settings
from iptv_proxy.const import FORWARDED_REQUEST_HEADERS, USER_AGENTS
from iptv_proxy.exceptions import InputError
from iptv_proxy.schemas import ProxyParams

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class OutboundRequest:
    method: str
    scheme: str
    host: str
    port: int
    path: str
    headers: dict

    @property
    def url(self) -> str:
        netloc = self.host if ":" not in self.host else f"[{self.host}]"
        if self.port != DEFAULT_PORTS[self.scheme]:
            netloc = f"{netloc}:{self.port}"
        return f"{self.scheme}://{netloc}{self.path}"


def resolve_user_agent(alias: typing.Optional[str]) -> str:
    """
    Resolve a user-agent alias to a full user-agent string.

    Unknown aliases are sent as given, so clients can pass a literal user-agent.
    """
    if not alias:
        alias = settings.default_user_agent
    return USER_AGENTS.get(alias.lower(), alias)


def parse_target_url(url: typing.Optional[str]) -> parse.SplitResult:
    """
    Parse and validate the target URL of a proxy request.

    Raises:
        InputError: If the URL is missing, unparsable or not http(s).
    """
    if not url:
        raise InputError("missing url parameter")
    try:
        target = parse.urlsplit(url.strip())
        # Accessing the port validates it.
        target.port
    except ValueError as e:
        raise InputError(f"invalid url: {e}")
    if target.scheme.lower() not in DEFAULT_PORTS or not target.hostname:
        raise InputError("invalid url")
    return target


def build_outbound_request(
    url: str, params: ProxyParams, inbound_headers: typing.Mapping[str, str]
) -> OutboundRequest:
    """
    Build the outbound request descriptor for one hop.

    Args:
        url (str): The target URL of this hop.
        params (ProxyParams): The proxy request parameters.
        inbound_headers (Mapping): Headers of the incoming client request.

    Returns:
        OutboundRequest: Method, address, path and headers of the upstream call.
    """
    target = parse_target_url(url)
    scheme = target.scheme.lower()
    port = target.port or DEFAULT_PORTS[scheme]

    path = target.path or "/"
    if target.query:
        path = f"{path}?{target.query}"

    headers = {
        "User-Agent": resolve_user_agent(params.ua),
        "Accept": "*/*",
        "Accept-Encoding": "identity",
        "Connection": "close",
    }
    if params.host:
        headers["Host"] = params.host
    for name in FORWARDED_REQUEST_HEADERS:
        value = inbound_headers.get(name)
        if value:
            headers[name.title()] = value
    if params.referer:
        headers["Referer"] = params.referer
    if params.origin:
        headers["Origin"] = params.origin

    return OutboundRequest("GET", scheme, target.hostname, port, path, headers)


def encode_proxy_url(
    endpoint: str,
    target_url: str,
    params: typing.Optional[dict] = None,
    host: typing.Optional[str] = None,
) -> str:
    """
    Encode a self-referential proxy URL.

    Args:
        endpoint (str): The proxy endpoint, relative ("/proxy") or absolute.
        target_url (str): The absolute upstream URL to proxy.
        params (dict, optional): Propagated proxy parameters.
        host (str, optional): Host header override for the target.

    Returns:
        str: The encoded proxy URL.
    """
    query_params = {"url": target_url}
    query_params.update(params or {})
    if host:
        query_params["host"] = host
    return f"{endpoint}?{urlencode(query_params)}"


def get_proxy_endpoint() -> str:
    if settings.proxy_base_url:
        return parse.urljoin(settings.proxy_base_url.rstrip("/") + "/", "proxy")
    return "/proxy"


def is_self_proxy_target(url: str, own_host: typing.Optional[str]) -> bool:
    """Whether the target points back at this server's own /proxy endpoint."""
    if not own_host:
        return False
    target = parse.urlsplit(url)
    return (target.hostname or "").lower() == own_host.lower() and target.path.rstrip("/") == "/proxy"
