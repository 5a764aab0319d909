class ProxyError(Exception):
    """Base error carrying the HTTP status it is reported with."""

    status_code = 502

    def __init__(self, message: str, status_code: int | None = None):
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        super().__init__(message)


class InputError(ProxyError):
    """Missing or invalid client input."""

    status_code = 400


class UpstreamError(ProxyError):
    """Connect or read failure against the upstream origin."""

    status_code = 502


class UpstreamTimeoutError(ProxyError):
    status_code = 504


class RedirectError(ProxyError):
    """Redirect response without a usable Location header."""

    status_code = 502


class HopLimitError(RedirectError):
    status_code = 508


class RewriteError(ProxyError):
    """Playlist body could not be decoded or rewritten."""

    status_code = 502


class TranscoderError(ProxyError):
    """The external transcoder could not be started or exited abnormally."""

    status_code = 500


class JobNotReadyError(ProxyError):
    """A transcode job did not produce its first segment within its wait window."""

    status_code = 502


class ClientDisconnected(Exception):
    """The client went away before the upstream answered."""
