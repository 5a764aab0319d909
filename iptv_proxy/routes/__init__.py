from .proxy import proxy_router
from .compat import compat_router

__all__ = ["proxy_router", "compat_router"]
