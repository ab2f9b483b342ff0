"""
Reference streaming backend built on asyncio.

It satisfies the server, session, authentication database, and event loop
contracts the bootstrap expects.
"""

from .auth import UserAuthenticationDatabase
from .server import (
    AsyncioEventLoop,
    ProxyRtspServer,
    ProxySession,
    ProxySessionFactory,
    RtspServerFactory,
)

__all__ = [
    "AsyncioEventLoop",
    "ProxyRtspServer",
    "ProxySession",
    "ProxySessionFactory",
    "RtspServerFactory",
    "UserAuthenticationDatabase",
]
