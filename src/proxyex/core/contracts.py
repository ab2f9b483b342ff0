"""
Interfaces of the streaming backend that the bootstrap drives.

The bootstrap never touches sockets or media itself: it asks a server factory
for a bound RTSP server, a session factory for one proxy session per stream,
and finally hands control to an event loop that does not return. Any backend
implementing these protocols can be plugged in.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .config import Transport


@runtime_checkable
class AuthDatabase(Protocol):
    """Username/password store consulted by the server."""

    def add_record(self, username: str, password: str) -> None: ...


@runtime_checkable
class ServerHandle(Protocol):
    """A bound RTSP server."""

    @property
    def http_server_port(self) -> int | None: ...

    def attach(self, session: Any) -> None: ...

    def rtsp_url(self, session: Any) -> str: ...

    def setup_tunneling_over_http(self, port: int) -> bool: ...


class ServerFactory(Protocol):
    """Creates RTSP servers; ``create`` returns ``None`` when the port cannot be bound."""

    last_error: str

    def create(
        self,
        port: int,
        auth_db: AuthDatabase | None,
        register_auth_db: AuthDatabase | None = None,
        max_clients: int = 65,
        stream_rtp_over_tcp: bool = False,
        verbosity: int = 0,
        register_username: str | None = None,
        register_password: str | None = None,
        register_requests: bool = False,
    ) -> ServerHandle | None: ...


class SessionFactory(Protocol):
    def create(
        self,
        server: ServerHandle,
        url: str,
        name: str,
        username: str | None,
        password: str | None,
        transport: Transport,
        verbosity: int,
    ) -> Any: ...


class EventLoop(Protocol):
    def run(self) -> None:
        """Serve until shutdown; on a healthy backend this blocks indefinitely."""


__all__ = [
    "AuthDatabase",
    "EventLoop",
    "ServerFactory",
    "ServerHandle",
    "SessionFactory",
]
