"""
Validation of the merged configuration and start-up of the RTSP server.

Start-up follows a fixed sequence: validate every stream, bind the control
server (falling back to the standard ports when allowed), attach one proxy
session per stream, try to enable RTSP-over-HTTP tunneling, then hand control
to the backend event loop. Only the tunneling step may fail without aborting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import (
    ALTERNATIVE_RTSP_PORT,
    DEFAULT_RTSP_PORT,
    HTTP_TUNNEL_PORTS,
    RTSP_URL_PREFIX,
    AuthPurpose,
    AuthRecord,
    ConfigStore,
    GlobalSettings,
    StreamDefinition,
    Transport,
    TransportMode,
)
from .contracts import AuthDatabase, EventLoop, ServerFactory, ServerHandle, SessionFactory
from .errors import (
    ConflictingTransportError,
    InvalidURLError,
    MisplacedRegisterAuthError,
    NoStreamsError,
    ServerBindError,
    TunnelUnavailableError,
)

logger = logging.getLogger(__name__)

REGISTER_MAX_CLIENTS = 65


def validate_streams(store: ConfigStore) -> list[StreamDefinition]:
    """
    Check the merged configuration and return the streams to serve.

    When RTP-over-TCP is forced globally, each returned stream carries the
    ``FORCE_TCP`` transport; the registry itself is left untouched.
    """

    settings = store.settings
    if not store.streams and not settings.register_requests:
        raise NoStreamsError()

    validated: list[StreamDefinition] = []
    for stream in store.streams:
        if not stream.url.startswith(RTSP_URL_PREFIX):
            raise InvalidURLError(stream.url)
        if settings.stream_rtp_over_tcp:
            if stream.transport.mode is TransportMode.HTTP_TUNNEL:
                raise ConflictingTransportError(stream.url)
            stream = stream.model_copy(update={"transport": Transport.force_tcp()})
        validated.append(stream)

    if store.auth_records(AuthPurpose.REGISTER) and not settings.register_requests:
        raise MisplacedRegisterAuthError()
    return validated


def bind_rtsp_server(
    create: Callable[[int], ServerHandle | None],
    settings: GlobalSettings,
    *,
    last_error: Callable[[], str] = lambda: "",
) -> tuple[ServerHandle, int]:
    """
    Bind the RTSP server, falling back to ports 554 then 8554 when allowed.

    Returns the server together with the port it was bound to.
    """

    attempted: list[int] = []

    def _attempt(port: int) -> ServerHandle | None:
        attempted.append(port)
        server = create(port)
        if server is None:
            logger.warning(
                "Unable to create a RTSP server with port number %d: %s", port, last_error()
            )
        return server

    port = settings.rtsp_server_port
    server = _attempt(port)
    if server is None and settings.try_standard_port_numbers and port != DEFAULT_RTSP_PORT:
        logger.info(
            "Trying instead with the standard port numbers (%d and %d)...",
            DEFAULT_RTSP_PORT,
            ALTERNATIVE_RTSP_PORT,
        )
        port = DEFAULT_RTSP_PORT
        server = _attempt(port)
    if server is None and settings.try_standard_port_numbers:
        port = ALTERNATIVE_RTSP_PORT
        server = _attempt(port)
    if server is None:
        raise ServerBindError(attempted, last_error())
    return server, port


def setup_http_tunneling(server: ServerHandle, settings: GlobalSettings) -> int | None:
    """
    Enable RTSP-over-HTTP tunneling on the first port that can be bound.

    Returns ``None`` when tunneling is disabled and raises
    ``TunnelUnavailableError`` when every candidate port fails.
    """

    if not settings.server_tunneling_over_http:
        logger.info("RTSP-over-HTTP tunneling is disabled.")
        return None

    if settings.server_tunneling_over_http_port:
        candidates: Iterable[int] = (settings.server_tunneling_over_http_port,)
    else:
        candidates = HTTP_TUNNEL_PORTS
    tried: list[int] = []
    for port in candidates:
        tried.append(port)
        if server.setup_tunneling_over_http(port):
            return server.http_server_port or port
    raise TunnelUnavailableError(tried)


@dataclass(slots=True)
class BootstrapResult:
    server: ServerHandle
    rtsp_port: int
    streams: list[StreamDefinition]
    sessions: list[Any] = field(default_factory=list)
    http_tunnel_port: int | None = None


class ServerBootstrap:
    """Turn a merged :class:`ConfigStore` into a running proxy server."""

    def __init__(
        self,
        *,
        server_factory: ServerFactory,
        session_factory: SessionFactory,
        auth_db_factory: Callable[[], AuthDatabase],
        event_loop: EventLoop,
    ) -> None:
        self._server_factory = server_factory
        self._session_factory = session_factory
        self._auth_db_factory = auth_db_factory
        self._event_loop = event_loop

    def _auth_db(self, records: Iterable[AuthRecord]) -> AuthDatabase | None:
        database: AuthDatabase | None = None
        for record in records:
            if database is None:
                database = self._auth_db_factory()
            database.add_record(record.username, record.password)
        return database

    def prepare(self, store: ConfigStore) -> BootstrapResult:
        """Validate, bind, and attach sessions without entering the event loop."""
        streams = validate_streams(store)
        settings = store.settings
        auth_db = self._auth_db(store.auth_records(AuthPurpose.CLIENT_ACCESS))
        register_auth_db = self._auth_db(store.auth_records(AuthPurpose.REGISTER))

        def _create(port: int) -> ServerHandle | None:
            return self._server_factory.create(
                port,
                auth_db,
                register_auth_db=register_auth_db,
                max_clients=REGISTER_MAX_CLIENTS,
                stream_rtp_over_tcp=settings.stream_rtp_over_tcp,
                verbosity=settings.verbosity,
                register_username=settings.username_for_register or None,
                register_password=settings.password_for_register or None,
                register_requests=settings.register_requests,
            )

        server, port = bind_rtsp_server(
            _create, settings, last_error=lambda: self._server_factory.last_error
        )
        result = BootstrapResult(server=server, rtsp_port=port, streams=streams)

        for stream in streams:
            username, password = stream.credentials
            session = self._session_factory.create(
                server,
                stream.url,
                stream.name,
                username,
                password,
                stream.transport,
                settings.verbosity,
            )
            server.attach(session)
            result.sessions.append(session)
            logger.info('RTSP stream, proxying the stream "%s"', stream.url)
            logger.info("\tPlay this stream using the URL: %s", server.rtsp_url(session))

        if settings.register_requests:
            logger.info('We handle incoming "REGISTER" requests on port %d', port)

        try:
            result.http_tunnel_port = setup_http_tunneling(server, settings)
        except TunnelUnavailableError as exc:
            logger.warning("%s", exc)
        else:
            if result.http_tunnel_port is not None:
                logger.info(
                    "We use port %d for optional RTSP-over-HTTP tunneling.",
                    result.http_tunnel_port,
                )
        return result

    def run(self, store: ConfigStore) -> BootstrapResult:
        """Prepare the server and block in the backend event loop."""
        result = self.prepare(store)
        self._event_loop.run()
        return result


__all__ = [
    "BootstrapResult",
    "REGISTER_MAX_CLIENTS",
    "ServerBootstrap",
    "bind_rtsp_server",
    "setup_http_tunneling",
    "validate_streams",
]
