"""
Reference asyncio backend for the proxy bootstrap.

Ports are bound synchronously when a server is created so the bootstrap can
walk its fallback list, and the listening sockets are only handed to asyncio
once the event loop runs. The server answers the RTSP control plane (OPTIONS,
authentication, stream lookup, REGISTER gating) for the attached sessions;
relaying media from the back-end streams is not implemented and is answered
with ``501 Not Implemented``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
import signal
import socket
from collections.abc import Iterable
from dataclasses import dataclass, field
from http import HTTPStatus
from urllib.parse import unquote, urlparse

from ..core.config import Transport
from .auth import UserAuthenticationDatabase

logger = logging.getLogger(__name__)

RTSP_VERSION = "RTSP/1.0"
SERVER_NAME = "proxyex"
MAX_REQUEST_BYTES = 64 * 1024
PUBLIC_METHODS = (
    "OPTIONS",
    "DESCRIBE",
    "SETUP",
    "TEARDOWN",
    "PLAY",
    "PAUSE",
    "GET_PARAMETER",
    "SET_PARAMETER",
)


@dataclass(slots=True)
class ProxySession:
    """A back-end stream published by the server under ``name``."""

    name: str
    url: str
    username: str | None = None
    password: str | None = None
    transport: Transport = field(default_factory=Transport.unset)
    verbosity: int = 0


class ProxySessionFactory:
    def create(
        self,
        server: ProxyRtspServer,
        url: str,
        name: str,
        username: str | None,
        password: str | None,
        transport: Transport,
        verbosity: int,
    ) -> ProxySession:
        return ProxySession(
            name=name,
            url=url,
            username=username,
            password=password,
            transport=transport,
            verbosity=verbosity,
        )


@dataclass
class RtspRequest:
    """Parsed RTSP request head."""

    method: str
    uri: str
    version: str
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, data: bytes) -> RtspRequest | None:
        """Parse a request head; returns ``None`` if it is malformed."""
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
        lines = text.split("\r\n")
        parts = lines[0].split(" ")
        if len(parts) != 3:
            return None
        headers: dict[str, str] = {}
        for line in lines[1:]:
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        return cls(method=parts[0].upper(), uri=parts[1], version=parts[2], headers=headers)

    @property
    def cseq(self) -> str | None:
        return self.headers.get("cseq")

    def basic_credentials(self) -> tuple[str, str] | None:
        scheme, _, token = self.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "basic" or not token:
            return None
        try:
            decoded = base64.b64decode(token.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, sep, password = decoded.partition(":")
        if not sep:
            return None
        return username, password


def build_response(
    status: HTTPStatus,
    *,
    cseq: str | None = None,
    headers: dict[str, str] | None = None,
    version: str = RTSP_VERSION,
) -> bytes:
    lines = [f"{version} {status.value} {status.phrase}"]
    if cseq is not None:
        lines.append(f"CSeq: {cseq}")
    lines.append(f"Server: {SERVER_NAME}")
    for key, value in (headers or {}).items():
        lines.append(f"{key}: {value}")
    lines.append("Content-Length: 0")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def _bind(address: str, port: int) -> socket.socket:
    sock = socket.create_server((address, port))
    sock.setblocking(False)
    return sock


class ProxyRtspServer:
    """RTSP server bound to a listening socket, optionally with an HTTP tunnel port."""

    def __init__(
        self,
        sock: socket.socket,
        *,
        auth_db: UserAuthenticationDatabase | None = None,
        register_auth_db: UserAuthenticationDatabase | None = None,
        register_requests: bool = False,
        max_clients: int = 65,
        stream_rtp_over_tcp: bool = False,
        verbosity: int = 0,
        register_username: str | None = None,
        register_password: str | None = None,
        listen_address: str = "",
    ) -> None:
        self._socket = sock
        self._port: int = sock.getsockname()[1]
        self._tunnel_socket: socket.socket | None = None
        self._tunnel_port: int | None = None
        self.auth_db = auth_db
        self.register_auth_db = register_auth_db
        self.register_requests = register_requests
        self.max_clients = max_clients
        self.stream_rtp_over_tcp = stream_rtp_over_tcp
        self.verbosity = verbosity
        self.register_username = register_username
        self.register_password = register_password
        self.listen_address = listen_address
        self.sessions: dict[str, ProxySession] = {}
        self._servers: list[asyncio.AbstractServer] = []
        self._clients = 0

    @property
    def port(self) -> int:
        return self._port

    @property
    def http_server_port(self) -> int | None:
        return self._tunnel_port

    def attach(self, session: ProxySession) -> None:
        self.sessions[session.name] = session
        logger.debug("Attached session %s (%s)", session.name, session.url)

    def rtsp_url(self, session: ProxySession) -> str:
        host = self.listen_address
        if host in ("", "0.0.0.0", "::"):
            host = socket.gethostname()
        return f"rtsp://{host}:{self.port}/{session.name}"

    def setup_tunneling_over_http(self, port: int) -> bool:
        if self._tunnel_socket is not None:
            return True
        try:
            self._tunnel_socket = _bind(self.listen_address, port)
        except OSError as exc:
            logger.debug("Cannot bind RTSP-over-HTTP port %d: %s", port, exc)
            return False
        self._tunnel_port = self._tunnel_socket.getsockname()[1]
        return True

    async def start(self) -> None:
        server = await asyncio.start_server(self._handle_client, sock=self._socket)
        self._servers.append(server)
        if self._tunnel_socket is not None:
            tunnel = await asyncio.start_server(
                self._handle_tunnel_client, sock=self._tunnel_socket
            )
            self._servers.append(tunnel)
        logger.info("RTSP server listening on port %d", self.port)

    async def stop(self) -> None:
        for server in self._servers:
            server.close()
            await server.wait_closed()
        self._servers.clear()
        logger.info("RTSP server on port %d stopped", self.port)

    def close(self) -> None:
        """Release listening sockets that were never handed to asyncio."""
        self._socket.close()
        if self._tunnel_socket is not None:
            self._tunnel_socket.close()

    def handle_request(self, request: RtspRequest) -> bytes:
        """Produce the response for a single control request."""
        cseq = request.cseq
        if request.method == "OPTIONS":
            methods = [*PUBLIC_METHODS, "REGISTER"] if self.register_requests else PUBLIC_METHODS
            return build_response(HTTPStatus.OK, cseq=cseq, headers={"Public": ", ".join(methods)})

        if request.method == "REGISTER":
            if not self.register_requests:
                return build_response(
                    HTTPStatus.METHOD_NOT_ALLOWED,
                    cseq=cseq,
                    headers={"Allow": ", ".join(PUBLIC_METHODS)},
                )
            if not self._authorized(request, self.register_auth_db):
                return self._unauthorized(cseq, self.register_auth_db)
            logger.info("REGISTER for %s received; proxying is not implemented", request.uri)
            return build_response(HTTPStatus.NOT_IMPLEMENTED, cseq=cseq)

        if not self._authorized(request, self.auth_db):
            return self._unauthorized(cseq, self.auth_db)

        session = self.sessions.get(self._stream_name(request.uri))
        if session is None:
            return build_response(HTTPStatus.NOT_FOUND, cseq=cseq)
        logger.info(
            "%s for stream %s (%s); media relay is not implemented",
            request.method,
            session.name,
            session.url,
        )
        return build_response(HTTPStatus.NOT_IMPLEMENTED, cseq=cseq)

    @staticmethod
    def _stream_name(uri: str) -> str:
        path = unquote(urlparse(uri).path).strip("/")
        return path.split("/", 1)[0]

    @staticmethod
    def _authorized(request: RtspRequest, database: UserAuthenticationDatabase | None) -> bool:
        if database is None:
            return True
        credentials = request.basic_credentials()
        return credentials is not None and database.authenticate(*credentials)

    @staticmethod
    def _unauthorized(cseq: str | None, database: UserAuthenticationDatabase | None) -> bytes:
        realm = database.realm if database is not None else SERVER_NAME
        return build_response(
            HTTPStatus.UNAUTHORIZED,
            cseq=cseq,
            headers={"WWW-Authenticate": f'Basic realm="{realm}"'},
        )

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        if self._clients >= self.max_clients:
            logger.warning("Rejecting RTSP client %s: %d clients connected", peer, self._clients)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            return
        self._clients += 1
        logger.debug("RTSP client connected from %s", peer)
        try:
            while True:
                try:
                    head = await reader.readuntil(b"\r\n\r\n")
                except asyncio.IncompleteReadError:
                    break
                except asyncio.LimitOverrunError:
                    writer.write(build_response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE))
                    break
                request = RtspRequest.parse(head[:-4])
                if request is None:
                    writer.write(build_response(HTTPStatus.BAD_REQUEST))
                    break
                length = int(request.headers.get("content-length", "0") or 0)
                if length < 0:
                    writer.write(build_response(HTTPStatus.BAD_REQUEST, cseq=request.cseq))
                    break
                if length > MAX_REQUEST_BYTES:
                    writer.write(
                        build_response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, cseq=request.cseq)
                    )
                    break
                if length:
                    await reader.readexactly(length)
                writer.write(self.handle_request(request))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError, ValueError) as exc:
            logger.debug("RTSP client %s dropped: %s", peer, exc)
        finally:
            self._clients -= 1
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            logger.debug("RTSP client disconnected: %s", peer)

    async def _handle_tunnel_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(build_response(HTTPStatus.NOT_IMPLEMENTED, version="HTTP/1.0"))
            await writer.drain()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError) as exc:
            logger.debug("Tunnel client dropped: %s", exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()


class RtspServerFactory:
    """Binds RTSP servers and remembers them for the event loop."""

    def __init__(self, listen_address: str = "") -> None:
        self.listen_address = listen_address
        self.last_error = ""
        self.servers: list[ProxyRtspServer] = []

    def create(
        self,
        port: int,
        auth_db: UserAuthenticationDatabase | None,
        register_auth_db: UserAuthenticationDatabase | None = None,
        max_clients: int = 65,
        stream_rtp_over_tcp: bool = False,
        verbosity: int = 0,
        register_username: str | None = None,
        register_password: str | None = None,
        register_requests: bool = False,
    ) -> ProxyRtspServer | None:
        try:
            sock = _bind(self.listen_address, port)
        except OSError as exc:
            self.last_error = exc.strerror or str(exc)
            return None
        server = ProxyRtspServer(
            sock,
            auth_db=auth_db,
            register_auth_db=register_auth_db,
            register_requests=register_requests,
            max_clients=max_clients,
            stream_rtp_over_tcp=stream_rtp_over_tcp,
            verbosity=verbosity,
            register_username=register_username,
            register_password=register_password,
            listen_address=self.listen_address,
        )
        self.servers.append(server)
        return server


class AsyncioEventLoop:
    """Runs every server created by a factory until SIGINT or SIGTERM."""

    def __init__(self, factory: RtspServerFactory) -> None:
        self._factory = factory

    def run(self) -> None:
        asyncio.run(self._serve(self._factory.servers))

    async def _serve(self, servers: Iterable[ProxyRtspServer]) -> None:
        running = list(servers)
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        for server in running:
            await server.start()
        try:
            await stop_event.wait()
        finally:
            for server in running:
                await server.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            logger.info("Received %s, shutting down.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


__all__ = [
    "AsyncioEventLoop",
    "ProxyRtspServer",
    "ProxySession",
    "ProxySessionFactory",
    "RtspRequest",
    "RtspServerFactory",
    "build_response",
]
