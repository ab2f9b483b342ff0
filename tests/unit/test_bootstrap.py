"""Tests for the validation pass and server start-up sequence."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from proxyex.core.bootstrap import (
    REGISTER_MAX_CLIENTS,
    ServerBootstrap,
    bind_rtsp_server,
    setup_http_tunneling,
    validate_streams,
)
from proxyex.core.config import (
    AuthPurpose,
    ConfigStore,
    GlobalSettings,
    StreamDefinition,
    Transport,
    TransportMode,
)
from proxyex.core.errors import (
    ConflictingTransportError,
    InvalidURLError,
    MisplacedRegisterAuthError,
    NoStreamsError,
    ServerBindError,
    TunnelUnavailableError,
)


class FakeServer:
    def __init__(self, port: int, tunnel_ports: tuple[int, ...] = ()) -> None:
        self.port = port
        self.sessions: list[dict[str, Any]] = []
        self.tunnel_attempts: list[int] = []
        self.http_server_port: int | None = None
        self._tunnel_ports = set(tunnel_ports)

    def attach(self, session: dict[str, Any]) -> None:
        self.sessions.append(session)

    def rtsp_url(self, session: dict[str, Any]) -> str:
        return f"rtsp://proxy.test:{self.port}/{session['name']}"

    def setup_tunneling_over_http(self, port: int) -> bool:
        self.tunnel_attempts.append(port)
        if port in self._tunnel_ports:
            self.http_server_port = port
            return True
        return False


class FakeServerFactory:
    def __init__(
        self,
        bindable: tuple[int, ...] = (554,),
        tunnel_ports: tuple[int, ...] = (80,),
    ) -> None:
        self.bindable = set(bindable)
        self.tunnel_ports = tunnel_ports
        self.attempts: list[int] = []
        self.calls: list[dict[str, Any]] = []
        self.servers: list[FakeServer] = []
        self.last_error = ""

    def create(self, port: int, auth_db: Any, **kwargs: Any) -> FakeServer | None:
        self.attempts.append(port)
        self.calls.append({"port": port, "auth_db": auth_db, **kwargs})
        if port not in self.bindable:
            self.last_error = "Address already in use"
            return None
        server = FakeServer(port, self.tunnel_ports)
        self.servers.append(server)
        return server


class FakeSessionFactory:
    def create(
        self,
        server: FakeServer,
        url: str,
        name: str,
        username: str | None,
        password: str | None,
        transport: Transport,
        verbosity: int,
    ) -> dict[str, Any]:
        return {
            "url": url,
            "name": name,
            "username": username,
            "password": password,
            "transport": transport,
            "verbosity": verbosity,
        }


class FakeAuthDatabase:
    def __init__(self) -> None:
        self.records: list[tuple[str, str]] = []

    def add_record(self, username: str, password: str) -> None:
        self.records.append((username, password))


class FakeEventLoop:
    def __init__(self) -> None:
        self.runs = 0

    def run(self) -> None:
        self.runs += 1


def _bootstrap(
    factory: FakeServerFactory, loop: FakeEventLoop | None = None
) -> ServerBootstrap:
    return ServerBootstrap(
        server_factory=factory,
        session_factory=FakeSessionFactory(),
        auth_db_factory=FakeAuthDatabase,
        event_loop=loop or FakeEventLoop(),
    )


def _add(store: ConfigStore, name: str, url: str = "rtsp://cam/live", **fields: Any) -> None:
    store.add_stream(StreamDefinition(url=url, name=name, **fields))


def test_no_streams_without_register_is_usage_error(store: ConfigStore) -> None:
    with pytest.raises(NoStreamsError):
        validate_streams(store)


def test_no_streams_allowed_with_register(store: ConfigStore) -> None:
    store.settings.register_requests = True

    assert validate_streams(store) == []


@pytest.mark.parametrize("url", ["http://cam/live", "RTSP://cam/live", "cam/live"])
def test_non_rtsp_url_is_rejected(store: ConfigStore, url: str) -> None:
    _add(store, "cam", url=url)

    with pytest.raises(InvalidURLError, match=url):
        validate_streams(store)


def test_forced_tcp_conflicts_with_http_tunnel(store: ConfigStore) -> None:
    store.settings.stream_rtp_over_tcp = True
    _add(store, "cam", transport=Transport.http_tunnel(8000))

    with pytest.raises(ConflictingTransportError):
        validate_streams(store)


def test_forced_tcp_returns_copies(store: ConfigStore) -> None:
    store.settings.stream_rtp_over_tcp = True
    _add(store, "cam")

    (validated,) = validate_streams(store)

    assert validated.transport.mode is TransportMode.FORCE_TCP
    assert next(iter(store.streams)).transport.mode is TransportMode.UNSET


def test_register_auth_without_register_is_usage_error(store: ConfigStore) -> None:
    _add(store, "cam")
    store.add_auth_record(AuthPurpose.REGISTER, "reg", "pw")

    with pytest.raises(MisplacedRegisterAuthError):
        validate_streams(store)


def test_bind_uses_configured_port_when_free() -> None:
    factory = FakeServerFactory(bindable=(9000,))
    settings = GlobalSettings(rtsp_server_port=9000)

    _, port = bind_rtsp_server(lambda p: factory.create(p, None), settings)

    assert port == 9000
    assert factory.attempts == [9000]


def test_bind_falls_back_to_standard_ports(caplog: pytest.LogCaptureFixture) -> None:
    factory = FakeServerFactory(bindable=(8554,))
    settings = GlobalSettings(rtsp_server_port=9000)

    with caplog.at_level(logging.WARNING):
        _, port = bind_rtsp_server(
            lambda p: factory.create(p, None), settings, last_error=lambda: factory.last_error
        )

    assert port == 8554
    assert factory.attempts == [9000, 554, 8554]
    assert "Address already in use" in caplog.text


def test_bind_does_not_retry_554_twice() -> None:
    factory = FakeServerFactory(bindable=(8554,))

    _, port = bind_rtsp_server(lambda p: factory.create(p, None), GlobalSettings())

    assert port == 8554
    assert factory.attempts == [554, 8554]


def test_bind_without_fallback_fails_fast() -> None:
    factory = FakeServerFactory(bindable=())
    settings = GlobalSettings(rtsp_server_port=9000, try_standard_port_numbers=False)

    with pytest.raises(ServerBindError) as excinfo:
        bind_rtsp_server(lambda p: factory.create(p, None), settings)

    assert excinfo.value.ports == [9000]


def test_bind_failure_reports_every_port() -> None:
    factory = FakeServerFactory(bindable=())
    settings = GlobalSettings(rtsp_server_port=9000)

    with pytest.raises(ServerBindError) as excinfo:
        bind_rtsp_server(
            lambda p: factory.create(p, None), settings, last_error=lambda: factory.last_error
        )

    assert excinfo.value.ports == [9000, 554, 8554]
    assert excinfo.value.reason == "Address already in use"


def test_tunneling_tries_default_ports_in_order() -> None:
    server = FakeServer(554, tunnel_ports=(8080,))

    port = setup_http_tunneling(server, GlobalSettings())

    assert port == 8080
    assert server.tunnel_attempts == [80, 8000, 8080]


def test_tunneling_explicit_port_is_the_only_candidate() -> None:
    server = FakeServer(554, tunnel_ports=(80,))
    settings = GlobalSettings(server_tunneling_over_http_port=9999)

    with pytest.raises(TunnelUnavailableError) as excinfo:
        setup_http_tunneling(server, settings)

    assert server.tunnel_attempts == [9999]
    assert excinfo.value.ports == [9999]


def test_tunneling_disabled_skips_probing() -> None:
    server = FakeServer(554, tunnel_ports=(80,))

    assert setup_http_tunneling(server, GlobalSettings(server_tunneling_over_http=False)) is None
    assert server.tunnel_attempts == []


def test_tunnel_failure_is_not_fatal(store: ConfigStore) -> None:
    _add(store, "cam")
    factory = FakeServerFactory(tunnel_ports=())

    result = _bootstrap(factory).prepare(store)

    assert result.http_tunnel_port is None
    assert result.rtsp_port == 554


def test_prepare_creates_one_session_per_stream(
    store: ConfigStore, caplog: pytest.LogCaptureFixture
) -> None:
    _add(store, "front", url="rtsp://cam/front", username="alice", password="secret")
    _add(store, "back", url="rtsp://cam/back")
    factory = FakeServerFactory()

    with caplog.at_level(logging.INFO):
        result = _bootstrap(factory).prepare(store)

    server = factory.servers[0]
    assert result.server is server
    assert [s["name"] for s in server.sessions] == ["front", "back"]
    assert server.sessions[0]["username"] == "alice"
    assert server.sessions[1]["username"] is None
    assert server.sessions[1]["password"] is None
    assert result.http_tunnel_port == 80
    assert "Play this stream using the URL: rtsp://proxy.test:554/front" in caplog.text


def test_prepare_passes_server_options(store: ConfigStore) -> None:
    store.update_settings(
        {
            "register_requests": True,
            "username_for_register": "reg",
            "password_for_register": "pw",
            "verbosity": 2,
        }
    )
    store.add_auth_record(AuthPurpose.REGISTER, "reg", "pw")
    factory = FakeServerFactory()

    _bootstrap(factory).prepare(store)

    (call,) = factory.calls
    assert call["auth_db"] is None
    assert call["register_auth_db"].records == [("reg", "pw")]
    assert call["max_clients"] == REGISTER_MAX_CLIENTS
    assert call["register_requests"] is True
    assert call["register_username"] == "reg"
    assert call["verbosity"] == 2


def test_prepare_builds_client_database(store: ConfigStore) -> None:
    _add(store, "cam")
    store.add_auth_record(AuthPurpose.CLIENT_ACCESS, "alice", "one")
    store.add_auth_record(AuthPurpose.CLIENT_ACCESS, "bob", "two")
    factory = FakeServerFactory()

    _bootstrap(factory).prepare(store)

    (call,) = factory.calls
    assert call["auth_db"].records == [("alice", "one"), ("bob", "two")]
    assert call["register_auth_db"] is None
    assert call["register_username"] is None


def test_validation_failure_happens_before_binding(store: ConfigStore) -> None:
    _add(store, "cam", url="http://cam/live")
    factory = FakeServerFactory()

    with pytest.raises(InvalidURLError):
        _bootstrap(factory).prepare(store)

    assert factory.attempts == []


def test_run_enters_event_loop_after_prepare(store: ConfigStore) -> None:
    _add(store, "cam")
    loop = FakeEventLoop()

    result = _bootstrap(FakeServerFactory(), loop).run(store)

    assert loop.runs == 1
    assert result.rtsp_port == 554


def test_run_does_not_enter_loop_on_bind_failure(store: ConfigStore) -> None:
    _add(store, "cam")
    loop = FakeEventLoop()

    with pytest.raises(ServerBindError):
        _bootstrap(FakeServerFactory(bindable=()), loop).run(store)

    assert loop.runs == 0
