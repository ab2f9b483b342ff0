"""
Pydantic models describing the merged proxy configuration.

The configuration store is created once with defaults, mutated by the INI
loader and then by the command-line parser, and treated as read-only by the
bootstrap afterwards. It is passed explicitly through the pipeline instead of
living in module-level globals so the override order stays visible.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .registry import StreamRegistry

RTSP_URL_PREFIX = "rtsp://"
DEFAULT_RTSP_PORT = 554
ALTERNATIVE_RTSP_PORT = 8554
HTTP_TUNNEL_PORTS = (80, 8000, 8080)
FORCE_TCP_TUNNEL_PORT = 0xFFFF


def pair_lines(first: str | None, second: str | None) -> list[tuple[str, str]]:
    """
    Pair two newline-delimited lists positionally.

    Pairing stops at the shorter list, so surplus entries on either side are
    silently dropped. Empty entries between two values keep their position;
    leading and trailing blank lines are not entries.
    """

    left = (first or "").strip().splitlines()
    right = (second or "").strip().splitlines()
    return [(a.strip(), b.strip()) for a, b in zip(left, right)]


class TransportMode(StrEnum):
    """How the back-end connection of a proxied stream is carried."""

    UNSET = "unset"
    HTTP_TUNNEL = "http_tunnel"
    FORCE_TCP = "force_tcp"


class Transport(BaseModel):
    """Back-end transport choice for one proxied stream."""

    model_config = ConfigDict(frozen=True)

    mode: TransportMode = Field(default=TransportMode.UNSET)
    port: int = Field(default=0, ge=0, le=65535)

    @model_validator(mode="after")
    def _check_port(self) -> Transport:
        if self.mode is TransportMode.HTTP_TUNNEL and self.port == 0:
            raise ValueError("HTTP tunneling requires a port number")
        if self.mode is not TransportMode.HTTP_TUNNEL and self.port != 0:
            raise ValueError(f"{self.mode} transport does not take a port number")
        return self

    @classmethod
    def unset(cls) -> Transport:
        return cls()

    @classmethod
    def http_tunnel(cls, port: int) -> Transport:
        return cls(mode=TransportMode.HTTP_TUNNEL, port=port)

    @classmethod
    def force_tcp(cls) -> Transport:
        return cls(mode=TransportMode.FORCE_TCP)

    @classmethod
    def from_port(cls, port: int) -> Transport:
        """Map a ``tunnel_over_http_port`` style number (0 = none) to a transport."""
        return cls.http_tunnel(port) if port else cls.unset()

    @property
    def tunnel_port(self) -> int:
        """Numeric form understood by backends that overload the tunnel port."""
        if self.mode is TransportMode.FORCE_TCP:
            return FORCE_TCP_TUNNEL_PORT
        return self.port


class StreamParams(BaseModel):
    """Credentials and transport shared by every stream of a single source."""

    model_config = ConfigDict(extra="ignore")

    username: str = Field(default="")
    password: str = Field(default="")
    tunnel_over_http_port: int = Field(default=0, ge=0, le=65535)

    @property
    def transport(self) -> Transport:
        return Transport.from_port(self.tunnel_over_http_port)


class StreamDefinition(BaseModel):
    """One back-end RTSP stream re-published under a local name."""

    model_config = ConfigDict(frozen=True)

    url: str
    name: str = Field(min_length=1)
    username: str = Field(default="")
    password: str = Field(default="")
    transport: Transport = Field(default_factory=Transport.unset)

    @classmethod
    def from_params(cls, url: str, name: str, params: StreamParams) -> StreamDefinition:
        return cls(
            url=url,
            name=name,
            username=params.username,
            password=params.password,
            transport=params.transport,
        )

    @property
    def credentials(self) -> tuple[str | None, str | None]:
        """Username/password with empty strings mapped to ``None``."""
        return self.username or None, self.password or None


class AuthPurpose(StrEnum):
    CLIENT_ACCESS = "client_access"
    REGISTER = "register"


class AuthRecord(BaseModel):
    """Username/password pair fed to one of the authentication databases."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class GlobalSettings(BaseModel):
    """Process-wide settings; field names double as ``[general]`` keys."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    DEFAULT_SINGLE_STREAM_NAME: ClassVar[str] = "proxyStream"
    DEFAULT_MULTIPLE_STREAM_NAME: ClassVar[str] = "proxyStream-%d"

    verbosity: int = Field(default=0, ge=0)
    stream_rtp_over_tcp: bool = Field(default=False)
    try_standard_port_numbers: bool = Field(default=True)
    server_tunneling_over_http: bool = Field(default=True)
    server_tunneling_over_http_port: int = Field(default=0, ge=0, le=65535)
    rtsp_server_port: int = Field(default=DEFAULT_RTSP_PORT, ge=1, le=65535)
    register_requests: bool = Field(default=False)
    username_for_register: str = Field(default="")
    password_for_register: str = Field(default="")
    single_stream_name: str = Field(default=DEFAULT_SINGLE_STREAM_NAME, min_length=1)
    multiple_stream_name: str = Field(default=DEFAULT_MULTIPLE_STREAM_NAME)
    log_file: Path | None = Field(default=None)

    @field_validator("multiple_stream_name")
    @classmethod
    def _validate_multiple_template(cls, value: str) -> str:
        try:
            first, second = value % 1, value % 2
        except (TypeError, ValueError) as exc:
            raise ValueError(
                "multiple_stream_name must contain exactly one integer placeholder such as %d"
            ) from exc
        if first == second:
            raise ValueError("multiple_stream_name must produce a distinct name per stream")
        return value

    @field_validator("log_file", mode="before")
    @classmethod
    def _coerce_log_file(cls, value: Any) -> Path | None:
        if value is None or isinstance(value, Path):
            return value
        text = str(value).strip()
        return Path(text) if text else None

    def stream_name(self, position: int, total: int) -> str:
        """
        Name for the ``position``-th (1-based) of ``total`` unnamed streams.

        A lone stream gets the single-stream name verbatim; otherwise the
        position is substituted into the multiple-stream template.
        """

        if total == 1:
            return self.single_stream_name
        return self.multiple_stream_name % position


class ConfigStore:
    """Merged settings, stream registry, and authentication records."""

    def __init__(self, settings: GlobalSettings | None = None) -> None:
        self.settings = settings or GlobalSettings()
        self.streams = StreamRegistry()
        self._auth: dict[AuthPurpose, list[AuthRecord]] = {
            purpose: [] for purpose in AuthPurpose
        }

    def update_settings(self, values: Mapping[str, Any]) -> GlobalSettings:
        """
        Overlay ``values`` on the current settings and re-validate.

        Keys absent from ``values`` keep their current value. Raises
        ``pydantic.ValidationError`` when the result is invalid, leaving the
        current settings untouched.
        """

        merged = {**self.settings.model_dump(), **values}
        self.settings = GlobalSettings.model_validate(merged)
        return self.settings

    def add_stream(self, definition: StreamDefinition) -> None:
        self.streams.add(definition)

    def add_auth_record(self, purpose: AuthPurpose, username: str, password: str) -> bool:
        """Append a record unless either field is empty; returns whether one was added."""
        if not username or not password:
            return False
        self._auth[purpose].append(AuthRecord(username=username, password=password))
        return True

    def auth_records(self, purpose: AuthPurpose) -> tuple[AuthRecord, ...]:
        return tuple(self._auth[purpose])


__all__ = [
    "ALTERNATIVE_RTSP_PORT",
    "AuthPurpose",
    "AuthRecord",
    "ConfigStore",
    "DEFAULT_RTSP_PORT",
    "FORCE_TCP_TUNNEL_PORT",
    "GlobalSettings",
    "HTTP_TUNNEL_PORTS",
    "RTSP_URL_PREFIX",
    "StreamDefinition",
    "StreamParams",
    "Transport",
    "TransportMode",
    "pair_lines",
]
