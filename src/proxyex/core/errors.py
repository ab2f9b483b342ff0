"""
Exception hierarchy shared by the configuration pipeline and the bootstrap.

Everything that can go wrong while building the merged configuration derives
from :class:`ConfigError`; the entrypoint is the only place that turns these
into diagnostics and exit codes.
"""

from __future__ import annotations

from pathlib import Path


class ConfigError(RuntimeError):
    """Raised when configuration files or options are missing or invalid."""


class ConfigNotFoundError(ConfigError):
    """A configuration path does not exist."""

    def __init__(self, path: str | Path) -> None:
        super().__init__(f'Path "{path}" not found')
        self.path = Path(path)


class UnsupportedTargetError(ConfigError):
    """A configuration path points at a directory."""

    def __init__(self, path: str | Path) -> None:
        super().__init__(f'Config directories are not supported: "{path}"')
        self.path = Path(path)


class ConfigParseError(ConfigError):
    """A configuration file is malformed or holds an invalid value."""

    def __init__(self, path: str | Path, reason: str) -> None:
        super().__init__(f'Cannot parse config file "{path}": {reason}')
        self.path = Path(path)
        self.reason = reason


class IncludeCycleError(ConfigError):
    """An ``[include]`` chain leads back to a file that is still being loaded."""

    def __init__(self, chain: list[Path], path: Path) -> None:
        trail = " -> ".join(str(item) for item in [*chain, path])
        super().__init__(f"Include cycle detected: {trail}")
        self.chain = list(chain)
        self.path = path


class NameCollisionError(ConfigError):
    """A stream name is already used by a previously registered stream."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Conflict: stream name {name} is already used")
        self.name = name


class InvalidURLError(ConfigError):
    """A proxied stream URL does not use the ``rtsp://`` scheme."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid URL {url}")
        self.url = url


class ConflictingTransportError(ConfigError):
    """RTP-over-TCP was forced for a stream that also tunnels over HTTP."""

    def __init__(self, url: str) -> None:
        super().__init__(
            f"Invalid configuration for {url}: the -t and -T options cannot both be used!"
        )
        self.url = url


class UsageError(ConfigError):
    """Command-line usage problem; the caller should print the usage text."""


class ArgumentError(UsageError):
    """Unknown flag or an option missing its required argument."""


class NoStreamsError(UsageError):
    """Nothing to proxy and REGISTER proxying is disabled."""

    def __init__(self) -> None:
        super().__init__("No streams to proxy (give at least one rtsp:// URL or use -R)")


class MisplacedRegisterAuthError(UsageError):
    """REGISTER credentials were given without enabling REGISTER proxying."""

    def __init__(self) -> None:
        super().__init__("The '-U <username> <password>' option can be used only with -R")


class ServerBindError(RuntimeError):
    """No candidate port could be bound for the RTSP server."""

    def __init__(self, ports: list[int], reason: str = "") -> None:
        attempted = ", ".join(str(port) for port in ports)
        message = f"Failed to create RTSP server (tried ports {attempted})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.ports = list(ports)
        self.reason = reason


class TunnelUnavailableError(RuntimeError):
    """No RTSP-over-HTTP tunneling port could be bound; never fatal."""

    def __init__(self, ports: list[int]) -> None:
        attempted = ", ".join(str(port) for port in ports)
        super().__init__(f"RTSP-over-HTTP tunneling is not available (tried ports {attempted})")
        self.ports = list(ports)


__all__ = [
    "ArgumentError",
    "ConfigError",
    "ConfigNotFoundError",
    "ConfigParseError",
    "ConflictingTransportError",
    "IncludeCycleError",
    "InvalidURLError",
    "MisplacedRegisterAuthError",
    "NameCollisionError",
    "NoStreamsError",
    "ServerBindError",
    "TunnelUnavailableError",
    "UnsupportedTargetError",
    "UsageError",
]
