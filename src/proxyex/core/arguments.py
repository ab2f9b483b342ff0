"""
Command-line handling for the proxy launcher.

The grammar is positional: option flags come first, and the first token that
does not start with ``-`` begins the list of ``rtsp://`` URLs to proxy. Some
flags take a variable number of arguments (``-T`` consumes a following port
number only when one is present), so tokens are scanned by hand rather than
through ``argparse``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .config import AuthPurpose, ConfigStore, StreamDefinition, StreamParams
from .errors import ArgumentError

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_TUNNEL_PORT = 80

USAGE = (
    "Usage: {prog}"
    " [-c <config-file>]"
    " [-v|-V]"
    " [-t|-T [<http-port>]]"
    " [-p <rtspServer-port>]"
    " [-u <username> <password>]"
    " [-R] [-U <username-for-REGISTER> <password-for-REGISTER>]"
    " <rtsp-url-1> ... <rtsp-url-n>"
)

# Number of arguments each flag consumes; -T is handled separately.
OPTION_ARITY: dict[str, int] = {
    "-c": 1,
    "-v": 0,
    "-V": 0,
    "-t": 0,
    "-p": 1,
    "-u": 2,
    "-U": 2,
    "-R": 0,
}


def usage(prog: str = "proxyex") -> str:
    return USAGE.format(prog=prog)


def _is_option(token: str) -> bool:
    return token.startswith("-")


def _parse_port(token: str) -> int | None:
    """Return ``token`` as a port number, or ``None`` if it is not one."""
    if not (token.isascii() and token.isdigit()):
        return None
    port = int(token)
    if 0 < port <= 65535:
        return port
    return None


def _optional_port(tokens: Sequence[str], pos: int) -> int | None:
    if pos + 1 < len(tokens) and not _is_option(tokens[pos + 1]):
        return _parse_port(tokens[pos + 1])
    return None


def _require(tokens: Sequence[str], pos: int, flag: str, count: int) -> list[str]:
    values = list(tokens[pos + 1 : pos + 1 + count])
    if len(values) < count:
        raise ArgumentError(f"Option {flag} requires {count} argument(s)")
    return values


def find_config_path(tokens: Sequence[str]) -> str | None:
    """
    Locate the ``-c <path>`` argument among the leading option tokens.

    The configuration file must be loaded before the remaining options are
    applied, since command-line values take precedence over it.
    """

    pos = 0
    while pos < len(tokens) and _is_option(tokens[pos]):
        flag = tokens[pos]
        if flag == "-c":
            return _require(tokens, pos, flag, 1)[0]
        if flag == "-T":
            pos += 2 if _optional_port(tokens, pos) is not None else 1
            continue
        pos += 1 + OPTION_ARITY.get(flag, 0)
    return None


class ArgParser:
    """Apply command-line overrides and trailing stream URLs to a store."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store
        self.stream_params = StreamParams()

    def parse(self, tokens: Sequence[str]) -> int:
        """
        Consume leading option tokens and return the index of the first URL.

        ``tokens`` excludes the program name. Raises ``ArgumentError`` for an
        unknown flag or a flag missing its argument(s).
        """

        settings = self._store.settings
        pos = 0
        while pos < len(tokens) and _is_option(tokens[pos]):
            flag = tokens[pos]
            if flag == "-c":
                _require(tokens, pos, flag, 1)
                pos += 1
            elif flag == "-v":
                settings.verbosity = 1
            elif flag == "-V":
                settings.verbosity = 2
            elif flag == "-t":
                settings.stream_rtp_over_tcp = True
            elif flag == "-T":
                port = _optional_port(tokens, pos)
                if port is None:
                    port = DEFAULT_BACKEND_TUNNEL_PORT
                else:
                    pos += 1
                self.stream_params = self.stream_params.model_copy(
                    update={"tunnel_over_http_port": port}
                )
            elif flag == "-p":
                (value,) = _require(tokens, pos, flag, 1)
                port = None if _is_option(value) else _parse_port(value)
                if port is None:
                    raise ArgumentError(f"Invalid RTSP server port: {value}")
                settings.rtsp_server_port = port
                pos += 1
            elif flag == "-u":
                username, password = _require(tokens, pos, flag, 2)
                self.stream_params = self.stream_params.model_copy(
                    update={"username": username, "password": password}
                )
                pos += 2
            elif flag == "-U":
                username, password = _require(tokens, pos, flag, 2)
                settings.username_for_register = username
                settings.password_for_register = password
                self._store.add_auth_record(AuthPurpose.REGISTER, username, password)
                pos += 2
            elif flag == "-R":
                settings.register_requests = True
            else:
                raise ArgumentError(f"Unknown option {flag}")
            pos += 1
        return pos

    def add_streams(self, urls: Sequence[str]) -> list[StreamDefinition]:
        """Name and register the command-line URLs in the order given."""
        settings = self._store.settings
        added: list[StreamDefinition] = []
        for position, url in enumerate(urls, start=1):
            name = settings.stream_name(position, len(urls))
            definition = StreamDefinition.from_params(url, name, self.stream_params)
            self._store.add_stream(definition)
            added.append(definition)
        return added

    def apply(self, tokens: Sequence[str]) -> list[StreamDefinition]:
        split = self.parse(tokens)
        logger.debug(
            "Options end at token %d; %d stream URL(s) follow", split, len(tokens) - split
        )
        return self.add_streams(tokens[split:])


__all__ = [
    "ArgParser",
    "DEFAULT_BACKEND_TUNNEL_PORT",
    "OPTION_ARITY",
    "USAGE",
    "find_config_path",
    "usage",
]
