"""
Configuration resolution and start-up orchestration for the proxy server.

The pipeline runs leaf-first: INI files populate a ``ConfigStore``, the
command line overrides and extends it, and ``ServerBootstrap`` validates the
result before binding the server and creating sessions.
"""

from .arguments import ArgParser, find_config_path, usage
from .bootstrap import BootstrapResult, ServerBootstrap, validate_streams
from .config import (
    AuthPurpose,
    AuthRecord,
    ConfigStore,
    GlobalSettings,
    StreamDefinition,
    StreamParams,
    Transport,
    TransportMode,
    pair_lines,
)
from .errors import ConfigError, ServerBindError, UsageError
from .ini_loader import IniLoader
from .registry import StreamRegistry

__all__ = [
    "ArgParser",
    "AuthPurpose",
    "AuthRecord",
    "BootstrapResult",
    "ConfigError",
    "ConfigStore",
    "GlobalSettings",
    "IniLoader",
    "ServerBindError",
    "ServerBootstrap",
    "StreamDefinition",
    "StreamParams",
    "StreamRegistry",
    "Transport",
    "TransportMode",
    "UsageError",
    "find_config_path",
    "pair_lines",
    "usage",
    "validate_streams",
]
