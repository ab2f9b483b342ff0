"""
CLI entrypoint that resolves the proxy configuration and starts the server.

Configuration is merged lowest precedence first: built-in defaults, the
``-c`` configuration file and everything it includes, then the remaining
command-line options and stream URLs. The merged result is validated and
handed to :class:`~proxyex.core.bootstrap.ServerBootstrap`, which blocks in
the backend event loop until the process is asked to stop.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .backend import (
    AsyncioEventLoop,
    ProxySessionFactory,
    RtspServerFactory,
    UserAuthenticationDatabase,
)
from .core.arguments import ArgParser, find_config_path, usage
from .core.bootstrap import ServerBootstrap
from .core.config import ConfigStore, GlobalSettings
from .core.errors import ConfigError, ServerBindError, UsageError
from .core.ini_loader import IniLoader

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing).resolve() == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str = "INFO") -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )


def apply_logging_settings(settings: GlobalSettings) -> None:
    """Adjust logging once the merged verbosity and log file are known."""

    if settings.verbosity > 0:
        logging.getLogger().setLevel(logging.DEBUG)
    if settings.log_file is not None:
        _ensure_rotating_file_handler(settings.log_file)


def load_configuration(tokens: Sequence[str]) -> ConfigStore:
    """Merge the configuration file tree and the command line into a store."""

    store = ConfigStore()
    config_path = find_config_path(tokens)
    if config_path is not None:
        loader = IniLoader(store)
        loader.load(config_path)
        LOGGER.info("Loaded %d configuration file(s)", len(loader.loaded_files))
    ArgParser(store).apply(tokens)
    return store


def build_bootstrap(listen_address: str = "") -> ServerBootstrap:
    """Wire the bootstrap to the asyncio reference backend."""

    server_factory = RtspServerFactory(listen_address)
    return ServerBootstrap(
        server_factory=server_factory,
        session_factory=ProxySessionFactory(),
        auth_db_factory=UserAuthenticationDatabase,
        event_loop=AsyncioEventLoop(server_factory),
    )


def main(argv: Sequence[str] | None = None) -> int:
    tokens = list(sys.argv[1:] if argv is None else argv)
    prog = Path(sys.argv[0]).name if sys.argv and sys.argv[0] else "proxyex"
    configure_logging()
    LOGGER.info("proxyex RTSP proxy server %s", __version__)
    try:
        store = load_configuration(tokens)
        apply_logging_settings(store.settings)
        build_bootstrap().run(store)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except UsageError as exc:
        LOGGER.error("%s", exc)
        print(usage(prog), file=sys.stderr)
        return 1
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 1
    except ServerBindError as exc:
        LOGGER.error("%s", exc)
        return 1
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("proxyex crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = [
    "apply_logging_settings",
    "build_bootstrap",
    "configure_logging",
    "load_configuration",
    "main",
]
