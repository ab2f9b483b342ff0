"""
Recursive loader for INI configuration files.

Each file may set global options in ``[general]``, declare proxied streams in
``[streams]`` (with shared credentials from ``[streamparams]``), add client
credentials in ``[auth]``, and pull in further files through ``[include]``.
Keys missing from a file never reset a value set earlier, so included files
layer on top of each other instead of starting from defaults again.
"""

from __future__ import annotations

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import (
    AuthPurpose,
    ConfigStore,
    GlobalSettings,
    StreamDefinition,
    StreamParams,
    pair_lines,
)
from .errors import (
    ConfigNotFoundError,
    ConfigParseError,
    IncludeCycleError,
    UnsupportedTargetError,
)

logger = logging.getLogger(__name__)

GENERAL_SECTION = "general"
STREAM_PARAMS_SECTION = "streamparams"
STREAMS_SECTION = "streams"
AUTH_SECTION = "auth"
INCLUDE_SECTION = "include"


class _MultiValueDict(dict):
    """Option storage that appends repeated keys as extra lines of one value."""

    def __setitem__(self, key: str, value: Any) -> None:
        if isinstance(value, list) and isinstance(self.get(key), list):
            self[key].extend(value)
        else:
            super().__setitem__(key, value)


def _new_parser() -> configparser.ConfigParser:
    return configparser.ConfigParser(
        dict_type=_MultiValueDict,
        strict=False,
        interpolation=None,
        empty_lines_in_values=False,
        inline_comment_prefixes=(";",),
    )


def _fold_section_names(parser: configparser.ConfigParser) -> configparser.ConfigParser:
    """Merge sections whose names differ only in case under the lowercase name."""
    if all(name == name.lower() for name in parser.sections()):
        return parser
    folded = _new_parser()
    for name in parser.sections():
        lowered = name.lower()
        if not folded.has_section(lowered):
            folded.add_section(lowered)
        for key, value in parser.items(name):
            current = folded.get(lowered, key, fallback=None)
            folded.set(lowered, key, value if current is None else f"{current}\n{value}")
    return folded


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'value'}: {error['msg']}"
        for error in exc.errors()
    )


class IniLoader:
    """Apply a tree of INI files to a :class:`ConfigStore`."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store
        self._chain: list[Path] = []
        self.loaded_files: list[Path] = []

    def load(self, path: str | Path) -> None:
        """
        Load ``path`` and, recursively, every file it includes.

        The first failure anywhere in the include tree aborts the whole load.
        """

        resolved = self._resolve(Path(path))
        if resolved in self._chain:
            raise IncludeCycleError(self._chain, resolved)
        self._chain.append(resolved)
        try:
            self._load_file(resolved)
        finally:
            self._chain.pop()

    @staticmethod
    def _resolve(path: Path) -> Path:
        candidate = path.expanduser()
        if not candidate.exists():
            raise ConfigNotFoundError(path)
        if candidate.is_dir():
            raise UnsupportedTargetError(path)
        return candidate.resolve()

    def _load_file(self, path: Path) -> None:
        parser = self._read(path)
        self._apply_general(parser, path)

        params = self._stream_params(parser, path)
        added = 0
        for url, name in pair_lines(
            parser.get(STREAMS_SECTION, "url", fallback=""),
            parser.get(STREAMS_SECTION, "name", fallback=""),
        ):
            try:
                definition = StreamDefinition.from_params(url, name, params)
            except ValidationError as exc:
                raise ConfigParseError(path, f"[streams] {url!r}: {_describe(exc)}") from exc
            self._store.add_stream(definition)
            added += 1

        for username, password in pair_lines(
            parser.get(AUTH_SECTION, "username", fallback=""),
            parser.get(AUTH_SECTION, "password", fallback=""),
        ):
            self._store.add_auth_record(AuthPurpose.CLIENT_ACCESS, username, password)

        self.loaded_files.append(path)
        logger.debug("Loaded %s (%d streams)", path, added)

        includes = parser.get(INCLUDE_SECTION, "path", fallback="")
        for line in includes.strip().splitlines():
            entry = line.strip()
            if not entry:
                continue
            target = self._include_target(Path(entry).expanduser(), path)
            logger.debug("Including %s from %s", target, path)
            self.load(target)

    @staticmethod
    def _include_target(target: Path, including: Path) -> Path:
        # Relative paths are taken from the working directory first, then
        # from the including file's directory.
        if target.is_absolute() or target.exists():
            return target
        sibling = including.parent / target
        return sibling if sibling.exists() else target

    @staticmethod
    def _read(path: Path) -> configparser.ConfigParser:
        parser = _new_parser()
        try:
            with path.open(encoding="utf-8") as handle:
                parser.read_file(handle, source=str(path))
        except configparser.Error as exc:
            raise ConfigParseError(path, exc.message) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigParseError(path, str(exc)) from exc
        return _fold_section_names(parser)

    def _apply_general(self, parser: configparser.ConfigParser, path: Path) -> None:
        if not parser.has_section(GENERAL_SECTION):
            return
        section = parser[GENERAL_SECTION]
        values = {key: section[key] for key in GlobalSettings.model_fields if key in section}
        ignored = sorted(set(section) - set(values))
        if ignored:
            logger.debug("Ignoring unknown [general] keys in %s: %s", path, ", ".join(ignored))
        try:
            self._store.update_settings(values)
        except ValidationError as exc:
            raise ConfigParseError(path, _describe(exc)) from exc

    @staticmethod
    def _stream_params(parser: configparser.ConfigParser, path: Path) -> StreamParams:
        if not parser.has_section(STREAM_PARAMS_SECTION):
            return StreamParams()
        try:
            return StreamParams.model_validate(dict(parser[STREAM_PARAMS_SECTION]))
        except ValidationError as exc:
            raise ConfigParseError(path, _describe(exc)) from exc


__all__ = ["IniLoader"]
