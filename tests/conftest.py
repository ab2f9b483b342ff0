from __future__ import annotations

import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from proxyex.core.config import ConfigStore


def _write_ini(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")
    return path


@pytest.fixture
def store() -> ConfigStore:
    """Fresh configuration store holding only built-in defaults."""

    return ConfigStore()


@pytest.fixture
def write_ini(tmp_path: Path) -> Callable[[str, str], Path]:
    """
    Write a dedented INI file below the test's temporary directory.

    Returns a callable taking a relative file name and the file content.
    """

    def _write(name: str, content: str) -> Path:
        return _write_ini(tmp_path / name, content)

    return _write
