"""
Append-only registry of proxied streams with a name-uniqueness index.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING

from .errors import NameCollisionError

if TYPE_CHECKING:
    from .config import StreamDefinition

logger = logging.getLogger(__name__)


class StreamRegistry:
    """Ordered stream definitions whose names are unique across every source."""

    def __init__(self) -> None:
        self._streams: list[StreamDefinition] = []
        self._names: set[str] = set()

    def add(self, definition: StreamDefinition) -> None:
        """Register ``definition`` or raise ``NameCollisionError`` if its name is taken."""
        if definition.name in self._names:
            raise NameCollisionError(definition.name)
        self._streams.append(definition)
        self._names.add(definition.name)
        logger.debug("Registered stream %s -> %s", definition.name, definition.url)

    def names(self) -> list[str]:
        return [definition.name for definition in self._streams]

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[StreamDefinition]:
        return iter(list(self._streams))

    def __len__(self) -> int:
        return len(self._streams)


__all__ = ["StreamRegistry"]
