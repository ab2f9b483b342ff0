"""
In-memory username/password database used by the reference RTSP server.
"""

from __future__ import annotations

import hmac
import logging

logger = logging.getLogger(__name__)

DEFAULT_REALM = "proxyex"


class UserAuthenticationDatabase:
    """Credential store; adding an existing username replaces its password."""

    def __init__(self, realm: str = DEFAULT_REALM) -> None:
        self.realm = realm
        self._records: dict[str, str] = {}

    def add_record(self, username: str, password: str) -> None:
        if username in self._records:
            logger.debug("Replacing password for user %s", username)
        self._records[username] = password

    def authenticate(self, username: str, password: str) -> bool:
        expected = self._records.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8"))

    def __contains__(self, username: object) -> bool:
        return username in self._records

    def __len__(self) -> int:
        return len(self._records)


__all__ = ["DEFAULT_REALM", "UserAuthenticationDatabase"]
