"""
Secure storage for refreshed calendar tokens using the system keyring.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import keyring
import pendulum
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)


KEYRING_SERVICE_NAME = "slotbooker"


class TokenStore:
    """
    Keeps the latest OAuth credentials of each calendar connection.

    Stored credentials take precedence over the ones a connection record was
    loaded with, so a token refreshed in one request is reused by the next.
    Keyring failures are logged and treated as a cache miss.
    """

    def __init__(self, service_name: str = KEYRING_SERVICE_NAME):
        self.service_name = service_name

    def load(self, connection_id: str) -> Optional[Dict[str, Any]]:
        try:
            serialized = keyring.get_password(self.service_name, connection_id)
        except KeyringError as exc:
            logger.warning("Reading credentials for %s from keyring failed: %s", connection_id, exc)
            return None

        if not serialized:
            return None

        try:
            return json.loads(serialized)
        except ValueError as exc:
            logger.warning("Stored credentials for %s are corrupt: %s", connection_id, exc)
            return None

    def save(self, connection_id: str, credentials: Mapping[str, Any]) -> bool:
        try:
            keyring.set_password(self.service_name, connection_id, json.dumps(dict(credentials)))
            return True
        except KeyringError as exc:
            logger.warning("Writing credentials for %s to keyring failed: %s", connection_id, exc)
            return False

    def delete(self, connection_id: str) -> None:
        try:
            keyring.delete_password(self.service_name, connection_id)
        except PasswordDeleteError:
            pass
        except KeyringError as exc:
            logger.warning("Could not remove credentials for %s from keyring: %s", connection_id, exc)

    def merged(self, connection_id: str, credentials: Mapping[str, Any]) -> Dict[str, Any]:
        """Connection credentials overlaid with anything newer in the keyring."""
        result = dict(credentials)
        stored = self.load(connection_id)
        if stored:
            result.update(stored)
        return result


def token_expired(credentials: Mapping[str, Any], leeway_seconds: int = 60) -> bool:
    """
    Check ``token_expires_at`` (ISO 8601) against now plus ``leeway_seconds``.

    Credentials without an access token or expiry are treated as expired.
    """
    if not credentials.get("access_token"):
        return True
    expires_at = credentials.get("token_expires_at")
    if not expires_at:
        return True
    try:
        expiry = pendulum.parse(str(expires_at))
    except ValueError:
        return True
    return expiry <= pendulum.now("UTC").add(seconds=leeway_seconds)
