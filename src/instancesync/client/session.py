"""Remote session token storage and refresh.

This module provides:
- TokenStore: Token pairs kept in the OS keyring, one entry per account
- SessionManager: Timeout-raced session refresh with an explicit result

Refresh is invoked opportunistically (on reconnect or account switch).
It races session_timeout and reports failure instead of hanging the
caller; a late reply from a timed-out call is discarded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from instancesync.client.api import APIError, TokenPair
from instancesync.client.sync.retry import run_with_timeout
from instancesync.core.config import SyncConfig

if TYPE_CHECKING:
    from instancesync.client.api import RemoteStore

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "instancesync"
DEFAULT_ACCOUNT = "session"


class TokenStore:
    """Keeps session token pairs in the OS keyring."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service

    def load(self, account: str = DEFAULT_ACCOUNT) -> TokenPair | None:
        """Load a stored token pair, or None if absent or unreadable."""
        try:
            raw = keyring.get_password(self._service, account)
        except KeyringError as e:
            logger.warning("Keyring unavailable, no stored session: %s", e)
            return None
        if not raw:
            return None
        try:
            return TokenPair.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Stored session for %s is unreadable: %s", account, e)
            return None

    def save(self, tokens: TokenPair, account: str = DEFAULT_ACCOUNT) -> bool:
        """Store a token pair.

        Returns:
            True if the keyring accepted it.
        """
        data = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "expires_at": tokens.expires_at,
        }
        try:
            keyring.set_password(self._service, account, json.dumps(data))
        except KeyringError as e:
            logger.warning("Failed to store session in keyring: %s", e)
            return False
        return True

    def clear(self, account: str = DEFAULT_ACCOUNT) -> None:
        """Remove a stored token pair."""
        try:
            keyring.delete_password(self._service, account)
        except PasswordDeleteError:
            pass  # nothing stored
        except KeyringError as e:
            logger.warning("Failed to clear session from keyring: %s", e)


@dataclass
class RefreshResult:
    """Outcome of a session refresh."""

    success: bool
    tokens: TokenPair | None = None
    error: str | None = None


class SessionManager:
    """Refreshes the remote session without blocking the caller for long."""

    def __init__(
        self,
        remote: RemoteStore,
        store: TokenStore | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self._remote = remote
        self._store = store or TokenStore()
        self._config = config or SyncConfig()

    def current(self, account: str = DEFAULT_ACCOUNT) -> TokenPair | None:
        """Stored token pair for an account."""
        return self._store.load(account)

    def login(self, tokens: TokenPair, account: str = DEFAULT_ACCOUNT) -> None:
        """Store tokens obtained by an external sign-in flow."""
        self._store.save(tokens, account)
        logger.info("Session stored for %s", account)

    def logout(self, account: str = DEFAULT_ACCOUNT) -> None:
        """Forget an account's session."""
        self._store.clear(account)
        logger.info("Session cleared for %s", account)

    def refresh(self, account: str = DEFAULT_ACCOUNT) -> RefreshResult:
        """Exchange the stored refresh token for a new pair. Never raises."""
        tokens = self._store.load(account)
        if tokens is None:
            return RefreshResult(success=False, error="No stored session")

        try:
            fresh = run_with_timeout(
                lambda: self._remote.refresh_session(tokens.refresh_token),
                self._config.session_timeout,
                name="session refresh",
            )
        except TimeoutError:
            return RefreshResult(success=False, error="Session refresh timed out")
        except APIError as e:
            logger.warning("Session refresh rejected: %s", e)
            return RefreshResult(success=False, error=str(e))
        except Exception as e:
            logger.warning("Session refresh failed: %s", e)
            return RefreshResult(success=False, error=str(e) or type(e).__name__)

        self._store.save(fresh, account)
        logger.info("Session refreshed for %s", account)
        return RefreshResult(success=True, tokens=fresh)
