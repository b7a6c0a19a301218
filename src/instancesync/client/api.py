"""HTTP client for the remote instance store.

This module provides:
- RemoteStore: Protocol implemented by remote store adapters
- RemoteStoreClient: httpx client for a PostgREST-style backend
- TokenPair: Session tokens returned by a refresh
- APIError and subclasses: Error taxonomy used for retry classification

Instances are addressed by (user_id, name): the natural key is the only
identifier both replicas share before the first sync.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from instancesync.core.config import RemoteConfig
from instancesync.core.types import Instance

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed or access denied."""


class ValidationError(APIError):
    """Request rejected as invalid."""


class NotFoundError(APIError):
    """Resource not found."""


class ConflictError(APIError):
    """Write conflicted with existing remote state."""


class ServerError(APIError):
    """Remote store failed (5xx) or throttled (429)."""


@dataclass
class TokenPair:
    """Access/refresh token pair for the remote session."""

    access_token: str
    refresh_token: str
    expires_at: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenPair:
        """Create from an auth API response."""
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = time.time() + float(data["expires_in"])
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=float(expires_at) if expires_at is not None else None,
        )

    @property
    def is_expired(self) -> bool:
        """Check whether the access token has expired."""
        return self.expires_at is not None and time.time() >= self.expires_at


class RemoteStore(Protocol):
    """Remote authoritative store for instances, scoped by user."""

    def list_instances(self, user_id: str) -> list[Instance]:
        """List every instance of a user."""
        ...

    def save_instance(self, instance: Instance, user_id: str) -> Instance:
        """Create or replace the instance with the same name."""
        ...

    def delete_instance(self, name: str, user_id: str) -> None:
        """Delete an instance by name (idempotent)."""
        ...

    def refresh_session(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a fresh token pair."""
        ...


def _parse_timestamp(value: str | None) -> int:
    """Convert an ISO timestamp to milliseconds since the epoch."""
    if not value:
        return 0
    return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)


def instance_from_row(row: dict[str, Any]) -> Instance:
    """Create an Instance from a remote table row."""
    return Instance(
        id=str(row["id"]) if row.get("id") is not None else None,
        name=row["name"],
        version=row["version"],
        loader=row.get("loader") or "vanilla",
        icon=row.get("icon"),
        created=_parse_timestamp(row.get("created_at")),
        last_played=_parse_timestamp(row.get("updated_at")),
    )


class RemoteStoreClient:
    """HTTP client for the remote instance store.

    Usage:
        with RemoteStoreClient(RemoteConfig(url, api_key), access_token) as store:
            instances = store.list_instances(user_id)
    """

    def __init__(
        self,
        config: RemoteConfig,
        access_token: str | None = None,
    ) -> None:
        """Initialize the remote store client.

        Args:
            config: Remote store configuration.
            access_token: Session access token (may be set later).
        """
        self._config = config
        headers = {"apikey": config.api_key} if config.api_key else {}
        self._client = httpx.Client(timeout=config.timeout, headers=headers)
        if access_token:
            self.set_access_token(access_token)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> RemoteStoreClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def set_access_token(self, token: str) -> None:
        """Use token for subsequent requests."""
        self._client.headers["Authorization"] = f"Bearer {token}"

    def _detail(self, response: httpx.Response, default: str) -> str:
        try:
            data = response.json()
        except ValueError:
            return default
        if isinstance(data, dict):
            return str(
                data.get("message")
                or data.get("detail")
                or data.get("error_description")
                or default
            )
        return default

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(self._detail(response, "Unauthorized"), status)
        if status == 404:
            raise NotFoundError(self._detail(response, "Resource not found"), status)
        if status == 409:
            raise ConflictError(self._detail(response, "Conflict"), status)
        if status in (400, 422):
            raise ValidationError(self._detail(response, "Invalid request"), status)
        if status == 429 or status >= 500:
            raise ServerError(self._detail(response, "Server error"), status)
        if status >= 400:
            raise APIError(self._detail(response, "Unknown error"), status)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the remote store answers.

        Returns:
            True if the store responded without a server error.
        """
        try:
            response = self._client.get(f"{self._config.auth_url}/health")
            return response.status_code < 500
        except httpx.RequestError:
            return False

    # === Instance operations ===

    def list_instances(self, user_id: str) -> list[Instance]:
        """List all instances of a user.

        Args:
            user_id: Owner identity.

        Returns:
            Remote instances.
        """
        response = self._handle_response(
            self._client.get(
                f"{self._config.rest_url}/instances",
                params={"select": "*", "user_id": f"eq.{user_id}"},
            )
        )
        return [instance_from_row(row) for row in response.json()]

    def save_instance(self, instance: Instance, user_id: str) -> Instance:
        """Upsert an instance keyed by (user_id, name).

        Args:
            instance: Instance definition to store.
            user_id: Owner identity.

        Returns:
            The stored instance as returned by the remote store.
        """
        response = self._handle_response(
            self._client.post(
                f"{self._config.rest_url}/instances",
                params={"on_conflict": "user_id,name"},
                headers={"Prefer": "resolution=merge-duplicates,return=representation"},
                json={
                    "user_id": user_id,
                    "name": instance.name,
                    "version": instance.version,
                    "loader": instance.loader,
                    "icon": instance.icon,
                    "updated_at": datetime.now().astimezone().isoformat(),
                },
            )
        )
        rows = response.json()
        if isinstance(rows, list) and rows:
            return instance_from_row(rows[0])
        return instance

    def delete_instance(self, name: str, user_id: str) -> None:
        """Delete an instance by name.

        Deleting a missing instance is not an error.
        """
        self._handle_response(
            self._client.delete(
                f"{self._config.rest_url}/instances",
                params={"user_id": f"eq.{user_id}", "name": f"eq.{name}"},
            )
        )

    # === Session operations ===

    def refresh_session(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new token pair.

        Raises:
            AuthenticationError: If the refresh token is rejected.
        """
        response = self._handle_response(
            self._client.post(
                f"{self._config.auth_url}/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
        )
        tokens = TokenPair.from_dict(response.json())
        self.set_access_token(tokens.access_token)
        logger.debug("Session refreshed")
        return tokens
