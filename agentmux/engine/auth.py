"""Credential providers used by agent adapters.

Credentials are opaque to the core: adapters only ask a provider
to fetch, refresh, and validate them. Three implementations ship:

- StaticAuthProvider: fixed credentials (tests, embedding hosts)
- EnvApiKeyAuthProvider: API key read from an environment variable
- CliLoginAuthProvider: vendor CLI owns the login (OAuth / cached
  credentials); valid when the CLI is installed
"""
from __future__ import annotations

import abc
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class AuthCredentials:
    """Opaque credential bundle."""
    type: str  # "api-key", "oauth", "session-token", "cli-login"
    credentials: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    refresh_token: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class AuthProvider(abc.ABC):
    """Abstract credential source for one agent backend."""

    @abc.abstractmethod
    async def get_credentials(self) -> AuthCredentials:
        """Return the current credentials."""

    @abc.abstractmethod
    async def refresh_credentials(self) -> AuthCredentials:
        """Refresh credentials if the backing mechanism supports it."""

    @abc.abstractmethod
    async def validate_credentials(self, credentials: AuthCredentials) -> bool:
        """Return True if the credentials can be used."""

    async def clear_credentials(self) -> None:
        """Forget cached credentials. Default no-op."""
        return None


class StaticAuthProvider(AuthProvider):
    """Serves a fixed credential bundle."""

    def __init__(
        self,
        credentials: AuthCredentials | None = None,
        valid: bool = True,
    ) -> None:
        self._credentials = credentials or AuthCredentials(type="session-token")
        self._valid = valid

    async def get_credentials(self) -> AuthCredentials:
        return self._credentials

    async def refresh_credentials(self) -> AuthCredentials:
        return self._credentials

    async def validate_credentials(self, credentials: AuthCredentials) -> bool:
        return self._valid and not credentials.is_expired()

    async def clear_credentials(self) -> None:
        self._valid = False


class EnvApiKeyAuthProvider(AuthProvider):
    """API key read from an environment variable on every call.

    Re-reading the environment lets hosts rotate keys without
    rebuilding adapters.
    """

    def __init__(self, env_var: str) -> None:
        self._env_var = env_var
        self._cleared = False

    @property
    def env_var(self) -> str:
        return self._env_var

    async def get_credentials(self) -> AuthCredentials:
        key = None if self._cleared else os.environ.get(self._env_var)
        return AuthCredentials(
            type="api-key",
            credentials={"env_var": self._env_var, "api_key": key},
        )

    async def refresh_credentials(self) -> AuthCredentials:
        self._cleared = False
        return await self.get_credentials()

    async def validate_credentials(self, credentials: AuthCredentials) -> bool:
        key = credentials.credentials.get("api_key")
        if not key:
            logger.debug("API key env var %s is not set", self._env_var)
            return False
        return not credentials.is_expired()

    async def clear_credentials(self) -> None:
        self._cleared = True


class CliLoginAuthProvider(AuthProvider):
    """Vendor CLI manages its own login.

    Only checks that the CLI is installed; does NOT require an API
    key (OAuth / cached CLI credentials handle auth). When
    ``api_key_env`` is set and present, the key is carried along so
    vendor clients can pass it to the subprocess environment.
    """

    def __init__(self, command: str, api_key_env: str | None = None) -> None:
        self._command = command
        self._api_key_env = api_key_env

    async def get_credentials(self) -> AuthCredentials:
        data: dict[str, Any] = {"command": self._command}
        if self._api_key_env and os.environ.get(self._api_key_env):
            data["api_key_env"] = self._api_key_env
            data["api_key"] = os.environ[self._api_key_env]
        return AuthCredentials(type="cli-login", credentials=data)

    async def refresh_credentials(self) -> AuthCredentials:
        return await self.get_credentials()

    async def validate_credentials(self, credentials: AuthCredentials) -> bool:
        command = credentials.credentials.get("command") or self._command
        return shutil.which(command) is not None
