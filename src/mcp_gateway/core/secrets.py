"""
Per-user secrets for backend servers.

Secrets are stored Fernet-encrypted in the document store, one document
per (user, server, name) triple.
"""

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from mcp_gateway.core.base import Resource
from mcp_gateway.core.exceptions import SecretNotFoundError
from mcp_gateway.core.store import DocumentStore
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class SecretResolver(Resource, ABC):
    """Resolves a named secret for a user and server."""

    @abstractmethod
    async def resolve(self, user: str, server: str, name: str) -> str:
        """
        Plaintext secret value.

        Raises:
            SecretNotFoundError: Nothing stored for the triple
        """


class StoreSecretResolver(SecretResolver):
    """Secret resolver backed by the document store."""

    def __init__(
        self,
        store: DocumentStore,
        key: Optional[str] = None,
        key_file: Optional[Path] = None,
    ):
        self.store = store
        self._key = key.encode() if key else None
        self._key_file = Path(os.path.expanduser(str(key_file))) if key_file else None
        self._fernet: Optional[Fernet] = None

    async def init(self) -> None:
        await self.store.init()
        self._fernet = Fernet(self._load_key())

    def _load_key(self) -> bytes:
        if self._key:
            return self._key
        if self._key_file is None:
            logger.warning("No secrets key configured; using an ephemeral key")
            return Fernet.generate_key()
        if self._key_file.exists():
            return self._key_file.read_bytes().strip()

        key = Fernet.generate_key()
        self._key_file.parent.mkdir(parents=True, exist_ok=True)
        self._key_file.write_bytes(key)
        self._key_file.chmod(0o600)
        logger.info(f"Generated secrets key at {self._key_file}")
        return key

    @property
    def fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_key())
        return self._fernet

    async def set(self, user: str, server: str, name: str, value: str) -> None:
        """Store or replace a secret."""
        token = self.fernet.encrypt(value.encode()).decode()
        self.store.upsert({"value": token}, {"user": user, "server": server, "name": name})
        logger.debug(f"Stored secret '{name}' for server '{server}'", extra={"server": server})

    async def delete(self, user: str, server: str, name: str) -> None:
        """Remove a secret."""
        if not self.store.delete({"user": user, "server": server, "name": name}):
            raise SecretNotFoundError(
                f"Secret '{name}' not found for server '{server}'",
                details={"server": server, "name": name},
            )

    async def resolve(self, user: str, server: str, name: str) -> str:
        document = self.store.find_one({"user": user, "server": server, "name": name})
        if document is None:
            raise SecretNotFoundError(
                f"Secret '{name}' not found for server '{server}'",
                details={"server": server, "name": name},
            )
        try:
            return self.fernet.decrypt(document["value"].encode()).decode()
        except InvalidToken as e:
            logger.error(f"Failed to decrypt secret '{name}' for server '{server}'")
            raise SecretNotFoundError(
                f"Secret '{name}' for server '{server}' cannot be decrypted",
                details={"server": server, "name": name},
            ) from e
