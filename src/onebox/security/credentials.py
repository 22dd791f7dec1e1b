"""Credential decryption and account loading."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, Field, ValidationError

from ..core.config import SecuritySettings
from ..core.interfaces import ConfigurationError, CredentialDecryptor
from ..core.models import Account

LOGGER = logging.getLogger(__name__)


class FernetCredentialDecryptor(CredentialDecryptor):
    """Decrypt Fernet tokens with an explicitly supplied key."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ConfigurationError("An encryption key is required")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("Encryption key is not a valid Fernet key") from exc

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> FernetCredentialDecryptor:
        """Build a decryptor, refusing to start without a configured key."""
        if not settings.encryption_key:
            raise ConfigurationError(
                "ONEBOX_SECURITY__ENCRYPTION_KEY must be set to decrypt credentials"
            )
        return cls(settings.encryption_key)

    def encrypt(self, plaintext: str) -> str:
        """Return a token for ``plaintext``."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        """Return the plaintext for ``token``; invalid tokens are an error."""
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ConfigurationError("Credential could not be decrypted") from exc


class AccountRecord(BaseModel):
    """Stored account shape, password encrypted."""

    id: str = Field(min_length=1)
    email: str
    imap_host: str = Field(min_length=1)
    imap_port: int = Field(default=993, gt=0, lt=65536)
    username: str = Field(min_length=1)
    password: str
    is_active: bool = True

    def to_account(self, decryptor: CredentialDecryptor) -> Account:
        """Decrypt the password and return an engine :class:`Account`."""
        return Account(
            id=self.id,
            address=self.email,
            host=self.imap_host,
            port=self.imap_port,
            username=self.username,
            credential=decryptor.decrypt(self.password),
            active=self.is_active,
        )


def load_accounts(path: Path | str, decryptor: CredentialDecryptor) -> list[Account]:
    """Read a JSON list of account records and decrypt their credentials."""
    accounts_path = Path(path)
    try:
        raw = json.loads(accounts_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Accounts file {accounts_path} not found") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Accounts file {accounts_path} is not JSON") from exc
    if not isinstance(raw, list):
        raise ConfigurationError("Accounts file must contain a JSON list")

    accounts: list[Account] = []
    for index, item in enumerate(raw):
        try:
            record = AccountRecord.model_validate(item)
        except ValidationError as exc:
            raise ConfigurationError(f"Account entry {index} is invalid: {exc}") from exc
        accounts.append(record.to_account(decryptor))
    LOGGER.info("Loaded %s account(s) from %s", len(accounts), accounts_path)
    return accounts


__all__ = ["AccountRecord", "FernetCredentialDecryptor", "load_accounts"]
