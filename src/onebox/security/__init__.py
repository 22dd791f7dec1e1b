"""Credential handling."""

from .credentials import AccountRecord, FernetCredentialDecryptor, load_accounts

__all__ = ["AccountRecord", "FernetCredentialDecryptor", "load_accounts"]
