"""Credential sealing for tenant database secrets."""

from __future__ import annotations

from store_engine.security.vault import CredentialVault, EncryptedSecret, Err, IntegrityError, Ok

__all__ = ["CredentialVault", "EncryptedSecret", "Err", "IntegrityError", "Ok"]
