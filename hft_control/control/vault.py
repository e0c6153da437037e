# hft_control/control/vault.py
"""Credential vault: envelope-encrypted secrets at rest, decrypted per request."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Union

from hft_control.core.errors import SigningError, StateError
from hft_control.core.models import CloudCredential
from hft_control.core.repository import ControlStore
from hft_control.signing import envelope
from hft_control.signing.key_cache import KeyCache
from hft_control.signing.ssh_keys import fingerprint_hash

logger = logging.getLogger(__name__)


class CredentialVault(ABC):
    """Decrypted credentials are request-scoped; callers must not cache them."""

    @abstractmethod
    def cloud_credentials(self, provider: str) -> CloudCredential:
        raise NotImplementedError

    @abstractmethod
    def exchange_credentials(self, exchange: str) -> Dict[str, str]:
        raise NotImplementedError


class StoreVault(CredentialVault):

    def __init__(self, store: ControlStore, keys: KeyCache):
        self._store = store
        self._keys = keys

    def _open(self, sealed: Union[str, Dict[str, Any]], label: str) -> Dict[str, str]:
        if not envelope.is_envelope(sealed):
            raise SigningError(f"Stored credentials for {label} are not an encrypted envelope")
        try:
            plaintext = envelope.decrypt(sealed, self._keys.get())
        except SigningError:
            # Key may have rotated since it was cached
            self._keys.invalidate()
            plaintext = envelope.decrypt(sealed, self._keys.get())
        try:
            secrets = json.loads(plaintext)
        except ValueError as e:
            raise SigningError(f"Decrypted credentials for {label} are not JSON") from e
        return {k: str(v) for k, v in secrets.items() if v is not None}

    def cloud_credentials(self, provider: str) -> CloudCredential:
        row = self._store.get_cloud_credential(provider)
        if not row or not row.get("envelope"):
            raise StateError("no_credentials", f"No credentials stored for {provider}")

        secrets = self._open(row["envelope"], provider)
        logger.debug(f"[vault] Opened {provider} credentials (fields: {sorted(secrets)})")
        return CloudCredential(
            provider=provider,
            secrets=secrets,
            fingerprint=row.get("fingerprint"),
            last_verified_at=row.get("last_verified_at"),
        )

    def exchange_credentials(self, exchange: str) -> Dict[str, str]:
        connection = self._store.get_exchange_connection(exchange)
        if connection is None or not connection.credentials:
            raise StateError("no_credentials", f"No credentials stored for {exchange}")

        sealed = connection.credentials.get("envelope")
        if sealed:
            return self._open(sealed, exchange)
        # Legacy rows hold individually encrypted fields
        return {
            key: envelope.decrypt(value, self._keys.get()) if envelope.is_envelope(value) else value
            for key, value in connection.credentials.items()
        }

    def seal_cloud_credentials(self, provider: str, secrets: Dict[str, str]) -> str:
        """Encrypt and persist a wizard bundle; returns its fingerprint hash."""
        plaintext = json.dumps(secrets, sort_keys=True)
        sealed = envelope.encrypt(plaintext, self._keys.get())
        fingerprint = fingerprint_hash(plaintext)
        self._store.save_cloud_credential(provider, sealed, fingerprint)
        logger.info(f"[vault] Stored {provider} credentials (fingerprint {fingerprint})")
        return fingerprint

    def mark_verified(self, provider: str) -> None:
        self._store.mark_credential_verified(provider)
