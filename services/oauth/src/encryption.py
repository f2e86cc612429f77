"""Token encryption utilities.

Tokens are sealed with AES-256-GCM under a key derived per integration from
the master secret, with the integration id bound in as associated data. The
plaintext also embeds an integrity hash of the token fields which is checked
again after decryption.
"""

import hashlib
import hmac
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import TokenDecryptionError, TokenIntegrityError
from .schemas import EncryptedTokenBlob, TokenSet, utcnow
from .vault import SecretSource

logger = logging.getLogger(__name__)

ENCRYPTION_VERSION = "1.0"
KEY_DERIVATION_ROUNDS = 100000
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

TOKEN_FIELDS = ("access_token", "refresh_token", "expires_at", "scope")


def canonical_fields(tokens: TokenSet) -> dict[str, Any]:
    """Plain JSON form of the four token fields."""
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
        "scope": list(tokens.scope),
    }


def integrity_hash(fields: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the token fields (scope order ignored)."""
    scope = fields.get("scope") or []
    canonical = json.dumps(
        {
            "access_token": fields.get("access_token"),
            "refresh_token": fields.get("refresh_token"),
            "expires_at": fields.get("expires_at"),
            "scope": sorted(scope) if isinstance(scope, list) else scope,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class TokenCipher:
    """Encrypts and decrypts token tuples for a single master secret."""

    def __init__(
        self,
        secret_source: SecretSource,
        secret_name: str = "oauth_token_master_key",
        iterations: int = KEY_DERIVATION_ROUNDS,
    ):
        self.secret_source = secret_source
        self.secret_name = secret_name
        self.iterations = iterations

    def derive_key(self, integration_id: str) -> bytes:
        """Derive the AES key for an integration from the master secret."""
        master_key = self.secret_source.get_secret(self.secret_name)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=integration_id.encode("utf-8"),
            iterations=self.iterations,
        )
        return kdf.derive(master_key.encode("utf-8"))

    def seal_payload(self, payload: dict[str, Any], integration_id: str) -> EncryptedTokenBlob:
        """Encrypt an arbitrary JSON payload for an integration."""
        key = self.derive_key(integration_id)
        iv = os.urandom(IV_LENGTH)
        plaintext = json.dumps(payload).encode("utf-8")
        sealed = AESGCM(key).encrypt(iv, plaintext, integration_id.encode("utf-8"))
        return EncryptedTokenBlob(
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_LENGTH:].hex(),
            version=ENCRYPTION_VERSION,
        )

    def open_payload(self, blob: EncryptedTokenBlob, integration_id: str) -> dict[str, Any]:
        """Decrypt a payload sealed by :meth:`seal_payload`."""
        try:
            key = self.derive_key(integration_id)
            iv = bytes.fromhex(blob.iv)
            sealed = bytes.fromhex(blob.ciphertext) + bytes.fromhex(blob.auth_tag)
            plaintext = AESGCM(key).decrypt(iv, sealed, integration_id.encode("utf-8"))
            payload = json.loads(plaintext)
        except (InvalidTag, ValueError) as e:
            logger.error(f"Token decryption failed for integration {integration_id}: {type(e).__name__}")
            raise TokenDecryptionError() from None

        if not isinstance(payload, dict):
            logger.error(f"Token payload for integration {integration_id} is not an object")
            raise TokenDecryptionError()
        return payload

    def encrypt(self, tokens: TokenSet, integration_id: str) -> EncryptedTokenBlob:
        """Encrypt a token tuple, embedding its integrity hash."""
        fields = canonical_fields(tokens)
        payload = {
            **fields,
            "encrypted_at": utcnow().isoformat(),
            "integrity_hash": integrity_hash(fields),
        }
        return self.seal_payload(payload, integration_id)

    def decrypt(self, blob: EncryptedTokenBlob, integration_id: str) -> TokenSet:
        """Decrypt a token tuple and verify its integrity hash."""
        payload = self.open_payload(blob, integration_id)

        fields = {name: payload.get(name) for name in TOKEN_FIELDS}
        embedded = payload.get("integrity_hash")
        if not isinstance(embedded, str) or not hmac.compare_digest(embedded, integrity_hash(fields)):
            logger.error(f"Token integrity verification failed for integration {integration_id}")
            raise TokenIntegrityError()

        try:
            return TokenSet(**fields)
        except ValueError:
            logger.error(f"Token payload for integration {integration_id} has invalid fields")
            raise TokenDecryptionError() from None
