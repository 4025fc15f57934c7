"""
Credential vault for external storage secrets.

Each user gets a symmetric key derived with scrypt from SESSION_SECRET and the
user id, so a stolen row is useless without the server secret and credentials
are bound to the user they were stored for. New values are Fernet tokens;
values written by the previous implementation ("<iv hex>:<ciphertext hex>",
AES-256-CBC) are still readable.
"""
import base64
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.config import get_settings

logger = logging.getLogger(__name__)

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32


class VaultError(Exception):
    """Credential could not be encrypted or decrypted."""
    pass


@lru_cache(maxsize=256)
def _derive_user_key(master_secret: str, user_id: str) -> bytes:
    kdf = Scrypt(
        salt=f"user:{user_id}".encode(),
        length=KEY_LENGTH,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(master_secret.encode())


def _is_legacy_format(value: str) -> bool:
    iv_hex, sep, cipher_hex = value.partition(":")
    if not sep or len(iv_hex) != 32 or not cipher_hex:
        return False
    try:
        bytes.fromhex(iv_hex)
        bytes.fromhex(cipher_hex)
    except ValueError:
        return False
    return True


class CredentialVault:
    """Encrypts and decrypts per-user provider credentials."""

    def __init__(self, master_secret: Optional[str] = None):
        self._master_secret = master_secret if master_secret is not None else get_settings().session_secret

    @property
    def configured(self) -> bool:
        return bool(self._master_secret)

    def _key(self, user_id: str) -> bytes:
        if not self._master_secret:
            raise VaultError("SESSION_SECRET is not configured")
        if not user_id:
            raise VaultError("A user id is required for credential encryption")
        return _derive_user_key(self._master_secret, user_id)

    def _fernet(self, user_id: str) -> Fernet:
        return Fernet(base64.urlsafe_b64encode(self._key(user_id)))

    def encrypt(self, plaintext: str, user_id: str) -> str:
        return self._fernet(user_id).encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str, user_id: str) -> str:
        """
        Decrypt a stored credential for the given user.

        Raises:
            VaultError: wrong user, wrong secret or corrupted value
        """
        if not ciphertext:
            raise VaultError("Empty credential value")

        if _is_legacy_format(ciphertext):
            return self._decrypt_legacy(ciphertext, user_id)

        try:
            return self._fernet(user_id).decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            logger.warning(f"Credential decryption failed for user {user_id}")
            raise VaultError("Credential could not be decrypted") from e

    def decrypt_optional(self, ciphertext: Optional[str], user_id: str) -> Optional[str]:
        if not ciphertext:
            return None
        return self.decrypt(ciphertext, user_id)

    def _decrypt_legacy(self, ciphertext: str, user_id: str) -> str:
        iv_hex, _, cipher_hex = ciphertext.partition(":")
        decryptor = Cipher(
            algorithms.AES(self._key(user_id)),
            modes.CBC(bytes.fromhex(iv_hex)),
        ).decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            padded = decryptor.update(bytes.fromhex(cipher_hex)) + decryptor.finalize()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, UnicodeError) as e:
            logger.warning(f"Legacy credential decryption failed for user {user_id}")
            raise VaultError("Credential could not be decrypted") from e


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Display form for listings: only the last characters are shown."""
    if not value:
        return ""
    if len(value) <= visible:
        return "•" * len(value)
    return "••••" + value[-visible:]


# Singleton instance
_vault: Optional[CredentialVault] = None


def get_credential_vault() -> CredentialVault:
    """Get the credential vault singleton."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault


__all__ = [
    "CredentialVault",
    "VaultError",
    "mask_secret",
    "get_credential_vault",
]
