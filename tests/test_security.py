"""
Tests for security utilities.
"""
import hashlib
import hmac

import pytest

from app.storage.base import StorageError
from app.storage.gcs import validate_object_key
from app.utils.logging import fingerprint, mask_email
from app.utils.security import (
    hash_access_token,
    generate_access_token,
    compute_bytes_hash,
    sign_webhook_payload,
)


class TestTokenHashing:
    """Tests for access token hashing."""

    def test_hash_access_token_deterministic(self):
        """Same token produces same hash."""
        hash1 = hash_access_token("test-token-12345")
        hash2 = hash_access_token("test-token-12345")

        assert hash1 == hash2
        assert len(hash1) == 64  # SHA-256 hex length

    def test_hash_uses_salt(self):
        expected = hashlib.sha256(b"test-salttest-token").hexdigest()
        assert hash_access_token("test-token") == expected

    def test_different_tokens_different_hashes(self):
        assert hash_access_token("token-1") != hash_access_token("token-2")

    def test_generate_access_token(self):
        """Generated token and hash are valid."""
        plain, hashed = generate_access_token()

        assert len(plain) > 20  # URL-safe base64
        assert hashed == hash_access_token(plain)

    def test_generated_tokens_are_unique(self):
        assert generate_access_token()[0] != generate_access_token()[0]


class TestBytesHashing:
    def test_compute_bytes_hash(self):
        """Bytes hash is computed correctly."""
        expected = "dffd6021bb2bd5b0af676290809ec3a53191dd81c7f70a4b28688a362182986f"
        assert compute_bytes_hash(b"Hello, World!") == expected


class TestWebhookSignature:
    def test_signature_format(self):
        body = b'{"event":"document.completed"}'
        expected = hmac.new(b"secret", body, hashlib.sha256).hexdigest()

        assert sign_webhook_payload(body, "secret") == f"sha256={expected}"

    def test_signature_depends_on_body(self):
        assert sign_webhook_payload(b"a", "secret") != sign_webhook_payload(b"b", "secret")


class TestLogRedaction:
    def test_fingerprint(self):
        assert fingerprint(None, "tok_") == "tok_none"
        assert fingerprint("secret", "tok_").startswith("tok_")
        assert len(fingerprint("secret")) == 8
        assert "secret" not in fingerprint("secret")

    def test_mask_email(self):
        assert mask_email("john@example.com") == "j***@e***.com"
        assert mask_email(None) == "***"


class TestObjectKeyValidation:
    """Tests for GCS object key validation."""

    def test_plain_key_passes(self):
        assert validate_object_key("documents/doc-1/signed.pdf") == "documents/doc-1/signed.pdf"

    def test_rejects_path_traversal(self):
        with pytest.raises(StorageError, match="Path traversal"):
            validate_object_key("documents/../etc/passwd")

    def test_rejects_absolute_path(self):
        with pytest.raises(StorageError, match="Absolute paths"):
            validate_object_key("/etc/passwd")

    def test_rejects_empty_key(self):
        with pytest.raises(StorageError, match="cannot be empty"):
            validate_object_key("")
