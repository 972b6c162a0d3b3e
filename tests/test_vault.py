import base64
import os
import stat
from pathlib import Path

import pytest

from usagewatch.errors import SecretStoreError
from usagewatch.vault import (
    CredentialVault,
    EncryptedFileSecretBackend,
    MemorySecretBackend,
    PlainFileSecretBackend,
    SecretField,
    load_or_create_key,
)


class FailingBackend(MemorySecretBackend):
    """
    A backend whose writes always fail.
    """

    def set(self, key: "str", value: "str") -> "None":
        raise SecretStoreError("keychain locked")

    def delete(self, key: "str") -> "None":
        raise SecretStoreError("keychain locked")


class CountingBackend(MemorySecretBackend):
    def __init__(self, values: "dict[str, str] | None" = None) -> "None":
        super().__init__(values)
        self.reads = 0

    def get(self, key: "str") -> "str | None":
        self.reads += 1
        return super().get(key)


class TestCredentialVault:
    def test_read_after_save(self, vault: "CredentialVault") -> "None":
        vault.save("acct-1", SecretField.SESSION_KEY, "sk-1")
        assert vault.read("acct-1", SecretField.SESSION_KEY) == "sk-1"

    def test_cache_serves_value_when_backend_write_fails(self) -> "None":
        vault = CredentialVault(FailingBackend())

        saved = vault.save("acct-1", SecretField.SESSION_KEY, "sk-1")

        assert saved is False
        assert vault.read("acct-1", SecretField.SESSION_KEY) == "sk-1"

    def test_read_loads_lazily_and_caches(self) -> "None":
        backend = CountingBackend({"acct-1-sessionKey": "sk-stored"})
        vault = CredentialVault(backend)

        assert vault.read("acct-1", SecretField.SESSION_KEY) == "sk-stored"
        assert vault.read("acct-1", SecretField.SESSION_KEY) == "sk-stored"
        assert backend.reads == 1

    def test_missing_value(self, vault: "CredentialVault") -> "None":
        assert vault.read("acct-1", SecretField.SESSION_KEY) is None

    def test_delete_clears_cache_and_backend(
        self,
        vault: "CredentialVault",
        secure_backend: "MemorySecretBackend",
    ) -> "None":
        vault.save("acct-1", SecretField.SESSION_KEY, "sk-1")
        vault.delete("acct-1", SecretField.SESSION_KEY)

        assert vault.read("acct-1", SecretField.SESSION_KEY) is None
        assert secure_backend.values == {}

    def test_delete_failure_is_not_raised(self) -> "None":
        vault = CredentialVault(FailingBackend())
        vault.delete("acct-1", SecretField.SESSION_KEY)

    def test_scopes_are_independent(self, vault: "CredentialVault") -> "None":
        vault.save("acct-1", SecretField.SESSION_KEY, "sk-1")
        vault.save("acct-2", SecretField.SESSION_KEY, "sk-2")
        vault.save(None, SecretField.SESSION_KEY, "sk-legacy")

        assert vault.read("acct-1", SecretField.SESSION_KEY) == "sk-1"
        assert vault.read("acct-2", SecretField.SESSION_KEY) == "sk-2"
        assert vault.read(None, SecretField.SESSION_KEY) == "sk-legacy"

    def test_backend_keys(self) -> "None":
        assert CredentialVault.make_key(None, SecretField.ORG_ID) == "orgId"
        assert CredentialVault.make_key("abc", SecretField.SESSION_KEY) == "abc-sessionKey"

    def test_org_id_goes_to_plain_backend(
        self,
        vault: "CredentialVault",
        secure_backend: "MemorySecretBackend",
        plain_backend: "MemorySecretBackend",
    ) -> "None":
        vault.save("acct-1", SecretField.ORG_ID, "org-1")
        vault.save("acct-1", SecretField.SESSION_KEY, "sk-1")

        assert plain_backend.values == {"acct-1-orgId": "org-1"}
        assert secure_backend.values == {"acct-1-sessionKey": "sk-1"}

    def test_without_plain_backend_everything_is_secure(self) -> "None":
        secure = MemorySecretBackend()
        vault = CredentialVault(secure)
        vault.save("acct-1", SecretField.ORG_ID, "org-1")
        assert secure.values == {"acct-1-orgId": "org-1"}


class TestFileBackends:
    def test_plain_file_persists(self, tmp_path: "Path") -> "None":
        path = tmp_path / "settings.json"
        PlainFileSecretBackend(path).set("acct-1-orgId", "org-1")

        assert PlainFileSecretBackend(path).get("acct-1-orgId") == "org-1"

    def test_plain_file_delete(self, tmp_path: "Path") -> "None":
        backend = PlainFileSecretBackend(tmp_path / "settings.json")
        backend.set("a", "1")
        backend.delete("a")
        backend.delete("missing")
        assert backend.get("a") is None

    def test_corrupt_file_raises(self, tmp_path: "Path") -> "None":
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        with pytest.raises(SecretStoreError):
            PlainFileSecretBackend(path).get("a")

    def test_encrypted_file_does_not_store_plaintext(self, tmp_path: "Path") -> "None":
        path = tmp_path / "secrets.json"
        key = os.urandom(32)
        EncryptedFileSecretBackend(path, key).set("acct-1-sessionKey", "sk-secret-value")

        assert "sk-secret-value" not in path.read_text()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert EncryptedFileSecretBackend(path, key).get("acct-1-sessionKey") == (
            "sk-secret-value"
        )

    def test_wrong_key_is_reported(self, tmp_path: "Path") -> "None":
        path = tmp_path / "secrets.json"
        EncryptedFileSecretBackend(path, os.urandom(32)).set("sessionKey", "v")

        other = EncryptedFileSecretBackend(path, os.urandom(32))
        with pytest.raises(SecretStoreError):
            other.get("sessionKey")

        # the vault treats an unreadable secret as absent
        assert CredentialVault(other).read(None, SecretField.SESSION_KEY) is None

    def test_rejects_short_key(self, tmp_path: "Path") -> "None":
        with pytest.raises(ValueError):
            EncryptedFileSecretBackend(tmp_path / "secrets.json", b"short")


class TestLoadOrCreateKey:
    def test_creates_key_file_once(self, tmp_path: "Path") -> "None":
        path = tmp_path / "state" / "vault.key"
        key = load_or_create_key(path)

        assert len(key) == 32
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert load_or_create_key(path) == key

    def test_explicit_key_wins(self, tmp_path: "Path") -> "None":
        raw = os.urandom(32)
        encoded = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

        assert load_or_create_key(tmp_path / "vault.key", encoded) == raw
        assert not (tmp_path / "vault.key").exists()

    def test_explicit_key_must_be_32_bytes(self, tmp_path: "Path") -> "None":
        encoded = base64.urlsafe_b64encode(b"too-short").decode("ascii")
        with pytest.raises(ValueError):
            load_or_create_key(tmp_path / "vault.key", encoded)

    def test_truncated_key_file_is_rejected(self, tmp_path: "Path") -> "None":
        path = tmp_path / "vault.key"
        path.write_bytes(base64.urlsafe_b64encode(os.urandom(16)))

        with pytest.raises(ValueError, match="vault.key"):
            load_or_create_key(path)
