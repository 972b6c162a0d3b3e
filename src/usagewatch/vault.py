import base64
import json
import os
import threading
from enum import Enum
from pathlib import Path
from typing import Protocol

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from usagewatch.errors import SecretStoreError

logger = structlog.get_logger()

_NONCE_SIZE = 12


class SecretField(str, Enum):
    SESSION_KEY = "sessionKey"
    ORG_ID = "orgId"

    @property
    def sensitive(self) -> "bool":
        # the org id is an identifier, not a credential
        return self is not SecretField.ORG_ID


class SecretBackend(Protocol):
    """
    SecretBackend is the raw key/value storage the vault sits on.
    Implementations raise SecretStoreError when the store itself fails;
    a missing key is not an error.
    """

    def get(self, key: "str") -> "str | None": ...

    def set(self, key: "str", value: "str") -> "None": ...

    def delete(self, key: "str") -> "None": ...


class MemorySecretBackend:
    """
    keeps secrets in a dict. Used in tests and when nothing should
    touch the disk.
    """

    def __init__(self, values: "dict[str, str] | None" = None) -> "None":
        self.values: "dict[str, str]" = dict(values or {})

    def get(self, key: "str") -> "str | None":
        return self.values.get(key)

    def set(self, key: "str", value: "str") -> "None":
        self.values[key] = value

    def delete(self, key: "str") -> "None":
        self.values.pop(key, None)


class PlainFileSecretBackend:
    """
    PlainFileSecretBackend stores values in a JSON object on disk.
    Every write rewrites the whole file through a temp file and
    os.replace so a crash never leaves a half-written file.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path)
        self._lock: "threading.Lock" = threading.Lock()

    def get(self, key: "str") -> "str | None":
        with self._lock:
            stored = self._load().get(key)
        if stored is None:
            return None
        return self._decode(stored)

    def set(self, key: "str", value: "str") -> "None":
        encoded = self._encode(value)
        with self._lock:
            data = self._load()
            data[key] = encoded
            self._write(data)

    def delete(self, key: "str") -> "None":
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._write(data)

    def _encode(self, value: "str") -> "str":
        return value

    def _decode(self, stored: "str") -> "str":
        return stored

    def _load(self) -> "dict[str, str]":
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise SecretStoreError(f"cannot read {self._path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SecretStoreError(f"corrupt secret file {self._path}") from e

        if not isinstance(data, dict):
            raise SecretStoreError(f"corrupt secret file {self._path}")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: "dict[str, str]") -> "None":
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self._path)
        except OSError as e:
            raise SecretStoreError(f"cannot write {self._path}: {e}") from e


class EncryptedFileSecretBackend(PlainFileSecretBackend):
    """
    EncryptedFileSecretBackend is a PlainFileSecretBackend whose values
    are sealed with AES-GCM. Each value is stored as
    urlsafe_b64(nonce + ciphertext).
    """

    def __init__(self, path: "str | Path", key: "bytes") -> "None":
        if len(key) != 32:
            raise ValueError("vault key must be 32 bytes")
        super().__init__(path)
        self._aesgcm = AESGCM(key)

    def _encode(self, value: "str") -> "str":
        nonce = os.urandom(_NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, value.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def _decode(self, stored: "str") -> "str":
        try:
            raw = base64.urlsafe_b64decode(stored.encode("ascii"))
        except ValueError as e:
            raise SecretStoreError("invalid encrypted payload") from e

        if len(raw) <= _NONCE_SIZE:
            raise SecretStoreError("invalid encrypted payload")

        try:
            plain = self._aesgcm.decrypt(raw[:_NONCE_SIZE], raw[_NONCE_SIZE:], None)
        except InvalidTag as e:
            raise SecretStoreError("secret cannot be decrypted with this key") from e
        return plain.decode("utf-8")


def load_or_create_key(path: "str | Path", encoded: "str" = "") -> "bytes":
    """
    returns the vault key. An explicitly configured key (urlsafe base64
    of 32 bytes) wins; otherwise the key file is read, or created with
    owner-only permissions on first use.
    """
    if encoded:
        raw = encoded.strip()
        try:
            key = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        except ValueError as e:
            raise ValueError("vault key is not valid base64") from e
        if len(key) != 32:
            raise ValueError("vault key must decode to 32 bytes")
        return key

    key_path = Path(path)
    if key_path.exists():
        try:
            key = base64.urlsafe_b64decode(key_path.read_bytes().strip())
        except ValueError as e:
            raise ValueError(f"vault key file {key_path} is not valid base64") from e
        if len(key) != 32:
            raise ValueError(f"vault key file {key_path} must hold a 32 byte key")
        return key

    key = AESGCM.generate_key(bit_length=256)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(base64.urlsafe_b64encode(key))
    logger.info("vault_key_created", path=str(key_path))
    return key


class CredentialVault:
    """
    CredentialVault is scoped secret storage with an in-memory read
    cache in front of the backends.

    Writes update the cache before the backend, so a read right after
    a save returns the new value even when the backend write fails.
    Backend failures are logged and never raised: the save is best
    effort across restarts.

    Non-sensitive fields go to the plain backend when one is given,
    everything else to the secure backend.
    """

    def __init__(
        self,
        secure: "SecretBackend",
        plain: "SecretBackend | None" = None,
    ) -> "None":
        self._secure = secure
        self._plain = plain
        self._lock: "threading.Lock" = threading.Lock()
        self._cache: "dict[str, str]" = {}

    @staticmethod
    def make_key(scope: "str | None", secret_field: "SecretField") -> "str":
        """
        builds the backend key. A None scope is the legacy
        single-account location.
        """
        if scope is None:
            return secret_field.value
        return f"{scope}-{secret_field.value}"

    def _backend_for(self, secret_field: "SecretField") -> "SecretBackend":
        if self._plain is not None and not secret_field.sensitive:
            return self._plain
        return self._secure

    def save(
        self,
        scope: "str | None",
        secret_field: "SecretField",
        value: "str",
    ) -> "bool":
        key = self.make_key(scope, secret_field)
        with self._lock:
            self._cache[key] = value

        try:
            self._backend_for(secret_field).set(key, value)
        except SecretStoreError as e:
            logger.warning(
                "vault_save_failed",
                scope=scope,
                field=secret_field.value,
                error=str(e),
            )
            return False
        return True

    def read(
        self,
        scope: "str | None",
        secret_field: "SecretField",
    ) -> "str | None":
        key = self.make_key(scope, secret_field)
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        try:
            value = self._backend_for(secret_field).get(key)
        except SecretStoreError as e:
            logger.warning(
                "vault_read_failed",
                scope=scope,
                field=secret_field.value,
                error=str(e),
            )
            return None

        if value is not None:
            with self._lock:
                # a concurrent save wins over the value we just loaded
                value = self._cache.setdefault(key, value)
        return value

    def invalidate(self) -> "None":
        """
        drops every cached value so the next reads go to the backends.
        Used when another process changed the stored secrets.
        """
        with self._lock:
            self._cache.clear()

    def delete(self, scope: "str | None", secret_field: "SecretField") -> "None":
        key = self.make_key(scope, secret_field)
        with self._lock:
            self._cache.pop(key, None)

        try:
            self._backend_for(secret_field).delete(key)
        except SecretStoreError as e:
            logger.warning(
                "vault_delete_failed",
                scope=scope,
                field=secret_field.value,
                error=str(e),
            )
