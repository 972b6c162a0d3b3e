import pytest
from prometheus_client import CollectorRegistry

from usagewatch.logging import setup_logging
from usagewatch.registry import AccountRegistry
from usagewatch.store import MemoryStateStore
from usagewatch.vault import CredentialVault, MemorySecretBackend


@pytest.fixture(autouse=True, scope="session")
def configure_logging() -> "None":
    """
    routes structlog through stdlib logging so log lines never end up
    in captured stdout.
    """
    setup_logging("debug")


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def secure_backend() -> "MemorySecretBackend":
    return MemorySecretBackend()


@pytest.fixture()
def plain_backend() -> "MemorySecretBackend":
    return MemorySecretBackend()


@pytest.fixture()
def vault(
    secure_backend: "MemorySecretBackend",
    plain_backend: "MemorySecretBackend",
) -> "CredentialVault":
    return CredentialVault(secure_backend, plain_backend)


@pytest.fixture()
def state_store() -> "MemoryStateStore":
    return MemoryStateStore()


@pytest.fixture()
def accounts(
    vault: "CredentialVault",
    state_store: "MemoryStateStore",
) -> "AccountRegistry":
    """
    empty account registry over in-memory storage.
    """
    return AccountRegistry(vault, state_store)
