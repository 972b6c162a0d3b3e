import threading
import uuid
from collections.abc import Callable
from dataclasses import replace

import structlog

from usagewatch.errors import StateStoreError
from usagewatch.models import Account, Credentials
from usagewatch.store import PersistedState, StateStore
from usagewatch.vault import CredentialVault, SecretField

logger = structlog.get_logger()

ActiveListener = Callable[["str | None"], None]

DEFAULT_ACCOUNT_LABEL = "Account 1"


class AccountRegistry:
    """
    AccountRegistry owns the known accounts and which one is active.

    Non-secret metadata is persisted through the StateStore, secrets
    through the CredentialVault. Listeners registered with subscribe()
    are called with the new active id after every change of the
    active account, once that change has been persisted.
    """

    def __init__(self, vault: "CredentialVault", store: "StateStore") -> "None":
        self._vault = vault
        self._store = store
        self._lock: "threading.RLock" = threading.RLock()
        self._accounts: "list[Account]" = []
        self._active_id: "str | None" = None
        self._listeners: "list[ActiveListener]" = []

        self._load()
        self.migrate_legacy_credentials()

    @property
    def accounts(self) -> "tuple[Account, ...]":
        with self._lock:
            return tuple(self._accounts)

    @property
    def active_id(self) -> "str | None":
        with self._lock:
            return self._active_id

    @property
    def active_account(self) -> "Account | None":
        with self._lock:
            if self._active_id is None:
                return None
            return self._find(self._active_id)

    def get(self, account_id: "str") -> "Account | None":
        with self._lock:
            return self._find(account_id)

    def subscribe(self, listener: "ActiveListener") -> "Callable[[], None]":
        """
        registers a listener for active account changes and returns
        a callable that removes it again.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> "None":
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def add(self, label: "str") -> "Account":
        account = Account(id=str(uuid.uuid4()), label=label)
        with self._lock:
            self._accounts.append(account)
            became_active = self._active_id is None
            if became_active:
                self._active_id = account.id
            self._persist()

        logger.info("account_added", account_id=account.id, label=label)
        if became_active:
            self._notify(account.id)
        return account

    def remove(self, account_id: "str") -> "None":
        with self._lock:
            if self._find(account_id) is None:
                return

            self._vault.delete(account_id, SecretField.SESSION_KEY)
            self._vault.delete(account_id, SecretField.ORG_ID)

            self._accounts = [a for a in self._accounts if a.id != account_id]
            was_active = self._active_id == account_id
            if was_active:
                self._active_id = self._accounts[0].id if self._accounts else None
            self._persist()
            new_active = self._active_id

        logger.info("account_removed", account_id=account_id)
        if was_active:
            self._notify(new_active)

    def set_active(self, account_id: "str") -> "bool":
        """
        makes account_id the active account. The new id is persisted
        before it becomes visible through active_id; if it cannot be
        persisted nothing changes.
        """
        with self._lock:
            if self._find(account_id) is None:
                return False
            if self._active_id == account_id:
                return True

            state = self._snapshot_state()
            state.active_account_id = account_id
            try:
                self._store.save(state)
            except StateStoreError as e:
                logger.error(
                    "active_account_persist_failed",
                    account_id=account_id,
                    error=str(e),
                )
                return False

            self._active_id = account_id

        logger.info("active_account_changed", account_id=account_id)
        self._notify(account_id)
        return True

    def rename(self, account_id: "str", label: "str") -> "None":
        with self._lock:
            if self._replace(account_id, label=label):
                self._persist()

    def save_session_token(self, value: "str", account_id: "str") -> "bool":
        """
        writes the session token through to the vault and the in-memory
        account. Returns False if the vault could not persist it; the
        new token is still used for the rest of the process.
        """
        with self._lock:
            saved = self._vault.save(account_id, SecretField.SESSION_KEY, value)
            if self._replace(account_id, session_token=value):
                self._persist()
        return saved

    def save_org_id(self, value: "str", account_id: "str") -> "bool":
        with self._lock:
            saved = self._vault.save(account_id, SecretField.ORG_ID, value)
            if self._replace(account_id, org_id=value):
                self._persist()
        return saved

    def session_token(self, account_id: "str") -> "str | None":
        with self._lock:
            account = self._find(account_id)
            if account is not None and account.session_token:
                return account.session_token
        return self._vault.read(account_id, SecretField.SESSION_KEY)

    def org_id(self, account_id: "str") -> "str | None":
        with self._lock:
            account = self._find(account_id)
            if account is not None and account.org_id:
                return account.org_id
        return self._vault.read(account_id, SecretField.ORG_ID)

    def credentials(self, account_id: "str") -> "Credentials | None":
        """
        returns both secrets for the account, or None when either is
        missing or empty.
        """
        token = self.session_token(account_id)
        org_id = self.org_id(account_id)
        if not token or not org_id:
            return None
        return Credentials(session_token=token, org_id=org_id)

    def migrate_legacy_credentials(self) -> "Account | None":
        """
        turns credentials saved before multi-account support into a
        regular account. Runs only while the registry is empty, so it
        is safe to call on every startup.
        """
        with self._lock:
            if self._accounts:
                return None

            old_token = self._vault.read(None, SecretField.SESSION_KEY)
            old_org_id = self._vault.read(None, SecretField.ORG_ID)
            if old_token is None and old_org_id is None:
                return None

            account = Account(
                id=str(uuid.uuid4()),
                label=DEFAULT_ACCOUNT_LABEL,
                session_token=old_token,
                org_id=old_org_id,
            )
            if old_token is not None:
                self._vault.save(account.id, SecretField.SESSION_KEY, old_token)
            if old_org_id is not None:
                self._vault.save(account.id, SecretField.ORG_ID, old_org_id)

            self._accounts = [account]
            self._active_id = account.id
            self._persist()

            self._vault.delete(None, SecretField.SESSION_KEY)
            self._vault.delete(None, SecretField.ORG_ID)

        logger.info("legacy_credentials_migrated", account_id=account.id)
        self._notify(account.id)
        return account

    def reload(self) -> "None":
        """
        re-reads the persisted accounts and drops the vault cache, so
        accounts and credentials saved by another process replace the
        in-memory copies. The persisted active id wins; listeners are
        notified when the active account changes. Nothing changes if
        the state cannot be read.
        """
        try:
            state = self._store.load()
        except StateStoreError as e:
            logger.error("account_state_reload_failed", error=str(e))
            return

        self._vault.invalidate()
        with self._lock:
            previous = self._active_id
            self._apply_state(state, fallback=previous)
            active = self._active_id

        logger.info("accounts_reloaded", count=len(self._accounts), active_account_id=active)
        if active != previous:
            self._notify(active)

    def _load(self) -> "None":
        try:
            state = self._store.load()
        except StateStoreError as e:
            logger.error("account_state_load_failed", error=str(e))
            state = PersistedState()

        self._apply_state(state)
        logger.debug(
            "accounts_loaded",
            count=len(self._accounts),
            active_account_id=self._active_id,
        )

    def _apply_state(
        self,
        state: "PersistedState",
        fallback: "str | None" = None,
    ) -> "None":
        self._accounts = [
            Account(
                id=meta.id,
                label=meta.label,
                session_token=self._vault.read(meta.id, SecretField.SESSION_KEY),
                org_id=meta.org_id,
            )
            for meta in state.accounts
        ]

        for candidate in (state.active_account_id, fallback):
            if candidate is not None and self._find(candidate) is not None:
                self._active_id = candidate
                return
        self._active_id = self._accounts[0].id if self._accounts else None

    def _find(self, account_id: "str") -> "Account | None":
        for account in self._accounts:
            if account.id == account_id:
                return account
        return None

    def _replace(self, account_id: "str", **changes: "str") -> "bool":
        for i, account in enumerate(self._accounts):
            if account.id == account_id:
                self._accounts[i] = replace(account, **changes)
                return True
        return False

    def _snapshot_state(self) -> "PersistedState":
        return PersistedState(
            accounts=[a.metadata() for a in self._accounts],
            active_account_id=self._active_id,
        )

    def _persist(self) -> "None":
        try:
            self._store.save(self._snapshot_state())
        except StateStoreError as e:
            logger.error("account_state_persist_failed", error=str(e))

    def _notify(self, active_id: "str | None") -> "None":
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(active_id)
