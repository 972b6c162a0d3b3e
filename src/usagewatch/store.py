import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from usagewatch.errors import StateStoreError
from usagewatch.models import AccountMetadata


@dataclass
class PersistedState:
    accounts: "list[AccountMetadata]" = field(default_factory=list)
    active_account_id: "str | None" = None


class StateStore(Protocol):
    """
    StateStore persists the non-secret account state: the ordered
    account metadata list and the active account id.
    """

    def load(self) -> "PersistedState": ...

    def save(self, state: "PersistedState") -> "None": ...


class MemoryStateStore:
    def __init__(self, state: "PersistedState | None" = None) -> "None":
        self.state = state or PersistedState()

    def load(self) -> "PersistedState":
        return PersistedState(
            accounts=list(self.state.accounts),
            active_account_id=self.state.active_account_id,
        )

    def save(self, state: "PersistedState") -> "None":
        self.state = PersistedState(
            accounts=list(state.accounts),
            active_account_id=state.active_account_id,
        )


class JsonStateStore:
    """
    JsonStateStore keeps the state in a single JSON file. Writes go
    to a temp file first and are moved into place with os.replace.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path)
        self._lock: "threading.Lock" = threading.Lock()

    @property
    def path(self) -> "Path":
        return self._path

    def load(self) -> "PersistedState":
        with self._lock:
            try:
                raw = self._path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return PersistedState()
            except OSError as e:
                raise StateStoreError(f"cannot read {self._path}: {e}") from e

        try:
            data = json.loads(raw)
            accounts = [AccountMetadata.from_dict(a) for a in data.get("accounts", [])]
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as e:
            raise StateStoreError(f"corrupt state file {self._path}") from e

        active = data.get("active_account_id")
        return PersistedState(
            accounts=accounts,
            active_account_id=str(active) if active else None,
        )

    def save(self, state: "PersistedState") -> "None":
        payload = {
            "accounts": [a.to_dict() for a in state.accounts],
            "active_account_id": state.active_account_id,
        }
        tmp = self._path.with_name(self._path.name + ".tmp")
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
                os.replace(tmp, self._path)
            except OSError as e:
                raise StateStoreError(f"cannot write {self._path}: {e}") from e


class FileWatcher:
    """
    FileWatcher reports whether any of a set of files changed since
    the last check, by modification time and size. A missing file
    counts as a state of its own.
    """

    def __init__(self, *paths: "str | Path") -> "None":
        self._paths = [Path(p) for p in paths]
        self._stamps = self._stat()

    def _stat(self) -> "list[tuple[int, int] | None]":
        stamps: "list[tuple[int, int] | None]" = []
        for path in self._paths:
            try:
                st = path.stat()
            except OSError:
                stamps.append(None)
                continue
            stamps.append((st.st_mtime_ns, st.st_size))
        return stamps

    def changed(self) -> "bool":
        stamps = self._stat()
        changed = stamps != self._stamps
        self._stamps = stamps
        return changed
