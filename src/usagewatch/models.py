from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum


class AuthStatus(str, Enum):
    NOT_CONFIGURED = "not_configured"
    CONNECTED = "connected"
    EXPIRED = "expired"


class ErrorState(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    NETWORK_ERROR = "network_error"


class ResetDisplay(str, Enum):
    """
    ResetDisplay is the user's preference for how the reset
    of the highest limit is shown: a wall clock time or a countdown.
    """

    RESET_TIME = "reset_time"
    COUNTDOWN = "countdown"


@dataclass(frozen=True, slots=True)
class Account:
    """
    Account is one set of credentials the user polls usage for.

    The session token and org id held here are a cache of the
    values in the vault, not the source of truth.
    """

    id: "str"
    label: "str"
    session_token: "str | None" = None
    org_id: "str | None" = None

    @property
    def is_configured(self) -> "bool":
        return bool(self.session_token) and bool(self.org_id)

    def metadata(self) -> "AccountMetadata":
        return AccountMetadata(id=self.id, label=self.label, org_id=self.org_id)


@dataclass(frozen=True, slots=True)
class AccountMetadata:
    """
    AccountMetadata is the persisted projection of an Account.
    It never carries the session token.
    """

    id: "str"
    label: "str"
    org_id: "str | None" = None

    def to_dict(self) -> "dict[str, str | None]":
        return {"id": self.id, "label": self.label, "org_id": self.org_id}

    @classmethod
    def from_dict(cls, data: "dict[str, object]") -> "AccountMetadata":
        org_id = data.get("org_id")
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or ""),
            org_id=str(org_id) if org_id else None,
        )


@dataclass(frozen=True, slots=True)
class Credentials:
    session_token: "str"
    org_id: "str"


@dataclass(frozen=True, slots=True)
class UsageLimit:
    # percentage, expected in [0, 100] but not clamped
    utilization: "float"
    resets_at: "datetime | None" = None


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is one complete usage response. The session and
    weekly windows are always present, the per-capability windows
    only when the server reports them.
    """

    five_hour: "UsageLimit"
    seven_day: "UsageLimit"
    seven_day_sonnet: "UsageLimit | None" = None
    seven_day_opus: "UsageLimit | None" = None
    seven_day_oauth_apps: "UsageLimit | None" = None
    seven_day_cowork: "UsageLimit | None" = None
    iguana_necktie: "UsageLimit | None" = None
    extra_usage: "UsageLimit | None" = None


# canonical order, also used to break ties between equal limits
LIMIT_FIELDS: "tuple[str, ...]" = tuple(f.name for f in fields(UsageSnapshot))

LIMIT_NAMES: "dict[str, str]" = {
    "five_hour": "Current session",
    "seven_day": "Weekly (all models)",
    "seven_day_sonnet": "Weekly (Sonnet)",
    "seven_day_opus": "Weekly (Opus)",
    "seven_day_oauth_apps": "Weekly (OAuth apps)",
    "seven_day_cowork": "Weekly (Cowork)",
    "iguana_necktie": "Weekly (other)",
    "extra_usage": "Extra usage",
}

REQUIRED_LIMITS: "tuple[str, ...]" = ("five_hour", "seven_day")


@dataclass(frozen=True, slots=True)
class NamedLimit:
    key: "str"
    name: "str"
    limit: "UsageLimit"


@dataclass(frozen=True, slots=True)
class UsageState:
    """
    UsageState is the value published to the display layer. It is
    always replaced as a whole.
    """

    account_id: "str | None" = None
    snapshot: "UsageSnapshot | None" = None
    last_updated: "datetime | None" = None
    error: "ErrorState | None" = None
    auth_status: "AuthStatus" = AuthStatus.NOT_CONFIGURED
