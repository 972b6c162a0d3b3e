import os
from dataclasses import dataclass, field
from pathlib import Path

from usagewatch.models import ResetDisplay
from usagewatch.provider.claude import CLAUDE_BASE_URL
from usagewatch.supervisor import DEFAULT_POLL_INTERVAL_SECONDS


def _default_state_dir() -> "str":
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return str(Path(base) / "usagewatch")


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "127.0.0.1:9186", empty disables the exporter
    listen_address: "str" = ":9186"
    # poll interval in seconds
    poll_interval: "int" = DEFAULT_POLL_INTERVAL_SECONDS
    http_timeout: "float" = 30.0
    log_level: "str" = "info"
    log_format: "str" = "console"

    state_dir: "str" = field(default_factory=_default_state_dir)
    # urlsafe base64 of a 32 byte key, a key file is generated if empty
    vault_key: "str" = ""
    base_url: "str" = CLAUDE_BASE_URL
    reset_display: "ResetDisplay" = ResetDisplay.RESET_TIME

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            state_dir=os.environ.get("USAGEWATCH_STATE_DIR", "") or _default_state_dir(),
            vault_key=os.environ.get("USAGEWATCH_VAULT_KEY", ""),
            base_url=os.environ.get("USAGEWATCH_BASE_URL", "") or CLAUDE_BASE_URL,
            reset_display=ResetDisplay(
                os.environ.get("USAGEWATCH_RESET_DISPLAY", "")
                or ResetDisplay.RESET_TIME.value
            ),
        )

    @property
    def metrics_enabled(self) -> "bool":
        return bool(self.listen_address)

    @property
    def accounts_path(self) -> "Path":
        return Path(self.state_dir) / "accounts.json"

    @property
    def secrets_path(self) -> "Path":
        return Path(self.state_dir) / "secrets.json"

    @property
    def settings_path(self) -> "Path":
        # non-sensitive values such as org ids, unencrypted
        return Path(self.state_dir) / "settings.json"

    @property
    def key_path(self) -> "Path":
        return Path(self.state_dir) / "vault.key"
