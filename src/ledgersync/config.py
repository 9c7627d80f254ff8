# ABOUTME: Runtime settings for ledgersync read from the environment
# ABOUTME: Store endpoint, credentials, branch policy, and local state paths

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_HOME = Path.home() / ".ledgersync"

_TRUE = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


class Settings(BaseModel):
    """Everything a ledger process needs to reach the store and keep local state."""

    api_url: str = ""
    api_key: str = ""
    email: str | None = None
    password: str | None = None
    access_token: str | None = None

    branch: str | None = None
    require_branch: bool = True
    user_name: str = ""

    poll_interval: float = Field(default=15.0, gt=0)
    signal_poll_interval: float = Field(default=1.0, gt=0)
    home: Path = DEFAULT_HOME

    @property
    def session_file(self) -> Path:
        return self.home / "session.json"

    @property
    def signal_dir(self) -> Path:
        return self.home / "signals"

    @property
    def snapshot_dir(self) -> Path:
        return self.home / "snapshots"

    @classmethod
    def from_env(cls) -> "Settings":
        home = os.environ.get("LEDGER_HOME")
        return cls(
            api_url=os.environ.get("LEDGER_API_URL", "").rstrip("/"),
            api_key=os.environ.get("LEDGER_API_KEY", ""),
            email=os.environ.get("LEDGER_EMAIL") or None,
            password=os.environ.get("LEDGER_PASSWORD") or None,
            access_token=os.environ.get("LEDGER_ACCESS_TOKEN") or None,
            branch=os.environ.get("LEDGER_BRANCH") or None,
            require_branch=_env_bool("LEDGER_REQUIRE_BRANCH", True),
            user_name=os.environ.get("LEDGER_USER_NAME", ""),
            poll_interval=float(os.environ.get("LEDGER_POLL_INTERVAL", "15")),
            signal_poll_interval=float(os.environ.get("LEDGER_SIGNAL_POLL_INTERVAL", "1")),
            home=Path(home).expanduser() if home else DEFAULT_HOME,
        )
