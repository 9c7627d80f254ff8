# ABOUTME: Local persistence of the last good ledger fetch
# ABOUTME: Lets a session serve stale rows when the store is unreachable

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field

from ledgersync.types import LedgerScope, Obligation, ObligationKind, Payment

logger = logging.getLogger(__name__)


class LedgerSnapshot(BaseModel):
    """Obligations and payments of one kind and scope at a point in time."""

    kind: ObligationKind
    scope: LedgerScope
    obligations: list[Obligation] = Field(default_factory=list)
    payments: list[Payment] = Field(default_factory=list)


class SnapshotStore:
    """Stores one JSON file per kind and scope under a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, kind: ObligationKind, scope: LedgerScope) -> Path:
        return self.directory / f"{ObligationKind(kind).value}_{scope.key()}.json"

    def save(self, snapshot: LedgerSnapshot) -> None:
        """Write a snapshot. Failures are logged, never raised."""
        path = self._path(snapshot.kind, snapshot.scope)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                f.write(snapshot.model_dump_json())
            path.chmod(0o600)
            logger.debug(f"Saved snapshot to {path.name}")
        except OSError as e:
            logger.warning(f"Failed to save snapshot {path.name}: {e}")

    def load(self, kind: ObligationKind, scope: LedgerScope) -> LedgerSnapshot | None:
        path = self._path(kind, scope)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                snapshot = LedgerSnapshot.model_validate(json.load(f))
            logger.debug(f"Loaded snapshot from {path.name}")
            return snapshot
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.warning(f"Failed to load snapshot {path.name}: {e}")
            return None
