# ABOUTME: Cross-session change signals between ledger sessions on one device
# ABOUTME: In-process broadcast bus and per-process heartbeat files in a shared directory

import asyncio
import itertools
import json
import logging
import os
import time
import uuid
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from ledgersync.store import Subscription

logger = logging.getLogger(__name__)

OBLIGATION_CHANGED = "obligation-changed"
PAYMENT_CHANGED = "payment-changed"
BRANCH_CHANGED = "branch-changed"

SIGNAL_EVENTS = (OBLIGATION_CHANGED, PAYMENT_CHANGED, BRANCH_CHANGED)

# Signals addressed to every ledger, whatever its kind
ALL_LEDGERS = "*"

SignalHandler = Callable[["ChangeSignal"], None]

_last_tick = 0


def logical_now() -> int:
    """Millisecond timestamp that never repeats or goes backwards in this process."""
    global _last_tick
    _last_tick = max(int(time.time() * 1000), _last_tick + 1)
    return _last_tick


class ChangeSignal(BaseModel):
    """A notification that some session wrote a change."""

    event: str
    ledger: str = ALL_LEDGERS
    at: int = Field(default_factory=logical_now)
    origin: str = ""
    payload: dict = Field(default_factory=dict)

    def concerns(self, ledger: str) -> bool:
        return self.ledger in (ALL_LEDGERS, ledger)


class SignalBus(Protocol):
    def publish(self, signal: ChangeSignal) -> None: ...

    def subscribe(self, handler: SignalHandler) -> Subscription: ...


class _HandlerSet:
    def __init__(self) -> None:
        self._handlers: list[SignalHandler] = []

    def subscribe(self, handler: SignalHandler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(lambda: self._remove(handler))

    def _remove(self, handler: SignalHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def dispatch(self, signal: ChangeSignal) -> None:
        for handler in list(self._handlers):
            try:
                handler(signal)
            except Exception:
                logger.exception(f"Signal handler failed for {signal.event}")


class LocalSignalBus(_HandlerSet):
    """
    Broadcast channel shared by sessions in one process.

    Delivery is synchronous and includes the publisher itself, so
    subscribers must recognize their own echoes.
    """

    def publish(self, signal: ChangeSignal) -> None:
        logger.debug(f"Broadcasting {signal.event} for {signal.ledger} at {signal.at}")
        self.dispatch(signal)


class FileSignalBus(_HandlerSet):
    """
    Heartbeat files shared by processes on one device.

    Every bus writes only its own file in the shared directory, holding the
    latest signal for each (ledger, event) key next to a per-key sequence
    number. A background task polls the other buses' files and dispatches
    keys whose sequence moved, so no file is ever written by two processes
    and ordering never depends on their clocks. Like a storage event, a
    publish is not delivered back to the bus that wrote it.
    """

    def __init__(self, directory: Path, poll_interval: float = 1.0, name: str | None = None) -> None:
        super().__init__()
        self.directory = directory
        self.poll_interval = poll_interval
        self.name = name or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._own: dict[str, dict] = {}
        self._seen: dict[tuple[str, str], int] = {}
        self._task: asyncio.Task | None = None

    @property
    def path(self) -> Path:
        return self.directory / f"{self.name}.json"

    @staticmethod
    def key_for(signal: ChangeSignal) -> str:
        return f"{signal.ledger}:{signal.event}:last_emit_at"

    def publish(self, signal: ChangeSignal) -> None:
        key = self.key_for(signal)
        seq = self._own.get(key, {}).get("seq", 0) + 1
        self._own[key] = {"seq": seq, "signal": signal.model_dump()}

        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self._own, f)
        os.replace(tmp, self.path)

    def _peer_entries(self) -> Iterator[tuple[str, str, int, dict]]:
        """Yield (peer, key, seq, raw signal) for every well-formed entry of other buses."""
        if not self.directory.is_dir():
            return
        for path in sorted(self.directory.glob("*.json")):
            if path.stem == self.name:
                continue
            try:
                with open(path) as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Failed to read signal file {path.name}: {e}")
                continue
            if not isinstance(data, dict):
                continue
            for key, entry in data.items():
                if not isinstance(entry, dict) or not isinstance(entry.get("seq"), int):
                    logger.warning(f"Ignoring malformed signal {key} from {path.stem}")
                    continue
                yield path.stem, key, entry["seq"], entry.get("signal")

    def poll(self) -> int:
        """Dispatch every key that changed since the last poll. Returns the count."""
        dispatched = 0
        for peer, key, seq, raw in self._peer_entries():
            if seq <= self._seen.get((peer, key), 0):
                continue
            self._seen[(peer, key)] = seq
            try:
                signal = ChangeSignal.model_validate(raw)
            except ValueError:
                logger.warning(f"Ignoring malformed signal {key} from {peer}")
                continue
            self.dispatch(signal)
            dispatched += 1
        return dispatched

    def prime(self) -> None:
        """Mark everything currently written by other buses as already seen."""
        for peer, key, seq, _ in self._peer_entries():
            self._seen[(peer, key)] = seq

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self.poll()

    def start(self) -> None:
        if self._task is None:
            self.prime()
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.path.unlink(missing_ok=True)


_session_counter = itertools.count(1)


def new_origin(prefix: str) -> str:
    """Identifier a session stamps on the signals it emits."""
    return f"{prefix}-{os.getpid()}-{next(_session_counter)}"
