# ABOUTME: Keeps an ObligationCache eventually consistent with the store
# ABOUTME: Refetch triggers, deferred refresh while editing, and session liveness

import asyncio
import logging
from collections import deque

from ledgersync.cache import ObligationCache
from ledgersync.exceptions import LedgerSyncError, SyncError
from ledgersync.signals import ALL_LEDGERS, BRANCH_CHANGED, ChangeSignal, SignalBus, new_origin
from ledgersync.snapshot import LedgerSnapshot, SnapshotStore
from ledgersync.store import LedgerStore, Subscription
from ledgersync.types import LedgerScope, Obligation, ObligationKind

logger = logging.getLogger(__name__)

# How many of our own emitted timestamps to remember for echo suppression
EMITTED_MEMORY = 64


class SessionToken:
    """Liveness flag captured by async work; cancelled when the session ends."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def alive(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class SyncCoordinator:
    """
    Decides when a ledger session refetches its window from the store.

    Refetch triggers: start, store push notifications, visibility regained,
    foreign cross-session signals, scope changes, and explicit refreshes.
    Triggers that arrive while a fetch is running collapse into a single
    follow-up fetch. Triggers that arrive while an edit surface is open are
    deferred and run exactly once when it closes.
    """

    def __init__(
        self,
        kind: ObligationKind,
        store: LedgerStore,
        cache: ObligationCache,
        scope: LedgerScope,
        bus: SignalBus | None = None,
        snapshots: SnapshotStore | None = None,
        origin: str | None = None,
    ) -> None:
        self.kind = ObligationKind(kind)
        self.store = store
        self.cache = cache
        self.scope = scope
        self.bus = bus
        self.snapshots = snapshots
        self.origin = origin or new_origin(self.kind.value)
        self.token = SessionToken()

        self.loading = False
        self.refresh_count = 0
        self.last_error: SyncError | None = None

        self._editing = False
        self._pending_refresh = False
        self._rerun = False
        self._write_epoch = 0
        self._has_fetched = False
        self._emitted: deque[int] = deque(maxlen=EMITTED_MEMORY)
        self._refresh_task: asyncio.Task | None = None
        self._subscriptions: list[Subscription] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self.token.alive

    @property
    def editing(self) -> bool:
        return self._editing

    @property
    def pending_refresh(self) -> bool:
        return self._pending_refresh

    async def start(self) -> None:
        """Subscribe to change feeds and run the initial fetch."""
        self._subscriptions.append(self.store.subscribe(self.kind, self._on_store_change))
        if self.bus is not None:
            self._subscriptions.append(self.bus.subscribe(self._on_signal))
        await self.refresh("start")

    async def close(self) -> None:
        """Tear the session down; in-flight results are discarded."""
        self.token.cancel()
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()

        task = self._refresh_task
        self._refresh_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        logger.debug(f"Closed {self.kind.value} sync session {self.origin}")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _on_store_change(self, table: str) -> None:
        logger.debug(f"Store change on {table}")
        self.request_refresh(f"store:{table}")

    def _on_signal(self, signal: ChangeSignal) -> None:
        if not self.alive or not signal.concerns(self.kind.value):
            return
        if self.is_self_echo(signal):
            logger.debug(f"Ignoring own {signal.event} echo at {signal.at}")
            return
        self.request_refresh(f"signal:{signal.event}")

    def notify_visible(self) -> asyncio.Task | None:
        """The consumer became visible again after being hidden."""
        return self.request_refresh("visible")

    def note_local_write(self) -> None:
        """A mutation landed; any fetch already running may predate it."""
        self._write_epoch += 1
        if self._refresh_task is not None and not self._refresh_task.done():
            self._rerun = True

    def set_scope(self, scope: LedgerScope) -> asyncio.Task | None:
        if scope == self.scope:
            return None
        self.scope = scope
        return self.request_refresh("scope changed")

    def set_editing(self, editing: bool) -> asyncio.Task | None:
        """
        Open or close the edit surface.

        Closing runs the refresh deferred while it was open, once.
        """
        self._editing = editing
        if not editing and self._pending_refresh:
            self._pending_refresh = False
            return self.request_refresh("editor closed")
        return None

    def request_refresh(self, reason: str = "requested") -> asyncio.Task | None:
        """
        Schedule a window refetch.

        Returns the task doing the work, or None when the refresh was
        deferred or the session is closed.
        """
        if not self.alive:
            return None
        if self._editing:
            if not self._pending_refresh:
                logger.debug(f"Deferring refresh ({reason}) while editing")
            self._pending_refresh = True
            return None
        if self._refresh_task is not None and not self._refresh_task.done():
            self._rerun = True
            return self._refresh_task

        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop(reason))
        return self._refresh_task

    async def refresh(self, reason: str = "requested") -> bool:
        """Refetch now and wait for it. Returns True if the cache was updated."""
        task = self.request_refresh(reason)
        if task is None:
            return False
        await asyncio.wait({task})
        return not task.cancelled() and task.result()

    async def settle(self) -> None:
        """Wait for the running refresh, if any, to finish."""
        task = self._refresh_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Cross-session signals
    # ------------------------------------------------------------------

    def emit(self, event: str, **payload: object) -> ChangeSignal | None:
        """Tell sibling sessions that this one wrote a change."""
        if self.bus is None:
            return None
        ledger = ALL_LEDGERS if event == BRANCH_CHANGED else self.kind.value
        signal = ChangeSignal(event=event, ledger=ledger, origin=self.origin, payload=payload)
        self._emitted.append(signal.at)
        self.bus.publish(signal)
        return signal

    def is_self_echo(self, signal: ChangeSignal) -> bool:
        return signal.origin == self.origin and signal.at in self._emitted

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _refresh_loop(self, reason: str) -> bool:
        updated = False
        while True:
            self._rerun = False
            updated = await self._fetch_window(reason) or updated
            if not self._rerun or not self.alive:
                return updated
            if self._editing:
                self._pending_refresh = True
                return updated
            reason = "coalesced"

    async def _fetch_window(self, reason: str) -> bool:
        token = self.token
        scope = self.scope
        epoch = self._write_epoch
        logger.debug(f"Fetching {self.kind.value} window {scope.key()} ({reason})")

        self.loading = True
        try:
            obligations = await self.store.list_obligations(
                self.kind, scope.date_range, scope.branch
            )
            if scope.carry_over:
                carried = await self.store.list_carried_over(
                    self.kind, scope.date_range.start, scope.branch
                )
                obligations = _merge_obligations(obligations, carried)
            ids = {o.id for o in obligations}
            payments = await self.store.list_payments(self.kind, ids) if ids else []
        except LedgerSyncError as exc:
            if token.alive:
                self._sync_failed(SyncError(f"Refresh of {self.kind.value} failed: {exc}"), scope)
            return False
        except Exception as exc:
            # A store implementation let something other than StoreError escape
            logger.exception(f"Unexpected error refreshing {self.kind.value}")
            if token.alive:
                self._sync_failed(
                    SyncError(f"Refresh of {self.kind.value} failed: {type(exc).__name__}: {exc}"),
                    scope,
                )
            return False
        finally:
            if token.alive:
                self.loading = False

        if not token.alive:
            logger.debug(f"Discarding {self.kind.value} fetch for closed session")
            return False
        if scope != self.scope or epoch != self._write_epoch:
            # Superseded; the follow-up fetch will converge
            self._rerun = True
            return False
        if self._editing:
            self._pending_refresh = True
            return False

        self.cache.apply_obligations_snapshot(obligations, scope)
        self.cache.apply_payments_snapshot(payments, ids)
        self.cache.mark_stale(False)
        self._has_fetched = True
        self.last_error = None
        self.refresh_count += 1

        if self.snapshots is not None:
            self.snapshots.save(
                LedgerSnapshot(kind=self.kind, scope=scope, obligations=obligations, payments=payments)
            )
        return True

    def _sync_failed(self, error: SyncError, scope: LedgerScope) -> None:
        logger.warning(str(error))
        self.last_error = error

        if not self._has_fetched and self.snapshots is not None:
            snapshot = self.snapshots.load(self.kind, scope)
            if snapshot is not None:
                logger.info(f"Serving cached {self.kind.value} snapshot for {scope.key()}")
                self.cache.apply_obligations_snapshot(snapshot.obligations, scope)
                self.cache.apply_payments_snapshot(
                    snapshot.payments, {o.id for o in snapshot.obligations}
                )
        self.cache.mark_stale(True)


def _merge_obligations(primary: list[Obligation], extra: list[Obligation]) -> list[Obligation]:
    seen = {o.id for o in primary}
    merged = list(primary)
    for obligation in extra:
        if obligation.id not in seen:
            seen.add(obligation.id)
            merged.append(obligation)
    return merged
