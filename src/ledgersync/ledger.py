# ABOUTME: Session facade over cache, sync coordinator, and mutation gateway
# ABOUTME: Exposes the caller-facing read and write API for credits or deposits

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime

from ledgersync.cache import ObligationCache
from ledgersync.exceptions import LedgerSyncError, StoreError
from ledgersync.gateway import MutationGateway
from ledgersync.reconciliation import compute_totals
from ledgersync.signals import BRANCH_CHANGED, SignalBus
from ledgersync.snapshot import SnapshotStore
from ledgersync.store import LedgerStore
from ledgersync.sync import SyncCoordinator
from ledgersync.types import (
    DateRange,
    LedgerScope,
    Obligation,
    ObligationKind,
    Payment,
    PaymentPatch,
    Totals,
)

logger = logging.getLogger(__name__)


def make_scope(
    kind: ObligationKind,
    year: int | None = None,
    month: int | None = None,
    branch: str | None = None,
    today: date | None = None,
) -> LedgerScope:
    """
    Build the query scope for a ledger view.

    A month view covers that month only; deposits additionally carry past
    unpaid obligations into it. Without a month the window spans the
    previous, current, and next month.
    """
    branch = (branch or "").strip() or None
    if year is not None and month is not None:
        return LedgerScope(
            date_range=DateRange.for_month(year, month),
            branch=branch,
            carry_over=ObligationKind(kind) == ObligationKind.DEPOSIT,
        )
    return LedgerScope(date_range=DateRange.around(today), branch=branch)


class Ledger:
    """
    One consumer session over credits or deposits.

    Use as an async context manager so the session's background work is
    cancelled when it ends:

        async with Ledger(ObligationKind.CREDIT, store, scope) as credits:
            credits.rows
            await credits.add_payment(obligation_id, 200000)
    """

    def __init__(
        self,
        kind: ObligationKind,
        store: LedgerStore,
        scope: LedgerScope | None = None,
        bus: SignalBus | None = None,
        snapshots: SnapshotStore | None = None,
        require_branch: bool = True,
        default_user: str = "",
    ) -> None:
        self.kind = ObligationKind(kind)
        self.store = store
        self.cache = ObligationCache()
        self.coordinator = SyncCoordinator(
            self.kind,
            store,
            self.cache,
            scope or make_scope(self.kind),
            bus=bus,
            snapshots=snapshots,
        )
        self.gateway = MutationGateway(
            self.kind,
            store,
            self.cache,
            coordinator=self.coordinator,
            require_branch=require_branch,
            default_user=default_user,
        )
        self.current_user_name = default_user

    async def __aenter__(self) -> "Ledger":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def open(self) -> None:
        """Mount the session: resolve the user and run the first fetch."""
        self.current_user_name = await self.gateway.current_user_name()
        await self.coordinator.start()
        logger.info(f"Opened {self.kind.value} ledger with {len(self.cache)} obligations")

    async def close(self) -> None:
        await self.coordinator.close()

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def scope(self) -> LedgerScope:
        return self.coordinator.scope

    @property
    def rows(self) -> list[Obligation]:
        return self.cache.rows

    @property
    def totals_map(self) -> dict[str, Totals]:
        return self.cache.totals_map

    @property
    def loading(self) -> bool:
        return self.coordinator.loading

    @property
    def stale(self) -> bool:
        return self.cache.stale

    @property
    def customers(self) -> list[str]:
        return self.cache.customers

    @property
    def staff_options(self) -> list[str]:
        return self.cache.staff_options

    def get(self, obligation_id: str) -> Obligation | None:
        return self.cache.get(obligation_id)

    # ------------------------------------------------------------------
    # Sync controls
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        return await self.coordinator.refresh("caller")

    def notify_visible(self) -> None:
        self.coordinator.notify_visible()

    def set_editing(self, editing: bool) -> None:
        self.coordinator.set_editing(editing)

    @contextmanager
    def editing(self) -> Iterator["Ledger"]:
        """Hold background refreshes back while an edit form is open."""
        self.set_editing(True)
        try:
            yield self
        finally:
            self.set_editing(False)

    def set_branch(self, branch: str | None) -> None:
        """Switch branch filter and tell sibling sessions about it."""
        branch = (branch or "").strip() or None
        self.coordinator.set_scope(self.scope.model_copy(update={"branch": branch}))
        self.coordinator.emit(BRANCH_CHANGED, name=branch or "")

    def set_window(self, year: int | None = None, month: int | None = None) -> None:
        self.coordinator.set_scope(make_scope(self.kind, year, month, self.scope.branch))

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    async def upsert_obligation(self, draft: Obligation) -> Obligation | StoreError:
        return await self.gateway.save_obligation(draft)

    async def delete_obligation(self, obligation_id: str) -> bool | StoreError:
        return await self.gateway.delete_obligation(obligation_id)

    async def bulk_delete_obligations(self, obligation_ids: Iterable[str]) -> bool | StoreError:
        return await self.gateway.bulk_delete_obligations(obligation_ids)

    async def add_payment(
        self,
        obligation_id: str,
        amount: float | int,
        date: datetime | None = None,
        note: str | None = None,
    ) -> Payment | StoreError:
        return await self.gateway.record_payment(obligation_id, amount, date=date, note=note)

    async def update_payment(
        self,
        obligation_id: str,
        payment_id: str,
        patch: PaymentPatch | dict,
    ) -> Payment | StoreError:
        return await self.gateway.update_payment(obligation_id, payment_id, patch)

    async def delete_payment(self, obligation_id: str, payment_id: str) -> bool | StoreError:
        return await self.gateway.delete_payment(obligation_id, payment_id)

    async def fetch_payments(self, obligation_id: str) -> list[Payment]:
        """
        Payments of one obligation, oldest first, fresh from the store.

        Falls back to the cached payments when the store can't be reached.
        """
        token = self.coordinator.token
        try:
            payments = await self.store.list_payments(self.kind, {obligation_id})
        except StoreError as exc:
            logger.warning(f"fetch_payments for {obligation_id} failed, using cache: {exc}")
            return self.cache.payments_for(obligation_id)

        if token.alive and obligation_id in self.cache:
            self.cache.apply_payments_snapshot(payments, [obligation_id])
        return sorted(payments, key=lambda p: (p.date, p.id))

    async def refresh_totals_for(self, obligation_id: str) -> Totals | None:
        """Re-read one obligation's payments and recompute its totals."""
        if obligation_id not in self.cache:
            return None
        await self.fetch_payments(obligation_id)
        return self.cache.refresh_totals_for(obligation_id)

    async def fetch_totals_one(self, obligation_id: str) -> Totals | None:
        """
        Totals for one obligation, even one outside the current window.

        Returns None if the obligation doesn't exist or the store fails.
        """
        cached = self.cache.totals_for(obligation_id)
        if cached is not None:
            return cached

        try:
            obligation = await self.store.get_obligation(self.kind, obligation_id)
            if obligation is None:
                return None
            payments = await self.store.list_payments(self.kind, {obligation_id})
        except LedgerSyncError as exc:
            logger.warning(f"fetch_totals_one for {obligation_id} failed: {exc}")
            return None
        return compute_totals(obligation, payments)
