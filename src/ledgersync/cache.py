# ABOUTME: In-memory per-session mirror of obligations, payments, and totals
# ABOUTME: Owns dedup-by-id merge rules for records arriving from any feed

import logging
from collections.abc import Callable, Iterable

from ledgersync.reconciliation import compute_totals, compute_totals_map
from ledgersync.types import LedgerScope, Obligation, Payment, Totals

logger = logging.getLogger(__name__)

CacheListener = Callable[["ObligationCache"], None]


class ObligationCache:
    """
    Single in-memory source of truth for one ledger session.

    Payments are keyed by their own id rather than nested under obligations,
    so a payment delivered twice is stored once. Totals are recomputed for
    every cached obligation after a bulk apply and for the touched obligation
    after a fine-grained change.

    The cache is never authoritative: a fetch from the store always wins.
    """

    def __init__(self) -> None:
        self._obligations: dict[str, Obligation] = {}
        self._payments: dict[str, Payment] = {}
        self._totals: dict[str, Totals] = {}
        # Ids brought in by the last snapshot, including carried-over rows
        self._snapshot_ids: set[str] = set()
        self._listeners: list[CacheListener] = []
        self.stale = False
        self.version = 0

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    @property
    def rows(self) -> list[Obligation]:
        """Cached obligations ordered by date, then id."""
        return sorted(self._obligations.values(), key=lambda o: (o.date, o.id))

    @property
    def totals_map(self) -> dict[str, Totals]:
        return dict(self._totals)

    @property
    def payments(self) -> list[Payment]:
        return list(self._payments.values())

    def get(self, obligation_id: str) -> Obligation | None:
        return self._obligations.get(obligation_id)

    def totals_for(self, obligation_id: str) -> Totals | None:
        return self._totals.get(obligation_id)

    def payments_for(self, obligation_id: str) -> list[Payment]:
        """Payments of one obligation, oldest first."""
        matching = [p for p in self._payments.values() if p.obligation_id == obligation_id]
        return sorted(matching, key=lambda p: (p.date, p.id))

    @property
    def customers(self) -> list[str]:
        names = {o.customer_name.strip() for o in self._obligations.values() if o.customer_name}
        return sorted(name for name in names if name)

    @property
    def staff_options(self) -> list[str]:
        names = {o.handled_by.strip() for o in self._obligations.values() if o.handled_by}
        return sorted(name for name in names if name)

    def __contains__(self, obligation_id: object) -> bool:
        return obligation_id in self._obligations

    def __len__(self) -> int:
        return len(self._obligations)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: CacheListener) -> Callable[[], None]:
        """Register a change callback. Returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _changed(self) -> None:
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Cache listener failed")

    # ------------------------------------------------------------------
    # Bulk applies
    # ------------------------------------------------------------------

    def apply_obligations_snapshot(
        self,
        obligations: Iterable[Obligation],
        scope: LedgerScope | None = None,
    ) -> None:
        """
        Replace the obligations covered by a fetch.

        Cached obligations inside the scope, or brought in by the previous
        snapshot, that are missing from the new list are dropped together
        with their payments. Obligations outside the scope are untouched.
        Without a scope the snapshot replaces everything.
        """
        incoming = {o.id: o for o in obligations}

        if scope is None:
            replaced = set(self._obligations)
        else:
            replaced = {
                oid for oid, o in self._obligations.items() if scope.contains(o)
            } | (self._snapshot_ids & set(self._obligations))

        for oid in replaced - incoming.keys():
            del self._obligations[oid]
        self._obligations.update(incoming)
        self._snapshot_ids = set(incoming)

        self._drop_orphans()
        self._recompute_all()
        self._changed()

    def apply_payments_snapshot(
        self,
        payments: Iterable[Payment],
        obligation_ids: Iterable[str] | None = None,
    ) -> None:
        """
        Merge payments by id.

        When obligation_ids is given, the snapshot is complete for those
        obligations: their cached payments missing from it were deleted
        elsewhere and are dropped.
        """
        incoming = {p.id: p for p in payments if p.id}

        if obligation_ids is not None:
            covered = set(obligation_ids)
            for pid in [
                pid
                for pid, p in self._payments.items()
                if p.obligation_id in covered and pid not in incoming
            ]:
                del self._payments[pid]

        self._payments.update(incoming)
        self._recompute_all()
        self._changed()

    # ------------------------------------------------------------------
    # Fine-grained local echo
    # ------------------------------------------------------------------

    def upsert_one_obligation(self, obligation: Obligation) -> None:
        self._obligations[obligation.id] = obligation
        self.refresh_totals_for(obligation.id)

    def remove_obligations(self, obligation_ids: Iterable[str]) -> None:
        """Drop obligations and every payment referencing them."""
        ids = set(obligation_ids)
        for oid in ids:
            self._obligations.pop(oid, None)
            self._totals.pop(oid, None)
        self._snapshot_ids -= ids
        for pid in [pid for pid, p in self._payments.items() if p.obligation_id in ids]:
            del self._payments[pid]
        self._changed()

    def upsert_one_payment(self, payment: Payment) -> bool:
        """Store a payment of a cached obligation. Returns False if its parent isn't cached."""
        previous = self._payments.get(payment.id)
        if payment.obligation_id not in self._obligations:
            logger.debug(f"Not caching payment {payment.id}: {payment.obligation_id} is not in view")
            if previous is not None:
                # Moved out of view; its old parent loses it
                del self._payments[payment.id]
                self.refresh_totals_for(previous.obligation_id)
            return False
        self._payments[payment.id] = payment
        # An edit may move a payment between obligations
        if previous and previous.obligation_id != payment.obligation_id:
            self._recompute_one(previous.obligation_id)
        self.refresh_totals_for(payment.obligation_id)
        return True

    def remove_one_payment(self, payment_id: str) -> Payment | None:
        payment = self._payments.pop(payment_id, None)
        if payment is not None:
            self.refresh_totals_for(payment.obligation_id)
        return payment

    def refresh_totals_for(self, obligation_id: str) -> Totals | None:
        """Recompute one obligation's totals and notify listeners."""
        totals = self._recompute_one(obligation_id)
        self._changed()
        return totals

    def mark_stale(self, stale: bool = True) -> None:
        if self.stale != stale:
            self.stale = stale
            self._changed()

    def clear(self) -> None:
        self._obligations.clear()
        self._payments.clear()
        self._totals.clear()
        self._snapshot_ids.clear()
        self._changed()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drop_orphans(self) -> None:
        orphans = [pid for pid, p in self._payments.items() if p.obligation_id not in self._obligations]
        for pid in orphans:
            del self._payments[pid]
        if orphans:
            logger.debug(f"Dropped {len(orphans)} payments of removed obligations")

    def _recompute_one(self, obligation_id: str) -> Totals | None:
        obligation = self._obligations.get(obligation_id)
        if obligation is None:
            self._totals.pop(obligation_id, None)
            return None
        totals = compute_totals(obligation, self.payments_for(obligation_id))
        self._totals[obligation_id] = totals
        return totals

    def _recompute_all(self) -> None:
        self._totals = compute_totals_map(self._obligations.values(), self._payments.values())
