# ABOUTME: Contract for the remote ledger store that owns durable state
# ABOUTME: Defines the LedgerStore protocol, subscriptions, and per-kind table layout

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import Protocol, runtime_checkable

from ledgersync.types import (
    DateRange,
    Identity,
    Obligation,
    ObligationKind,
    Payment,
    PaymentPatch,
)

ChangeHandler = Callable[[str], None]


@dataclass(frozen=True)
class TableLayout:
    """Where one kind of obligation lives in the relational store."""

    obligations: str
    payments: str
    foreign_key: str
    recorder_column: str
    remaining_view: str | None = None


TABLE_LAYOUTS = {
    ObligationKind.CREDIT: TableLayout(
        obligations="credits",
        payments="credit_payments",
        foreign_key="credit_id",
        recorder_column="recorded_by",
    ),
    ObligationKind.DEPOSIT: TableLayout(
        obligations="deposits",
        payments="deposit_payments",
        foreign_key="deposit_id",
        recorder_column="ended_by",
        remaining_view="view_deposit_remaining",
    ),
}


def layout_for(kind: ObligationKind) -> TableLayout:
    return TABLE_LAYOUTS[ObligationKind(kind)]


class Subscription:
    """Handle for a change-notification registration."""

    def __init__(self, on_close: Callable[[], None] | None = None) -> None:
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close:
            self._on_close()


@runtime_checkable
class LedgerStore(Protocol):
    """
    Authoritative remote store for obligations and payments.

    Every method may raise StoreError. Upserts are keyed by id so retried
    writes are idempotent.
    """

    async def list_obligations(
        self,
        kind: ObligationKind,
        date_range: DateRange,
        branch: str | None = None,
    ) -> list[Obligation]: ...

    async def get_obligation(self, kind: ObligationKind, obligation_id: str) -> Obligation | None: ...

    async def list_carried_over(
        self,
        kind: ObligationKind,
        before: date,
        branch: str | None = None,
    ) -> list[Obligation]: ...

    async def list_payments(self, kind: ObligationKind, obligation_ids: set[str]) -> list[Payment]: ...

    async def upsert_obligation(self, obligation: Obligation) -> Obligation: ...

    async def delete_obligation(self, kind: ObligationKind, obligation_id: str) -> None: ...

    async def delete_obligations(self, kind: ObligationKind, obligation_ids: list[str]) -> None: ...

    async def insert_payment(self, kind: ObligationKind, payment: Payment) -> Payment: ...

    async def update_payment(
        self,
        kind: ObligationKind,
        obligation_id: str,
        payment_id: str,
        patch: PaymentPatch,
    ) -> Payment: ...

    async def delete_payment(self, kind: ObligationKind, obligation_id: str, payment_id: str) -> bool: ...

    def subscribe(self, kind: ObligationKind, on_change: ChangeHandler) -> Subscription: ...

    async def current_identity(self) -> Identity: ...
