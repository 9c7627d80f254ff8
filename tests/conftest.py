# ABOUTME: Pytest fixtures for ledgersync tests
# ABOUTME: Provides an in-memory ledger store, sample records, and MCP server fixtures

import asyncio
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from fastmcp import FastMCP

from ledgersync.exceptions import StoreError
from ledgersync.ledger import Ledger, make_scope
from ledgersync.server import create_server
from ledgersync.signals import LocalSignalBus
from ledgersync.store import ChangeHandler, Subscription
from ledgersync.types import (
    DateRange,
    Identity,
    Obligation,
    ObligationKind,
    Payment,
    PaymentPatch,
)

TODAY = date(2024, 5, 15)


class FakeLedgerStore:
    """
    In-memory LedgerStore with failure injection.

    Set `failures[method] = StoreError(...)` to make the next call to that
    method fail. Set `fetch_gate` to an asyncio.Event to hold
    list_obligations until the test releases it.
    """

    def __init__(self) -> None:
        self.obligations: dict[str, Obligation] = {}
        self.payments: dict[str, Payment] = {}
        self.identity = Identity(display_name="Rina")
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_started = asyncio.Event()
        self.handlers: dict[ObligationKind, list[ChangeHandler]] = {}

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        exc = self.failures.pop(method, None)
        if exc is not None:
            raise exc

    def count(self, method: str) -> int:
        return self.calls.count(method)

    # Seeding helpers

    def add(self, obligation: Obligation) -> Obligation:
        self.obligations[obligation.id] = obligation
        return obligation

    def pay(self, payment: Payment) -> Payment:
        self.payments[payment.id] = payment
        return payment

    def fire(self, kind: ObligationKind, table: str = "credits") -> None:
        for handler in list(self.handlers.get(kind, [])):
            handler(table)

    # LedgerStore

    async def list_obligations(self, kind, date_range: DateRange, branch=None):
        self._enter("list_obligations")
        self.fetch_started.set()
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        return [
            o
            for o in self.obligations.values()
            if o.kind == kind
            and date_range.contains(o.date)
            and (not branch or o.branch == branch)
        ]

    async def get_obligation(self, kind, obligation_id):
        self._enter("get_obligation")
        obligation = self.obligations.get(obligation_id)
        return obligation if obligation and obligation.kind == kind else None

    async def list_carried_over(self, kind, before, branch=None):
        self._enter("list_carried_over")
        carried = []
        for o in self.obligations.values():
            if o.kind != kind or o.date >= before or (branch and o.branch != branch):
                continue
            paid = sum(p.amount for p in self.payments.values() if p.obligation_id == o.id)
            if o.face_amount - paid > 0:
                carried.append(o)
        return carried

    async def list_payments(self, kind, obligation_ids):
        self._enter("list_payments")
        return [p for p in self.payments.values() if p.obligation_id in obligation_ids]

    async def upsert_obligation(self, obligation):
        self._enter("upsert_obligation")
        self.obligations[obligation.id] = obligation
        return obligation

    async def delete_obligation(self, kind, obligation_id):
        self._enter("delete_obligation")
        self._delete([obligation_id])

    async def delete_obligations(self, kind, obligation_ids):
        self._enter("delete_obligations")
        self._delete(obligation_ids)

    def _delete(self, ids) -> None:
        for oid in ids:
            self.obligations.pop(oid, None)
        for pid in [pid for pid, p in self.payments.items() if p.obligation_id in ids]:
            del self.payments[pid]

    async def insert_payment(self, kind, payment):
        self._enter("insert_payment")
        self.payments[payment.id] = payment
        return payment

    async def update_payment(self, kind, obligation_id, payment_id, patch: PaymentPatch):
        self._enter("update_payment")
        current = self.payments.get(payment_id)
        if current is None or current.obligation_id != obligation_id:
            raise StoreError("not found", operation="update_payment", status_code=404)
        updated = current.model_copy(update=patch.changes())
        self.payments[payment_id] = updated
        return updated

    async def delete_payment(self, kind, obligation_id, payment_id):
        self._enter("delete_payment")
        current = self.payments.get(payment_id)
        if current is None or current.obligation_id != obligation_id:
            return False
        del self.payments[payment_id]
        return True

    def subscribe(self, kind, on_change) -> Subscription:
        handlers = self.handlers.setdefault(ObligationKind(kind), [])
        handlers.append(on_change)
        return Subscription(lambda: handlers.remove(on_change))

    async def current_identity(self):
        self._enter("current_identity")
        return self.identity


def make_credit(**overrides) -> Obligation:
    fields = {
        "kind": ObligationKind.CREDIT,
        "branch": "Main",
        "date": TODAY,
        "customer_name": "Budi",
        "face_amount": 500000,
    }
    fields.update(overrides)
    return Obligation(**fields)


def make_deposit(**overrides) -> Obligation:
    fields = {
        "kind": ObligationKind.DEPOSIT,
        "branch": "Main",
        "date": TODAY,
        "customer_name": "Sari",
        "face_amount": 1000000,
        "event_date": date(2024, 6, 1),
    }
    fields.update(overrides)
    return Obligation(**fields)


def make_payment(obligation_id: str, amount: int, **overrides) -> Payment:
    fields = {
        "obligation_id": obligation_id,
        "amount": amount,
        "date": datetime(2024, 5, 16, 9, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Payment(**fields)


@pytest.fixture
def store() -> FakeLedgerStore:
    return FakeLedgerStore()


@pytest.fixture
def bus() -> LocalSignalBus:
    return LocalSignalBus()


@pytest.fixture
def credit_scope():
    return make_scope(ObligationKind.CREDIT, today=TODAY)


@pytest_asyncio.fixture
async def credits(store, bus, credit_scope):
    """An open credits ledger over the fake store."""
    ledger = Ledger(ObligationKind.CREDIT, store, scope=credit_scope, bus=bus, require_branch=True)
    await ledger.open()
    yield ledger
    await ledger.close()


@pytest_asyncio.fixture
async def ledger_factory(store):
    """Async factory handing tool functions ledgers over the fake store."""
    ledgers: dict[ObligationKind, Ledger] = {}

    async def _get_ledger(kind):
        kind = ObligationKind(kind)
        if kind not in ledgers:
            ledgers[kind] = Ledger(kind, store, scope=make_scope(kind, today=TODAY))
            await ledgers[kind].open()
        return ledgers[kind]

    yield _get_ledger

    for ledger in ledgers.values():
        await ledger.close()


@pytest.fixture
def mcp_server() -> FastMCP:
    """Create an MCP server with all tools registered."""
    return create_server()
