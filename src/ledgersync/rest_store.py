# ABOUTME: LedgerStore implementation over a PostgREST-style HTTP API
# ABOUTME: Converts store rows to typed records once, at the boundary

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import httpx

from ledgersync.auth import StoreSession
from ledgersync.client import get_session, invalidate_session
from ledgersync.config import Settings
from ledgersync.exceptions import AuthenticationError, StoreError
from ledgersync.store import ChangeHandler, Subscription, TableLayout, layout_for
from ledgersync.types import (
    DateRange,
    Identity,
    Obligation,
    ObligationKind,
    Payment,
    PaymentPatch,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

REST_PREFIX = "/rest/v1"

# Ids per request when filtering with in.(...)
ID_BATCH_SIZE = 100

RETURN_ROWS = {"Prefer": "return=representation"}
UPSERT_ROWS = {"Prefer": "resolution=merge-duplicates,return=representation"}

# Statuses answered by signing in again and repeating the request once
AUTH_STATUSES = (401, 403)


# ----------------------------------------------------------------------
# Row conversion
# ----------------------------------------------------------------------


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _parse_timestamp(value: Any) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except ValueError:
            logger.warning(f"Unparseable payment timestamp {value!r}")
    return datetime.now(timezone.utc)


def obligation_from_row(kind: ObligationKind, row: dict) -> Obligation:
    """Build an Obligation from a credits/deposits row."""
    kind = ObligationKind(kind)
    return Obligation(
        id=str(row["id"]),
        kind=kind,
        branch=row.get("branch") or "",
        date=_parse_date(row.get("date")) or date.today(),
        customer_name=row.get("customer_name") or "",
        customer_phone=row.get("customer_phone"),
        customer_email=row.get("customer_email"),
        customer_id=row.get("customer_id"),
        face_amount=row.get("amount"),
        reference=row.get("reference"),
        shift=row.get("shift"),
        handled_by=row.get("handled_by"),
        note=row.get("note"),
        event_date=_parse_date(row.get("event_date")) if kind == ObligationKind.DEPOSIT else None,
    )


def obligation_to_row(obligation: Obligation) -> dict:
    row = {
        "id": obligation.id,
        "branch": obligation.branch,
        "date": obligation.date.isoformat(),
        "customer_id": obligation.customer_id,
        "customer_name": obligation.customer_name,
        "customer_phone": obligation.customer_phone,
        "customer_email": obligation.customer_email,
        "amount": obligation.face_amount,
        "reference": obligation.reference,
        "shift": obligation.shift,
        "handled_by": obligation.handled_by,
        "note": obligation.note,
    }
    if obligation.kind == ObligationKind.DEPOSIT:
        row["event_date"] = obligation.event_date.isoformat() if obligation.event_date else None
    else:
        row["type"] = "credit"
    return row


def payment_from_row(layout: TableLayout, row: dict) -> Payment:
    return Payment(
        id=str(row["id"]),
        obligation_id=str(row[layout.foreign_key]),
        amount=row.get("amount"),
        date=_parse_timestamp(row.get("date")),
        note=row.get("note"),
        recorded_by=row.get(layout.recorder_column),
    )


def payment_to_row(layout: TableLayout, payment: Payment) -> dict:
    return {
        "id": payment.id,
        layout.foreign_key: payment.obligation_id,
        "amount": payment.amount,
        "date": payment.date.isoformat(),
        "note": payment.note,
        layout.recorder_column: payment.recorded_by,
    }


def patch_to_row(layout: TableLayout, patch: PaymentPatch) -> dict:
    row: dict = {}
    for field, value in patch.changes().items():
        if field == "date" and value is not None:
            row["date"] = value.isoformat()
        elif field == "recorded_by":
            row[layout.recorder_column] = value
        else:
            row[field] = value
    return row


def _in_list(ids: Iterable[str]) -> str:
    quoted = ",".join(f'"{i}"' for i in ids)
    return f"in.({quoted})"


def _batches(ids: list[str], size: int = ID_BATCH_SIZE) -> Iterable[list[str]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return data.get("message") or data.get("msg") or data.get("error") or response.text
    return response.text


def _json_body(response: httpx.Response, operation: str, table: str) -> Any:
    # A proxy or captive portal can answer 2xx with an HTML page
    try:
        return response.json()
    except ValueError as e:
        raise StoreError(
            f"{operation} on {table} returned a non-JSON body: {response.text[:80]!r}",
            operation=operation,
            table=table,
            status_code=response.status_code,
        ) from e


def _convert(
    operation: str, table: str, rows: list, convert: Callable[..., T], *args: Any
) -> list[T]:
    """Apply convert(*args, row) to each row, reporting malformed rows as StoreError."""
    try:
        return [convert(*args, row) for row in rows]
    except (KeyError, TypeError, ValueError) as e:
        raise StoreError(
            f"{operation} on {table} returned a malformed row: {e}",
            operation=operation,
            table=table,
        ) from e


def _content_range_total(response: httpx.Response) -> int | None:
    # "0-0/123" or "*/0"
    header = response.headers.get("content-range", "")
    _, _, total = header.partition("/")
    return int(total) if total.isdigit() else None


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------


class RestLedgerStore:
    """
    Ledger store backed by a PostgREST/Supabase HTTP API.

    Change notifications are coarse: each subscription polls a fingerprint
    (row count and latest update marker) of its two tables and reports the
    table name when it moves.
    """

    def __init__(
        self,
        settings: Settings,
        session: StoreSession | None = None,
        watch_column: str = "updated_at",
    ) -> None:
        self.settings = settings
        self._session = session
        self._shared_session = session is None
        self.watch_column = watch_column
        self._no_watch_column: set[str] = set()

    async def session(self) -> StoreSession:
        if self._session is None:
            self._session = await get_session(self.settings)
        return self._session

    async def invalidate_session(self) -> None:
        """Drop the current session so the next request signs in afresh."""
        if self._shared_session:
            await invalidate_session(self.settings)
            self._session = None
        elif self._session is not None:
            await self._session.reset()
            await self._session.ensure_authenticated()

    async def _request(
        self,
        operation: str,
        method: str,
        table: str,
        record_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send one request, signing in again once if the store refuses it.

        Raises:
            StoreError: Transport failure, an error status, or a second refusal
        """
        try:
            return await self._send(operation, method, table, record_id, **kwargs)
        except StoreError as e:
            if e.status_code not in AUTH_STATUSES:
                raise
            logger.warning(f"{operation} on {table} refused ({e.status_code}), signing in again")

        try:
            await self.invalidate_session()
        except AuthenticationError as e:
            raise StoreError(
                str(e), operation=operation, table=table, record_id=record_id, status_code=401
            ) from e
        return await self._send(operation, method, table, record_id, **kwargs)

    async def _send(
        self,
        operation: str,
        method: str,
        table: str,
        record_id: str | None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            session = await self.session()
            response = await session.request(method, f"{REST_PREFIX}/{table}", **kwargs)
        except AuthenticationError as e:
            raise StoreError(
                str(e), operation=operation, table=table, record_id=record_id, status_code=401
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(
                f"{operation} on {table} failed: {e}",
                operation=operation,
                table=table,
                record_id=record_id,
            ) from e

        if response.status_code >= 400:
            raise StoreError(
                f"{operation} on {table} failed with status {response.status_code}: "
                f"{_error_message(response)}",
                operation=operation,
                table=table,
                record_id=record_id,
                status_code=response.status_code,
            )
        return response

    async def _rows(self, operation: str, method: str, table: str, **kwargs: Any) -> list[dict]:
        response = await self._request(operation, method, table, **kwargs)
        if not response.content:
            return []
        data = _json_body(response, operation, table)
        return data if isinstance(data, list) else [data]

    # ------------------------------------------------------------------
    # Obligations
    # ------------------------------------------------------------------

    async def list_obligations(
        self,
        kind: ObligationKind,
        date_range: DateRange,
        branch: str | None = None,
    ) -> list[Obligation]:
        layout = layout_for(kind)
        params: list[tuple[str, str]] = [
            ("select", "*"),
            ("date", f"gte.{date_range.start.isoformat()}"),
            ("date", f"lt.{date_range.end.isoformat()}"),
            ("order", "date.asc"),
        ]
        if branch:
            params.append(("branch", f"eq.{branch}"))

        rows = await self._rows("list_obligations", "GET", layout.obligations, params=params)
        return _convert("list_obligations", layout.obligations, rows, obligation_from_row, kind)

    async def get_obligation(self, kind: ObligationKind, obligation_id: str) -> Obligation | None:
        layout = layout_for(kind)
        rows = await self._rows(
            "get_obligation",
            "GET",
            layout.obligations,
            params={"select": "*", "id": f"eq.{obligation_id}"},
        )
        if not rows:
            return None
        return _convert("get_obligation", layout.obligations, rows[:1], obligation_from_row, kind)[0]

    async def list_carried_over(
        self,
        kind: ObligationKind,
        before: date,
        branch: str | None = None,
    ) -> list[Obligation]:
        """Obligations dated before a window that still have money outstanding."""
        layout = layout_for(kind)
        if layout.remaining_view is None:
            return []

        params: list[tuple[str, str]] = [
            ("select", "id"),
            ("date", f"lt.{before.isoformat()}"),
            ("remaining", "gt.0"),
        ]
        if branch:
            params.append(("branch", f"eq.{branch}"))
        id_rows = await self._rows("list_carried_over", "GET", layout.remaining_view, params=params)
        ids = [
            str(row["id"]) for row in id_rows if isinstance(row, dict) and row.get("id") is not None
        ]

        obligations: list[Obligation] = []
        for batch in _batches(ids):
            rows = await self._rows(
                "list_carried_over",
                "GET",
                layout.obligations,
                params={"select": "*", "id": _in_list(batch)},
            )
            obligations.extend(
                _convert("list_carried_over", layout.obligations, rows, obligation_from_row, kind)
            )
        return obligations

    async def upsert_obligation(self, obligation: Obligation) -> Obligation:
        layout = layout_for(obligation.kind)
        rows = await self._rows(
            "upsert_obligation",
            "POST",
            layout.obligations,
            params={"on_conflict": "id"},
            json=obligation_to_row(obligation),
            headers=UPSERT_ROWS,
        )
        if not rows:
            raise StoreError(
                "Upsert returned no row",
                operation="upsert_obligation",
                table=layout.obligations,
                record_id=obligation.id,
            )
        return _convert(
            "upsert_obligation", layout.obligations, rows[:1], obligation_from_row, obligation.kind
        )[0]

    async def delete_obligation(self, kind: ObligationKind, obligation_id: str) -> None:
        layout = layout_for(kind)
        await self._request(
            "delete_obligation",
            "DELETE",
            layout.obligations,
            record_id=obligation_id,
            params={"id": f"eq.{obligation_id}"},
        )

    async def delete_obligations(self, kind: ObligationKind, obligation_ids: list[str]) -> None:
        layout = layout_for(kind)
        for batch in _batches(list(obligation_ids)):
            await self._request(
                "delete_obligations",
                "DELETE",
                layout.obligations,
                params={"id": _in_list(batch)},
            )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def list_payments(self, kind: ObligationKind, obligation_ids: set[str]) -> list[Payment]:
        layout = layout_for(kind)
        payments: list[Payment] = []
        for batch in _batches(sorted(obligation_ids)):
            rows = await self._rows(
                "list_payments",
                "GET",
                layout.payments,
                params={
                    "select": "*",
                    layout.foreign_key: _in_list(batch),
                    "order": "date.asc",
                },
            )
            payments.extend(
                _convert("list_payments", layout.payments, rows, payment_from_row, layout)
            )
        return payments

    async def insert_payment(self, kind: ObligationKind, payment: Payment) -> Payment:
        layout = layout_for(kind)
        rows = await self._rows(
            "insert_payment",
            "POST",
            layout.payments,
            record_id=payment.id,
            json=payment_to_row(layout, payment),
            headers=RETURN_ROWS,
        )
        if not rows:
            raise StoreError(
                "Insert returned no row",
                operation="insert_payment",
                table=layout.payments,
                record_id=payment.id,
            )
        return _convert("insert_payment", layout.payments, rows[:1], payment_from_row, layout)[0]

    async def update_payment(
        self,
        kind: ObligationKind,
        obligation_id: str,
        payment_id: str,
        patch: PaymentPatch,
    ) -> Payment:
        layout = layout_for(kind)
        rows = await self._rows(
            "update_payment",
            "PATCH",
            layout.payments,
            record_id=payment_id,
            params={"id": f"eq.{payment_id}", layout.foreign_key: f"eq.{obligation_id}"},
            json=patch_to_row(layout, patch),
            headers=RETURN_ROWS,
        )
        if not rows:
            raise StoreError(
                f"Payment {payment_id} not found on {obligation_id}",
                operation="update_payment",
                table=layout.payments,
                record_id=payment_id,
                status_code=404,
            )
        return _convert("update_payment", layout.payments, rows[:1], payment_from_row, layout)[0]

    async def delete_payment(self, kind: ObligationKind, obligation_id: str, payment_id: str) -> bool:
        layout = layout_for(kind)
        rows = await self._rows(
            "delete_payment",
            "DELETE",
            layout.payments,
            record_id=payment_id,
            params={"id": f"eq.{payment_id}", layout.foreign_key: f"eq.{obligation_id}"},
            headers=RETURN_ROWS,
        )
        return len(rows) > 0

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def current_identity(self) -> Identity:
        """
        Display name of the signed-in user.

        Prefers the app account's short/full name, then auth metadata, then
        the email, then the configured fallback name.
        """
        session = await self.session()
        user = session.user
        user_id = user.get("id")
        account: dict = {}
        if user_id:
            rows = await self._rows(
                "current_identity",
                "GET",
                "app_accounts",
                params={"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
            )
            account = rows[0] if rows and isinstance(rows[0], dict) else {}

        metadata = user.get("user_metadata") or {}
        name = (
            account.get("short_name")
            or account.get("full_name")
            or account.get("name")
            or metadata.get("full_name")
            or metadata.get("name")
            or user.get("email")
            or self.settings.user_name
        )
        return Identity(display_name=name or "")

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    async def fingerprint(self, table: str) -> tuple[int | None, Any]:
        """Cheap summary of a table that changes when any row changes."""
        headers = {"Prefer": "count=exact"}
        if table not in self._no_watch_column:
            try:
                response = await self._request(
                    "fingerprint",
                    "GET",
                    table,
                    params={
                        "select": self.watch_column,
                        "order": f"{self.watch_column}.desc.nullslast",
                        "limit": "1",
                    },
                    headers=headers,
                )
                rows = _json_body(response, "fingerprint", table) if response.content else []
                first = rows[0] if isinstance(rows, list) and rows else {}
                latest = first.get(self.watch_column) if isinstance(first, dict) else None
                return _content_range_total(response), latest
            except StoreError as e:
                if e.status_code != 400:
                    raise
                logger.info(f"{table} has no {self.watch_column} column, watching row count only")
                self._no_watch_column.add(table)

        response = await self._request(
            "fingerprint", "GET", table, params={"select": "id", "limit": "1"}, headers=headers
        )
        return _content_range_total(response), None

    async def _watch(self, layout: TableLayout, on_change: ChangeHandler) -> None:
        fingerprints: dict[str, tuple] = {}
        while True:
            for table in (layout.obligations, layout.payments):
                try:
                    current = await self.fingerprint(table)
                except StoreError as e:
                    logger.debug(f"Watcher could not read {table}: {e}")
                    continue
                previous = fingerprints.get(table)
                fingerprints[table] = current
                if previous is not None and previous != current:
                    logger.debug(f"Change detected on {table}")
                    on_change(table)
            await asyncio.sleep(self.settings.poll_interval)

    def subscribe(self, kind: ObligationKind, on_change: ChangeHandler) -> Subscription:
        layout = layout_for(kind)
        task = asyncio.get_running_loop().create_task(self._watch(layout, on_change))
        return Subscription(task.cancel)
