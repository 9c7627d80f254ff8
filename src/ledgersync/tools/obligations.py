# ABOUTME: Obligation tools for ledgersync
# ABOUTME: List, total, save, and delete credits or deposits

from datetime import date
from typing import TYPE_CHECKING

from ledgersync.exceptions import StoreError, ValidationError, error_result
from ledgersync.types import Obligation, ObligationKind, Totals, TotalsStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastmcp import FastMCP

    from ledgersync.ledger import Ledger


def totals_dict(totals: Totals | None) -> dict:
    if totals is None:
        return {"paid": 0, "remaining": 0, "status": None}
    return {"paid": totals.paid, "remaining": totals.remaining, "status": totals.status.value}


def obligation_dict(obligation: Obligation, totals: Totals | None) -> dict:
    data = obligation.model_dump(mode="json")
    data.update(totals_dict(totals))
    return data


def _today() -> date:
    return date.today()


def _parse_day(value: str | None, field: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD, got {value!r}") from None


def register_obligation_tools(mcp: "FastMCP", get_ledger: "Callable") -> None:
    """Register obligation tools with the MCP server."""

    @mcp.tool
    async def list_obligations(
        kind: str = "credit",
        year: int | None = None,
        month: int | None = None,
        branch: str | None = None,
        status: str | None = None,
        customer: str | None = None,
    ) -> dict:
        """
        List credits or deposits with their payment totals.

        Without year/month the window covers last month through next month.
        A month view of deposits also includes older deposits still unpaid.

        Args:
            kind: "credit" or "deposit"
            year: Calendar year of a month view
            month: Month of a month view (1-12)
            branch: Only this branch; "" for every branch, omit to keep the current one
            status: Only "Open", "Unpaid", or "Paid"
            customer: Case-insensitive substring of the customer name

        Returns:
            Dict with rows, summary sums, and whether the data is stale
        """
        if (year is None) != (month is None):
            return {"error": "Give both year and month, or neither"}
        if month is not None and not 1 <= month <= 12:
            return {"error": f"month must be 1-12, got {month}"}

        ledger: Ledger = await get_ledger(ObligationKind(kind))
        ledger.set_window(year, month)
        if branch is not None and (branch.strip() or None) != ledger.scope.branch:
            ledger.set_branch(branch)
        await ledger.refresh()

        wanted = TotalsStatus(status) if status else None
        needle = (customer or "").strip().lower()
        totals_map = ledger.totals_map

        rows = []
        face = paid = remaining = 0
        for obligation in ledger.rows:
            totals = totals_map.get(obligation.id)
            if wanted is not None and (totals is None or totals.status != wanted):
                continue
            if needle and needle not in obligation.customer_name.lower():
                continue
            rows.append(obligation_dict(obligation, totals))
            face += obligation.face_amount
            if totals is not None:
                paid += totals.paid
                remaining += totals.remaining

        return {
            "kind": ledger.kind.value,
            "window": {
                "start": ledger.scope.date_range.start.isoformat(),
                "end": ledger.scope.date_range.end.isoformat(),
                "branch": ledger.scope.branch,
            },
            "stale": ledger.stale,
            "count": len(rows),
            "total_amount": face,
            "total_paid": paid,
            "total_remaining": remaining,
            "rows": rows,
        }

    @mcp.tool
    async def get_obligation_totals(kind: str, obligation_id: str) -> dict:
        """
        Paid, remaining, and status for one obligation.

        Works for obligations outside the current window too.

        Args:
            kind: "credit" or "deposit"
            obligation_id: The obligation's id
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        totals = await ledger.fetch_totals_one(obligation_id)
        if totals is None:
            return {"error": f"Obligation {obligation_id} not found or not reachable"}
        return {"id": obligation_id, **totals_dict(totals)}

    @mcp.tool
    async def save_obligation(
        kind: str,
        customer_name: str,
        amount: float,
        date: str | None = None,
        branch: str | None = None,
        obligation_id: str | None = None,
        customer_phone: str | None = None,
        customer_email: str | None = None,
        reference: str | None = None,
        shift: str | None = None,
        handled_by: str | None = None,
        note: str | None = None,
        event_date: str | None = None,
    ) -> dict:
        """
        Create an obligation, or update it when obligation_id is given.

        Args:
            kind: "credit" or "deposit"
            customer_name: Customer display name (required)
            amount: Amount owed; 0 keeps the obligation open
            date: Obligation date (YYYY-MM-DD), defaults to today
            branch: Branch; defaults to the session's branch
            obligation_id: Existing id to update
            customer_phone: Optional phone
            customer_email: Optional email
            reference: Invoice or receipt reference
            shift: Shift label
            handled_by: Staff name; defaults to the signed-in user
            note: Free text
            event_date: Event date for deposits (YYYY-MM-DD)

        Returns:
            The saved obligation with totals, or an error
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        try:
            fields = {
                "kind": ledger.kind,
                "branch": branch if branch is not None else (ledger.scope.branch or ""),
                "date": _parse_day(date, "date") or _today(),
                "customer_name": customer_name,
                "customer_phone": customer_phone,
                "customer_email": customer_email,
                "face_amount": amount,
                "reference": reference,
                "shift": shift,
                "handled_by": handled_by,
                "note": note,
                "event_date": _parse_day(event_date, "event_date"),
            }
            if obligation_id:
                fields["id"] = obligation_id
            result = await ledger.upsert_obligation(Obligation(**fields))
        except ValidationError as e:
            return error_result(e)

        if isinstance(result, StoreError):
            return error_result(result)
        return obligation_dict(result, ledger.totals_map.get(result.id))

    @mcp.tool
    async def delete_obligations(kind: str, obligation_ids: list[str]) -> dict:
        """
        Delete one or more obligations together with their payments.

        Args:
            kind: "credit" or "deposit"
            obligation_ids: Ids to delete
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        if len(obligation_ids) == 1:
            result = await ledger.delete_obligation(obligation_ids[0])
        else:
            result = await ledger.bulk_delete_obligations(obligation_ids)
        if isinstance(result, StoreError):
            return error_result(result)
        return {"deleted": list(dict.fromkeys(obligation_ids))}

    @mcp.tool
    async def refresh_ledger(kind: str = "credit") -> dict:
        """
        Refetch the current window from the store.

        Args:
            kind: "credit" or "deposit"
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        updated = await ledger.refresh()
        result = {"updated": updated, "stale": ledger.stale, "count": len(ledger.rows)}
        if ledger.coordinator.last_error is not None:
            result["error"] = str(ledger.coordinator.last_error)
        return result
