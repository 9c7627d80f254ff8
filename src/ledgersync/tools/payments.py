# ABOUTME: Payment tools for ledgersync
# ABOUTME: List, record, correct, and delete payments against an obligation

from datetime import datetime
from typing import TYPE_CHECKING

from ledgersync.exceptions import StoreError, ValidationError, error_result
from ledgersync.tools.obligations import totals_dict
from ledgersync.types import ObligationKind, Payment, PaymentMethod, infer_method, method_note

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastmcp import FastMCP

    from ledgersync.ledger import Ledger


def payment_dict(payment: Payment) -> dict:
    data = payment.model_dump(mode="json")
    method, other_text = infer_method(payment.note)
    data["method"] = method.value
    if other_text:
        data["method_detail"] = other_text
    return data


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"date must be ISO 8601, got {value!r}") from None


def _note_for(method: str | None, method_detail: str | None) -> str | None:
    if method is None:
        return None
    try:
        parsed = PaymentMethod(method)
    except ValueError:
        raise ValidationError(
            f"method must be one of {', '.join(m.value for m in PaymentMethod)}"
        ) from None
    return method_note(parsed, method_detail or "")


def register_payment_tools(mcp: "FastMCP", get_ledger: "Callable") -> None:
    """Register payment tools with the MCP server."""

    @mcp.tool
    async def list_payments(kind: str, obligation_id: str) -> dict:
        """
        Payments recorded against one obligation, oldest first.

        Args:
            kind: "credit" or "deposit"
            obligation_id: The obligation's id

        Returns:
            Dict with payments and the obligation's current totals
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        payments = await ledger.fetch_payments(obligation_id)
        totals = await ledger.fetch_totals_one(obligation_id)
        return {
            "obligation_id": obligation_id,
            "count": len(payments),
            "payments": [payment_dict(p) for p in payments],
            **totals_dict(totals),
        }

    @mcp.tool
    async def record_payment(
        kind: str,
        obligation_id: str,
        amount: float,
        method: str = "cash",
        method_detail: str | None = None,
        date: str | None = None,
    ) -> dict:
        """
        Record a payment against an obligation.

        Paying more than what remains is accepted; remaining stays at 0.

        Args:
            kind: "credit" or "deposit"
            obligation_id: The obligation being paid
            amount: Amount paid, must be greater than 0
            method: "cash", "card", "bank" (transfer or e-wallet), or "other"
            method_detail: Description when method is "other"
            date: When it was paid (ISO 8601), defaults to now

        Returns:
            The stored payment and the obligation's new totals
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        try:
            result = await ledger.add_payment(
                obligation_id,
                amount,
                date=_parse_timestamp(date),
                note=_note_for(method, method_detail),
            )
        except ValidationError as e:
            return error_result(e)

        if isinstance(result, StoreError):
            return error_result(result)
        totals = await ledger.fetch_totals_one(obligation_id)
        return {"payment": payment_dict(result), **totals_dict(totals)}

    @mcp.tool
    async def update_payment(
        kind: str,
        obligation_id: str,
        payment_id: str,
        amount: float | None = None,
        method: str | None = None,
        method_detail: str | None = None,
        date: str | None = None,
    ) -> dict:
        """
        Correct a recorded payment. Only the given fields change.

        Args:
            kind: "credit" or "deposit"
            obligation_id: The obligation the payment belongs to
            payment_id: The payment to change
            amount: New amount, must be greater than 0
            method: New payment method
            method_detail: Description when method is "other"
            date: New payment time (ISO 8601)
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        try:
            patch: dict = {}
            if amount is not None:
                patch["amount"] = amount
            if date:
                patch["date"] = _parse_timestamp(date)
            if method is not None:
                patch["note"] = _note_for(method, method_detail)
            result = await ledger.update_payment(obligation_id, payment_id, patch)
        except ValidationError as e:
            return error_result(e)

        if isinstance(result, StoreError):
            return error_result(result)
        totals = await ledger.fetch_totals_one(obligation_id)
        return {"payment": payment_dict(result), **totals_dict(totals)}

    @mcp.tool
    async def delete_payment(kind: str, obligation_id: str, payment_id: str) -> dict:
        """
        Delete a payment.

        Args:
            kind: "credit" or "deposit"
            obligation_id: The obligation the payment belongs to
            payment_id: The payment to delete
        """
        ledger: Ledger = await get_ledger(ObligationKind(kind))
        result = await ledger.delete_payment(obligation_id, payment_id)
        if isinstance(result, StoreError):
            return error_result(result)
        if not result:
            return {"error": f"Payment {payment_id} not found on {obligation_id}"}
        totals = await ledger.fetch_totals_one(obligation_id)
        return {"deleted": payment_id, **totals_dict(totals)}
