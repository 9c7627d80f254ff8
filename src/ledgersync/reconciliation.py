# ABOUTME: Totals derivation for obligations and their payments
# ABOUTME: Pure functions, no I/O; safe to call on every read

from collections import defaultdict
from collections.abc import Iterable

from ledgersync.amounts import round_amount, sum_unique_by_payment_id
from ledgersync.types import Obligation, Payment, Totals, TotalsStatus


def compute_totals(obligation: Obligation, payments: Iterable[Payment]) -> Totals:
    """
    Derive paid, remaining, and status for one obligation.

    Only payments that reference the obligation are counted, each payment id
    once. Overpayment clamps remaining at zero and is not reported.

    Args:
        obligation: The credit or deposit
        payments: Candidate payments, possibly for other obligations too

    Returns:
        Totals for the obligation
    """
    face = round_amount(obligation.face_amount)
    paid = sum_unique_by_payment_id(p for p in payments if p.obligation_id == obligation.id)

    if face == 0:
        return Totals(paid=paid, remaining=0, status=TotalsStatus.OPEN)

    remaining = max(0, face - paid)
    status = TotalsStatus.PAID if remaining == 0 else TotalsStatus.UNPAID
    return Totals(paid=paid, remaining=remaining, status=status)


def compute_totals_map(
    obligations: Iterable[Obligation],
    payments: Iterable[Payment],
) -> dict[str, Totals]:
    """Totals for every obligation, grouping payments in a single pass."""
    by_obligation: dict[str, list[Payment]] = defaultdict(list)
    for payment in payments:
        by_obligation[payment.obligation_id].append(payment)

    return {
        obligation.id: compute_totals(obligation, by_obligation.get(obligation.id, ()))
        for obligation in obligations
    }
