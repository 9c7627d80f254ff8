# ABOUTME: Write path for obligations and payments
# ABOUTME: Validates, writes through to the store, then echoes into the cache and signals siblings

import logging
from collections.abc import Iterable
from datetime import datetime

from ledgersync.amounts import round_amount
from ledgersync.cache import ObligationCache
from ledgersync.exceptions import StoreError, ValidationError
from ledgersync.signals import OBLIGATION_CHANGED, PAYMENT_CHANGED
from ledgersync.store import LedgerStore
from ledgersync.sync import SyncCoordinator
from ledgersync.types import (
    Identity,
    Obligation,
    ObligationKind,
    Payment,
    PaymentPatch,
    utcnow,
)

logger = logging.getLogger(__name__)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class MutationGateway:
    """
    Validated write-through for one ledger kind.

    Input is checked before any I/O and rejected with ValidationError. A
    failed store call is logged and returned as a StoreError, leaving the
    cache in its last-known-good state. Nothing is applied to the cache
    before the store confirms it.

    The gateway does not queue: callers should await one mutation on an
    obligation before issuing the next.
    """

    def __init__(
        self,
        kind: ObligationKind,
        store: LedgerStore,
        cache: ObligationCache,
        coordinator: SyncCoordinator | None = None,
        require_branch: bool = True,
        default_user: str = "",
    ) -> None:
        self.kind = ObligationKind(kind)
        self.store = store
        self.cache = cache
        self.coordinator = coordinator
        self.require_branch = require_branch
        self.default_user = default_user
        self._identity: Identity | None = None

    @property
    def _alive(self) -> bool:
        return self.coordinator is None or self.coordinator.alive

    async def current_user_name(self) -> str:
        """Display name for handled_by / recorded_by, looked up once."""
        if self._identity is None:
            try:
                self._identity = await self.store.current_identity()
            except StoreError as exc:
                logger.warning(f"Could not resolve current identity: {exc}")
                return self.default_user
        return self._identity.display_name or self.default_user

    def _after_write(self, obligation_id: str | None, event: str, **payload: object) -> None:
        if self.coordinator is not None:
            self.coordinator.note_local_write()
        if obligation_id is not None and self._alive:
            self.cache.refresh_totals_for(obligation_id)
        if self.coordinator is not None and self._alive:
            self.coordinator.emit(event, **payload)

    def _failed(self, operation: str, exc: StoreError) -> StoreError:
        logger.error(f"{operation} failed: {exc} {exc.context()}")
        return exc

    # ------------------------------------------------------------------
    # Obligations
    # ------------------------------------------------------------------

    def validate_obligation(self, draft: Obligation) -> Obligation:
        """Check write preconditions and return the normalized record."""
        if ObligationKind(draft.kind) != self.kind:
            raise ValidationError(f"Expected a {self.kind.value}, got a {ObligationKind(draft.kind).value}")
        customer = (draft.customer_name or "").strip()
        if not customer:
            raise ValidationError("Customer name is required")
        if draft.face_amount < 0:
            raise ValidationError("Amount cannot be negative")
        branch = draft.branch.strip()
        if self.require_branch and not branch:
            raise ValidationError("Select a branch before saving")

        return draft.model_copy(
            update={
                "customer_name": customer,
                "customer_phone": _clean(draft.customer_phone),
                "customer_email": _clean(draft.customer_email),
                "branch": branch,
                "reference": _clean(draft.reference),
                "note": _clean(draft.note),
                "event_date": draft.event_date if self.kind == ObligationKind.DEPOSIT else None,
            }
        )

    async def save_obligation(self, draft: Obligation) -> Obligation | StoreError:
        """
        Create or update an obligation.

        Raises:
            ValidationError: Empty customer name, negative amount, or
                missing branch when branch scoping is required

        Returns:
            The stored obligation, or the StoreError if the write failed
        """
        obligation = self.validate_obligation(draft)
        if not obligation.handled_by:
            obligation = obligation.model_copy(
                update={"handled_by": await self.current_user_name() or None}
            )

        try:
            saved = await self.store.upsert_obligation(obligation)
        except StoreError as exc:
            return self._failed(f"save_obligation {obligation.id}", exc)

        if self._alive:
            self.cache.upsert_one_obligation(saved)
        self._after_write(saved.id, OBLIGATION_CHANGED, id=saved.id, branch=saved.branch)
        return saved

    async def delete_obligation(self, obligation_id: str) -> bool | StoreError:
        try:
            await self.store.delete_obligation(self.kind, obligation_id)
        except StoreError as exc:
            return self._failed(f"delete_obligation {obligation_id}", exc)

        if self._alive:
            self.cache.remove_obligations([obligation_id])
        self._after_write(None, OBLIGATION_CHANGED, id=obligation_id)
        return True

    async def bulk_delete_obligations(self, obligation_ids: Iterable[str]) -> bool | StoreError:
        ids = list(dict.fromkeys(obligation_ids))
        if not ids:
            return True
        try:
            await self.store.delete_obligations(self.kind, ids)
        except StoreError as exc:
            return self._failed(f"bulk_delete_obligations ({len(ids)} ids)", exc)

        if self._alive:
            self.cache.remove_obligations(ids)
        self._after_write(None, OBLIGATION_CHANGED, ids=ids, bulk=True)
        return True

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def record_payment(
        self,
        obligation_id: str,
        amount: float | int,
        date: datetime | None = None,
        note: str | None = None,
        recorded_by: str | None = None,
    ) -> Payment | StoreError:
        """
        Record a payment against an obligation.

        Overpayment is allowed; totals clamp remaining at zero.

        Raises:
            ValidationError: Missing obligation id or amount not positive
        """
        if not obligation_id:
            raise ValidationError("Payment needs an obligation")
        rounded = round_amount(amount)
        if rounded <= 0:
            raise ValidationError("Payment amount must be greater than zero")

        payment = Payment(
            obligation_id=obligation_id,
            amount=rounded,
            date=date or utcnow(),
            note=note,
            recorded_by=recorded_by or await self.current_user_name() or None,
        )
        try:
            saved = await self.store.insert_payment(self.kind, payment)
        except StoreError as exc:
            return self._failed(f"record_payment on {obligation_id}", exc)

        if self._alive:
            self.cache.upsert_one_payment(saved)
        self._after_write(obligation_id, PAYMENT_CHANGED, id=obligation_id, payment_id=saved.id)
        return saved

    async def update_payment(
        self,
        obligation_id: str,
        payment_id: str,
        patch: PaymentPatch | dict,
    ) -> Payment | StoreError:
        if isinstance(patch, dict):
            patch = PaymentPatch(**patch)
        changes = patch.changes()
        if not changes:
            raise ValidationError("Nothing to update")
        if "amount" in changes and (patch.amount is None or patch.amount <= 0):
            raise ValidationError("Payment amount must be greater than zero")

        try:
            saved = await self.store.update_payment(self.kind, obligation_id, payment_id, patch)
        except StoreError as exc:
            return self._failed(f"update_payment {payment_id}", exc)

        if self._alive:
            self.cache.upsert_one_payment(saved)
        self._after_write(obligation_id, PAYMENT_CHANGED, id=obligation_id, payment_id=payment_id)
        return saved

    async def delete_payment(self, obligation_id: str, payment_id: str) -> bool | StoreError:
        """Returns False when no matching payment existed."""
        try:
            deleted = await self.store.delete_payment(self.kind, obligation_id, payment_id)
        except StoreError as exc:
            return self._failed(f"delete_payment {payment_id}", exc)

        if not deleted:
            logger.warning(f"delete_payment: no row deleted for {payment_id} on {obligation_id}")
            return False

        if self._alive:
            self.cache.remove_one_payment(payment_id)
        self._after_write(obligation_id, PAYMENT_CHANGED, id=obligation_id, payment_id=payment_id)
        return True
