# ABOUTME: Tests for the in-memory obligation cache
# ABOUTME: Snapshot replacement, cascade deletes, idempotent applies, and read models

from datetime import date

from conftest import make_credit, make_payment

from ledgersync.cache import ObligationCache
from ledgersync.types import DateRange, LedgerScope, TotalsStatus

MAY = LedgerScope(date_range=DateRange.for_month(2024, 5))


class TestSnapshots:
    """Test bulk applies from fetches."""

    def test_apply_is_idempotent(self):
        cache = ObligationCache()
        credit = make_credit()
        payment = make_payment(credit.id, 200000)

        cache.apply_obligations_snapshot([credit], MAY)
        cache.apply_payments_snapshot([payment], [credit.id])
        first = (cache.rows, cache.totals_map, cache.payments)

        cache.apply_obligations_snapshot([credit], MAY)
        cache.apply_payments_snapshot([payment], [credit.id])
        assert (cache.rows, cache.totals_map, cache.payments) == first
        assert cache.totals_for(credit.id).remaining == 300000

    def test_missing_obligation_is_dropped_with_payments(self):
        cache = ObligationCache()
        kept = make_credit()
        gone = make_credit(customer_name="Agus")
        cache.apply_obligations_snapshot([kept, gone], MAY)
        cache.apply_payments_snapshot([make_payment(gone.id, 100)], [kept.id, gone.id])

        cache.apply_obligations_snapshot([kept], MAY)

        assert gone.id not in cache
        assert cache.payments_for(gone.id) == []
        assert cache.totals_for(gone.id) is None

    def test_out_of_scope_rows_survive(self):
        cache = ObligationCache()
        april = make_credit(date=date(2024, 4, 10))
        cache.upsert_one_obligation(april)

        cache.apply_obligations_snapshot([make_credit()], MAY)
        assert april.id in cache

    def test_previous_snapshot_rows_are_replaced_even_outside_scope(self):
        cache = ObligationCache()
        carried = make_credit(date=date(2024, 3, 1))
        cache.apply_obligations_snapshot([carried], MAY)

        cache.apply_obligations_snapshot([], MAY)
        assert carried.id not in cache

    def test_no_scope_replaces_everything(self):
        cache = ObligationCache()
        cache.upsert_one_obligation(make_credit(date=date(2023, 1, 1)))
        fresh = make_credit()
        cache.apply_obligations_snapshot([fresh])
        assert [o.id for o in cache.rows] == [fresh.id]

    def test_payment_snapshot_drops_deleted_payments(self):
        cache = ObligationCache()
        credit = make_credit()
        p1 = make_payment(credit.id, 100)
        p2 = make_payment(credit.id, 200)
        cache.apply_obligations_snapshot([credit], MAY)
        cache.apply_payments_snapshot([p1, p2], [credit.id])

        cache.apply_payments_snapshot([p1], [credit.id])
        assert [p.id for p in cache.payments_for(credit.id)] == [p1.id]
        assert cache.totals_for(credit.id).paid == 100


class TestLocalEcho:
    """Test fine-grained updates after confirmed writes."""

    def test_remove_obligations_cascades(self):
        cache = ObligationCache()
        credit = make_credit()
        cache.upsert_one_obligation(credit)
        cache.upsert_one_payment(make_payment(credit.id, 100))

        cache.remove_obligations([credit.id])
        assert len(cache) == 0
        assert cache.payments == []
        assert cache.totals_map == {}

    def test_payment_upsert_updates_totals(self):
        cache = ObligationCache()
        credit = make_credit(face_amount=1000)
        cache.upsert_one_obligation(credit)
        payment = make_payment(credit.id, 400)
        cache.upsert_one_payment(payment)
        assert cache.totals_for(credit.id).remaining == 600

        cache.upsert_one_payment(payment.model_copy(update={"amount": 1000}))
        assert cache.totals_for(credit.id).status == TotalsStatus.PAID

    def test_payment_without_cached_obligation_is_not_kept(self):
        cache = ObligationCache()
        elsewhere = make_credit()

        assert cache.upsert_one_payment(make_payment(elsewhere.id, 100)) is False
        assert cache.payments == []
        assert cache.totals_for(elsewhere.id) is None

    def test_payment_moved_out_of_view_leaves_old_parent(self):
        cache = ObligationCache()
        credit = make_credit(face_amount=1000)
        cache.upsert_one_obligation(credit)
        payment = make_payment(credit.id, 400)
        cache.upsert_one_payment(payment)

        cache.upsert_one_payment(payment.model_copy(update={"obligation_id": "not-cached"}))
        assert cache.payments == []
        assert cache.totals_for(credit.id).paid == 0

    def test_remove_one_payment(self):
        cache = ObligationCache()
        credit = make_credit(face_amount=1000)
        cache.upsert_one_obligation(credit)
        payment = make_payment(credit.id, 400)
        cache.upsert_one_payment(payment)

        assert cache.remove_one_payment(payment.id) == payment
        assert cache.remove_one_payment(payment.id) is None
        assert cache.totals_for(credit.id).paid == 0


class TestReadModels:
    """Test derived views and change notification."""

    def test_rows_sorted_by_date_then_id(self):
        cache = ObligationCache()
        late = make_credit(id="b", date=date(2024, 5, 20))
        early_b = make_credit(id="z", date=date(2024, 5, 2))
        early_a = make_credit(id="a", date=date(2024, 5, 2))
        cache.apply_obligations_snapshot([late, early_b, early_a], MAY)
        assert [o.id for o in cache.rows] == ["a", "z", "b"]

    def test_customers_and_staff_are_distinct_and_sorted(self):
        cache = ObligationCache()
        cache.apply_obligations_snapshot(
            [
                make_credit(customer_name="Sari", handled_by="Rina"),
                make_credit(customer_name="Budi", handled_by="Rina"),
                make_credit(customer_name="Sari", handled_by=None),
            ],
            MAY,
        )
        assert cache.customers == ["Budi", "Sari"]
        assert cache.staff_options == ["Rina"]

    def test_listeners_see_changes(self):
        cache = ObligationCache()
        seen = []
        remove = cache.add_listener(lambda c: seen.append(c.version))

        cache.upsert_one_obligation(make_credit())
        remove()
        cache.clear()

        assert seen == [1]

    def test_failing_listener_does_not_break_cache(self):
        cache = ObligationCache()

        def broken(_cache):
            raise RuntimeError("boom")

        cache.add_listener(broken)
        cache.upsert_one_obligation(make_credit())
        assert len(cache) == 1

    def test_mark_stale(self):
        cache = ObligationCache()
        cache.mark_stale()
        assert cache.stale
        cache.mark_stale(False)
        assert not cache.stale
