from datetime import date

import pytest
from sqlalchemy import text

from receipts_api.core.aggregation import AggregationEngine
from receipts_api.core.errors import AggregationFailure, NotFound, ReceiptValidationError
from receipts_api.core.lifecycle import ReceiptService, is_eb_included
from receipts_api.core.models import (
    TENANT_EB_BILL,
    TENANT_EB_USED,
    AggregateEbUsed,
    ManualEbPayment,
    TenantReceipt,
)
from receipts_api.core.schemas import EbBillPaymentIn, PaymentIn, ReceiptIn, ReceiptPatch


def bill(d="2024-03-05", tenant="Sudhaagar", last=1000, this=1010, rate=5, rent=2500, **kw):
    return ReceiptIn(
        receipt_date=d,
        tenant_name=tenant,
        eb_reading_last_month=last,
        eb_reading_this_month=this,
        eb_rate_per_unit=rate,
        rent_amount=rent,
        **kw,
    )


def eb_used(store):
    return store.query(tenant_in=[TENANT_EB_USED])


def eb_bill(store):
    return store.query(tenant_in=[TENANT_EB_BILL])


def test_create_derives_units_charges_and_total(service):
    r = service.create_receipt(bill())

    assert isinstance(r, TenantReceipt)
    assert r.units_consumed == 10
    assert r.eb_charges == 50
    assert r.total_amount == 2550
    assert not r.is_paid
    assert is_eb_included(r)


def test_create_without_eb_in_total(service):
    r = service.create_receipt(bill(include_eb_in_total=False))

    assert r.total_amount == 2500
    assert not is_eb_included(r)


def test_create_refreshes_month_aggregates(service, store):
    service.create_receipt(bill(tenant="Sudhaagar", this=1010))
    service.create_receipt(bill(d="2024-03-28", tenant="Babu", last=500, this=520))

    [used] = eb_used(store)
    assert used.units_consumed == 30
    assert used.eb_charges == 150
    assert used.eb_rate_per_unit == 5.0


def test_excluded_receipt_feeds_bill_not_used(service, store):
    service.create_receipt(bill(tenant="Sudhaagar", this=1010))
    service.create_receipt(bill(tenant="Babu", last=500, this=520, include_in_eb_used=False))

    [used] = eb_used(store)
    [total] = eb_bill(store)
    assert (used.units_consumed, used.eb_charges) == (10, 50)
    assert (total.units_consumed, total.eb_charges) == (30, 150)


@pytest.mark.parametrize(
    "payload",
    [
        bill(d=None),
        bill(tenant="  "),
        bill(tenant="Tenant EB Used"),
        bill(tenant="EB bill paid"),
        bill(this=-1),
        bill(payment_mode="bitcoin"),
    ],
)
def test_create_rejects_invalid_input(service, store, payload):
    with pytest.raises(ReceiptValidationError):
        service.create_receipt(payload)
    assert store.query() == []


def test_update_recomputes_receipt_and_aggregate(service, store):
    r = service.create_receipt(bill())

    updated = service.update_receipt(r.id, ReceiptPatch(eb_reading_this_month=1030))

    assert updated.id == r.id
    assert updated.units_consumed == 30
    assert updated.total_amount == 2650
    [used] = eb_used(store)
    assert used.units_consumed == 30


def test_update_keeps_eb_policy_of_stored_row(service):
    r = service.create_receipt(bill(include_eb_in_total=False))

    updated = service.update_receipt(r.id, ReceiptPatch(eb_rate_per_unit=6))

    assert updated.eb_charges == 60
    assert updated.total_amount == 2500


def test_update_moving_month_refreshes_both_months(service, store):
    r = service.create_receipt(bill(d="2024-03-05"))

    service.update_receipt(r.id, ReceiptPatch(receipt_date=date(2024, 4, 2)))

    [used] = eb_used(store)
    assert used.receipt_date == date(2024, 4, 1)
    assert len(eb_bill(store)) == 1


def test_update_include_flag(service, store):
    service.create_receipt(bill(tenant="Sudhaagar"))
    b = service.create_receipt(bill(tenant="Babu", last=500, this=520))

    service.update_receipt(b.id, ReceiptPatch(include_in_eb_used=False))

    [used] = eb_used(store)
    assert used.units_consumed == 10


def test_update_unknown_receipt(service):
    with pytest.raises(NotFound):
        service.update_receipt("missing", ReceiptPatch(rent_amount=1))


def test_aggregate_rows_cannot_be_edited(service, store):
    service.create_receipt(bill())
    [used] = eb_used(store)

    with pytest.raises(ReceiptValidationError):
        service.update_receipt(used.id, ReceiptPatch(rent_amount=1))


def test_deleting_last_receipt_removes_aggregates(service, store):
    r = service.create_receipt(bill())
    assert len(eb_used(store)) == 1

    deleted = service.delete_receipt(r.id)

    assert deleted.id == r.id
    assert eb_used(store) == []
    assert eb_bill(store) == []


def test_delete_unknown_receipt(service):
    with pytest.raises(NotFound):
        service.delete_receipt("missing")


def test_aggregate_rows_can_be_deleted(service, store):
    service.create_receipt(bill())
    [used] = eb_used(store)

    service.delete_receipt(used.id)

    assert eb_used(store) == []


def test_record_payment_marks_paid(service):
    r = service.create_receipt(bill())

    paid = service.record_payment(r.id, PaymentIn(payment_date=date(2024, 3, 10), payment_mode="cash"))

    assert paid.is_paid
    assert paid.received_date == date(2024, 3, 10)
    assert paid.payment_mode == "cash"


def test_record_payment_has_no_repeat_or_reverse(service):
    r = service.create_receipt(bill())
    service.record_payment(r.id, PaymentIn(payment_date=date(2024, 3, 10), payment_mode="cash"))

    with pytest.raises(ReceiptValidationError):
        service.record_payment(r.id, PaymentIn(payment_date=date(2024, 3, 11), payment_mode="kvb-amma"))


def test_record_payment_rejects_unknown_mode(service):
    r = service.create_receipt(bill())

    with pytest.raises(ReceiptValidationError):
        service.record_payment(r.id, PaymentIn(payment_date=date(2024, 3, 10), payment_mode="cheque"))


def test_payment_modes_are_configurable(store):
    service = ReceiptService(store, payment_modes=("cheque",))
    r = service.create_receipt(bill())

    paid = service.record_payment(r.id, PaymentIn(payment_date=date(2024, 3, 10), payment_mode="cheque"))

    assert paid.payment_mode == "cheque"


def test_legacy_unpaid_sentinel_can_be_paid(service, store, engine):
    r = service.create_receipt(bill())
    with engine.begin() as conn:
        conn.execute(text("UPDATE rent_receipts SET received_date='1970-01-01' WHERE id=:id"), {"id": r.id})
    assert not store.get(r.id).is_paid

    paid = service.record_payment(r.id, PaymentIn(payment_date=date(2024, 3, 10), payment_mode="jack-gpay"))

    assert paid.received_date == date(2024, 3, 10)


def test_record_eb_bill_payment(service, store):
    row = service.record_eb_bill_payment(EbBillPaymentIn(
        units_consumed=400,
        eb_amount=3200,
        payment_date=date(2024, 4, 2),
        units_recorded_date=date(2024, 3, 30),
    ))

    assert isinstance(row, ManualEbPayment)
    assert row.tenant_name == "EB bill paid"
    assert row.eb_rate_per_unit == 8
    assert row.total_amount == 3200
    assert row.rent_amount == 0
    assert row.payment_mode == "manual"
    assert row.is_paid
    assert eb_bill(store) == []


def test_eb_bill_payment_needs_units(service):
    with pytest.raises(ReceiptValidationError):
        service.record_eb_bill_payment(EbBillPaymentIn(
            units_consumed=0,
            eb_amount=100,
            payment_date=date(2024, 4, 2),
            units_recorded_date=date(2024, 3, 30),
        ))


class ExplodingEngine(AggregationEngine):
    def recompute_month(self, anchor_date, kind):
        raise AggregationFailure("boom")


def test_aggregation_failure_does_not_fail_create(store):
    service = ReceiptService(store, ExplodingEngine(store))

    r = service.create_receipt(bill())

    assert store.get(r.id).tenant_name == "Sudhaagar"
    assert eb_used(store) == []


def test_concurrent_creates_converge_after_sweep(loose_store):
    service = ReceiptService(loose_store)
    service.create_receipt(bill(tenant="Sudhaagar"))
    service.create_receipt(bill(tenant="Babu", last=500, this=520))
    # second writer inserted its own aggregate before seeing the first one
    loose_store.insert(AggregateEbUsed(receipt_date=date(2024, 3, 1), units_consumed=20, eb_charges=100))

    service.aggregator.ensure_all_months()

    [used] = eb_used(loose_store)
    [total] = eb_bill(loose_store)
    assert used.units_consumed == 30
    assert used.eb_charges == 150
    assert total.units_consumed == 30
