from typing import Iterable, Optional

from receipts_api.core.aggregation import AggregationEngine
from receipts_api.core.config import PAYMENT_MODES, logger
from receipts_api.core.errors import ReceiptValidationError
from receipts_api.core.models import (
    EB_INCLUDED_EPSILON,
    ManualEbPayment,
    Receipt,
    TenantReceipt,
    is_sentinel_name,
)
from receipts_api.core.schemas import EbBillPaymentIn, PaymentIn, ReceiptIn, ReceiptPatch


def is_eb_included(receipt) -> bool:
    """True when the stored total was billed as rent + EB charges."""
    expected = float(receipt.rent_amount or 0) + float(receipt.eb_charges or 0)
    return abs(float(receipt.total_amount or 0) - expected) < EB_INCLUDED_EPSILON


def is_paid(receipt) -> bool:
    return receipt.is_paid


def eb_amounts(last_reading: float, this_reading: float, rate: float):
    units = float(this_reading) - float(last_reading)
    return units, units * float(rate)


def total_amount(rent: float, eb_charges: float, include_eb: bool) -> float:
    return float(rent) + float(eb_charges) if include_eb else float(rent)


def _check_tenant_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ReceiptValidationError("tenant_name is required")
    if is_sentinel_name(name):
        raise ReceiptValidationError(f"tenant_name {name!r} is reserved")
    return name


class ReceiptService:
    """Tenant receipt mutations; each one refreshes the affected month's aggregates."""

    def __init__(self, store, aggregator: Optional[AggregationEngine] = None, payment_modes: Iterable[str] = PAYMENT_MODES):
        self.store = store
        self.aggregator = aggregator or AggregationEngine(store)
        self.payment_modes = tuple(payment_modes)

    def _refresh(self, *anchors) -> None:
        seen = set()
        for anchor in anchors:
            ym = f"{anchor.year:04d}-{anchor.month:02d}"
            if ym in seen:
                continue
            seen.add(ym)
            self.aggregator.refresh_month(anchor)

    def create_receipt(self, payload: ReceiptIn) -> TenantReceipt:
        if payload.receipt_date is None:
            raise ReceiptValidationError("receipt_date is required")
        tenant_name = _check_tenant_name(payload.tenant_name)
        if payload.eb_reading_this_month is None or payload.eb_reading_this_month < 0:
            raise ReceiptValidationError("eb_reading_this_month must be a non-negative number")
        if payload.payment_mode and payload.payment_mode not in self.payment_modes:
            raise ReceiptValidationError(f"unknown payment_mode {payload.payment_mode!r}")

        units, charges = eb_amounts(payload.eb_reading_last_month, payload.eb_reading_this_month, payload.eb_rate_per_unit)
        receipt = TenantReceipt(
            receipt_date=payload.receipt_date,
            tenant_name=tenant_name,
            eb_reading_last_month=payload.eb_reading_last_month,
            eb_reading_this_month=payload.eb_reading_this_month,
            eb_rate_per_unit=payload.eb_rate_per_unit,
            units_consumed=units,
            eb_charges=charges,
            rent_amount=payload.rent_amount,
            total_amount=total_amount(payload.rent_amount, charges, payload.include_eb_in_total),
            received_date=payload.received_date,
            payment_mode=payload.payment_mode,
            include_in_eb_used=payload.include_in_eb_used,
        )
        created = self.store.insert(receipt)
        logger.info("receipt created id=%s tenant=%s date=%s", created.id, created.tenant_name, created.receipt_date)
        self._refresh(created.receipt_date)
        return created

    def update_receipt(self, receipt_id: str, patch: ReceiptPatch) -> TenantReceipt:
        existing = self.store.get(receipt_id)
        if not isinstance(existing, TenantReceipt):
            raise ReceiptValidationError(f"{existing.tenant_name!r} rows cannot be edited")

        given = patch.model_dump(exclude_unset=True)
        changes = {}
        if given.get("receipt_date") is not None:
            changes["receipt_date"] = given["receipt_date"]
        if "tenant_name" in given:
            changes["tenant_name"] = _check_tenant_name(given["tenant_name"])
        if "include_in_eb_used" in given:
            changes["include_in_eb_used"] = given["include_in_eb_used"]

        def pick(field: str) -> float:
            v = given.get(field)
            return float(v) if v is not None else float(getattr(existing, field))

        last_reading = pick("eb_reading_last_month")
        this_reading = pick("eb_reading_this_month")
        rate = pick("eb_rate_per_unit")
        rent = pick("rent_amount")
        if this_reading < 0:
            raise ReceiptValidationError("eb_reading_this_month must be a non-negative number")

        include_eb = given.get("include_eb_in_total")
        if include_eb is None:
            include_eb = is_eb_included(existing)

        units, charges = eb_amounts(last_reading, this_reading, rate)
        changes.update({
            "eb_reading_last_month": last_reading,
            "eb_reading_this_month": this_reading,
            "eb_rate_per_unit": rate,
            "rent_amount": rent,
            "units_consumed": units,
            "eb_charges": charges,
            "total_amount": total_amount(rent, charges, include_eb),
        })

        updated = self.store.update(receipt_id, changes)
        logger.info("receipt updated id=%s", receipt_id)
        # new month first; the old one too when the date moved across months
        self._refresh(updated.receipt_date, existing.receipt_date)
        return updated

    def delete_receipt(self, receipt_id: str) -> Receipt:
        deleted = self.store.delete(receipt_id)
        logger.info("receipt deleted id=%s tenant=%s", receipt_id, deleted.tenant_name)
        if isinstance(deleted, TenantReceipt):
            self._refresh(deleted.receipt_date)
        return deleted

    def record_payment(self, receipt_id: str, payment: PaymentIn) -> TenantReceipt:
        """Unpaid -> Paid. There is no way back."""
        existing = self.store.get(receipt_id)
        if not isinstance(existing, TenantReceipt):
            raise ReceiptValidationError("payments are recorded on tenant receipts only")
        if existing.is_paid:
            raise ReceiptValidationError(f"receipt {receipt_id} is already paid")
        mode = (payment.payment_mode or "").strip()
        if mode not in self.payment_modes:
            raise ReceiptValidationError(f"unknown payment_mode {mode!r}")

        updated = self.store.update(receipt_id, {"received_date": payment.payment_date, "payment_mode": mode})
        logger.info("payment recorded id=%s date=%s mode=%s", receipt_id, payment.payment_date, mode)
        self._refresh(updated.receipt_date)
        return updated

    def record_eb_bill_payment(self, payload: EbBillPaymentIn) -> ManualEbPayment:
        """Store a utility bill payment. It is never an aggregation input."""
        if payload.units_consumed is None or payload.units_consumed <= 0:
            raise ReceiptValidationError("units_consumed must be positive")
        if payload.eb_amount is None or payload.eb_amount < 0:
            raise ReceiptValidationError("eb_amount must be a non-negative number")

        units = float(payload.units_consumed)
        amount = float(payload.eb_amount)
        row = ManualEbPayment(
            receipt_date=payload.units_recorded_date,
            eb_reading_last_month=0.0,
            eb_reading_this_month=units,
            eb_rate_per_unit=amount / units,
            units_consumed=units,
            eb_charges=amount,
            rent_amount=0.0,
            total_amount=amount,
            received_date=payload.payment_date,
        )
        created = self.store.insert(row)
        logger.info("eb bill payment recorded id=%s units=%s amount=%s", created.id, units, amount)
        return created