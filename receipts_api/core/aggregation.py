"""Monthly EB aggregates ("Tenant EB bill", "Tenant EB Used").

Both aggregates are materialised rows in the receipts table, one per kind
and calendar month. They are recomputed from the tenant receipts of that
month after every tenant receipt mutation; nothing else writes them.
"""
from datetime import date
from typing import Dict, List, Optional

from receipts_api.core.config import logger
from receipts_api.core.errors import AggregationFailure, DuplicateAggregateError, ReceiptError
from receipts_api.core.models import (
    AGGREGATE_KINDS,
    PAYMENT_MODE_AGGREGATED,
    SENTINEL_TENANT_NAMES,
    TENANT_EB_USED,
    Receipt,
    TenantReceipt,
    aggregate_model,
)
from receipts_api.core.months import as_date, month_bounds, ym_first_day, ym_of

# fields owned by the engine on a synthetic row
_AGGREGATE_FIELDS = (
    "receipt_date",
    "eb_reading_last_month",
    "eb_reading_this_month",
    "eb_rate_per_unit",
    "units_consumed",
    "eb_charges",
    "rent_amount",
    "total_amount",
    "payment_mode",
)


def qualifies(receipt, kind: str) -> bool:
    """Whether a receipt feeds the given aggregate kind."""
    if not isinstance(receipt, TenantReceipt):
        return False
    if kind == TENANT_EB_USED:
        return receipt.counts_for_eb_used
    return True


def aggregate_fields(sources: List[TenantReceipt], first_of_month: date) -> Dict[str, object]:
    total_units = sum(float(r.units_consumed or 0) for r in sources)
    total_charges = sum(float(r.eb_charges or 0) for r in sources)
    rate = (total_charges / total_units) if total_units > 0 else 0.0
    return {
        "receipt_date": first_of_month,
        "eb_reading_last_month": 0.0,
        "eb_reading_this_month": total_units,
        "eb_rate_per_unit": rate,
        "units_consumed": total_units,
        "eb_charges": total_charges,
        "rent_amount": 0.0,
        "total_amount": total_charges,
        "payment_mode": PAYMENT_MODE_AGGREGATED,
    }


def _created_key(receipt):
    # rows without created_at sort last, ties broken by id
    ts = receipt.created_at
    return (ts is None, ts.timestamp() if ts is not None else 0.0, receipt.id or "")


class AggregationEngine:
    def __init__(self, store):
        self.store = store

    # -------------------------
    # reads
    # -------------------------

    def tenant_receipts(self, date_from=None, date_to=None) -> List[TenantReceipt]:
        rows = self.store.query(tenant_not_in=SENTINEL_TENANT_NAMES, date_from=date_from, date_to=date_to)
        return [r for r in rows if isinstance(r, TenantReceipt)]

    def qualifying_receipts(self, anchor_date, kind: str) -> List[TenantReceipt]:
        first, last = month_bounds(anchor_date)
        return [r for r in self.tenant_receipts(first, last) if qualifies(r, kind)]

    def existing_aggregates(self, anchor_date, kind: str) -> List[Receipt]:
        first, last = month_bounds(anchor_date)
        return self.store.query(tenant_in=[kind], date_from=first, date_to=last)

    def receipts_count_for_month(self, anchor_date) -> int:
        """Number of receipts the month's "Tenant EB Used" row is derived from."""
        return len(self.qualifying_receipts(anchor_date, TENANT_EB_USED))

    # -------------------------
    # writes
    # -------------------------

    def _dedupe(self, rows: List[Receipt], kind: str, ym: str) -> Optional[Receipt]:
        if not rows:
            return None
        ordered = sorted(rows, key=_created_key)
        keep, extra = ordered[0], ordered[1:]
        for dup in extra:
            logger.warning("aggregate duplicate removed kind=%s ym=%s id=%s keep=%s", kind, ym, dup.id, keep.id)
            self.store.delete(dup.id)
        return keep

    def _same(self, row: Receipt, fields: Dict[str, object]) -> bool:
        for k in _AGGREGATE_FIELDS:
            cur, new = getattr(row, k), fields[k]
            if isinstance(new, float):
                if cur is None or abs(float(cur) - new) > 1e-9:
                    return False
            elif k == "receipt_date":
                if as_date(cur) != as_date(new):
                    return False
            elif cur != new:
                return False
        return True

    def _upsert(self, kind: str, ym: str, fields: Dict[str, object], existing: Optional[Receipt]) -> Receipt:
        if existing is not None:
            if self._same(existing, fields):
                return existing
            row = self.store.update(existing.id, dict(fields, tenant_name=kind))
            logger.info("aggregate updated kind=%s ym=%s id=%s units=%s charges=%s",
                        kind, ym, row.id, fields["units_consumed"], fields["eb_charges"])
            return row
        model = aggregate_model(kind)
        try:
            row = self.store.insert(model(**fields))
        except DuplicateAggregateError:
            # another writer inserted the row between our read and insert
            winner = self._dedupe(self.existing_aggregates(fields["receipt_date"], kind), kind, ym)
            if winner is None:
                raise
            return self.store.update(winner.id, dict(fields, tenant_name=kind))
        logger.info("aggregate created kind=%s ym=%s id=%s units=%s charges=%s",
                    kind, ym, row.id, fields["units_consumed"], fields["eb_charges"])
        return row

    def recompute_month(self, anchor_date, kind: str) -> Optional[Receipt]:
        """Rebuild one synthetic row for the anchor's calendar month.

        Returns the synthetic row, or None when the month has no qualifying
        tenant receipts (any existing row of that kind is deleted then).
        Store failures are raised as AggregationFailure.
        """
        aggregate_model(kind)
        first, _last = month_bounds(anchor_date)
        ym = ym_of(first)
        try:
            sources = self.qualifying_receipts(first, kind)
            existing = self.existing_aggregates(first, kind)

            if not sources:
                for row in existing:
                    self.store.delete(row.id)
                if existing:
                    logger.info("aggregate removed kind=%s ym=%s rows=%s", kind, ym, len(existing))
                return None

            fields = aggregate_fields(sources, first)
            keep = self._dedupe(existing, kind, ym)
            return self._upsert(kind, ym, fields, keep)
        except (ReceiptError, ValueError, TypeError) as e:
            raise AggregationFailure(f"recompute {kind} {ym} failed: {e}") from e

    def refresh_month(self, anchor_date) -> Dict[str, Optional[Receipt]]:
        """Best-effort recompute of both aggregates. Never raises."""
        out: Dict[str, Optional[Receipt]] = {}
        for kind in AGGREGATE_KINDS:
            try:
                out[kind] = self.recompute_month(anchor_date, kind)
            except Exception:
                logger.exception("aggregate refresh failed kind=%s anchor=%s", kind, anchor_date)
                out[kind] = None
        return out

    def ensure_all_months(self) -> Dict[str, Dict[str, Optional[Receipt]]]:
        """Recompute every month that has tenant receipts or synthetic rows."""
        months = {r.ym for r in self.tenant_receipts()}
        months.update(r.ym for r in self.store.query(tenant_in=AGGREGATE_KINDS))
        result: Dict[str, Dict[str, Optional[Receipt]]] = {}
        for ym in sorted(months):
            result[ym] = self.refresh_month(ym_first_day(ym))
        logger.info("aggregate sweep done months=%s", len(result))
        return result
