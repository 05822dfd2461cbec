from collections import Counter
from typing import Any, Dict, List, Optional

from receipts_api.core.aggregation import AggregationEngine
from receipts_api.core.config import logger
from receipts_api.core.lifecycle import is_eb_included, is_paid
from receipts_api.core.models import SENTINEL_TENANT_NAMES, AggregateEbUsed, TenantReceipt

VIEWS = ("all", "receipts", "eb")


def list_receipts(
    store,
    view: str = "all",
    tenant_name: Optional[str] = None,
    date_from=None,
    date_to=None,
    limit: Optional[int] = None,
) -> List:
    """Receipts for one UI tab.

    view="receipts" hides system rows, view="eb" shows only system rows,
    view="all" returns everything.
    """
    if view not in VIEWS:
        raise ValueError(f"unknown view {view!r}")
    tenant_in = None
    tenant_not_in = None
    if view == "receipts":
        tenant_not_in = SENTINEL_TENANT_NAMES
    elif view == "eb":
        tenant_in = SENTINEL_TENANT_NAMES
    if tenant_name:
        if tenant_in is not None and tenant_name not in tenant_in:
            return []
        if tenant_not_in is not None and tenant_name in tenant_not_in:
            return []
        tenant_in = [tenant_name]
    return store.query(
        tenant_in=tenant_in,
        tenant_not_in=tenant_not_in,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )


def receipt_counts_by_month(store) -> Dict[str, int]:
    """Tenant receipts per YYYY-MM."""
    rows = store.query(tenant_not_in=SENTINEL_TENANT_NAMES)
    counts = Counter(r.ym for r in rows if isinstance(r, TenantReceipt))
    return dict(sorted(counts.items()))


def backfill_aggregates(aggregator: AggregationEngine) -> None:
    try:
        aggregator.ensure_all_months()
    except Exception:
        logger.exception("aggregate backfill on read failed")


def describe_receipt(receipt, aggregator: Optional[AggregationEngine] = None) -> Dict[str, Any]:
    """JSON-ready receipt with derived flags."""
    item = receipt.model_dump(mode="json")
    item["is_paid"] = is_paid(receipt)
    if isinstance(receipt, TenantReceipt):
        item["eb_included"] = is_eb_included(receipt)
        item["counts_for_eb_used"] = receipt.counts_for_eb_used
    if isinstance(receipt, AggregateEbUsed) and aggregator is not None:
        n = aggregator.receipts_count_for_month(receipt.receipt_date)
        item["source_receipts"] = n
        item["provenance"] = f"derived from {n} receipt" + ("" if n == 1 else "s")
    return item
