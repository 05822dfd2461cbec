from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from receipts_api.core.config import (
    AGGREGATE_BACKFILL_ON_READ,
    RECEIPTS_REST_KEY,
    RECEIPTS_REST_URL,
    engine,
)
from receipts_api.core.db import db_ready, ensure_tables
from receipts_api.core.errors import NotFound, ReceiptError, ReceiptValidationError
from receipts_api.core.lifecycle import ReceiptService
from receipts_api.core.months import is_ym, month_now, ym_first_day
from receipts_api.core.queries import (
    VIEWS,
    backfill_aggregates,
    describe_receipt,
    list_receipts,
    receipt_counts_by_month,
)
from receipts_api.core.rest_store import RestReceiptStore
from receipts_api.core.schemas import EbBillPaymentIn, PaymentIn, ReceiptIn, ReceiptPatch
from receipts_api.core.store import ReceiptStore

router = APIRouter()


def rest_ready() -> bool:
    return bool(RECEIPTS_REST_URL and RECEIPTS_REST_KEY)


def get_service() -> ReceiptService:
    if db_ready():
        ensure_tables()
        return ReceiptService(ReceiptStore(engine))
    if rest_ready():
        return ReceiptService(RestReceiptStore(RECEIPTS_REST_URL, RECEIPTS_REST_KEY))
    raise HTTPException(status_code=500, detail="DB is not configured")


def _raise_http(e: ReceiptError):
    if isinstance(e, NotFound):
        raise HTTPException(status_code=404, detail="receipt not found")
    if isinstance(e, ReceiptValidationError):
        raise HTTPException(status_code=400, detail=str(e))
    raise HTTPException(status_code=500, detail="receipt store error")


# -----------------------
# Receipts
# -----------------------

@router.get("/api/receipts")
def get_receipts(
    view: str = "all",
    tenant_name: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: Optional[int] = None,
    service: ReceiptService = Depends(get_service),
):
    if view not in VIEWS:
        raise HTTPException(status_code=400, detail=f"view must be one of {', '.join(VIEWS)}")
    if limit is not None:
        limit = max(1, min(limit, 500))
    if view == "eb" and AGGREGATE_BACKFILL_ON_READ:
        backfill_aggregates(service.aggregator)
    try:
        rows = list_receipts(service.store, view, tenant_name, date_from, date_to, limit)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "items": [describe_receipt(r) for r in rows]}


@router.get("/api/receipts/months")
def get_receipt_months(service: ReceiptService = Depends(get_service)):
    try:
        counts = receipt_counts_by_month(service.store)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "items": [{"ym": ym, "count": n} for ym, n in counts.items()]}


@router.get("/api/receipts/{receipt_id}")
def get_receipt(receipt_id: str, service: ReceiptService = Depends(get_service)):
    try:
        receipt = service.store.get(receipt_id)
        item = describe_receipt(receipt, service.aggregator)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "item": item}


@router.post("/api/receipts")
def create_receipt(payload: ReceiptIn, service: ReceiptService = Depends(get_service)):
    try:
        receipt = service.create_receipt(payload)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "item": describe_receipt(receipt)}


@router.put("/api/receipts/{receipt_id}")
def update_receipt(receipt_id: str, patch: ReceiptPatch, service: ReceiptService = Depends(get_service)):
    try:
        receipt = service.update_receipt(receipt_id, patch)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "item": describe_receipt(receipt)}


@router.delete("/api/receipts/{receipt_id}")
def delete_receipt(receipt_id: str, service: ReceiptService = Depends(get_service)):
    try:
        deleted = service.delete_receipt(receipt_id)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "deleted": describe_receipt(deleted)}


@router.post("/api/receipts/{receipt_id}/payment")
def record_payment(receipt_id: str, payment: PaymentIn, service: ReceiptService = Depends(get_service)):
    try:
        receipt = service.record_payment(receipt_id, payment)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "item": describe_receipt(receipt)}


@router.post("/api/eb-bill-payments")
def record_eb_bill_payment(payload: EbBillPaymentIn, service: ReceiptService = Depends(get_service)):
    try:
        receipt = service.record_eb_bill_payment(payload)
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "item": describe_receipt(receipt)}


@router.get("/api/payment-modes")
def get_payment_modes(service: ReceiptService = Depends(get_service)):
    return {"ok": True, "items": list(service.payment_modes)}


# -----------------------
# Aggregates
# -----------------------

@router.get("/api/aggregates/count")
def get_aggregate_count(ym: Optional[str] = None, service: ReceiptService = Depends(get_service)):
    ym = (ym or month_now()).strip()
    if not is_ym(ym):
        raise HTTPException(status_code=400, detail="ym must be YYYY-MM")
    try:
        n = service.aggregator.receipts_count_for_month(ym_first_day(ym))
    except ReceiptError as e:
        _raise_http(e)
    return {"ok": True, "ym": ym, "count": n}


@router.post("/api/aggregates/sweep")
def sweep_aggregates(service: ReceiptService = Depends(get_service)):
    try:
        result = service.aggregator.ensure_all_months()
    except ReceiptError as e:
        _raise_http(e)
    return {
        "ok": True,
        "months": {
            ym: {kind: (row.id if row is not None else None) for kind, row in kinds.items()}
            for ym, kinds in result.items()
        },
    }
