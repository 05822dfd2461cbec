"""Receipt variants and their mapping to/from `rent_receipts` rows.

All rows live in one table. The row kind is encoded in `tenant_name`:
the reserved names below mark system rows, anything else is a real tenant.
In code every row is decoded into one of the tagged variants instead.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, TypeAdapter

from receipts_api.core.months import as_date

EB_BILL_PAID = "EB bill paid"
TENANT_EB_BILL = "Tenant EB bill"
TENANT_EB_USED = "Tenant EB Used"

SENTINEL_TENANT_NAMES = (EB_BILL_PAID, TENANT_EB_BILL, TENANT_EB_USED)
AGGREGATE_KINDS = (TENANT_EB_BILL, TENANT_EB_USED)

# legacy "not paid yet" marker in received_date
UNPAID_SENTINEL_DATE = "1970-01-01"

PAYMENT_MODE_AGGREGATED = "aggregated"
PAYMENT_MODE_MANUAL = "manual"

EB_INCLUDED_EPSILON = 0.01

RECEIPT_COLUMNS = (
    "id",
    "receipt_date",
    "tenant_name",
    "eb_reading_last_month",
    "eb_reading_this_month",
    "eb_rate_per_unit",
    "units_consumed",
    "eb_charges",
    "rent_amount",
    "total_amount",
    "received_date",
    "payment_mode",
    "include_in_eb_used",
    "created_at",
)

# columns a caller may change through store.update()
MUTABLE_COLUMNS = tuple(c for c in RECEIPT_COLUMNS if c not in ("id", "created_at"))


class ReceiptBase(BaseModel):
    id: Optional[str] = None
    receipt_date: date
    tenant_name: str
    eb_reading_last_month: float = 0.0
    eb_reading_this_month: float = 0.0
    eb_rate_per_unit: float = 0.0
    units_consumed: float = 0.0
    eb_charges: float = 0.0
    rent_amount: float = 0.0
    total_amount: float = 0.0
    received_date: Optional[date] = None
    payment_mode: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.received_date is not None

    @property
    def ym(self) -> str:
        return f"{self.receipt_date.year:04d}-{self.receipt_date.month:02d}"


class TenantReceipt(ReceiptBase):
    kind: Literal["tenant"] = "tenant"
    # None = row predates the flag, counts as included
    include_in_eb_used: Optional[bool] = None

    @property
    def counts_for_eb_used(self) -> bool:
        return self.include_in_eb_used is not False


class AggregateEbBill(ReceiptBase):
    kind: Literal["tenant_eb_bill"] = "tenant_eb_bill"
    tenant_name: Literal["Tenant EB bill"] = TENANT_EB_BILL
    payment_mode: Optional[str] = PAYMENT_MODE_AGGREGATED


class AggregateEbUsed(ReceiptBase):
    kind: Literal["tenant_eb_used"] = "tenant_eb_used"
    tenant_name: Literal["Tenant EB Used"] = TENANT_EB_USED
    payment_mode: Optional[str] = PAYMENT_MODE_AGGREGATED


class ManualEbPayment(ReceiptBase):
    kind: Literal["eb_bill_paid"] = "eb_bill_paid"
    tenant_name: Literal["EB bill paid"] = EB_BILL_PAID
    payment_mode: Optional[str] = PAYMENT_MODE_MANUAL


Receipt = Union[TenantReceipt, AggregateEbBill, AggregateEbUsed, ManualEbPayment]

_VARIANT_BY_NAME = {
    TENANT_EB_BILL: AggregateEbBill,
    TENANT_EB_USED: AggregateEbUsed,
    EB_BILL_PAID: ManualEbPayment,
}


def is_sentinel_name(tenant_name: Optional[str]) -> bool:
    return (tenant_name or "").strip() in SENTINEL_TENANT_NAMES


def is_aggregate(receipt) -> bool:
    return isinstance(receipt, (AggregateEbBill, AggregateEbUsed))


def aggregate_model(kind: str):
    if kind not in AGGREGATE_KINDS:
        raise ValueError(f"not an aggregate kind: {kind!r}")
    return _VARIANT_BY_NAME[kind]


def _decode_received_date(v) -> Optional[date]:
    if v is None:
        return None
    s = v.isoformat() if isinstance(v, (date, datetime)) else str(v).strip()
    if not s or s[:10] == UNPAID_SENTINEL_DATE:
        return None
    return as_date(s)


def _decode_flag(v) -> Optional[bool]:
    if v is None:
        return None
    if isinstance(v, str):
        s = v.strip().lower()
        if not s:
            return None
        return s not in ("false", "f", "0")
    return bool(v)


_DATETIME = TypeAdapter(datetime)


def _decode_created_at(v) -> Optional[datetime]:
    if v is None:
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        s = str(v).strip()
        if not s:
            return None
        # postgres trims trailing zeros from the fraction
        dt = _DATETIME.validate_python(s.replace(" ", "T", 1))
    # legacy naive timestamps are UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def receipt_from_row(row) -> Receipt:
    """Decode a storage row (mapping) into its receipt variant."""
    r: Dict[str, Any] = dict(row)
    tenant_name = str(r.get("tenant_name") or "").strip()
    data = {
        "id": (str(r["id"]) if r.get("id") is not None else None),
        "receipt_date": as_date(r.get("receipt_date")),
        "tenant_name": tenant_name,
        "received_date": _decode_received_date(r.get("received_date")),
        "payment_mode": r.get("payment_mode"),
        "created_at": _decode_created_at(r.get("created_at")),
    }
    for col in (
        "eb_reading_last_month",
        "eb_reading_this_month",
        "eb_rate_per_unit",
        "units_consumed",
        "eb_charges",
        "rent_amount",
        "total_amount",
    ):
        v = r.get(col)
        data[col] = float(v) if v is not None else 0.0

    model = _VARIANT_BY_NAME.get(tenant_name)
    if model is None:
        data["include_in_eb_used"] = _decode_flag(r.get("include_in_eb_used"))
        return TenantReceipt(**data)
    if data["payment_mode"] is None:
        data.pop("payment_mode")
    return model(**data)


def _encode_value(col: str, v):
    if v is None:
        return None
    if col == "created_at" and isinstance(v, datetime):
        return v.isoformat()
    if isinstance(v, (date, datetime)):
        return as_date(v).isoformat()
    return v


def receipt_to_row(receipt: ReceiptBase) -> Dict[str, Any]:
    """Encode a receipt variant into storage columns (plus aggregate_ym)."""
    row = {col: _encode_value(col, getattr(receipt, col, None)) for col in RECEIPT_COLUMNS}
    row["aggregate_ym"] = receipt.ym if is_aggregate(receipt) else None
    return row