from datetime import date
from typing import Optional

from pydantic import BaseModel


class ReceiptIn(BaseModel):
    receipt_date: Optional[date] = None
    tenant_name: Optional[str] = None
    eb_reading_last_month: float = 0
    eb_reading_this_month: Optional[float] = None
    eb_rate_per_unit: float = 0
    rent_amount: float = 0

    # False: tenant pays EB directly, total is rent only
    include_eb_in_total: bool = True
    include_in_eb_used: Optional[bool] = True

    received_date: Optional[date] = None
    payment_mode: Optional[str] = None


class ReceiptPatch(BaseModel):
    receipt_date: Optional[date] = None
    tenant_name: Optional[str] = None
    eb_reading_last_month: Optional[float] = None
    eb_reading_this_month: Optional[float] = None
    eb_rate_per_unit: Optional[float] = None
    rent_amount: Optional[float] = None
    include_eb_in_total: Optional[bool] = None
    include_in_eb_used: Optional[bool] = None


class PaymentIn(BaseModel):
    payment_date: date
    payment_mode: str


class EbBillPaymentIn(BaseModel):
    units_consumed: float
    eb_amount: float
    payment_date: date
    units_recorded_date: date
