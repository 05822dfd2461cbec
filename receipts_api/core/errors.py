class ReceiptError(Exception):
    """Base class for receipt domain errors."""


class NotFound(ReceiptError):
    def __init__(self, receipt_id: str):
        super().__init__(f"receipt not found: {receipt_id}")
        self.receipt_id = receipt_id


class ReceiptValidationError(ReceiptError):
    """Rejected input, raised before anything is persisted."""


class StoreError(ReceiptError):
    """Underlying persistence failure."""


class DuplicateAggregateError(StoreError):
    """A synthetic row for this kind+month already exists (unique index hit)."""


class AggregationFailure(ReceiptError):
    """Recompute of a monthly aggregate failed. Callers log it, never propagate."""
