"""Receipt Store backed by a SQLAlchemy engine (sqlite or postgres).

Every store backend exposes the same small surface used by the
aggregation engine and the lifecycle service:

    insert(receipt) -> Receipt
    get(receipt_id) -> Receipt                 (NotFound)
    query(tenant_in=, tenant_not_in=, date_from=, date_to=, limit=) -> list
    update(receipt_id, changes) -> Receipt     (NotFound)
    delete(receipt_id) -> Receipt              (NotFound, returns deleted row)

Queries are ordered by receipt_date DESC, created_at DESC.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from receipts_api.core.config import RECEIPTS_TABLE
from receipts_api.core.errors import DuplicateAggregateError, NotFound, ReceiptValidationError, StoreError
from receipts_api.core.models import (
    MUTABLE_COLUMNS,
    RECEIPT_COLUMNS,
    Receipt,
    is_aggregate,
    receipt_from_row,
    receipt_to_row,
)
from receipts_api.core.months import as_date

_ROW_COLUMNS = RECEIPT_COLUMNS + ("aggregate_ym",)


def new_receipt_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def prepare_new(receipt: Receipt) -> Receipt:
    """Assign id/created_at to a receipt about to be inserted."""
    return receipt.model_copy(update={
        "id": receipt.id or new_receipt_id(),
        "created_at": receipt.created_at or utc_now(),
    })


def merge_changes(existing: Receipt, changes: Dict[str, Any]) -> Receipt:
    unknown = sorted(set(changes) - set(MUTABLE_COLUMNS))
    if unknown:
        raise ReceiptValidationError(f"unknown or immutable fields: {', '.join(unknown)}")
    row = receipt_to_row(existing)
    row.update(changes)
    return receipt_from_row(row)


def build_filters(
    tenant_in: Optional[Iterable[str]] = None,
    tenant_not_in: Optional[Iterable[str]] = None,
    date_from=None,
    date_to=None,
) -> Tuple[List[str], Dict[str, Any]]:
    where: List[str] = []
    params: Dict[str, Any] = {}
    if tenant_in is not None:
        names = list(tenant_in)
        if not names:
            where.append("1 = 0")
        else:
            ph = ", ".join(f":tin{i}" for i in range(len(names)))
            where.append(f"tenant_name IN ({ph})")
            params.update({f"tin{i}": n for i, n in enumerate(names)})
    if tenant_not_in:
        names = list(tenant_not_in)
        ph = ", ".join(f":tout{i}" for i in range(len(names)))
        where.append(f"tenant_name NOT IN ({ph})")
        params.update({f"tout{i}": n for i, n in enumerate(names)})
    if date_from is not None:
        where.append("receipt_date >= :date_from")
        params["date_from"] = as_date(date_from).isoformat()
    if date_to is not None:
        # receipt_date may carry a time part in legacy rows
        where.append("substr(receipt_date, 1, 10) <= :date_to")
        params["date_to"] = as_date(date_to).isoformat()
    return where, params


class ReceiptStore:
    def __init__(self, db_engine, table: str = RECEIPTS_TABLE):
        self.engine = db_engine
        self.table = table

    def _run(self, fn):
        try:
            with self.engine.begin() as conn:
                return fn(conn)
        except IntegrityError as e:
            raise DuplicateAggregateError(str(e.orig)) from e
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def _select_by_id(self, conn, receipt_id: str):
        return conn.execute(
            text(f"SELECT * FROM {self.table} WHERE id=:id"),
            {"id": str(receipt_id)},
        ).mappings().fetchone()

    def insert(self, receipt: Receipt) -> Receipt:
        receipt = prepare_new(receipt)
        row = receipt_to_row(receipt)
        cols = ", ".join(_ROW_COLUMNS)
        vals = ", ".join(f":{c}" for c in _ROW_COLUMNS)

        def _do(conn):
            conn.execute(text(f"INSERT INTO {self.table} ({cols}) VALUES ({vals})"), row)
            return self._select_by_id(conn, receipt.id)

        try:
            return receipt_from_row(self._run(_do))
        except DuplicateAggregateError:
            if is_aggregate(receipt):
                raise
            # only the aggregate index can conflict for a fresh uuid
            raise StoreError(f"insert conflict for receipt {receipt.id}")

    def get(self, receipt_id: str) -> Receipt:
        row = self._run(lambda conn: self._select_by_id(conn, receipt_id))
        if not row:
            raise NotFound(receipt_id)
        return receipt_from_row(row)

    def query(
        self,
        tenant_in: Optional[Iterable[str]] = None,
        tenant_not_in: Optional[Iterable[str]] = None,
        date_from=None,
        date_to=None,
        limit: Optional[int] = None,
    ) -> List[Receipt]:
        where, params = build_filters(tenant_in, tenant_not_in, date_from, date_to)
        sql = f"SELECT * FROM {self.table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY receipt_date DESC, created_at DESC"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = max(0, int(limit))
        rows = self._run(lambda conn: conn.execute(text(sql), params).mappings().all())
        return [receipt_from_row(r) for r in rows]

    def update(self, receipt_id: str, changes: Dict[str, Any]) -> Receipt:
        def _do(conn):
            current = self._select_by_id(conn, receipt_id)
            if not current:
                return None
            merged = merge_changes(receipt_from_row(current), changes)
            row = receipt_to_row(merged)
            sets = [f"{c} = :{c}" for c in MUTABLE_COLUMNS + ("aggregate_ym",)]
            conn.execute(
                text(f"UPDATE {self.table} SET " + ", ".join(sets) + " WHERE id=:id"),
                row,
            )
            return self._select_by_id(conn, receipt_id)

        row = self._run(_do)
        if not row:
            raise NotFound(receipt_id)
        return receipt_from_row(row)

    def delete(self, receipt_id: str) -> Receipt:
        def _do(conn):
            current = self._select_by_id(conn, receipt_id)
            if not current:
                return None
            conn.execute(text(f"DELETE FROM {self.table} WHERE id=:id"), {"id": str(receipt_id)})
            return current

        row = self._run(_do)
        if not row:
            raise NotFound(receipt_id)
        return receipt_from_row(row)
