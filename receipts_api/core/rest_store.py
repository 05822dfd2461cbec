"""Receipt Store over a Supabase / PostgREST table.

Same surface as core.store.ReceiptStore. The API key is passed in by the
caller; nothing here reads global session state.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from receipts_api.core.config import HTTP_TIMEOUT_SEC, RECEIPTS_TABLE, logger
from receipts_api.core.errors import DuplicateAggregateError, NotFound, StoreError
from receipts_api.core.models import Receipt, is_aggregate, receipt_from_row, receipt_to_row
from receipts_api.core.months import as_date
from receipts_api.core.store import merge_changes, prepare_new


def _pg_list(names: Iterable[str]) -> str:
    quoted = ",".join('"' + str(n).replace('"', '\\"') + '"' for n in names)
    return f"({quoted})"


class RestReceiptStore:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = RECEIPTS_TABLE,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SEC,
    ):
        self.url = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self, returning: bool = False) -> Dict[str, str]:
        h = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if returning:
            h["Prefer"] = "return=representation"
        return h

    def _request(self, method: str, params=None, json=None, returning: bool = False) -> List[Dict[str, Any]]:
        try:
            r = self.session.request(
                method,
                self.url,
                params=params,
                json=json,
                headers=self._headers(returning),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("rest store %s failed: %s", method, str(e))
            raise StoreError(str(e)) from e
        if r.status_code == 409:
            raise DuplicateAggregateError((r.text or "")[:200])
        if not r.ok:
            logger.warning("rest store %s status=%s text=%s", method, r.status_code, (r.text or "")[:200])
            raise StoreError(f"{method} {self.url} -> {r.status_code}")
        if not (r.text or "").strip():
            return []
        data = r.json()
        return data if isinstance(data, list) else [data]

    def insert(self, receipt: Receipt) -> Receipt:
        receipt = prepare_new(receipt)
        row = receipt_to_row(receipt)
        try:
            rows = self._request("POST", json=row, returning=True)
        except DuplicateAggregateError:
            if is_aggregate(receipt):
                raise
            raise StoreError(f"insert conflict for receipt {receipt.id}")
        return receipt_from_row(rows[0] if rows else row)

    def get(self, receipt_id: str) -> Receipt:
        rows = self._request("GET", params={"id": f"eq.{receipt_id}", "select": "*"})
        if not rows:
            raise NotFound(receipt_id)
        return receipt_from_row(rows[0])

    def query(
        self,
        tenant_in: Optional[Iterable[str]] = None,
        tenant_not_in: Optional[Iterable[str]] = None,
        date_from=None,
        date_to=None,
        limit: Optional[int] = None,
    ) -> List[Receipt]:
        params: List[Tuple[str, str]] = [("select", "*")]
        if tenant_in is not None:
            names = list(tenant_in)
            if not names:
                return []
            params.append(("tenant_name", f"in.{_pg_list(names)}"))
        if tenant_not_in:
            params.append(("tenant_name", f"not.in.{_pg_list(tenant_not_in)}"))
        if date_from is not None:
            params.append(("receipt_date", f"gte.{as_date(date_from).isoformat()}"))
        if date_to is not None:
            params.append(("receipt_date", f"lte.{as_date(date_to).isoformat()}"))
        params.append(("order", "receipt_date.desc,created_at.desc"))
        if limit is not None:
            params.append(("limit", str(max(0, int(limit)))))
        return [receipt_from_row(r) for r in self._request("GET", params=params)]

    def update(self, receipt_id: str, changes: Dict[str, Any]) -> Receipt:
        merged = merge_changes(self.get(receipt_id), changes)
        row = receipt_to_row(merged)
        row.pop("id")
        row.pop("created_at")
        rows = self._request("PATCH", params={"id": f"eq.{receipt_id}"}, json=row, returning=True)
        if not rows:
            raise NotFound(receipt_id)
        return receipt_from_row(rows[0])

    def delete(self, receipt_id: str) -> Receipt:
        rows = self._request("DELETE", params={"id": f"eq.{receipt_id}"}, returning=True)
        if not rows:
            raise NotFound(receipt_id)
        return receipt_from_row(rows[0])
