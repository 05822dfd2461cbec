import logging
import os
from sqlalchemy import create_engine

logger = logging.getLogger("rent_receipts")


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# --- Receipts / payments ---
RECEIPTS_TABLE = (os.getenv("RECEIPTS_TABLE") or "rent_receipts").strip()
PAYMENT_MODES = tuple(
    m.strip() for m in (os.getenv("PAYMENT_MODES") or "kvb-amma,cash,jack-gpay").split(",") if m.strip()
)

# --- Aggregation ---
# unique (tenant_name, aggregate_ym) index on synthetic rows
AGGREGATE_UNIQUE_INDEX = _env_flag("AGGREGATE_UNIQUE_INDEX", True)
# run ensure_all_months() before listing the EB view
AGGREGATE_BACKFILL_ON_READ = _env_flag("AGGREGATE_BACKFILL_ON_READ", False)

# REST store (Supabase / PostgREST)
RECEIPTS_REST_URL = (os.getenv("RECEIPTS_REST_URL") or "").strip()
RECEIPTS_REST_KEY = (os.getenv("RECEIPTS_REST_KEY") or "").strip()
HTTP_TIMEOUT_SEC = float((os.getenv("HTTP_TIMEOUT_SEC") or "10").strip() or 10)

# DB
DATABASE_URL = os.getenv("DATABASE_URL", "")
engine = create_engine(DATABASE_URL) if DATABASE_URL else None
