import threading
import time

from sqlalchemy import inspect, text

from receipts_api.core.config import AGGREGATE_UNIQUE_INDEX, DATABASE_URL, RECEIPTS_TABLE, engine, logger
from receipts_api.core.models import AGGREGATE_KINDS

# --- schema init guard (prevents deadlocks on concurrent requests) ---
_SCHEMA_INIT_LOCK = threading.Lock()
_SCHEMA_READY = set()

# columns added after the first table version: name -> DDL type
_MIGRATED_COLUMNS = (
    ("payment_mode", "TEXT NULL"),
    ("include_in_eb_used", "BOOLEAN NULL"),
    ("aggregate_ym", "TEXT NULL"),
)


def db_ready() -> bool:
    return engine is not None and bool(DATABASE_URL)


def _create_table(conn, table: str) -> None:
    # dates are ISO text so range filters behave the same on sqlite and postgres
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            receipt_date TEXT NOT NULL,
            tenant_name TEXT NOT NULL,
            eb_reading_last_month DOUBLE PRECISION NOT NULL DEFAULT 0,
            eb_reading_this_month DOUBLE PRECISION NOT NULL DEFAULT 0,
            eb_rate_per_unit DOUBLE PRECISION NOT NULL DEFAULT 0,
            units_consumed DOUBLE PRECISION NOT NULL DEFAULT 0,
            eb_charges DOUBLE PRECISION NOT NULL DEFAULT 0,
            rent_amount DOUBLE PRECISION NOT NULL DEFAULT 0,
            total_amount DOUBLE PRECISION NOT NULL DEFAULT 0,
            received_date TEXT NULL,
            created_at TEXT NOT NULL
        )
    """))


def _migrate_columns(conn, table: str) -> None:
    existing = {c["name"] for c in inspect(conn).get_columns(table)}
    for name, ddl in _MIGRATED_COLUMNS:
        if name not in existing:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
            logger.info("schema: added column %s.%s", table, name)


def _backfill_aggregate_ym(conn, table: str) -> None:
    names = ", ".join(f":k{i}" for i in range(len(AGGREGATE_KINDS)))
    params = {f"k{i}": k for i, k in enumerate(AGGREGATE_KINDS)}
    conn.execute(
        text(f"""
            UPDATE {table}
            SET aggregate_ym = substr(receipt_date, 1, 7)
            WHERE aggregate_ym IS NULL AND tenant_name IN ({names})
        """),
        params,
    )


def ensure_tables(db_engine=None, *, table: str = RECEIPTS_TABLE, unique_aggregates: bool = AGGREGATE_UNIQUE_INDEX) -> None:
    """Create/migrate the receipts table once per engine.

    The unique (tenant_name, aggregate_ym) index is created in its own
    transaction: a database still holding duplicate aggregates from older
    versions cannot take it yet, and the next recompute repairs them.
    """
    db_engine = db_engine if db_engine is not None else engine
    if db_engine is None:
        return
    key = (db_engine, table, bool(unique_aggregates))
    if key in _SCHEMA_READY:
        return
    with _SCHEMA_INIT_LOCK:
        if key in _SCHEMA_READY:
            return
        # DDL can deadlock if multiple workers hit it concurrently. Retry a few times.
        for attempt in range(1, 6):
            try:
                with db_engine.begin() as conn:
                    _create_table(conn, table)
                    _migrate_columns(conn, table)
                    conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_{table}_receipt_date ON {table}(receipt_date DESC)"))
                    conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_{table}_tenant_name ON {table}(tenant_name)"))
                break
            except Exception as e:
                if attempt >= 5:
                    logger.exception("ensure_tables failed after retries")
                    raise
                logger.warning("ensure_tables retry %s after error: %s", attempt, str(e))
                time.sleep(0.2 * attempt)

        try:
            with db_engine.begin() as conn:
                _backfill_aggregate_ym(conn, table)
        except Exception as e:
            logger.warning("aggregate_ym backfill skipped: %s", str(e))

        if unique_aggregates:
            try:
                with db_engine.begin() as conn:
                    conn.execute(text(
                        f"CREATE UNIQUE INDEX IF NOT EXISTS ux_{table}_aggregate_month "
                        f"ON {table}(tenant_name, aggregate_ym)"
                    ))
            except Exception as e:
                logger.warning("unique aggregate index not created (duplicates present?): %s", str(e))

        _SCHEMA_READY.add(key)
