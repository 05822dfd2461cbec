import logging

from fastapi import FastAPI

from receipts_api.core.config import logger
from receipts_api.core.db import db_ready, ensure_tables
from receipts_api.routes.receipts import rest_ready, router as receipts_router

logging.basicConfig(level=logging.INFO)

app = FastAPI(title="Rent Receipts API")
app.include_router(receipts_router)


@app.on_event("startup")
def _startup():
    if not db_ready():
        return
    try:
        ensure_tables()
    except Exception as e:
        logger.warning("[startup] ensure_tables failed: %s", e)


@app.get("/health")
def health():
    return {
        "ok": True,
        "db": "ok" if db_ready() else "disabled",
        "rest": "ok" if rest_ready() else "disabled",
    }
