"""FastAPI app exposing the formrelay action API."""

from __future__ import annotations

import sys
import time
import logging
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import anyio
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.blobs import build_blob_store, using_supabase_storage
from app.config import Settings, load_settings
from app.db import get_db_ms, reset_db_ms
from app.dispatch import READ_ACTIONS, Services, dispatch
from app.tiers import MemoryBlobStore, MemoryExpiringCache, MemoryPropertyStore, MemoryTableService
from app.translate import get_provider
from form_cache import FormSchemaCache
from portal_config import PortalConfigStore
from submission_router import SubmissionRouter


logger = logging.getLogger("formrelay")
logging.basicConfig(level=logging.INFO)


def build_services(settings: Settings) -> Services:
    if settings.use_db:
        from app.tiers_db import DbPropertyStore, DbTableService

        properties = DbPropertyStore()
        tables = DbTableService()
        blobs = build_blob_store()
    else:
        properties = MemoryPropertyStore()
        tables = MemoryTableService()
        blobs = MemoryBlobStore()
    cache = MemoryExpiringCache(default_ttl_s=settings.forms.cache_ttl_s, max_value_bytes=settings.forms.cache_max_bytes)

    tables.ensure_workbook(settings.forms.registry_ref)
    for ref in settings.workbooks:
        tables.ensure_workbook(ref)

    forms = FormSchemaCache(cache, tables, blobs, settings.forms)
    logger.info(
        "services_ready use_db=%s supabase_storage=%s registry=%s/%s workbooks=%s",
        settings.use_db,
        settings.use_db and using_supabase_storage(),
        settings.forms.registry_ref,
        settings.forms.registry_sheet,
        list(settings.workbooks),
    )
    return Services(
        forms=forms,
        router=SubmissionRouter(forms, tables),
        portal=PortalConfigStore(cache, properties, settings.portal),
        translator=get_provider(),
    )


settings = load_settings()
services = build_services(settings)
app = FastAPI(title="formrelay")


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_ms()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %s total_ms=%.1f db_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        total_ms,
        get_db_ms(),
    )
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.warning("unhandled_error path=%s error=%s", request.url.path, exc, exc_info=True)
    body = {"status": "error", "code": "INTERNAL_ERROR", "message": "Unexpected server error"}
    return JSONResponse(body, status_code=500)


def _envelope(result: dict) -> JSONResponse:
    return JSONResponse(jsonable_encoder(result), status_code=200)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.post("/api")
async def run_action(request: Request) -> JSONResponse:
    try:
        body: Any = await request.json()
    except ValueError:
        return _envelope({"status": "error", "code": "INVALID_REQUEST", "message": "request body must be JSON"})
    result = await anyio.to_thread.run_sync(dispatch, services, body)
    return _envelope(result)


@app.get("/api")
async def run_read_action(request: Request) -> JSONResponse:
    body = dict(request.query_params)
    if body.get("action") not in READ_ACTIONS:
        return _envelope({"status": "error", "code": "INVALID_REQUEST", "message": f"Action not allowed over GET: {body.get('action')}"})
    result = await anyio.to_thread.run_sync(dispatch, services, body)
    return _envelope(result)
