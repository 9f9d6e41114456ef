"""Form schema store with read-through and write-through over three tiers.

Tier 0 is the expiring process cache, Tier 2 the registry sheet, Tier 3 the
blob archive. Reads fall through 0 -> 2 -> 3 and repopulate Tier 0. Writes go
to Tier 3, then Tier 2, then refresh Tier 0, each step finishing before the
next one starts.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List

from formrelay import (
    CanonicalJsonTypeError,
    KeyedLock,
    RecordDecodeError,
    TierError,
    blob_name,
    cache_key,
    canonical_dumps,
    decode_record,
    encoded_size,
    form_key,
)


Issue = Dict[str, Any]

logger = logging.getLogger("formrelay.cache")

COL_FORM_ID = "Form ID"
COL_FORM_NAME = "Form Name"
COL_DESCRIPTION = "Description"
COL_BLOB_REF = "Blob Ref"
COL_LAST_UPDATED = "Last Updated"
COL_RECORD = "Record JSON"
REGISTRY_COLUMNS = [COL_FORM_ID, COL_FORM_NAME, COL_DESCRIPTION, COL_BLOB_REF, COL_LAST_UPDATED, COL_RECORD]

# Written by the first generation of the registry; still read and kept in sync.
COL_LEGACY_SCHEMA = "Schema JSON"
COL_LEGACY_CONFIG = "Config JSON"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _fail(code: str, message: str, path: str | None = None, detail: dict | None = None, **fields: Any) -> dict:
    return {"ok": False, "errors": [_issue(code, message, path, detail)], "warnings": [], **fields}


def _tier_detail(exc: TierError, **extra: Any) -> dict:
    return {"tier": exc.tier, "op": exc.op, **extra}


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _loads(text: Any) -> Any:
    if not isinstance(text, str):
        raise ValueError("expected json text")
    return json.loads(text)


@dataclass(frozen=True)
class FormCacheConfig:
    registry_ref: str = "registry"
    registry_sheet: str = "System_Forms_Registry"
    blob_container: str = "form-archive"
    cache_prefix: str = "form:"
    cache_ttl_s: float = 6 * 3600.0
    cache_max_bytes: int = 9 * 1024
    registry_cell_limit: int = 50000


class _RegistryView:
    """Header-addressed view over the registry rows read in one call."""

    def __init__(self, rows: list[list]) -> None:
        self.rows = rows
        header = [_text(h) for h in rows[0]] if rows else []
        self.cols: Dict[str, int] = {}
        for idx, name in enumerate(header):
            if name and name not in self.cols:
                self.cols[name] = idx

    def cell(self, row: list, name: str) -> Any:
        idx = self.cols.get(name)
        if idx is None or idx >= len(row):
            return ""
        return row[idx]

    def form_id(self, row: list) -> str:
        return form_key(self.cell(row, COL_FORM_ID))


class FormSchemaCache:
    def __init__(self, cache, tables, blobs, config: FormCacheConfig | None = None) -> None:
        self._cache = cache
        self._tables = tables
        self._blobs = blobs
        self.config = config or FormCacheConfig()
        self._locks = KeyedLock()

    # Tier 0: failures here never reach the caller.

    def _cache_get(self, key: str) -> str | None:
        try:
            return self._cache.get(key)
        except Exception as exc:
            logger.warning("cache_get_failed key=%s error=%s", key, exc)
            return None

    def _cache_delete(self, key: str) -> None:
        try:
            self._cache.delete(key)
        except Exception as exc:
            logger.warning("cache_delete_failed key=%s error=%s", key, exc)

    def _cache_refresh(self, key: str, text: str) -> str:
        if encoded_size(text) > self.config.cache_max_bytes:
            self._cache_delete(key)
            logger.info("cache_skip=oversize key=%s bytes=%s", key, encoded_size(text))
            return "oversize"
        try:
            self._cache.put(key, text, self.config.cache_ttl_s)
        except Exception as exc:
            logger.warning("cache_put_failed key=%s error=%s", key, exc)
            self._cache_delete(key)
            return "failed"
        return "cached"

    # Tier 2

    def _open_registry(self, create: bool = False):
        workbook = self._tables.open(self.config.registry_ref)
        sheet = workbook.get_sheet(self.config.registry_sheet)
        if sheet is None and create:
            sheet = workbook.insert_sheet(self.config.registry_sheet)
            sheet.write_cells(0, 0, list(REGISTRY_COLUMNS))
            logger.info("registry_created ref=%s sheet=%s", self.config.registry_ref, self.config.registry_sheet)
        return sheet

    def _ensure_registry_columns(self, sheet) -> list[str]:
        header = sheet.read_header()
        missing = [name for name in REGISTRY_COLUMNS if name not in header]
        if missing:
            sheet.write_cells(0, len(header), missing)
            logger.info("registry_header_extended sheet=%s added=%s", self.config.registry_sheet, missing)
            header = sheet.read_header()
        return header

    def _registry_record(self, view: _RegistryView, row: list) -> dict | None:
        text = view.cell(row, COL_RECORD)
        if isinstance(text, str) and text.strip():
            return decode_record(text)
        legacy_schema = view.cell(row, COL_LEGACY_SCHEMA)
        if isinstance(legacy_schema, str) and legacy_schema.strip():
            try:
                schema = _loads(legacy_schema)
                config = _loads(view.cell(row, COL_LEGACY_CONFIG) or "{}")
            except ValueError as exc:
                raise RecordDecodeError(f"invalid legacy registry row: {exc}") from exc
            return {
                "formId": view.form_id(row),
                "schema": schema,
                "config": config,
                "metadata": {"description": _text(view.cell(row, COL_DESCRIPTION))},
                "savedAt": _text(view.cell(row, COL_LAST_UPDATED)),
            }
        # Oversized records keep only the projection here; the archive holds the body.
        return None

    def _registry_lookup(self, fid: str) -> dict | None:
        sheet = self._open_registry()
        if sheet is None:
            return None
        view = _RegistryView(sheet.read_all())
        for row in view.rows[1:]:
            if view.form_id(row) == fid:
                return self._registry_record(view, row)
        return None

    def _registry_upsert(self, record: dict, text: str, blob_ref: str) -> int:
        fid = record["formId"]
        sheet = self._open_registry(create=True)
        header = self._ensure_registry_columns(sheet)
        view = _RegistryView(sheet.read_all())
        limit = self.config.registry_cell_limit
        config = _as_dict(record.get("config"))
        metadata = _as_dict(record.get("metadata"))
        values = {
            COL_FORM_ID: fid,
            COL_FORM_NAME: _text(config.get("formName")),
            COL_DESCRIPTION: _text(metadata.get("description")),
            COL_BLOB_REF: blob_ref,
            COL_LAST_UPDATED: record["savedAt"],
            COL_RECORD: text if len(text) <= limit else "",
        }
        if COL_LEGACY_SCHEMA in view.cols:
            schema_text = canonical_dumps(record.get("schema"))
            values[COL_LEGACY_SCHEMA] = schema_text if len(schema_text) <= limit else ""
        if COL_LEGACY_CONFIG in view.cols:
            values[COL_LEGACY_CONFIG] = canonical_dumps(record.get("config"))

        found = None
        for idx in range(1, len(view.rows)):
            if view.form_id(view.rows[idx]) == fid:
                found = idx
                break

        if found is not None:
            row = list(view.rows[found]) + [""] * (len(header) - len(view.rows[found]))
            for name, value in values.items():
                row[view.cols[name]] = value
            sheet.write_cells(found, 0, row)
            logger.info("registry_update form_id=%s row=%s", fid, found)
            return found

        row = [""] * len(header)
        for name, value in values.items():
            row[view.cols[name]] = value
        row_index = sheet.append_row(row)
        logger.info("registry_append form_id=%s row=%s", fid, row_index)
        return row_index

    def _registry_delete(self, fid: str) -> bool:
        sheet = self._open_registry()
        if sheet is None:
            return False
        view = _RegistryView(sheet.read_all())
        matches = [idx for idx in range(1, len(view.rows)) if view.form_id(view.rows[idx]) == fid]
        # Bottom-up keeps the remaining indexes valid.
        for idx in reversed(matches):
            sheet.delete_row(idx)
        return bool(matches)

    # Tier 3

    def _archive_lookup(self, fid: str) -> dict | None:
        for ref in self._blobs.list_by_name(self.config.blob_container, blob_name(fid)):
            record = decode_record(self._blobs.read(ref))
            if form_key(record.get("formId")) == fid:
                return record
            logger.warning("archive_id_mismatch form_id=%s ref=%s found=%s", fid, ref, record.get("formId"))
        return None

    def _archive_write(self, fid: str, text: str) -> str:
        name = blob_name(fid)
        for ref in self._blobs.list_by_name(self.config.blob_container, name):
            try:
                owner = form_key(decode_record(self._blobs.read(ref)).get("formId"))
            except RecordDecodeError:
                # Unreadable copy under our name: replace it.
                owner = fid
            if owner == fid:
                self._blobs.overwrite(ref, text)
                return ref
        return self._blobs.create(self.config.blob_container, name, text)

    def _archive_trash(self, fid: str) -> bool:
        trashed = False
        for ref in self._blobs.list_by_name(self.config.blob_container, blob_name(fid)):
            try:
                owner = form_key(decode_record(self._blobs.read(ref)).get("formId"))
            except RecordDecodeError as exc:
                logger.warning("archive_trash_skipped form_id=%s ref=%s error=%s", fid, ref, exc)
                continue
            if owner != fid:
                logger.warning("archive_id_mismatch form_id=%s ref=%s found=%s", fid, ref, owner)
                continue
            if self._blobs.trash(ref):
                trashed = True
        return trashed

    # Public operations

    def get_form(self, form_id: Any) -> dict:
        fid = form_key(form_id)
        key = cache_key(self.config.cache_prefix, fid)

        cached = self._cache_get(key)
        if cached is not None:
            try:
                record = decode_record(cached)
            except RecordDecodeError as exc:
                logger.warning("cache_corrupt key=%s error=%s", key, exc)
                self._cache_delete(key)
            else:
                logger.info("cache_hit=form key=%s", key)
                return {"ok": True, "errors": [], "warnings": [], "record": record, "source": "cache"}

        source = "registry"
        try:
            record = self._registry_lookup(fid)
            if record is None:
                source = "archive"
                record = self._archive_lookup(fid)
        except TierError as exc:
            logger.warning("form_lookup_failed form_id=%s source=%s error=%s", fid, source, exc)
            return _fail("STORAGE_ERROR", str(exc), "formId", _tier_detail(exc))
        except RecordDecodeError as exc:
            logger.warning("form_decode_failed form_id=%s source=%s error=%s", fid, source, exc)
            return _fail("STORAGE_ERROR", f"Form {fid} could not be decoded: {exc}", "formId", {"source": source})

        if record is None:
            logger.info("cache_miss=form key=%s result=not_found", key)
            return _fail("NOT_FOUND", f"Form {fid} not found.", "formId")

        try:
            self._cache_refresh(key, canonical_dumps(record))
        except (CanonicalJsonTypeError, ValueError) as exc:
            logger.warning("cache_encode_failed key=%s error=%s", key, exc)
            self._cache_delete(key)
        logger.info("cache_miss=form key=%s source=%s", key, source)
        return {"ok": True, "errors": [], "warnings": [], "record": record, "source": source}

    def save_form(self, form_id: Any, schema: Any, config: Any, metadata: Any) -> dict:
        fid = form_key(form_id)
        if not fid:
            return _fail("INVALID_REQUEST", "formId is required", "formId")
        saved_at = _now()
        record = {
            "formId": fid,
            "schema": copy.deepcopy(schema),
            "config": copy.deepcopy(config) if config is not None else {},
            "metadata": copy.deepcopy(metadata) if metadata is not None else {},
            "savedAt": saved_at,
        }
        try:
            text = canonical_dumps(record)
        except (CanonicalJsonTypeError, ValueError) as exc:
            return _fail("STORAGE_ERROR", f"Form {fid} could not be serialized: {exc}", "schema")

        key = cache_key(self.config.cache_prefix, fid)
        warnings: List[Issue] = []
        with self._locks.hold(fid):
            try:
                blob_ref = self._archive_write(fid, text)
            except TierError as exc:
                logger.warning("archive_write_failed form_id=%s error=%s", fid, exc)
                return _fail("STORAGE_ERROR", f"Form {fid} was not saved: {exc}", "formId", _tier_detail(exc, blob_written=False))

            try:
                row_index = self._registry_upsert(record, text, blob_ref)
            except TierError as exc:
                logger.warning("registry_write_failed form_id=%s blob_ref=%s error=%s", fid, blob_ref, exc)
                return _fail(
                    "STORAGE_ERROR",
                    f"Form {fid} was archived but the registry update failed: {exc}",
                    "formId",
                    _tier_detail(exc, blob_written=True, blob_ref=blob_ref),
                )

            if self._cache_refresh(key, text) == "failed":
                warnings.append(_issue("CACHE_WRITE_FAILED", "form cache was not refreshed", "formId"))

        return {
            "ok": True,
            "errors": [],
            "warnings": warnings,
            "form_id": fid,
            "saved_at": saved_at,
            "blob_ref": blob_ref,
            "registry_row": row_index,
        }

    def delete_form(self, form_id: Any) -> dict:
        fid = form_key(form_id)
        key = cache_key(self.config.cache_prefix, fid)
        cleared: List[str] = []
        failures: List[Issue] = []
        with self._locks.hold(fid):
            try:
                if self._registry_delete(fid):
                    cleared.append("registry")
            except TierError as exc:
                logger.warning("registry_delete_failed form_id=%s error=%s", fid, exc)
                failures.append(_issue("STORAGE_ERROR", str(exc), "registry", _tier_detail(exc)))

            try:
                if self._archive_trash(fid):
                    cleared.append("archive")
            except TierError as exc:
                logger.warning("archive_trash_failed form_id=%s error=%s", fid, exc)
                failures.append(_issue("STORAGE_ERROR", str(exc), "archive", _tier_detail(exc)))

            held = self._cache_get(key) is not None
            self._cache_delete(key)
            if held:
                cleared.append("cache")

        if not cleared:
            if failures:
                return {"ok": False, "errors": failures, "warnings": [], "cleared": []}
            return _fail("NOT_FOUND", f"Form {fid} not found in any storage tier.", "formId", cleared=[])
        logger.info("form_deleted form_id=%s cleared=%s", fid, cleared)
        return {"ok": True, "errors": [], "warnings": failures, "form_id": fid, "cleared": cleared}

    def list_templates(self) -> dict:
        try:
            sheet = self._open_registry()
            rows = sheet.read_all() if sheet is not None else []
        except TierError as exc:
            logger.warning("registry_list_failed error=%s", exc)
            return _fail("STORAGE_ERROR", str(exc), "registry", _tier_detail(exc), templates=[])

        view = _RegistryView(rows)
        templates = []
        for row in view.rows[1:]:
            fid = view.form_id(row)
            if not fid:
                continue
            name = _text(view.cell(row, COL_FORM_NAME))
            description = _text(view.cell(row, COL_DESCRIPTION))
            if not name or not description:
                try:
                    record = self._registry_record(view, row) or {}
                except RecordDecodeError as exc:
                    logger.warning("registry_row_undecodable form_id=%s error=%s", fid, exc)
                    record = {}
                name = name or _text(_as_dict(record.get("config")).get("formName"))
                description = description or _text(_as_dict(record.get("metadata")).get("description"))
            templates.append(
                {
                    "id": fid,
                    "name": name,
                    "description": description,
                    "lastUpdated": _text(view.cell(row, COL_LAST_UPDATED)),
                }
            )
        return {"ok": True, "errors": [], "warnings": [], "templates": templates}

