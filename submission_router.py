"""Route a form submission to its destination sheet, growing the header row as needed."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from formrelay import KeyedLock, TableNotFoundError, TierError, form_key


Issue = Dict[str, Any]

logger = logging.getLogger("formrelay.router")

DEFAULT_TABLE_NAME = "Form Responses"
TIMESTAMP_FIELD = "Timestamp"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _fail(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"ok": False, "errors": [_issue(code, message, path, detail)], "warnings": []}


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return ", ".join(str(_cell_value(v)) for v in value)
    return json.dumps(value, default=str, ensure_ascii=False)


def with_timestamp(payload: dict, now: str) -> dict:
    """Return a copy of ``payload`` whose first key is a non-blank Timestamp."""
    if payload.get(TIMESTAMP_FIELD) not in (None, ""):
        return dict(payload)
    out = {TIMESTAMP_FIELD: now}
    for key, value in payload.items():
        if key != TIMESTAMP_FIELD:
            out[key] = value
    return out


def new_header_keys(header: List[str], payload: dict) -> List[str]:
    known = set(header)
    return [key for key in payload if key not in known]


def build_row(headers: List[str], payload: dict) -> list:
    return [_cell_value(payload.get(h)) for h in headers]


class SubmissionRouter:
    def __init__(self, forms, tables, clock: Callable[[], str] = _now) -> None:
        self._forms = forms
        self._tables = tables
        self._clock = clock
        self._locks = KeyedLock()

    def resolve_destination(self, form_id: Any, target_ref: Any = None, target_name: Any = None) -> dict:
        ref = _clean(target_ref)
        name = _clean(target_name)
        if ref and name:
            return {"ok": True, "errors": [], "warnings": [], "ref": ref, "name": name}

        lookup = self._forms.get_form(form_id)
        config: dict = {}
        if lookup.get("ok"):
            record = lookup.get("record") or {}
            config = record.get("config") if isinstance(record.get("config"), dict) else {}
        else:
            code = (lookup.get("errors") or [{}])[0].get("code")
            if code != "NOT_FOUND":
                return lookup
            if not ref:
                return _fail("ROUTING_ERROR", "Form configuration not found.", "formId", {"form_id": form_key(form_id)})

        ref = ref or _clean(config.get("targetTableRef") or config.get("targetSheetUrl"))
        name = name or _clean(config.get("targetTableName") or config.get("targetSheetName")) or DEFAULT_TABLE_NAME
        if not ref:
            return _fail("ROUTING_ERROR", "Target table is not configured for this form.", "config.targetTableRef")
        return {"ok": True, "errors": [], "warnings": [], "ref": ref, "name": name}

    def _extend_header(self, sheet, payload: dict) -> List[str]:
        header = sheet.read_header()
        added = new_header_keys(header, payload)
        if added:
            sheet.write_cells(0, len(header), added)
            logger.info("header_extended sheet=%s start_col=%s added=%s", sheet.name, len(header), added)
        return added

    def submit_form(self, form_id: Any, payload: dict | None, target_ref: Any = None, target_name: Any = None) -> dict:
        dest = self.resolve_destination(form_id, target_ref, target_name)
        if not dest["ok"]:
            return dest
        ref = dest["ref"]
        name = dest["name"]
        data = with_timestamp(dict(payload or {}), self._clock())

        try:
            workbook = self._tables.open(ref)
        except TierError as exc:
            logger.warning("destination_open_failed ref=%s error=%s", ref, exc)
            return _fail(
                "ROUTING_ERROR",
                "Could not open target table. Check reference and permissions.",
                "targetTableRef",
                {"ref": ref, "missing": isinstance(exc, TableNotFoundError)},
            )

        with self._locks.hold(f"{ref}\x00{name}"):
            try:
                sheet = workbook.get_sheet(name)
                if sheet is None:
                    sheet = workbook.insert_sheet(name)
                    logger.info("destination_sheet_created ref=%s sheet=%s", ref, name)
                added = self._extend_header(sheet, data)
                final_headers = sheet.read_header()
                row = build_row(final_headers, data)
                row_index = sheet.append_row(row)
            except TierError as exc:
                logger.warning("submission_write_failed ref=%s sheet=%s error=%s", ref, name, exc)
                return _fail("STORAGE_ERROR", str(exc), "formData", {"tier": exc.tier, "op": exc.op})

        logger.info("submission_appended form_id=%s ref=%s sheet=%s row=%s", form_key(form_id), ref, name, row_index)
        return {
            "ok": True,
            "errors": [],
            "warnings": [],
            "ref": ref,
            "sheet": name,
            "added_columns": added,
            "row": row_index,
            "row_length": len(row),
        }
