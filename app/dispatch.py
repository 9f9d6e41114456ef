"""Action dispatcher: ``{action, ...}`` in, ``{status, message, ...}`` out."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from form_cache import FormSchemaCache
from portal_config import PortalConfigStore
from submission_router import SubmissionRouter
from app.translate import TranslationProvider, translate_text

logger = logging.getLogger("formrelay")

READ_ACTIONS = {"getForm", "listTemplates", "getPortalConfig", "ping"}


@dataclass
class Services:
    forms: FormSchemaCache
    router: SubmissionRouter
    portal: PortalConfigStore
    translator: TranslationProvider


class MissingField(ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"{name} is required")
        self.name = name


def _success(**fields: Any) -> dict:
    return {"status": "success", **fields}


def _error(message: str, code: str = "INVALID_REQUEST") -> dict:
    return {"status": "error", "code": code, "message": message}


def _from_result(result: dict) -> dict:
    errors = result.get("errors") or []
    if not errors:
        return _error("Operation failed.", "INTERNAL_ERROR")
    message = "; ".join(str(e.get("message")) for e in errors if e.get("message")) or "Operation failed."
    return _error(message, errors[0].get("code") or "INTERNAL_ERROR")


def _require(body: dict, *names: str) -> Any:
    for name in names:
        value = body.get(name)
        if value is not None and value != "":
            return value
    raise MissingField(names[0])


def _get_form(services: Services, body: dict) -> dict:
    form_id = _require(body, "id", "formId")
    result = services.forms.get_form(form_id)
    if not result["ok"]:
        return _from_result(result)
    record = result["record"]
    fid = record.get("formId", form_id)
    return _success(
        message=f"Form {fid} loaded from {result['source']}.",
        formId=fid,
        schema=record.get("schema"),
        config=record.get("config"),
        metadata=record.get("metadata"),
        savedAt=record.get("savedAt"),
        source=result["source"],
    )


def _save_form(services: Services, body: dict) -> dict:
    form_id = _require(body, "formId")
    schema = _require(body, "schema")
    config = _require(body, "config")
    # Older builder clients never send metadata.
    metadata = body.get("metadata") or {}
    result = services.forms.save_form(form_id, schema, config, metadata)
    if not result["ok"]:
        return _from_result(result)
    return _success(message=f"Form {result['form_id']} saved successfully.", savedAt=result["saved_at"])


def _delete_form(services: Services, body: dict) -> dict:
    form_id = _require(body, "formId", "id")
    result = services.forms.delete_form(form_id)
    if not result["ok"]:
        return _from_result(result)
    cleared = result["cleared"]
    return _success(message=f"Form {result['form_id']} deleted from: {', '.join(cleared)}.", cleared=cleared)


def _list_templates(services: Services, body: dict) -> dict:
    result = services.forms.list_templates()
    if not result["ok"]:
        return _from_result(result)
    templates = result["templates"]
    return _success(message=f"Found {len(templates)} form template(s).", templates=templates)


def _submit_form(services: Services, body: dict) -> dict:
    form_id = _require(body, "formId")
    form_data = body.get("formData")
    if form_data is None:
        form_data = {}
    if not isinstance(form_data, dict):
        return _error("formData must be an object")
    result = services.router.submit_form(
        form_id,
        form_data,
        target_ref=body.get("targetSheetUrl") or body.get("targetTableRef"),
        target_name=body.get("targetSheetName") or body.get("targetTableName"),
    )
    if not result["ok"]:
        return _from_result(result)
    return _success(message="Data submitted successfully.", sheet=result["sheet"], addedColumns=result["added_columns"])


def _get_portal_config(services: Services, body: dict) -> dict:
    result = services.portal.get_portal_config()
    if not result["ok"]:
        return _from_result(result)
    config = result["config"]
    return _success(message="Portal configuration loaded.", forms=config["forms"], layout=config["layout"], config=config)


def _save_portal_config(services: Services, body: dict) -> dict:
    config = _require(body, "config")
    result = services.portal.save_portal_config(config)
    if not result["ok"]:
        return _from_result(result)
    config = result["config"]
    return _success(message="Portal configuration saved.", forms=config["forms"], layout=config["layout"], config=config)


def _translate_text(services: Services, body: dict) -> dict:
    text = body.get("text")
    translated = translate_text(
        services.translator,
        None if text is None else str(text),
        target_lang=body.get("targetLang"),
        source_lang=body.get("sourceLang"),
    )
    return _success(message="Translation complete.", translated=translated)


def _ping(services: Services, body: dict) -> dict:
    return _success(message="pong")


ACTIONS: Dict[str, Callable[[Services, dict], dict]] = {
    "getForm": _get_form,
    "saveForm": _save_form,
    "deleteForm": _delete_form,
    "listTemplates": _list_templates,
    "submitForm": _submit_form,
    "getPortalConfig": _get_portal_config,
    "savePortalConfig": _save_portal_config,
    "translateText": _translate_text,
    "ping": _ping,
}


def dispatch(services: Services, body: Any) -> dict:
    if not isinstance(body, dict):
        return _error("request body must be an object")
    action = body.get("action")
    handler = ACTIONS.get(action) if isinstance(action, str) else None
    if handler is None:
        return _error(f"Unknown action: {action}")
    try:
        return handler(services, body)
    except MissingField as exc:
        return _error(str(exc))
    except Exception as exc:
        logger.warning("action_failed action=%s error=%s", action, exc, exc_info=True)
        return _error(str(exc) or exc.__class__.__name__, "INTERNAL_ERROR")
