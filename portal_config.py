"""Singleton portal layout config over the expiring cache and the property store."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from formrelay import CanonicalJsonTypeError, RecordDecodeError, TierError, canonical_dumps, decode_record, form_key


logger = logging.getLogger("formrelay.portal")

DEFAULT_LAYOUT = "sidebar"


def _fail(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"ok": False, "errors": [{"code": code, "message": message, "path": path, "detail": detail}], "warnings": []}


@dataclass(frozen=True)
class PortalConfigSettings:
    property_key: str = "PORTAL_CONFIG"
    cache_key: str = "portal_config"
    cache_ttl_s: float = 6 * 3600.0


def default_portal_config() -> dict:
    return {"forms": [], "layout": DEFAULT_LAYOUT}


def normalize_portal_config(config: Any) -> dict:
    source = config if isinstance(config, dict) else {}
    out = copy.deepcopy(source)
    forms = []
    for entry in source.get("forms") or []:
        if isinstance(entry, dict):
            forms.append(copy.deepcopy(entry))
        elif entry is not None and form_key(entry):
            forms.append({"id": form_key(entry)})
    out["forms"] = forms
    layout = source.get("layout")
    out["layout"] = layout if isinstance(layout, str) and layout.strip() else DEFAULT_LAYOUT
    return out


class PortalConfigStore:
    def __init__(self, cache, properties, settings: PortalConfigSettings | None = None) -> None:
        self._cache = cache
        self._properties = properties
        self.settings = settings or PortalConfigSettings()

    def _cache_put(self, text: str) -> None:
        try:
            self._cache.put(self.settings.cache_key, text, self.settings.cache_ttl_s)
        except Exception as exc:
            logger.warning("cache_put_failed key=%s error=%s", self.settings.cache_key, exc)

    def get_portal_config(self) -> dict:
        key = self.settings.cache_key
        try:
            cached = self._cache.get(key)
        except Exception as exc:
            logger.warning("cache_get_failed key=%s error=%s", key, exc)
            cached = None
        if cached is not None:
            try:
                config = decode_record(cached)
            except RecordDecodeError as exc:
                logger.warning("cache_corrupt key=%s error=%s", key, exc)
            else:
                return {"ok": True, "errors": [], "warnings": [], "config": normalize_portal_config(config), "source": "cache"}

        try:
            stored = self._properties.get(self.settings.property_key)
        except TierError as exc:
            logger.warning("portal_config_read_failed error=%s", exc)
            return _fail("STORAGE_ERROR", str(exc), "config", {"tier": exc.tier, "op": exc.op})
        if stored is None or stored == "":
            return {"ok": True, "errors": [], "warnings": [], "config": default_portal_config(), "source": "default"}
        try:
            config = normalize_portal_config(decode_record(stored))
        except RecordDecodeError as exc:
            return _fail("STORAGE_ERROR", f"Portal config could not be decoded: {exc}", "config")
        self._cache_put(canonical_dumps(config))
        return {"ok": True, "errors": [], "warnings": [], "config": config, "source": "properties"}

    def save_portal_config(self, config: Any) -> dict:
        normalized = normalize_portal_config(config)
        try:
            text = canonical_dumps(normalized)
        except (CanonicalJsonTypeError, ValueError) as exc:
            return _fail("STORAGE_ERROR", f"Portal config could not be serialized: {exc}", "config")
        try:
            self._properties.put(self.settings.property_key, text)
        except TierError as exc:
            logger.warning("portal_config_write_failed error=%s", exc)
            return _fail("STORAGE_ERROR", str(exc), "config", {"tier": exc.tier, "op": exc.op})
        self._cache_put(text)
        logger.info("portal_config_saved forms=%s layout=%s", len(normalized["forms"]), normalized["layout"])
        return {"ok": True, "errors": [], "warnings": [], "config": normalized}
