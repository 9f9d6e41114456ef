"""Deterministic names for a form across storage tiers."""

from __future__ import annotations

import hashlib
import re
from typing import Any

_SAFE_ID = re.compile(r"[A-Za-z0-9_-]+")
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def form_key(form_id: Any) -> str:
    """Form ids are caller-chosen strings or numbers; compare them as text."""
    if form_id is None:
        return ""
    if isinstance(form_id, float) and form_id.is_integer():
        form_id = int(form_id)
    return str(form_id).strip()


def blob_name(form_id: Any) -> str:
    """Archive name for a form; distinct ids always get distinct names.

    Ids made of ``[A-Za-z0-9_-]`` are used as-is (``form_<id>.json``). Any
    other id is sanitized and suffixed with a digest of the raw id
    (``form_<sanitized>.<digest>.json``); the extra dot keeps the two forms
    apart.
    """
    fid = form_key(form_id)
    if _SAFE_ID.fullmatch(fid):
        return f"form_{fid}.json"
    digest = hashlib.sha256(fid.encode("utf-8")).hexdigest()[:16]
    return f"form_{_UNSAFE.sub('_', fid)}.{digest}.json"


def cache_key(prefix: str, form_id: Any) -> str:
    return f"{prefix}{form_key(form_id)}"
