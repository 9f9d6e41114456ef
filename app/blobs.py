"""Blob archive backends (Tier 3): Supabase Storage or a local folder."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from urllib.parse import quote

import httpx

from app.tiers import BlobStore
from formrelay.errors import TierError

logger = logging.getLogger("formrelay.blobs")

TRASH_PREFIX = ".trash"


def _supabase_url() -> str:
    return (os.getenv("SUPABASE_URL") or "").strip().rstrip("/")


def _supabase_service_role_key() -> str:
    return (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


def _supabase_enabled() -> bool:
    return bool(_supabase_url() and _supabase_service_role_key())


def forms_bucket() -> str:
    return (os.getenv("SUPABASE_STORAGE_BUCKET_FORMS") or "forms").strip()


def _storage_root() -> Path:
    return Path(os.getenv("FORMRELAY_STORAGE_DIR", "storage"))


def _safe_segment(value: str) -> str:
    return value.replace("..", "_").replace("/", "_").strip()


def _trash_suffix() -> str:
    return str(int(time.time() * 1000))


class SupabaseBlobStore(BlobStore):
    """Blob refs are ``<container>/<name>`` keys inside one bucket."""

    def __init__(self, base_url: str, service_key: str, bucket: str, client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self._client = client or httpx.Client(timeout=30.0)

    def _headers(self, content_type: str | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "x-upsert": "true",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _object_url(self, ref: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(ref, safe='/')}"

    def _upload(self, ref: str, content: str, op: str) -> None:
        try:
            res = self._client.post(self._object_url(ref), headers=self._headers("application/json"), content=content.encode("utf-8"))
        except httpx.HTTPError as exc:
            raise TierError("blob", op, str(exc)) from exc
        if res.status_code >= 400:
            raise TierError("blob", op, f"supabase_upload_failed:{res.status_code}:{res.text}")

    def list_by_name(self, container: str, name: str) -> list[str]:
        url = f"{self.base_url}/storage/v1/object/list/{self.bucket}"
        body = {"prefix": _safe_segment(container), "search": name, "limit": 100, "offset": 0}
        try:
            res = self._client.post(url, headers=self._headers("application/json"), json=body)
        except httpx.HTTPError as exc:
            raise TierError("blob", "list_by_name", str(exc)) from exc
        if res.status_code >= 400:
            raise TierError("blob", "list_by_name", f"supabase_list_failed:{res.status_code}:{res.text}")
        items = res.json() or []
        return [f"{_safe_segment(container)}/{item['name']}" for item in items if isinstance(item, dict) and item.get("name") == name]

    def create(self, container: str, name: str, content: str) -> str:
        ref = f"{_safe_segment(container)}/{_safe_segment(name)}"
        self._upload(ref, content, "create")
        return ref

    def overwrite(self, ref: str, content: str) -> None:
        self._upload(ref, content, "overwrite")

    def read(self, ref: str) -> str:
        try:
            res = self._client.get(self._object_url(ref), headers=self._headers())
        except httpx.HTTPError as exc:
            raise TierError("blob", "read", str(exc)) from exc
        if res.status_code >= 400:
            raise TierError("blob", "read", f"supabase_download_failed:{res.status_code}")
        return res.content.decode("utf-8")

    def trash(self, ref: str) -> bool:
        url = f"{self.base_url}/storage/v1/object/move"
        body = {
            "bucketId": self.bucket,
            "sourceKey": ref,
            "destinationKey": f"{TRASH_PREFIX}/{ref}.{_trash_suffix()}",
        }
        try:
            res = self._client.post(url, headers=self._headers("application/json"), json=body)
        except httpx.HTTPError as exc:
            raise TierError("blob", "trash", str(exc)) from exc
        # 404s are fine: nothing to trash.
        if res.status_code in (400, 404):
            return False
        if res.status_code >= 400:
            raise TierError("blob", "trash", f"supabase_move_failed:{res.status_code}:{res.text}")
        logger.info("blob_trashed bucket=%s ref=%s", self.bucket, ref)
        return True


class LocalBlobStore(BlobStore):
    """Blob refs are ``<container>/<name>`` paths under the storage root."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root) if root is not None else _storage_root()

    def _path(self, ref: str) -> Path:
        parts = [_safe_segment(p) for p in ref.split("/", 1)]
        return self.root.joinpath(*parts)

    def list_by_name(self, container: str, name: str) -> list[str]:
        ref = f"{_safe_segment(container)}/{_safe_segment(name)}"
        return [ref] if self._path(ref).is_file() else []

    def create(self, container: str, name: str, content: str) -> str:
        ref = f"{_safe_segment(container)}/{_safe_segment(name)}"
        self._write(ref, content, "create")
        return ref

    def _write(self, ref: str, content: str, op: str) -> None:
        path = self._path(ref)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise TierError("blob", op, str(exc)) from exc

    def overwrite(self, ref: str, content: str) -> None:
        if not self._path(ref).is_file():
            raise TierError("blob", "overwrite", f"blob not found: {ref}")
        self._write(ref, content, "overwrite")

    def read(self, ref: str) -> str:
        try:
            return self._path(ref).read_text(encoding="utf-8")
        except OSError as exc:
            raise TierError("blob", "read", str(exc)) from exc

    def trash(self, ref: str) -> bool:
        path = self._path(ref)
        if not path.is_file():
            return False
        target = self.root / TRASH_PREFIX / f"{ref.replace('/', '__')}.{_trash_suffix()}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            path.replace(target)
        except OSError as exc:
            raise TierError("blob", "trash", str(exc)) from exc
        logger.info("blob_trashed root=%s ref=%s", self.root, ref)
        return True


def using_supabase_storage() -> bool:
    return _supabase_enabled()


def build_blob_store() -> BlobStore:
    if _supabase_enabled():
        return SupabaseBlobStore(_supabase_url(), _supabase_service_role_key(), forms_bucket())
    return LocalBlobStore()
