"""Storage tier interfaces and in-memory backends."""

from __future__ import annotations

import copy
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from formrelay.errors import TableNotFoundError, TierError


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _cell(value: Any) -> Any:
    return "" if value is None else value


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _trim(row: List[Any]) -> List[Any]:
    end = len(row)
    while end > 0 and _is_blank(row[end - 1]):
        end -= 1
    return row[:end]


# Tier 0


class ExpiringCache:
    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl_s: float | None = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryExpiringCache(ExpiringCache):
    def __init__(self, default_ttl_s: float = 21600.0, max_value_bytes: int | None = None, clock: Callable[[], float] = time.time) -> None:
        self.default_ttl_s = default_ttl_s
        self.max_value_bytes = max_value_bytes
        self._clock = clock
        self._lock = threading.Lock()
        # key -> {"value": str, "expires_at": float}
        self._items: Dict[str, dict] = {}

    def get(self, key: str) -> str | None:
        now = self._clock()
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            if entry["expires_at"] <= now:
                del self._items[key]
                return None
            return entry["value"]

    def put(self, key: str, value: str, ttl_s: float | None = None) -> None:
        if not isinstance(value, str):
            raise TierError("cache", "put", "value must be a string")
        if self.max_value_bytes is not None and len(value.encode("utf-8")) > self.max_value_bytes:
            raise TierError("cache", "put", f"value exceeds {self.max_value_bytes} bytes")
        ttl = self.default_ttl_s if ttl_s is None else ttl_s
        with self._lock:
            self._items[key] = {"value": value, "expires_at": self._clock() + ttl}

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._items.items() if v["expires_at"] <= now]
            for k in expired:
                del self._items[k]
        return len(expired)


# Tier 1


class PropertyStore:
    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def put(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryPropertyStore(PropertyStore):
    def __init__(self) -> None:
        self._props: Dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._props.get(key)

    def put(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TierError("properties", "put", "value must be a string")
        self._props[key] = value

    def delete(self, key: str) -> None:
        self._props.pop(key, None)


# Tier 2 and submission destinations


class Sheet:
    """One tab of a workbook. Rows and columns are 0-based; row 0 is the header."""

    name: str

    def read_all(self) -> list[list]:
        raise NotImplementedError

    def read_header(self) -> list[str]:
        raise NotImplementedError

    def last_column(self) -> int:
        raise NotImplementedError

    def write_cells(self, row_index: int, start_col: int, values: list) -> None:
        raise NotImplementedError

    def append_row(self, values: list) -> int:
        raise NotImplementedError

    def delete_row(self, row_index: int) -> None:
        raise NotImplementedError


class Workbook:
    ref: str

    def get_sheet(self, name: str) -> Sheet | None:
        raise NotImplementedError

    def insert_sheet(self, name: str) -> Sheet:
        raise NotImplementedError


class TableService:
    def open(self, ref: str) -> Workbook:
        raise NotImplementedError

    def ensure_workbook(self, ref: str) -> Workbook:
        raise NotImplementedError


class MemorySheet(Sheet):
    def __init__(self, name: str) -> None:
        self.name = name
        self._rows: List[List[Any]] = []

    def _data_rows(self) -> List[List[Any]]:
        end = len(self._rows)
        while end > 0 and not _trim(self._rows[end - 1]):
            end -= 1
        return self._rows[:end]

    def last_column(self) -> int:
        return max((len(_trim(r)) for r in self._rows), default=0)

    def read_all(self) -> list[list]:
        width = self.last_column()
        rows = []
        for row in self._data_rows():
            padded = list(row) + [""] * (width - len(row))
            rows.append(copy.deepcopy(padded[:width]))
        return rows

    def read_header(self) -> list[str]:
        if not self._rows:
            return []
        return [str(v) for v in _trim(self._rows[0])]

    def write_cells(self, row_index: int, start_col: int, values: list) -> None:
        if row_index < 0 or start_col < 0:
            raise TierError("table", "write_cells", "negative index")
        while len(self._rows) <= row_index:
            self._rows.append([])
        row = self._rows[row_index]
        end = start_col + len(values)
        if len(row) < end:
            row.extend([""] * (end - len(row)))
        for offset, value in enumerate(values):
            row[start_col + offset] = copy.deepcopy(_cell(value))

    def append_row(self, values: list) -> int:
        rows = self._data_rows()
        row_index = len(rows)
        del self._rows[row_index:]
        self._rows.append([copy.deepcopy(_cell(v)) for v in values])
        return row_index

    def delete_row(self, row_index: int) -> None:
        if row_index < 0 or row_index >= len(self._rows):
            raise TierError("table", "delete_row", f"row {row_index} out of range")
        del self._rows[row_index]


class MemoryWorkbook(Workbook):
    def __init__(self, ref: str) -> None:
        self.ref = ref
        self._sheets: Dict[str, MemorySheet] = {}

    def get_sheet(self, name: str) -> MemorySheet | None:
        return self._sheets.get(name)

    def insert_sheet(self, name: str) -> MemorySheet:
        if name in self._sheets:
            raise TierError("table", "insert_sheet", f"sheet already exists: {name}")
        sheet = MemorySheet(name)
        self._sheets[name] = sheet
        return sheet

    def sheet_names(self) -> list[str]:
        return list(self._sheets.keys())


class MemoryTableService(TableService):
    def __init__(self) -> None:
        self._workbooks: Dict[str, MemoryWorkbook] = {}

    def open(self, ref: str) -> MemoryWorkbook:
        workbook = self._workbooks.get(ref) if isinstance(ref, str) else None
        if workbook is None:
            raise TableNotFoundError("table", "open", f"workbook not found: {ref}")
        return workbook

    def ensure_workbook(self, ref: str) -> MemoryWorkbook:
        workbook = self._workbooks.get(ref)
        if workbook is None:
            workbook = MemoryWorkbook(ref)
            self._workbooks[ref] = workbook
        return workbook


# Tier 3


class BlobStore:
    """Document store where names are not unique on their own."""

    def list_by_name(self, container: str, name: str) -> list[str]:
        raise NotImplementedError

    def create(self, container: str, name: str, content: str) -> str:
        raise NotImplementedError

    def overwrite(self, ref: str, content: str) -> None:
        raise NotImplementedError

    def read(self, ref: str) -> str:
        raise NotImplementedError

    def trash(self, ref: str) -> bool:
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: Dict[str, dict] = {}

    def list_by_name(self, container: str, name: str) -> list[str]:
        return [
            ref
            for ref, blob in self._blobs.items()
            if blob["container"] == container and blob["name"] == name and not blob["trashed"]
        ]

    def create(self, container: str, name: str, content: str) -> str:
        ref = uuid.uuid4().hex
        self._blobs[ref] = {
            "container": container,
            "name": name,
            "content": content,
            "trashed": False,
            "updated_at": _now(),
        }
        return ref

    def overwrite(self, ref: str, content: str) -> None:
        blob = self._blobs.get(ref)
        if blob is None or blob["trashed"]:
            raise TierError("blob", "overwrite", f"blob not found: {ref}")
        blob["content"] = content
        blob["updated_at"] = _now()

    def read(self, ref: str) -> str:
        blob = self._blobs.get(ref)
        if blob is None or blob["trashed"]:
            raise TierError("blob", "read", f"blob not found: {ref}")
        return blob["content"]

    def trash(self, ref: str) -> bool:
        blob = self._blobs.get(ref)
        if blob is None or blob["trashed"]:
            return False
        blob["trashed"] = True
        return True
