"""Postgres-backed property store (Tier 1) and row tables (Tier 2 and destinations)."""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg2

from app.db import execute, fetch_all, fetch_one, get_conn
from app.tiers import PropertyStore, Sheet, TableService, Workbook, _is_blank, _trim
from formrelay.errors import TableNotFoundError, TierError

logger = logging.getLogger("formrelay.db")

SCHEMA_DDL = [
    """
    create table if not exists formrelay_properties (
      key text primary key,
      value text not null,
      updated_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists formrelay_workbooks (
      ref text primary key,
      created_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists formrelay_sheets (
      workbook_ref text not null references formrelay_workbooks(ref) on delete cascade,
      name text not null,
      created_at timestamptz not null default now(),
      primary key (workbook_ref, name)
    )
    """,
    """
    create table if not exists formrelay_rows (
      workbook_ref text not null,
      sheet_name text not null,
      row_num integer not null,
      cells jsonb not null default '[]'::jsonb,
      primary key (workbook_ref, sheet_name, row_num),
      foreign key (workbook_ref, sheet_name) references formrelay_sheets(workbook_ref, name) on delete cascade
    )
    """,
]

_SCHEMA_READY = False
_SCHEMA_LOCK = threading.Lock()


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


@contextmanager
def _tier_op(tier: str, op: str) -> Iterator[None]:
    try:
        yield
    except psycopg2.Error as exc:
        raise TierError(tier, op, str(exc).strip()) from exc


def ensure_schema() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        with _tier_op("db", "ensure_schema"), get_conn() as conn:
            for idx, ddl in enumerate(SCHEMA_DDL):
                execute(conn, ddl, query_name=f"formrelay.schema.{idx}")
        _SCHEMA_READY = True
        logger.info("auto_migration_applied tables=%s", ["formrelay_properties", "formrelay_workbooks", "formrelay_sheets", "formrelay_rows"])


class DbPropertyStore(PropertyStore):
    def __init__(self) -> None:
        ensure_schema()

    def get(self, key: str) -> str | None:
        with _tier_op("properties", "get"), get_conn() as conn:
            row = fetch_one(
                conn,
                "select value from formrelay_properties where key=%s",
                [key],
                query_name="formrelay_properties.get",
            )
            return row["value"] if row else None

    def put(self, key: str, value: str) -> None:
        with _tier_op("properties", "put"), get_conn() as conn:
            execute(
                conn,
                """
                insert into formrelay_properties (key, value, updated_at)
                values (%s, %s, now())
                on conflict (key) do update
                  set value = excluded.value,
                      updated_at = excluded.updated_at
                """,
                [key, value],
                query_name="formrelay_properties.upsert",
            )

    def delete(self, key: str) -> None:
        with _tier_op("properties", "delete"), get_conn() as conn:
            execute(conn, "delete from formrelay_properties where key=%s", [key], query_name="formrelay_properties.delete")


class DbSheet(Sheet):
    def __init__(self, workbook_ref: str, name: str) -> None:
        self.workbook_ref = workbook_ref
        self.name = name

    def _lock_sheet(self, conn) -> None:
        row = fetch_one(
            conn,
            "select name from formrelay_sheets where workbook_ref=%s and name=%s for update",
            [self.workbook_ref, self.name],
            query_name="formrelay_sheets.lock",
        )
        if not row:
            raise TierError("table", "lock", f"sheet not found: {self.name}")

    def _rows(self, conn) -> list[list]:
        rows = fetch_all(
            conn,
            """
            select row_num, cells from formrelay_rows
            where workbook_ref=%s and sheet_name=%s
            order by row_num
            """,
            [self.workbook_ref, self.name],
            query_name="formrelay_rows.list",
        )
        out: list[list] = []
        for row in rows:
            idx = row["row_num"]
            while len(out) < idx:
                out.append([])
            cells = _ensure_json(row["cells"])
            out.append(list(cells) if isinstance(cells, list) else [])
        end = len(out)
        while end > 0 and not _trim(out[end - 1]):
            end -= 1
        return out[:end]

    def _put_row(self, conn, row_index: int, cells: list) -> None:
        execute(
            conn,
            """
            insert into formrelay_rows (workbook_ref, sheet_name, row_num, cells)
            values (%s, %s, %s, %s)
            on conflict (workbook_ref, sheet_name, row_num) do update
              set cells = excluded.cells
            """,
            [self.workbook_ref, self.name, row_index, _json_dumps(cells)],
            query_name="formrelay_rows.upsert",
        )

    def read_all(self) -> list[list]:
        with _tier_op("table", "read_all"), get_conn() as conn:
            rows = self._rows(conn)
        width = max((len(_trim(r)) for r in rows), default=0)
        return [(list(r) + [""] * (width - len(r)))[:width] for r in rows]

    def read_header(self) -> list[str]:
        with _tier_op("table", "read_header"), get_conn() as conn:
            row = fetch_one(
                conn,
                "select cells from formrelay_rows where workbook_ref=%s and sheet_name=%s and row_num=0",
                [self.workbook_ref, self.name],
                query_name="formrelay_rows.header",
            )
        if not row:
            return []
        cells = _ensure_json(row["cells"]) or []
        return [str(v) for v in _trim(list(cells))]

    def last_column(self) -> int:
        return max((len(_trim(r)) for r in self.read_all()), default=0)

    def write_cells(self, row_index: int, start_col: int, values: list) -> None:
        if row_index < 0 or start_col < 0:
            raise TierError("table", "write_cells", "negative index")
        with _tier_op("table", "write_cells"), get_conn() as conn:
            self._lock_sheet(conn)
            rows = self._rows(conn)
            row = list(rows[row_index]) if row_index < len(rows) else []
            end = start_col + len(values)
            if len(row) < end:
                row.extend([""] * (end - len(row)))
            for offset, value in enumerate(values):
                row[start_col + offset] = "" if value is None else value
            self._put_row(conn, row_index, row)

    def append_row(self, values: list) -> int:
        with _tier_op("table", "append_row"), get_conn() as conn:
            self._lock_sheet(conn)
            row_index = len(self._rows(conn))
            execute(
                conn,
                "delete from formrelay_rows where workbook_ref=%s and sheet_name=%s and row_num>=%s",
                [self.workbook_ref, self.name, row_index],
                query_name="formrelay_rows.trim_tail",
            )
            self._put_row(conn, row_index, ["" if _is_blank(v) else v for v in values])
            return row_index

    def delete_row(self, row_index: int) -> None:
        with _tier_op("table", "delete_row"), get_conn() as conn:
            self._lock_sheet(conn)
            deleted = execute(
                conn,
                "delete from formrelay_rows where workbook_ref=%s and sheet_name=%s and row_num=%s",
                [self.workbook_ref, self.name, row_index],
                query_name="formrelay_rows.delete",
            )
            if not deleted:
                raise TierError("table", "delete_row", f"row {row_index} out of range")
            # Two passes so the primary key never collides while rows shift up.
            execute(
                conn,
                """
                update formrelay_rows set row_num = -row_num
                where workbook_ref=%s and sheet_name=%s and row_num>%s
                """,
                [self.workbook_ref, self.name, row_index],
                query_name="formrelay_rows.shift_stage",
            )
            execute(
                conn,
                """
                update formrelay_rows set row_num = -row_num - 1
                where workbook_ref=%s and sheet_name=%s and row_num<0
                """,
                [self.workbook_ref, self.name],
                query_name="formrelay_rows.shift_apply",
            )


class DbWorkbook(Workbook):
    def __init__(self, ref: str) -> None:
        self.ref = ref

    def get_sheet(self, name: str) -> DbSheet | None:
        with _tier_op("table", "get_sheet"), get_conn() as conn:
            row = fetch_one(
                conn,
                "select name from formrelay_sheets where workbook_ref=%s and name=%s",
                [self.ref, name],
                query_name="formrelay_sheets.get",
            )
        return DbSheet(self.ref, name) if row else None

    def insert_sheet(self, name: str) -> DbSheet:
        with _tier_op("table", "insert_sheet"), get_conn() as conn:
            created = execute(
                conn,
                """
                insert into formrelay_sheets (workbook_ref, name) values (%s, %s)
                on conflict (workbook_ref, name) do nothing
                """,
                [self.ref, name],
                query_name="formrelay_sheets.insert",
            )
        if not created:
            raise TierError("table", "insert_sheet", f"sheet already exists: {name}")
        return DbSheet(self.ref, name)


class DbTableService(TableService):
    def __init__(self) -> None:
        ensure_schema()

    def open(self, ref: str) -> DbWorkbook:
        with _tier_op("table", "open"), get_conn() as conn:
            row = fetch_one(
                conn,
                "select ref from formrelay_workbooks where ref=%s",
                [ref],
                query_name="formrelay_workbooks.get",
            )
        if not row:
            raise TableNotFoundError("table", "open", f"workbook not found: {ref}")
        return DbWorkbook(ref)

    def ensure_workbook(self, ref: str) -> DbWorkbook:
        with _tier_op("table", "ensure_workbook"), get_conn() as conn:
            execute(
                conn,
                "insert into formrelay_workbooks (ref) values (%s) on conflict (ref) do nothing",
                [ref],
                query_name="formrelay_workbooks.ensure",
            )
        return DbWorkbook(ref)
