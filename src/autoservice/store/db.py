from __future__ import annotations

import base64
import binascii
import datetime as dt
import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from ..domain.models import (
    Invoice,
    InvoiceLineItem,
    MaintenanceEntry,
    MaintenanceScheduleItem,
    OcrCacheEntry,
    Vehicle,
)
from ..errors import NotFound
from ..logging import get_logger
from ..paths import find_project_root, var_dir


LOG = get_logger("store-db")


DEFAULT_DB_FOLDER = "autoservice"
DEFAULT_DB_FILENAME = "autoservice.sqlite3"

VEHICLES = "vehicles"
INVOICES = "invoices"
MAINTENANCES = "maintenances"
OCR_CACHE = "ocr_cache"

EXPORT_VERSION = 1


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS vehicles (
  id               TEXT PRIMARY KEY,
  make             TEXT NOT NULL,
  model            TEXT NOT NULL,
  year             INTEGER,
  mileage          INTEGER NOT NULL DEFAULT 0 CHECK(mileage >= 0),
  license_plate    TEXT,
  vin              TEXT,
  custom_schedule  TEXT,             -- JSON list of schedule items, NULL = none
  created_at       TEXT,
  updated_at       TEXT
);

CREATE TABLE IF NOT EXISTS invoices (
  id                  TEXT PRIMARY KEY,
  vehicle_id          TEXT NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
  workshop_name       TEXT NOT NULL DEFAULT '',
  date                TEXT NOT NULL,  -- YYYY-MM-DD
  total_amount        REAL NOT NULL DEFAULT 0,
  currency            TEXT NOT NULL DEFAULT 'EUR',
  mileage_at_service  INTEGER,
  image_data          BLOB,
  ocr_cache_id        TEXT NOT NULL DEFAULT '',
  items               TEXT NOT NULL DEFAULT '[]',  -- JSON list of line items
  created_at          TEXT
);

CREATE TABLE IF NOT EXISTS maintenances (
  id                  TEXT PRIMARY KEY,
  vehicle_id          TEXT NOT NULL REFERENCES vehicles(id) ON DELETE CASCADE,
  invoice_id          TEXT REFERENCES invoices(id) ON DELETE CASCADE,
  type                TEXT NOT NULL,
  description         TEXT NOT NULL DEFAULT '',
  done_at             TEXT NOT NULL,
  mileage_at_service  INTEGER,
  next_due_date       TEXT,
  next_due_mileage    INTEGER,
  status              TEXT NOT NULL DEFAULT 'done' CHECK(status IN ('done','due','overdue')),
  created_at          TEXT
);

CREATE TABLE IF NOT EXISTS ocr_cache (
  hash        TEXT PRIMARY KEY,     -- sha256 hex of the normalized image bytes
  markdown    TEXT NOT NULL,
  created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_invoices_vehicle_date ON invoices(vehicle_id, date);
CREATE INDEX IF NOT EXISTS idx_maint_vehicle        ON maintenances(vehicle_id);
CREATE INDEX IF NOT EXISTS idx_maint_invoice        ON maintenances(invoice_id);
"""

COLUMNS: Dict[str, Sequence[str]] = {
    VEHICLES: ("make", "model", "year", "mileage", "license_plate", "vin", "custom_schedule", "created_at", "updated_at"),
    INVOICES: (
        "vehicle_id", "workshop_name", "date", "total_amount", "currency", "mileage_at_service",
        "image_data", "ocr_cache_id", "items", "created_at",
    ),
    MAINTENANCES: (
        "vehicle_id", "invoice_id", "type", "description", "done_at", "mileage_at_service",
        "next_due_date", "next_due_mileage", "status", "created_at",
    ),
}

ORDER_BY = {
    VEHICLES: "created_at, id",
    INVOICES: "date DESC, created_at DESC",
    MAINTENANCES: "done_at DESC, mileage_at_service DESC",
}

PARENT_KEYS = {
    VEHICLES: (),
    INVOICES: ("vehicle_id",),
    MAINTENANCES: ("vehicle_id", "invoice_id"),
}

JSON_COLUMNS = {"custom_schedule", "items"}


@dataclass
class Put:
    kind: str
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Patch:
    kind: str
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Delete:
    kind: str
    id: str


Operation = Union[Put, Patch, Delete]


def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")


def new_id() -> str:
    return uuid.uuid4().hex


def _check_kind(kind: str) -> None:
    if kind not in COLUMNS:
        raise ValueError(f"Unknown record kind: {kind!r}")


def _encode(kind: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    allowed = COLUMNS[kind]
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key not in allowed:
            raise ValueError(f"Unknown column for {kind}: {key!r}")
        if key in JSON_COLUMNS and value is not None and not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False)
        out[key] = value
    return out


def _decode(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for key in JSON_COLUMNS:
        if key in data and isinstance(data[key], str):
            data[key] = json.loads(data[key])
    return data


class DocumentStore:
    """SQLite-backed store for vehicles, invoices, maintenance history and OCR text.

    - Places the DB under `<repo-root>/var/autoservice/autoservice.sqlite3`
      unless an explicit `db_path` is given.
    - Ensures schema on first use.
    - Writes go through `transact`, which applies a batch atomically.
    """

    def __init__(self, root_dir: Optional[str] = None, db_path: Optional[str] = None) -> None:
        if db_path is None:
            root = find_project_root(root_dir)
            db_folder = os.path.join(var_dir(root), DEFAULT_DB_FOLDER)
            os.makedirs(db_folder, exist_ok=True)
            db_path = os.path.join(db_folder, DEFAULT_DB_FILENAME)
        self.db_path = db_path
        LOG.info(f"Document store path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.OperationalError:
                LOG.warning("Could not enable WAL journal; continuing with defaults")
            cur.executescript(SCHEMA_SQL)
            conn.commit()
            LOG.debug("Document store schema ensured.")

    # ---- generic primitives -------------------------------------------------

    def query(self, kind: str, **filters: Any) -> List[Dict[str, Any]]:
        """All records of `kind`, optionally restricted by parent id."""
        _check_kind(kind)
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            if key not in PARENT_KEYS[kind]:
                raise ValueError(f"Cannot filter {kind} by {key!r}")
            clauses.append(f"{key} = ?")
            params.append(value)
        sql = f"SELECT * FROM {kind}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {ORDER_BY[kind]}"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_decode(r) for r in rows]

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        _check_kind(kind)
        with self.connect() as conn:
            row = conn.execute(f"SELECT * FROM {kind} WHERE id = ?", (record_id,)).fetchone()
        return _decode(row) if row else None

    def transact(self, ops: Sequence[Operation]) -> None:
        """Apply all operations in one transaction; nothing is written on failure."""
        if not ops:
            return
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                for op in ops:
                    self._apply(conn, op)
                conn.commit()
            except Exception:
                LOG.exception(f"Transaction of {len(ops)} operation(s) failed; rolling back")
                conn.rollback()
                raise
        LOG.debug(f"Committed {len(ops)} operation(s)")

    def _apply(self, conn: sqlite3.Connection, op: Operation) -> None:
        _check_kind(op.kind)
        if isinstance(op, Put):
            fields = dict(op.fields)
            fields.setdefault("created_at", now_iso())
            if op.kind == VEHICLES:
                fields.setdefault("updated_at", fields["created_at"])
            encoded = _encode(op.kind, fields)
            cols = ["id", *encoded.keys()]
            marks = ", ".join("?" for _ in cols)
            conn.execute(
                f"INSERT INTO {op.kind} ({', '.join(cols)}) VALUES ({marks})",
                [op.id, *encoded.values()],
            )
        elif isinstance(op, Patch):
            fields = dict(op.fields)
            if op.kind == VEHICLES:
                fields.setdefault("updated_at", now_iso())
            encoded = _encode(op.kind, fields)
            if not encoded:
                return
            assignments = ", ".join(f"{k} = ?" for k in encoded)
            cur = conn.execute(
                f"UPDATE {op.kind} SET {assignments} WHERE id = ?",
                [*encoded.values(), op.id],
            )
            if cur.rowcount == 0:
                raise NotFound(op.kind.rstrip("s"), op.id)
        elif isinstance(op, Delete):
            conn.execute(f"DELETE FROM {op.kind} WHERE id = ?", (op.id,))
        else:
            raise TypeError(f"Unsupported operation: {op!r}")

    # ---- typed readers ------------------------------------------------------

    def vehicles(self) -> List[Vehicle]:
        return [_vehicle(r) for r in self.query(VEHICLES)]

    def vehicle(self, vehicle_id: str) -> Optional[Vehicle]:
        row = self.get(VEHICLES, vehicle_id)
        return _vehicle(row) if row else None

    def invoices(self, vehicle_id: Optional[str] = None) -> List[Invoice]:
        rows = self.query(INVOICES, vehicle_id=vehicle_id) if vehicle_id else self.query(INVOICES)
        return [_invoice(r) for r in rows]

    def invoice(self, invoice_id: str) -> Optional[Invoice]:
        row = self.get(INVOICES, invoice_id)
        return _invoice(row) if row else None

    def maintenances(self, vehicle_id: Optional[str] = None, invoice_id: Optional[str] = None) -> List[MaintenanceEntry]:
        filters = {}
        if vehicle_id:
            filters["vehicle_id"] = vehicle_id
        if invoice_id:
            filters["invoice_id"] = invoice_id
        return [_maintenance(r) for r in self.query(MAINTENANCES, **filters)]

    # ---- OCR text (append-only) ---------------------------------------------

    def ocr_text(self, content_hash: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute("SELECT markdown FROM ocr_cache WHERE hash = ?", (content_hash,)).fetchone()
        return row["markdown"] if row else None

    def put_ocr_text(self, content_hash: str, markdown: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO ocr_cache (hash, markdown) VALUES (?, ?)",
                (content_hash, markdown),
            )
            conn.commit()

    def counts(self) -> Dict[str, int]:
        with self.connect() as conn:
            return {
                table: int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                for table in (VEHICLES, INVOICES, MAINTENANCES, "ocr_cache")
            }

    def ocr_entries(self) -> List[OcrCacheEntry]:
        with self.connect() as conn:
            rows = conn.execute("SELECT hash, markdown, created_at FROM ocr_cache ORDER BY created_at, hash").fetchall()
        return [OcrCacheEntry(hash=r["hash"], markdown=r["markdown"], created_at=r["created_at"]) for r in rows]

    # ---- backup -------------------------------------------------------------

    def export_json(self) -> str:
        """Dump every record (images base64-encoded) as a versioned JSON document."""
        data: Dict[str, Any] = {"version": EXPORT_VERSION, "exported_at": now_iso()}
        for kind in (VEHICLES, INVOICES, MAINTENANCES):
            rows = self.query(kind)
            for row in rows:
                if "image_data" in row:
                    row["image_data"] = base64.b64encode(bytes(row["image_data"] or b"")).decode("ascii")
            data[kind] = rows
        data[OCR_CACHE] = [asdict(e) for e in self.ocr_entries()]
        counts = {k: len(v) for k, v in data.items() if isinstance(v, list)}
        LOG.info(f"Exported {counts}")
        return json.dumps(data, ensure_ascii=False, indent=2)

    def import_json(self, text: str) -> Dict[str, int]:
        """Upsert the records of an `export_json` document; returns imported counts.

        Records that are malformed or reference a missing parent are skipped.
        OCR text is append-only, so existing hashes keep their stored text.
        """
        data = json.loads(text)
        if not isinstance(data, dict) or not data.get("version") or not data.get("exported_at"):
            raise ValueError("Not an autoservice export (missing version/exported_at)")
        if int(data["version"]) > EXPORT_VERSION:
            raise ValueError(f"Export version {data['version']} is newer than supported ({EXPORT_VERSION})")

        imported: Dict[str, int] = {}
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                for kind in (VEHICLES, INVOICES, MAINTENANCES):
                    imported[kind] = sum(self._upsert(conn, kind, rec) for rec in data.get(kind) or [])
                count = 0
                for rec in data.get(OCR_CACHE) or []:
                    if not isinstance(rec, dict) or not rec.get("hash") or rec.get("markdown") is None:
                        continue
                    conn.execute(
                        "INSERT OR IGNORE INTO ocr_cache (hash, markdown, created_at) VALUES (?, ?, COALESCE(?, datetime('now')))",
                        (str(rec["hash"]), str(rec["markdown"]), rec.get("created_at")),
                    )
                    count += 1
                imported[OCR_CACHE] = count
                conn.commit()
            except Exception:
                LOG.exception("Import failed; rolling back")
                conn.rollback()
                raise
        LOG.info(f"Imported {imported}")
        return imported

    def _upsert(self, conn: sqlite3.Connection, kind: str, record: Any) -> bool:
        if not isinstance(record, dict) or not record.get("id"):
            LOG.warning(f"Skipping {kind} record without id")
            return False
        fields = {k: v for k, v in record.items() if k in COLUMNS[kind]}
        if isinstance(fields.get("image_data"), str):
            try:
                fields["image_data"] = base64.b64decode(fields["image_data"], validate=True)
            except (binascii.Error, ValueError):
                LOG.warning(f"Skipping {kind} {record['id']}: image_data is not base64")
                return False
        encoded = _encode(kind, fields)
        cols = ["id", *encoded.keys()]
        updates = ", ".join(f"{k} = excluded.{k}" for k in encoded) or "id = excluded.id"
        try:
            conn.execute(
                f"INSERT INTO {kind} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                [record["id"], *encoded.values()],
            )
        except sqlite3.IntegrityError as exc:
            LOG.warning(f"Skipping {kind} {record['id']}: {exc}")
            return False
        return True

    new_id = staticmethod(new_id)


def _vehicle(row: Dict[str, Any]) -> Vehicle:
    schedule = row.get("custom_schedule")
    return Vehicle(
        id=row["id"],
        make=row["make"],
        model=row["model"],
        year=row.get("year"),
        mileage=int(row.get("mileage") or 0),
        license_plate=row.get("license_plate"),
        vin=row.get("vin"),
        custom_schedule=[MaintenanceScheduleItem.from_dict(s) for s in schedule] if schedule else None,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _invoice(row: Dict[str, Any]) -> Invoice:
    return Invoice(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        workshop_name=row.get("workshop_name") or "",
        date=row["date"],
        total_amount=float(row.get("total_amount") or 0),
        currency=row.get("currency") or "EUR",
        mileage_at_service=row.get("mileage_at_service"),
        image_data=bytes(row.get("image_data") or b""),
        ocr_cache_id=row.get("ocr_cache_id") or "",
        items=[
            InvoiceLineItem(
                description=str(i.get("description") or ""),
                category=str(i.get("category") or "other"),
                amount=float(i.get("amount") or 0),
            )
            for i in row.get("items") or []
        ],
        created_at=row.get("created_at"),
    )


def _maintenance(row: Dict[str, Any]) -> MaintenanceEntry:
    return MaintenanceEntry(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        invoice_id=row.get("invoice_id"),
        type=row["type"],
        description=row.get("description") or "",
        done_at=row["done_at"],
        mileage_at_service=row.get("mileage_at_service"),
        next_due_date=row.get("next_due_date"),
        next_due_mileage=row.get("next_due_mileage"),
        status=row.get("status") or "done",
        created_at=row.get("created_at"),
    )
