import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple, Type

from pydantic import BaseModel, ValidationError as ModelValidationError

from .constants import (BLOOD_TYPES, FULFILLED, REQUEST_STATUS_ORDER, UNIT_STATUSES, UNIT_TYPES,
                        URGENCY_LEVELS, iso_now)
from .errors import CorruptDataError
from .models import BloodUnit, Donor, EmergencyRequest, QueuedAction, coerce

logger = logging.getLogger(__name__)


def dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def get_conn(db_path: str = "redconnect.db") -> sqlite3.Connection:
    # autocommit mode: transactions are opened explicitly by tx()
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = dict_factory
    init_schema(conn)
    return conn


@contextmanager
def tx(conn: sqlite3.Connection):
    """
    BEGIN/COMMIT around the block, ROLLBACK on any exception. Nested use
    joins the outer transaction so a caller can group several steps.
    """
    if conn.in_transaction:
        yield
        return
    try:
        conn.execute("BEGIN")
        yield
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _in_list(values: Iterable[str]) -> str:
    return ",".join(repr(v) for v in values)


SCHEMA: List[str] = [
    f"""
    CREATE TABLE IF NOT EXISTS units (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK(type IN ({_in_list(UNIT_TYPES)})),
        volume INTEGER NOT NULL CHECK(volume > 0),
        collection_date TEXT NOT NULL,
        expiry_date TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ({_in_list(UNIT_STATUSES)})) DEFAULT 'Available',
        source TEXT NOT NULL,
        bank_id TEXT
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS requests (
        id TEXT PRIMARY KEY,
        patient_name TEXT NOT NULL,
        admission_number TEXT,
        blood_type TEXT NOT NULL CHECK(blood_type IN ({_in_list(BLOOD_TYPES)})),
        units_needed INTEGER NOT NULL CHECK(units_needed > 0),
        urgency TEXT NOT NULL CHECK(urgency IN ({_in_list(URGENCY_LEVELS)})),
        is_platelet_request INTEGER NOT NULL DEFAULT 0,
        hospital TEXT NOT NULL,
        location TEXT NOT NULL DEFAULT '',
        contact TEXT NOT NULL DEFAULT '',
        lat REAL,
        lng REAL,
        timestamp TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ({_in_list(REQUEST_STATUS_ORDER + [FULFILLED])})),
        allocated_unit_ids_json TEXT NOT NULL DEFAULT '[]'
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS donors (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        age INTEGER,
        blood_type TEXT NOT NULL CHECK(blood_type IN ({_in_list(BLOOD_TYPES)})),
        phone TEXT NOT NULL DEFAULT '',
        email TEXT,
        last_donation TEXT,
        is_available INTEGER NOT NULL DEFAULT 1,
        last_bag_id TEXT,
        donation_count INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS action_queue (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        queued_at TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        at TEXT NOT NULL,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        entity TEXT NOT NULL,
        entity_id TEXT,
        details_json TEXT NOT NULL
    );
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_no_update
    BEFORE UPDATE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit log is immutable');
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_no_delete
    BEFORE DELETE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit log is immutable');
    END;
    """,
    "CREATE INDEX IF NOT EXISTS idx_units_type_status ON units(type, status);",
    "CREATE INDEX IF NOT EXISTS idx_units_collection ON units(collection_date);",
    "CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status);",
]


def init_schema(conn: sqlite3.Connection) -> None:
    for stmt in SCHEMA:
        conn.execute(stmt)


# ---- row <-> model ----

def _parse(model: Type[BaseModel], data: Dict[str, Any], collection: str):
    try:
        return model.model_validate(data)
    except ModelValidationError as e:
        raise CorruptDataError(f"Corrupt {collection} row {data.get('id', data.get('seq'))!r}: {e}") from e


def _loads(raw: str, collection: str, key: Any) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CorruptDataError(f"Corrupt JSON in {collection} row {key!r}") from e


def unit_from_row(row: Dict[str, Any]) -> BloodUnit:
    return _parse(BloodUnit, row, "units")


def unit_to_row(unit: BloodUnit) -> Dict[str, Any]:
    return unit.model_dump(mode="json")


def request_from_row(row: Dict[str, Any]) -> EmergencyRequest:
    data = dict(row)
    lat, lng = data.pop("lat", None), data.pop("lng", None)
    data["coordinates"] = {"lat": lat, "lng": lng} if lat is not None and lng is not None else None
    data["allocated_unit_ids"] = _loads(data.pop("allocated_unit_ids_json", "[]"), "requests", data.get("id"))
    return _parse(EmergencyRequest, data, "requests")


def request_to_row(req: EmergencyRequest) -> Dict[str, Any]:
    data = req.model_dump(mode="json")
    coords = data.pop("coordinates") or {}
    data["lat"], data["lng"] = coords.get("lat"), coords.get("lng")
    data["is_platelet_request"] = int(req.is_platelet_request)
    data["allocated_unit_ids_json"] = json.dumps(data.pop("allocated_unit_ids"))
    return data


def donor_from_row(row: Dict[str, Any]) -> Donor:
    return _parse(Donor, row, "donors")


def donor_to_row(donor: Donor) -> Dict[str, Any]:
    data = donor.model_dump(mode="json")
    data["is_available"] = int(donor.is_available)
    return data


def queued_from_row(row: Dict[str, Any]) -> QueuedAction:
    data = dict(row)
    data["payload"] = _loads(data.pop("payload_json"), "action_queue", data.get("seq"))
    return _parse(QueuedAction, data, "action_queue")


def queued_to_row(item: QueuedAction) -> Dict[str, Any]:
    data = item.model_dump(mode="json")
    data["payload_json"] = json.dumps(data.pop("payload"), ensure_ascii=False)
    data["queued_at"] = data["queued_at"] or iso_now()
    return data


def insert_row(conn: sqlite3.Connection, table: str, row: Dict[str, Any]) -> int:
    cols = [c for c, v in row.items() if not (c == "seq" and v is None)]
    qmarks = ",".join(["?"] * len(cols))
    cur = conn.execute(f"INSERT INTO {table}({','.join(cols)}) VALUES ({qmarks});",
                       [row[c] for c in cols])
    return cur.lastrowid


# collection -> (table, order by, from_row, to_row)
COLLECTIONS: Dict[str, Tuple[str, str, Callable, Callable]] = {
    "donors":       ("donors", "id", donor_from_row, donor_to_row),
    "requests":     ("requests", "timestamp DESC, id", request_from_row, request_to_row),
    "units":        ("units", "collection_date, id", unit_from_row, unit_to_row),
    "action_queue": ("action_queue", "seq", queued_from_row, queued_to_row),
}


class Store:
    """
    Collection-level persistence: whole lists in, whole lists out.
    Used for snapshots, imports and exports; the ledger and request manager
    query the tables directly.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _spec(self, collection: str):
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        return COLLECTIONS[collection]

    def load(self, collection: str) -> list:
        table, order, from_row, _ = self._spec(collection)
        rows = self.conn.execute(f"SELECT * FROM {table} ORDER BY {order};").fetchall()
        return [from_row(r) for r in rows]

    def save(self, collection: str, rows: Sequence) -> int:
        """Replace the whole collection. Accepts models or plain dicts."""
        table, _, _, to_row = self._spec(collection)
        model = {"donors": Donor, "requests": EmergencyRequest,
                 "units": BloodUnit, "action_queue": QueuedAction}[collection]
        items = [coerce(model, r) for r in rows]
        with tx(self.conn):
            self.conn.execute(f"DELETE FROM {table};")
            for item in items:
                insert_row(self.conn, table, to_row(item))
        logger.info("Saved %d rows into %s", len(items), collection)
        return len(items)

    def fetch_all(self, sql: str, params: tuple = ()) -> List[dict]:
        return self.conn.execute(sql, params).fetchall()
