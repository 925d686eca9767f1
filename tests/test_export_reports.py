import csv
import json

import pytest

from redconnect.audit import fetch_audit
from redconnect.db import Store, get_conn
from redconnect.export import collection_rows, snapshot, to_csv, to_json
from redconnect.errors import ValidationError
from redconnect.migrate_sqlite import import_snapshot, main as migrate_main
from redconnect.reports import _sanitize_details, export_audit_pdf, export_inventory_pdf, export_requests_pdf


@pytest.fixture
def stocked(service):
    service.register_unit("A+", unit_id="U1")
    service.register_unit("Platelets", unit_id="P1")
    service.submit_request({"id": "REQ-1", "patient_name": "Jane Doe", "blood_type": "A+",
                            "units_needed": 1, "hospital": "City General"})
    service.allocate("REQ-1", ["U1"])
    service.save_donor({"id": "D1", "name": "Ravi", "blood_type": "O-"})
    return service


def test_csv_export(stocked, tmp_path):
    path = tmp_path / "units.csv"
    to_csv(str(path), collection_rows(Store(stocked.conn), "units"))

    with open(path, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["id"] for r in rows] == sorted(r["id"] for r in rows)
    assert {r["id"]: r["status"] for r in rows} == {"U1": "Allocated", "P1": "Available"}


def test_empty_csv_export(tmp_path):
    path = tmp_path / "empty.csv"
    to_csv(str(path), [])
    assert path.read_text(encoding="utf-8") == ""


def test_snapshot_imports_into_fresh_database(stocked, tmp_path):
    path = tmp_path / "snap.json"
    to_json(str(path), snapshot(Store(stocked.conn)))

    fresh = get_conn(":memory:")
    try:
        counts = import_snapshot(fresh, json.loads(path.read_text(encoding="utf-8")))
        assert counts == {"donors": 1, "units": 2, "requests": 1, "action_queue": 0}
        req = Store(fresh).load("requests")[0]
        assert req.status == "Allocated"
        assert req.allocated_unit_ids == ["U1"]
    finally:
        fresh.close()


def test_snapshot_rejects_unknown_collections(conn):
    with pytest.raises(ValueError):
        import_snapshot(conn, {"patients": []})


def test_pdf_reports_are_written(stocked, tmp_path):
    inventory = tmp_path / "inventory.pdf"
    board = tmp_path / "requests.pdf"
    audit = tmp_path / "audit.pdf"

    export_inventory_pdf(stocked.units(), str(inventory))
    export_requests_pdf(stocked.list_requests(include_closed=True), str(board), include_pii=False)
    export_audit_pdf(fetch_audit(stocked.conn), str(audit), redact_details=True)

    for path in (inventory, board, audit):
        assert path.read_bytes().startswith(b"%PDF")


def test_redaction_hides_personal_details():
    raw = json.dumps({"patient_name": "Jane Doe", "blood_type": "A+"})
    clean = json.loads(_sanitize_details(raw))
    assert clean == {"patient_name": "REDACTED", "blood_type": "A+"}
    assert _sanitize_details("not json") == ""


def test_audit_log_is_append_only(stocked):
    import sqlite3

    with pytest.raises(sqlite3.DatabaseError):
        stocked.conn.execute("DELETE FROM audit_log")
    with pytest.raises(sqlite3.DatabaseError):
        stocked.conn.execute("UPDATE audit_log SET actor = 'someone'")


def test_bad_snapshot_row_is_rejected_whole(stocked):
    store = Store(stocked.conn)
    rows = [u.model_dump(mode="json") for u in store.load("units")]
    rows.append({"id": "BROKEN", "type": "A+", "volume": -5, "collection_date": "2025-01-01"})

    with pytest.raises(ValidationError):
        import_snapshot(stocked.conn, {"units": rows})
    assert {u.id for u in store.load("units")} == {"U1", "P1"}


def test_migrate_creates_schema_and_imports(stocked, tmp_path, capsys):
    snap = tmp_path / "snap.json"
    to_json(str(snap), snapshot(Store(stocked.conn)))
    db = tmp_path / "data" / "fresh.db"

    migrate_main(["--db", str(db), "--import-json", str(snap)])

    out = capsys.readouterr().out
    assert "Imported 2 units." in out
    assert "Migration complete." in out
    conn = get_conn(str(db))
    try:
        cols = {r["name"] for r in conn.execute("PRAGMA table_info(action_queue)")}
        assert {"seq", "action", "payload_json", "attempts", "last_error"} <= cols
        assert [u.id for u in Store(conn).load("units")] == ["P1", "U1"]
    finally:
        conn.close()


def test_migrate_reports_a_bad_snapshot(tmp_path):
    snap = tmp_path / "snap.json"
    snap.write_text(json.dumps({"patients": []}), encoding="utf-8")
    with pytest.raises(SystemExit, match="Import failed"):
        migrate_main(["--db", str(tmp_path / "x.db"), "--import-json", str(snap)])
