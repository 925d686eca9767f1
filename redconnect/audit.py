import json
import sqlite3
from typing import List, Optional

from .constants import iso_now


def log_action(conn: sqlite3.Connection, actor: str, action: str,
               entity: str, entity_id: Optional[str], details: dict) -> None:
    """
    Store audit details as plain JSON text. Call inside the transaction of
    the change being recorded so both commit or roll back together.
    """
    conn.execute(
        "INSERT INTO audit_log(at, actor, action, entity, entity_id, details_json) VALUES(?,?,?,?,?,?)",
        (iso_now(), actor, action, entity, entity_id, json.dumps(details, ensure_ascii=False, default=str))
    )


def fetch_audit(conn: sqlite3.Connection, entity: Optional[str] = None,
                entity_id: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
    sql = "SELECT * FROM audit_log"
    where, params = [], []
    if entity:
        where.append("entity = ?")
        params.append(entity)
    if entity_id:
        where.append("entity_id = ?")
        params.append(entity_id)
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY id"
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    return conn.execute(sql, tuple(params)).fetchall()
