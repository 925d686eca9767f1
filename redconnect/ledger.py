import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .audit import log_action
from .constants import (AVAILABLE, CRITICAL_DAYS, DEFAULT_VOLUME_ML,
                        SOURCE_INTERNAL, SOURCE_MANUAL_ADJUSTMENT, UNIT_STATUSES, UNIT_TYPES,
                        WARNING_DAYS, derive_expiry, parse_date)
from .db import insert_row, tx, unit_from_row, unit_to_row
from .errors import NotFoundError, ValidationError
from .models import BloodUnit, coerce

logger = logging.getLogger(__name__)

RISK_ORDER = {"safe": 0, "warning": 1, "critical": 2}


def days_remaining(unit: BloodUnit, today: Optional[date] = None) -> int:
    return (unit.expiry_date - (today or date.today())).days


def risk_level(days: int) -> str:
    if days <= CRITICAL_DAYS:
        return "critical"
    if days <= WARNING_DAYS:
        return "warning"
    return "safe"


@dataclass
class ReconcileReport:
    added: Dict[str, List[str]] = field(default_factory=dict)
    removed: Dict[str, List[str]] = field(default_factory=dict)
    # type -> units a negative target asked for beyond zero
    clamped: Dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return any(self.added.values()) or any(self.removed.values())

    def as_dict(self) -> dict:
        return {"added": self.added, "removed": self.removed, "clamped": self.clamped}


def new_id(prefix: str = "UNIT") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _bank_clause(bank_id: Optional[str]) -> Tuple[str, tuple]:
    # a bank sees its own units plus unassigned ones
    if bank_id is None:
        return "", ()
    return " AND (bank_id = ? OR bank_id IS NULL)", (bank_id,)


class InventoryLedger:
    """
    The authoritative set of units. Aggregate counts are always derived
    live from the table, never stored.
    """

    def __init__(self, conn: sqlite3.Connection, actor: str = "system"):
        self.conn = conn
        self.actor = actor

    # ---- queries ----
    def find(self, unit_id: str) -> Optional[BloodUnit]:
        row = self.conn.execute("SELECT * FROM units WHERE id = ?", (unit_id,)).fetchone()
        return unit_from_row(row) if row else None

    def get(self, unit_id: str) -> BloodUnit:
        unit = self.find(unit_id)
        if unit is None:
            raise NotFoundError(f"Unit not found: {unit_id}")
        return unit

    def units(self, bank_id: Optional[str] = None, status: Optional[str] = None,
              unit_type: Optional[str] = None) -> List[BloodUnit]:
        sql, params = "SELECT * FROM units WHERE 1=1", []
        if status:
            sql += " AND status = ?"
            params.append(status)
        if unit_type:
            sql += " AND type = ?"
            params.append(unit_type)
        clause, extra = _bank_clause(bank_id)
        sql += clause + " ORDER BY collection_date ASC, id ASC"
        rows = self.conn.execute(sql, tuple(params) + extra).fetchall()
        return [unit_from_row(r) for r in rows]

    def available_units_of_type(self, unit_type: str, bank_id: Optional[str] = None) -> List[BloodUnit]:
        self._check_type(unit_type)
        return self.units(bank_id=bank_id, status=AVAILABLE, unit_type=unit_type)

    def count_available(self, unit_type: str, bank_id: Optional[str] = None) -> int:
        clause, extra = _bank_clause(bank_id)
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM units WHERE type = ? AND status = ?" + clause,
            (unit_type, AVAILABLE) + extra
        ).fetchone()
        return row["c"]

    def aggregate_counts(self, bank_id: Optional[str] = None) -> Dict[str, int]:
        counts = {t: 0 for t in UNIT_TYPES}
        clause, extra = _bank_clause(bank_id)
        for row in self.conn.execute(
                "SELECT type, COUNT(*) AS c FROM units WHERE status = ?" + clause + " GROUP BY type",
                (AVAILABLE,) + extra):
            counts[row["type"]] = row["c"]
        return counts

    def expired_units(self, today: Optional[date] = None, bank_id: Optional[str] = None) -> List[BloodUnit]:
        # advisory only; nothing here deletes expired stock
        today = today or date.today()
        return [u for u in self.units(bank_id=bank_id) if u.expiry_date < today]

    def expiry_risk_by_type(self, bank_id: Optional[str] = None,
                            today: Optional[date] = None) -> Dict[str, str]:
        """Worst expiry risk per type among the bank's units."""
        risks = {t: "safe" for t in UNIT_TYPES}
        for unit in self.units(bank_id=bank_id):
            level = risk_level(days_remaining(unit, today))
            if RISK_ORDER[level] > RISK_ORDER[risks[unit.type]]:
                risks[unit.type] = level
        return risks

    # ---- mutations ----
    def add_unit(self, unit) -> BloodUnit:
        unit = coerce(BloodUnit, unit)
        with tx(self.conn):
            if self.find(unit.id) is not None:
                raise ValidationError(f"Unit id already exists: {unit.id}")
            insert_row(self.conn, "units", unit_to_row(unit))
            log_action(self.conn, self.actor, "Register Unit", "units", unit.id, {
                "type": unit.type, "volume": unit.volume, "source": unit.source,
                "collection_date": unit.collection_date, "expiry_date": unit.expiry_date,
                "bank_id": unit.bank_id,
            })
        logger.info("Unit %s (%s) registered", unit.id, unit.type)
        return unit

    def register_unit(self, unit_type: str, collection_date=None, expiry_date=None,
                      volume: Optional[int] = None, source: str = SOURCE_INTERNAL,
                      bank_id: Optional[str] = None, unit_id: Optional[str] = None) -> BloodUnit:
        """
        Build a bag the way the stock desk does: default volume for the type,
        expiry derived from the collection date unless given.
        """
        self._check_type(unit_type)
        try:
            collected = parse_date(collection_date)
            expires = parse_date(expiry_date) if expiry_date else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        unit = coerce(BloodUnit, {
            "id": unit_id or new_id(),
            "type": unit_type,
            "volume": volume or DEFAULT_VOLUME_ML[unit_type],
            "collection_date": collected,
            "expiry_date": expires,
            "source": source,
            "bank_id": bank_id,
        })
        return self.add_unit(unit)

    def remove_unit(self, unit_id: str) -> BloodUnit:
        with tx(self.conn):
            unit = self.get(unit_id)
            self.conn.execute("DELETE FROM units WHERE id = ?", (unit_id,))
            log_action(self.conn, self.actor, "Remove Unit", "units", unit_id,
                       {"type": unit.type, "status": unit.status})
        logger.info("Unit %s removed", unit_id)
        return unit

    def set_status(self, unit_ids: Iterable[str], status: str) -> int:
        if status not in UNIT_STATUSES:
            raise ValidationError(f"Invalid unit status: {status}")
        ids = list(unit_ids)
        if not ids:
            return 0
        qmarks = ",".join(["?"] * len(ids))
        cur = self.conn.execute(f"UPDATE units SET status = ? WHERE id IN ({qmarks});", [status] + ids)
        return cur.rowcount

    def reconcile_aggregate(self, target_counts: Mapping[str, int], bank_id: Optional[str] = None,
                            today: Optional[date] = None) -> ReconcileReport:
        """
        Quick Adjust: bring the Available count of each listed type to its
        target. Shortfalls are filled with Manual Adjustment bags collected
        today; surpluses are removed oldest collection date first. Only
        Available units are ever removed. Types not listed are left alone.
        """
        targets: Dict[str, int] = {}
        for unit_type, raw in target_counts.items():
            self._check_type(unit_type)
            try:
                targets[unit_type] = int(raw)
            except (TypeError, ValueError):
                raise ValidationError(f"Target for {unit_type} must be an integer, got {raw!r}")

        today = parse_date(today)
        report = ReconcileReport()
        with tx(self.conn):
            for unit_type, target in targets.items():
                if target < 0:
                    report.clamped[unit_type] = -target
                    logger.warning("Target %d for %s clamped to 0", target, unit_type)
                    target = 0
                delta = target - self.count_available(unit_type, bank_id)
                if delta > 0:
                    report.added[unit_type] = [self._synthesize(unit_type, today, bank_id)
                                               for _ in range(delta)]
                elif delta < 0:
                    report.removed[unit_type] = self._remove_oldest(unit_type, -delta, bank_id)
            if report.changed or report.clamped:
                log_action(self.conn, self.actor, "Quick Adjust", "units", None, {
                    "bank_id": bank_id, "targets": targets, **report.as_dict()
                })
        if report.changed:
            logger.info("Quick adjust: +%d / -%d units",
                        sum(len(v) for v in report.added.values()),
                        sum(len(v) for v in report.removed.values()))
        return report

    # ---- helpers ----
    def _check_type(self, unit_type: str) -> None:
        if unit_type not in UNIT_TYPES:
            raise ValidationError(f"Invalid unit type: {unit_type}")

    def _synthesize(self, unit_type: str, today: date, bank_id: Optional[str]) -> str:
        unit = BloodUnit(
            id=f"ADJ-{unit_type}-{uuid.uuid4().hex[:8]}",
            type=unit_type,
            volume=DEFAULT_VOLUME_ML[unit_type],
            collection_date=today,
            expiry_date=derive_expiry(unit_type, today),
            source=SOURCE_MANUAL_ADJUSTMENT,
            bank_id=bank_id,
        )
        insert_row(self.conn, "units", unit_to_row(unit))
        return unit.id

    def _remove_oldest(self, unit_type: str, count: int, bank_id: Optional[str]) -> List[str]:
        clause, extra = _bank_clause(bank_id)
        rows = self.conn.execute(
            "SELECT id FROM units WHERE type = ? AND status = ?" + clause +
            " ORDER BY collection_date ASC, id ASC LIMIT ?",
            (unit_type, AVAILABLE) + extra + (count,)
        ).fetchall()
        ids = [r["id"] for r in rows]
        if ids:
            qmarks = ",".join(["?"] * len(ids))
            self.conn.execute(f"DELETE FROM units WHERE id IN ({qmarks});", ids)
        return ids
