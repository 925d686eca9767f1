"""
Emergency request life-cycle.

    Pending -> Allocated -> Dispatched -> Received

Only forward moves exist. Allocation is the one step that touches the
ledger: it binds specific Available units to the request. Dispatch and
receipt are pure status advances. 'Fulfilled' is accepted as a legacy
spelling of 'Received'.
"""
import json
import logging
import sqlite3
import uuid
from datetime import date
from typing import List, Optional

from .audit import log_action
from .compatibility import compatible_donors_for, preferred_donor_order
from .constants import (ALLOCATED, AVAILABLE, DISPATCHED, PENDING, PLATELETS, RECEIVED,
                        REQUEST_STATUS_ORDER, canonical_status, status_rank)
from .db import insert_row, request_from_row, request_to_row, tx
from .errors import InvalidTransition, NotFoundError, ValidationError
from .ledger import InventoryLedger
from .models import BloodUnit, EmergencyRequest, coerce

logger = logging.getLogger(__name__)


def eligible_types(req: EmergencyRequest) -> List[str]:
    # platelets are one pool; whole blood follows the compatibility table
    if req.is_platelet_request:
        return [PLATELETS]
    return preferred_donor_order(req.blood_type)


class RequestManager:
    def __init__(self, conn: sqlite3.Connection, ledger: InventoryLedger, actor: str = "system"):
        self.conn = conn
        self.ledger = ledger
        self.actor = actor

    # ---- queries ----
    def find(self, request_id: str) -> Optional[EmergencyRequest]:
        row = self.conn.execute("SELECT * FROM requests WHERE id = ?", (request_id,)).fetchone()
        return request_from_row(row) if row else None

    def get(self, request_id: str) -> EmergencyRequest:
        req = self.find(request_id)
        if req is None:
            raise NotFoundError(f"Request not found: {request_id}")
        return req

    def list_requests(self, include_closed: bool = False,
                      hospital: Optional[str] = None) -> List[EmergencyRequest]:
        rows = self.conn.execute("SELECT * FROM requests ORDER BY timestamp DESC, id ASC").fetchall()
        reqs = [request_from_row(r) for r in rows]
        if not include_closed:
            reqs = [r for r in reqs if r.status != RECEIVED]
        if hospital:
            reqs = [r for r in reqs if r.hospital == hospital]
        return reqs

    def candidate_units(self, request_id: str, bank_id: Optional[str] = None,
                        today: Optional[date] = None) -> List[BloodUnit]:
        """
        Units an operator may pick for this request: Available, not expired,
        of a compatible type. Soonest expiry first so short-dated stock is
        used before it is lost; exact type before substitutes on ties.
        """
        req = self.get(request_id)
        today = today or date.today()
        order = eligible_types(req)
        units = [u for t in order for u in self.ledger.available_units_of_type(t, bank_id)
                 if u.expiry_date >= today]
        units.sort(key=lambda u: (u.expiry_date, order.index(u.type), u.id))
        return units

    # ---- transitions ----
    def submit(self, request) -> EmergencyRequest:
        data = request.model_dump() if isinstance(request, EmergencyRequest) else dict(request)
        if not data.get("id"):
            data["id"] = f"REQ-{uuid.uuid4().hex[:8].upper()}"
        data["status"] = PENDING
        data["allocated_unit_ids"] = []
        req = coerce(EmergencyRequest, data)
        with tx(self.conn):
            if self.find(req.id) is not None:
                raise ValidationError(f"Request id already exists: {req.id}")
            insert_row(self.conn, "requests", request_to_row(req))
            log_action(self.conn, self.actor, "Submit Request", "requests", req.id, {
                "hospital": req.hospital, "blood_type": req.blood_type,
                "units_needed": req.units_needed, "urgency": req.urgency,
                "is_platelet_request": req.is_platelet_request,
            })
        logger.info("Request %s submitted by %s: %d x %s (%s)",
                    req.id, req.hospital, req.units_needed, req.blood_type, req.urgency)
        return req

    def allocate(self, request_id: str, unit_ids: List[str],
                 today: Optional[date] = None) -> EmergencyRequest:
        """
        Bind `unit_ids` to the request. Every check runs before any write,
        and the writes share one transaction, so a rejection leaves the
        request and all named units untouched.
        """
        today = today or date.today()
        with tx(self.conn):
            req = self.get(request_id)
            if req.status != PENDING:
                raise InvalidTransition(f"Request {request_id} is {req.status}; only Pending requests can be allocated")
            ids = list(unit_ids)
            if len(set(ids)) != len(ids):
                raise ValidationError("Duplicate unit ids in allocation")
            if len(ids) != req.units_needed:
                raise ValidationError(f"Request {request_id} needs {req.units_needed} units, got {len(ids)}")
            allowed = set(eligible_types(req))
            for uid in ids:
                unit = self.ledger.find(uid)
                if unit is None:
                    raise ValidationError(f"Unit not found: {uid}")
                if unit.status != AVAILABLE:
                    raise ValidationError(f"Unit {uid} is {unit.status}, not Available")
                if unit.type not in allowed:
                    raise ValidationError(f"Unit {uid} ({unit.type}) is not compatible with {self._wanted(req)}")
                if unit.expiry_date < today:
                    raise ValidationError(f"Unit {uid} expired on {unit.expiry_date}")

            self.ledger.set_status(ids, ALLOCATED)
            req.status = ALLOCATED
            req.allocated_unit_ids = ids
            self._write_status(req)
            log_action(self.conn, self.actor, "Allocate", "requests", request_id,
                       {"unit_ids": ids, "blood_type": req.blood_type})
        logger.info("Request %s allocated units %s", request_id, ", ".join(ids))
        return req

    def dispatch(self, request_id: str) -> EmergencyRequest:
        return self._advance_to(request_id, DISPATCHED, "Dispatch")

    def receive(self, request_id: str) -> EmergencyRequest:
        return self._advance_to(request_id, RECEIVED, "Receive")

    def advance(self, request_id: str, status: str) -> EmergencyRequest:
        """Generic status update from the tracking board; forward only."""
        target = canonical_status(status)
        if target not in REQUEST_STATUS_ORDER:
            raise ValidationError(f"Invalid request status: {status}")
        req = self.get(request_id)
        if status_rank(target) < status_rank(req.status):
            raise InvalidTransition(f"Request {request_id} cannot move back from {req.status} to {target}")
        if target == req.status:
            return req
        if target == ALLOCATED:
            raise InvalidTransition("Allocation needs unit ids; use allocate()")
        if target == DISPATCHED:
            return self.dispatch(request_id)
        return self.receive(request_id)

    # ---- helpers ----
    def _advance_to(self, request_id: str, target: str, action: str) -> EmergencyRequest:
        required = REQUEST_STATUS_ORDER[REQUEST_STATUS_ORDER.index(target) - 1]
        with tx(self.conn):
            req = self.get(request_id)
            if status_rank(req.status) >= status_rank(target):
                # already there or beyond
                return req
            if req.status != required:
                raise InvalidTransition(f"Request {request_id} is {req.status}; {target} requires {required}")
            req.status = target
            self._write_status(req)
            log_action(self.conn, self.actor, action, "requests", request_id, {"status": target})
        logger.info("Request %s -> %s", request_id, target)
        return req

    def _write_status(self, req: EmergencyRequest) -> None:
        self.conn.execute(
            "UPDATE requests SET status = ?, allocated_unit_ids_json = ? WHERE id = ?",
            (req.status, json.dumps(req.allocated_unit_ids), req.id)
        )

    @staticmethod
    def _wanted(req: EmergencyRequest) -> str:
        if req.is_platelet_request:
            return "a platelet request"
        return f"{req.blood_type} (accepts {', '.join(sorted(compatible_donors_for(req.blood_type)))})"
