# file: redconnect/service.py
import logging
import sqlite3
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel

from .audit import fetch_audit
from .constants import SOURCE_INTERNAL
from .donors import DonorRegistry
from .errors import NotFoundError, Outcome, ValidationError
from .events import DONORS, REQUESTS, UNITS, Notifier
from .ledger import InventoryLedger, new_id
from .lifecycle import RequestManager
from .models import BloodUnit, Donor, EmergencyRequest, QueuedAction, coerce
from .offline import ActionQueue, Connectivity, FlushReport

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class Service:
    """
    The one object a front-end talks to. Owns the ledger, the request
    board, the donor registry and the offline queue.

    Every mutating call goes through `_submit`: while offline it is queued
    and reported as such; while online it runs, listeners are told which
    collections changed, and the caller gets an Outcome. Rejections come
    back as failed Outcomes, never as exceptions.
    """

    def __init__(self, conn: sqlite3.Connection, connectivity: Optional[Connectivity] = None,
                 notifier: Optional[Notifier] = None, actor: str = "operator"):
        self.conn = conn
        self.actor = actor
        self.ledger = InventoryLedger(conn, actor)
        self.requests = RequestManager(conn, self.ledger, actor)
        self.donors = DonorRegistry(conn, self.ledger, actor)
        self.connectivity = connectivity or Connectivity()
        self.notifier = notifier or Notifier()
        self.queue = ActionQueue(conn, self._execute)
        self.connectivity.on_online(self.flush_queue)

        # action name -> (callable, collections it touches)
        self._actions: Dict[str, Tuple[Callable, Tuple[str, ...]]] = {
            "add_unit":            (self.ledger.add_unit, (UNITS,)),
            "register_unit":       (self.ledger.register_unit, (UNITS,)),
            "remove_unit":         (self.ledger.remove_unit, (UNITS,)),
            "reconcile_aggregate": (self.ledger.reconcile_aggregate, (UNITS,)),
            "submit_request":      (self.requests.submit, (REQUESTS,)),
            "allocate":            (self.requests.allocate, (REQUESTS, UNITS)),
            "dispatch":            (self.requests.dispatch, (REQUESTS,)),
            "receive":             (self.requests.receive, (REQUESTS,)),
            "advance_request":     (self.requests.advance, (REQUESTS,)),
            "save_donor":          (self.donors.save, (DONORS,)),
            "record_donation":     (self.donors.record_donation, (DONORS, UNITS)),
        }

    # ---- dispatch ----
    def _execute(self, action: str, args: Sequence) -> Any:
        if action not in self._actions:
            raise ValidationError(f"Unknown action: {action}")
        fn, touched = self._actions[action]
        result = fn(*args)
        for entity in touched:
            self.notifier.notify_changed(entity)
        return result

    def _submit(self, action: str, *args, message: str = "") -> Outcome:
        if not self.connectivity.is_online():
            seq = self.queue.enqueue(action, [_jsonable(a) for a in args])
            return Outcome.deferred(f"Offline: {action.replace('_', ' ')} queued", seq)
        try:
            result = self._execute(action, args)
        except (ValidationError, NotFoundError) as e:
            logger.warning("%s rejected: %s", action, e)
            return Outcome.failure(e)
        return Outcome.success(message or f"{action.replace('_', ' ')} done", result)

    # ---- inventory ----
    def add_unit(self, unit) -> Outcome:
        return self._submit("add_unit", unit, message="Unit registered")

    def register_unit(self, unit_type: str, collection_date=None, expiry_date=None,
                      volume: Optional[int] = None, source: Optional[str] = None,
                      bank_id: Optional[str] = None, unit_id: Optional[str] = None) -> Outcome:
        # id and collection date fixed now so a queued registration keeps them on replay
        return self._submit("register_unit", unit_type, collection_date or date.today(), expiry_date,
                            volume, source or SOURCE_INTERNAL, bank_id, unit_id or new_id(),
                            message="Unit registered")

    def remove_unit(self, unit_id: str) -> Outcome:
        return self._submit("remove_unit", unit_id, message=f"Unit {unit_id} removed")

    def reconcile_aggregate(self, target_counts: Mapping[str, int], bank_id: Optional[str] = None) -> Outcome:
        return self._submit("reconcile_aggregate", dict(target_counts), bank_id, date.today(),
                            message="Inventory adjusted")

    def get_unit(self, unit_id: str) -> BloodUnit:
        return self.ledger.get(unit_id)

    def units(self, bank_id: Optional[str] = None, status: Optional[str] = None) -> List[BloodUnit]:
        return self.ledger.units(bank_id=bank_id, status=status)

    def available_units_of_type(self, unit_type: str, bank_id: Optional[str] = None) -> List[BloodUnit]:
        return self.ledger.available_units_of_type(unit_type, bank_id)

    def aggregate_counts(self, bank_id: Optional[str] = None) -> Dict[str, int]:
        return self.ledger.aggregate_counts(bank_id)

    def expiry_risk(self, bank_id: Optional[str] = None, today: Optional[date] = None) -> Dict[str, str]:
        return self.ledger.expiry_risk_by_type(bank_id, today)

    # ---- requests ----
    def submit_request(self, request) -> Outcome:
        data = request.model_dump() if isinstance(request, EmergencyRequest) else dict(request)
        if not data.get("id"):
            data["id"] = new_id("REQ")
        try:
            req = coerce(EmergencyRequest, data)
        except ValidationError as e:
            return Outcome.failure(e)
        return self._submit("submit_request", req, message=f"Request {req.id} submitted")

    def allocate(self, request_id: str, unit_ids: Sequence[str]) -> Outcome:
        return self._submit("allocate", request_id, list(unit_ids),
                            message=f"Request {request_id} allocated")

    def dispatch(self, request_id: str) -> Outcome:
        return self._submit("dispatch", request_id, message=f"Request {request_id} dispatched")

    def receive(self, request_id: str) -> Outcome:
        return self._submit("receive", request_id, message=f"Request {request_id} received")

    def advance_request(self, request_id: str, status: str) -> Outcome:
        return self._submit("advance_request", request_id, status,
                            message=f"Request {request_id} -> {status}")

    def get_request(self, request_id: str) -> EmergencyRequest:
        return self.requests.get(request_id)

    def list_requests(self, include_closed: bool = False, hospital: Optional[str] = None) -> List[EmergencyRequest]:
        return self.requests.list_requests(include_closed, hospital)

    def candidate_units(self, request_id: str, bank_id: Optional[str] = None,
                        today: Optional[date] = None) -> List[BloodUnit]:
        return self.requests.candidate_units(request_id, bank_id, today)

    # ---- donors ----
    def save_donor(self, donor) -> Outcome:
        return self._submit("save_donor", donor, message="Donor registered")

    def record_donation(self, donor_id: str, blood_type: Optional[str] = None,
                        volume: Optional[int] = None, bank_id: Optional[str] = None) -> Outcome:
        return self._submit("record_donation", donor_id, blood_type, volume, bank_id,
                            new_id("BAG"), date.today(),
                            message=f"Donation by {donor_id} recorded")

    def get_donor(self, donor_id: str) -> Donor:
        return self.donors.get(donor_id)

    def list_donors(self, blood_type: Optional[str] = None, available_only: bool = False) -> List[Donor]:
        return self.donors.list_donors(blood_type, available_only)

    # ---- offline queue ----
    def flush_queue(self) -> FlushReport:
        if not self.connectivity.is_online():
            return FlushReport(skipped=True)
        return self.queue.flush()

    def pending_actions(self) -> List[QueuedAction]:
        return self.queue.pending()

    def discard_action(self, seq: int) -> Outcome:
        try:
            self.queue.discard(seq)
        except NotFoundError as e:
            return Outcome.failure(e)
        return Outcome.success(f"Queued action #{seq} discarded")

    # ---- audit ----
    def audit_trail(self, entity: Optional[str] = None, entity_id: Optional[str] = None) -> List[dict]:
        return fetch_audit(self.conn, entity, entity_id)
