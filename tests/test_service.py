from datetime import date, timedelta

import pytest

from redconnect.db import Store
from redconnect.errors import CorruptDataError


def _bag(uid="BAG-1", unit_type="O-"):
    return {"id": uid, "type": unit_type, "volume": 450,
            "collection_date": (date.today() - timedelta(days=1)).isoformat()}


def test_offline_add_is_queued_then_applied_on_reconnect(service, connectivity, changes):
    connectivity.set_online(False)

    outcome = service.add_unit(_bag())

    assert outcome.ok and outcome.queued
    assert service.available_units_of_type("O-") == []
    assert [a.action for a in service.pending_actions()] == ["add_unit"]
    assert changes == []

    connectivity.set_online(True)

    assert [u.id for u in service.available_units_of_type("O-")] == ["BAG-1"]
    assert service.pending_actions() == []
    assert changes == ["units"]


def test_queued_calls_replay_in_order(service, connectivity):
    connectivity.set_online(False)
    service.register_unit("A+", unit_id="U1")
    req_id = "REQ-OFF"
    service.submit_request({"id": req_id, "patient_name": "P", "blood_type": "A+", "units_needed": 1,
                            "hospital": "H"})
    service.allocate(req_id, ["U1"])
    service.dispatch(req_id)
    assert len(service.pending_actions()) == 4

    connectivity.set_online(True)

    assert service.get_request(req_id).status == "Dispatched"
    assert service.get_unit("U1").status == "Allocated"


def test_failed_replay_is_kept(service, connectivity):
    connectivity.set_online(False)
    service.remove_unit("GHOST")
    connectivity.set_online(True)

    left = service.pending_actions()
    assert [a.action for a in left] == ["remove_unit"]
    assert "GHOST" in left[0].last_error
    assert service.discard_action(left[0].seq).ok
    assert service.pending_actions() == []


def test_flush_while_offline_is_skipped(service, connectivity):
    connectivity.set_online(False)
    service.register_unit("B+")
    assert service.flush_queue().skipped
    assert len(service.pending_actions()) == 1


def test_rejections_come_back_as_outcomes(service):
    service.add_unit(_bag())

    dup = service.add_unit(_bag())
    missing = service.remove_unit("NOPE")
    bad_request = service.submit_request({"patient_name": "P", "blood_type": "Q", "units_needed": 1,
                                          "hospital": "H"})

    assert (dup.ok, dup.kind) == (False, "validation")
    assert (missing.ok, missing.kind) == (False, "not_found")
    assert (bad_request.ok, bad_request.kind) == (False, "validation")


def test_allocation_flow_through_service(service, changes):
    service.register_unit("AB-", unit_id="U1")
    service.register_unit("O-", unit_id="U2")
    req = service.submit_request({"patient_name": "P", "blood_type": "AB-", "units_needed": 2,
                                  "hospital": "H"}).data
    changes.clear()

    ok = service.allocate(req.id, ["U1", "U2"])
    regress = service.advance_request(req.id, "Pending")

    assert ok.ok and ok.data.status == "Allocated"
    assert changes == ["requests", "units"]
    assert (regress.ok, regress.kind) == (False, "invalid_transition")
    assert service.aggregate_counts()["AB-"] == 0


def test_adjust_through_service(service):
    outcome = service.reconcile_aggregate({"A+": 3})
    assert outcome.ok
    assert len(outcome.data.added["A+"]) == 3
    assert service.aggregate_counts()["A+"] == 3


def test_record_donation(service):
    service.save_donor({"id": "D1", "name": "Ravi", "blood_type": "B-", "phone": "98000"})

    outcome = service.record_donation("D1")

    bag = outcome.data
    assert bag.id.startswith("BAG-")
    assert bag.source == "Donation: D1"
    donor = service.get_donor("D1")
    assert donor.last_bag_id == bag.id
    assert donor.last_donation == date.today()
    assert not donor.is_available
    assert donor.donation_count == 1
    assert service.list_donors(available_only=True) == []

    wrong = service.record_donation("D1", blood_type="A+")
    assert wrong.kind == "validation"


def test_listener_failure_does_not_undo_change(service):
    def broken(entity):
        raise RuntimeError("listener down")

    service.notifier.subscribe(broken)
    assert service.register_unit("O+", unit_id="U9").ok
    assert service.get_unit("U9").type == "O+"


def test_corrupt_row_is_loud(conn, service):
    conn.execute("INSERT INTO requests(id, patient_name, blood_type, units_needed, urgency, hospital, "
                 "timestamp, status, allocated_unit_ids_json) "
                 "VALUES ('R1', 'P', 'A+', 1, 'High', 'H', '2025-01-01 10:00:00', 'Pending', 'not json')")
    with pytest.raises(CorruptDataError):
        service.get_request("R1")
    with pytest.raises(CorruptDataError):
        Store(conn).load("requests")


class _ThreeDaysLater(date):
    @classmethod
    def today(cls):
        return date.fromordinal(date.today().toordinal() + 3)


@pytest.fixture
def clock_moves_on(monkeypatch):
    def _advance():
        for module in ("redconnect.constants", "redconnect.ledger", "redconnect.donors"):
            monkeypatch.setattr(f"{module}.date", _ThreeDaysLater)
    return _advance


def test_replay_keeps_the_day_of_registration(service, connectivity, clock_moves_on):
    queued_on = date.today()
    connectivity.set_online(False)
    service.register_unit("A+", unit_id="OFF1")
    service.save_donor({"id": "D1", "name": "Ravi", "blood_type": "B-"})
    service.record_donation("D1")
    service.reconcile_aggregate({"Platelets": 1})

    clock_moves_on()
    connectivity.set_online(True)

    assert service.pending_actions() == []
    unit = service.get_unit("OFF1")
    assert unit.collection_date == queued_on
    assert unit.expiry_date == queued_on + timedelta(days=35)
    donor = service.get_donor("D1")
    assert donor.last_donation == queued_on
    assert service.get_unit(donor.last_bag_id).expiry_date == queued_on + timedelta(days=35)
    platelets = service.available_units_of_type("Platelets")
    assert [u.collection_date for u in platelets] == [queued_on]
    assert platelets[0].expiry_date == queued_on + timedelta(days=5)
