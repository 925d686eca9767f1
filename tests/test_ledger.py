from datetime import date, timedelta

import pytest

from redconnect.constants import SOURCE_MANUAL_ADJUSTMENT, UNIT_TYPES
from redconnect.errors import NotFoundError, ValidationError
from redconnect.ledger import days_remaining, risk_level


def _seed_oldest_first(ledger):
    for uid, collected in [("U1", "2024-01-01"), ("U2", "2024-02-01"), ("U3", "2024-03-01")]:
        ledger.add_unit({"id": uid, "type": "O-", "volume": 350, "collection_date": collected})


def test_decrease_removes_oldest_units(ledger):
    _seed_oldest_first(ledger)

    report = ledger.reconcile_aggregate({"O-": 1})

    assert sorted(report.removed["O-"]) == ["U1", "U2"]
    remaining = ledger.available_units_of_type("O-")
    assert [u.id for u in remaining] == ["U3"]


def test_second_identical_adjust_changes_nothing(ledger):
    _seed_oldest_first(ledger)
    ledger.reconcile_aggregate({"O-": 5, "A+": 2})
    before = {u.id for u in ledger.units()}

    report = ledger.reconcile_aggregate({"O-": 5, "A+": 2})

    assert not report.changed
    assert {u.id for u in ledger.units()} == before


@pytest.mark.parametrize("target", [0, 2, 3, 7])
def test_adjust_lands_on_target(ledger, target):
    _seed_oldest_first(ledger)
    ledger.reconcile_aggregate({"O-": target})
    assert len(ledger.available_units_of_type("O-")) == target


def test_shortfall_is_filled_with_manual_adjustment_bags(ledger):
    fixed = date(2025, 6, 1)
    report = ledger.reconcile_aggregate({"Platelets": 2, "B+": 1}, today=fixed)

    assert len(report.added["Platelets"]) == 2
    for uid in report.added["Platelets"]:
        assert uid.startswith("ADJ-Platelets-")
        unit = ledger.get(uid)
        assert unit.source == SOURCE_MANUAL_ADJUSTMENT
        assert unit.volume == 250
        assert unit.collection_date == fixed
        assert unit.expiry_date == fixed + timedelta(days=5)
    bplus = ledger.get(report.added["B+"][0])
    assert bplus.volume == 350
    assert bplus.expiry_date == fixed + timedelta(days=35)


def test_negative_target_clamps_to_zero(ledger):
    _seed_oldest_first(ledger)

    report = ledger.reconcile_aggregate({"O-": -4})

    assert report.clamped == {"O-": 4}
    assert ledger.count_available("O-") == 0


def test_adjust_leaves_unlisted_types_alone(ledger, add):
    add("A1", "A+")
    add("B1", "B-")
    ledger.reconcile_aggregate({"A+": 0})
    assert ledger.find("A1") is None
    assert ledger.find("B1") is not None


def test_adjust_never_removes_allocated_units(ledger, add):
    add("OLD", "O-", age=20)
    add("NEW", "O-", age=1)
    ledger.set_status(["OLD"], "Allocated")

    report = ledger.reconcile_aggregate({"O-": 0})

    assert report.removed["O-"] == ["NEW"]
    assert ledger.get("OLD").status == "Allocated"


def test_bad_adjust_input_changes_nothing(ledger, add):
    add("A1", "A+")
    with pytest.raises(ValidationError):
        ledger.reconcile_aggregate({"A+": 0, "Z+": 3})
    with pytest.raises(ValidationError):
        ledger.reconcile_aggregate({"A+": "lots"})
    assert ledger.find("A1") is not None


def test_aggregate_counts_cover_every_type(ledger, add):
    add("A1", "A+")
    add("A2", "A+")
    add("P1", "Platelets", volume=250)
    ledger.set_status(["A2"], "Allocated")

    counts = ledger.aggregate_counts()

    assert set(counts) == set(UNIT_TYPES)
    assert counts["A+"] == 1
    assert counts["Platelets"] == 1
    assert counts["O-"] == 0


def test_duplicate_unit_id_is_rejected(ledger, add):
    add("DUP")
    with pytest.raises(ValidationError):
        add("DUP")


def test_remove_unknown_unit(ledger):
    with pytest.raises(NotFoundError):
        ledger.remove_unit("NOPE")


def test_register_derives_expiry_and_default_volume(ledger):
    unit = ledger.register_unit("A-", collection_date="01/03/2025")
    assert unit.collection_date == date(2025, 3, 1)
    assert unit.expiry_date == date(2025, 4, 5)
    assert unit.volume == 350
    assert unit.id.startswith("UNIT-")


def test_register_rejects_bad_dates(ledger):
    with pytest.raises(ValidationError):
        ledger.register_unit("A-", collection_date="yesterday")
    with pytest.raises(ValidationError):
        ledger.register_unit("A-", collection_date="2025-03-10", expiry_date="2025-03-01")


def test_bank_sees_own_and_unassigned_units(ledger, add):
    add("MINE", "O+", bank_id="bank-1")
    add("THEIRS", "O+", bank_id="bank-2")
    add("FLOATING", "O+")

    ids = {u.id for u in ledger.available_units_of_type("O+", bank_id="bank-1")}

    assert ids == {"MINE", "FLOATING"}
    assert ledger.aggregate_counts()["O+"] == 3


@pytest.mark.parametrize("days,level", [(-1, "critical"), (2, "critical"), (3, "warning"),
                                        (7, "warning"), (8, "safe")])
def test_risk_levels(days, level):
    assert risk_level(days) == level


def test_expiry_risk_reports_worst_unit(ledger, add, today):
    add("FRESH", "B+", age=1)
    add("OLD", "B+", age=34)
    risks = ledger.expiry_risk_by_type(today=today)
    assert risks["B+"] == "critical"
    assert risks["A+"] == "safe"
    assert days_remaining(ledger.get("OLD"), today) == 1


def test_mutations_are_audited(conn, ledger, add):
    from redconnect.audit import fetch_audit

    add("A1", "A+")
    ledger.remove_unit("A1")
    ledger.reconcile_aggregate({"O-": 1})

    actions = [r["action"] for r in fetch_audit(conn, entity="units")]
    assert actions == ["Register Unit", "Remove Unit", "Quick Adjust"]
