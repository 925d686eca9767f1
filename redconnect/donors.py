import logging
import sqlite3
from datetime import date
from typing import List, Optional

from .audit import log_action
from .constants import DEFAULT_VOLUME_ML, derive_expiry, parse_date
from .db import donor_from_row, donor_to_row, insert_row, tx
from .errors import NotFoundError, ValidationError
from .ledger import InventoryLedger, new_id
from .models import BloodUnit, Donor, coerce

logger = logging.getLogger(__name__)


class DonorRegistry:
    def __init__(self, conn: sqlite3.Connection, ledger: InventoryLedger, actor: str = "system"):
        self.conn = conn
        self.ledger = ledger
        self.actor = actor

    def find(self, donor_id: str) -> Optional[Donor]:
        row = self.conn.execute("SELECT * FROM donors WHERE id = ?", (donor_id,)).fetchone()
        return donor_from_row(row) if row else None

    def get(self, donor_id: str) -> Donor:
        donor = self.find(donor_id)
        if donor is None:
            raise NotFoundError(f"Donor not found: {donor_id}")
        return donor

    def list_donors(self, blood_type: Optional[str] = None, available_only: bool = False) -> List[Donor]:
        sql, params = "SELECT * FROM donors WHERE 1=1", []
        if blood_type:
            sql += " AND blood_type = ?"
            params.append(blood_type)
        if available_only:
            sql += " AND is_available = 1"
        rows = self.conn.execute(sql + " ORDER BY name, id", tuple(params)).fetchall()
        return [donor_from_row(r) for r in rows]

    def save(self, donor) -> Donor:
        donor = coerce(Donor, donor)
        with tx(self.conn):
            if self.find(donor.id) is not None:
                raise ValidationError(f"Donor id already exists: {donor.id}")
            insert_row(self.conn, "donors", donor_to_row(donor))
            log_action(self.conn, self.actor, "Register Donor", "donors", donor.id,
                       {"blood_type": donor.blood_type})
        logger.info("Donor %s registered (%s)", donor.id, donor.blood_type)
        return donor

    def record_donation(self, donor_id: str, blood_type: Optional[str] = None,
                        volume: Optional[int] = None, bank_id: Optional[str] = None,
                        bag_id: Optional[str] = None, today: Optional[date] = None) -> BloodUnit:
        """
        Turn a collection into a bag on the ledger and mark the donor as
        having just donated. Both writes commit together.
        """
        today = parse_date(today)
        with tx(self.conn):
            donor = self.get(donor_id)
            bt = blood_type or donor.blood_type
            if bt != donor.blood_type:
                raise ValidationError(f"Donor {donor_id} is {donor.blood_type}, not {bt}")
            unit = self.ledger.add_unit(coerce(BloodUnit, {
                "id": bag_id or new_id("BAG"),
                "type": bt,
                "volume": volume or DEFAULT_VOLUME_ML[bt],
                "collection_date": today,
                "expiry_date": derive_expiry(bt, today),
                "source": f"Donation: {donor_id}",
                "bank_id": bank_id,
            }))
            self.conn.execute(
                "UPDATE donors SET last_donation = ?, is_available = 0, last_bag_id = ?, "
                "donation_count = donation_count + 1 WHERE id = ?",
                (today.isoformat(), unit.id, donor_id)
            )
            log_action(self.conn, self.actor, "Record Donation", "donors", donor_id,
                       {"bag_id": unit.id, "blood_type": bt, "volume": unit.volume})
        logger.info("Donation by %s recorded as %s", donor_id, unit.id)
        return unit
