# file: redconnect/constants.py
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union

# The 8 standard ABO/Rh groups
BLOOD_TYPES: List[str] = ['A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-']

# Platelets are tracked as one undifferentiated pool, not per donor group
PLATELETS = 'Platelets'
UNIT_TYPES: List[str] = BLOOD_TYPES + [PLATELETS]

# ---- Unit (bag) status ----
AVAILABLE = 'Available'
ALLOCATED = 'Allocated'
DISPATCHED = 'Dispatched'
UNIT_STATUSES: List[str] = [AVAILABLE, ALLOCATED, DISPATCHED]

# ---- Request status ----
PENDING = 'Pending'
RECEIVED = 'Received'
FULFILLED = 'Fulfilled'  # legacy alias of RECEIVED
REQUEST_STATUS_ORDER: List[str] = [PENDING, ALLOCATED, DISPATCHED, RECEIVED]
LEGACY_STATUS_ALIASES: Dict[str, str] = {FULFILLED: RECEIVED}

URGENCY_LEVELS: List[str] = ['Critical', 'High', 'Normal']

# Shelf life in days, counted from the collection date
SHELF_LIFE_DAYS: Dict[str, int] = {bt: 35 for bt in BLOOD_TYPES}
SHELF_LIFE_DAYS[PLATELETS] = 5

# Default bag volume in ml
DEFAULT_VOLUME_ML: Dict[str, int] = {bt: 350 for bt in BLOOD_TYPES}
DEFAULT_VOLUME_ML[PLATELETS] = 250

# Provenance labels
SOURCE_INTERNAL = 'Internal Collection'
SOURCE_MANUAL_ADJUSTMENT = 'Manual Adjustment'

# Expiry risk thresholds (days remaining)
CRITICAL_DAYS = 2
WARNING_DAYS = 7


def canonical_status(status: str) -> str:
    return LEGACY_STATUS_ALIASES.get(status, status)


def status_rank(status: str) -> int:
    return REQUEST_STATUS_ORDER.index(canonical_status(status))


def derive_expiry(unit_type: str, collection_date: date) -> date:
    return collection_date + timedelta(days=SHELF_LIFE_DAYS[unit_type])


def iso_now() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def parse_date(value: Union[str, date, None], default: Optional[date] = None) -> date:
    """
    Accept ISO (YYYY-MM-DD) or dd/mm/yyyy. Empty input falls back to `default`
    (today when not given); anything else unparseable raises ValueError.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = (value or "").strip()
    if not s:
        return default or date.today()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date: {value!r}")
