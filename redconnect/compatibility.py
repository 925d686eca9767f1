"""
Blood type compatibility table.

Maps a recipient (requested) blood type to the donor types whose units it
may legally receive. Lists are ordered by preference: the exact type first,
then the other compatible groups, O- last so the universal donor is saved
for when nothing else fits.
"""
import json
import logging
from typing import Dict, List, Optional, Set

from .constants import BLOOD_TYPES

logger = logging.getLogger(__name__)

# Recipient -> ordered compatible donor list (most-preferred first)
COMPATIBILITY: Dict[str, List[str]] = {
    "O-":  ["O-"],
    "O+":  ["O+", "O-"],
    "A-":  ["A-", "O-"],
    "A+":  ["A+", "O+", "A-", "O-"],
    "B-":  ["B-", "O-"],
    "B+":  ["B+", "O+", "B-", "O-"],
    "AB-": ["AB-", "A-", "B-", "O-"],
    "AB+": ["AB+", "A+", "B+", "O+", "AB-", "A-", "B-", "O-"],
}

_active: Dict[str, List[str]] = COMPATIBILITY


def compatible_donors_for(request_type: str) -> Set[str]:
    """Donor groups that can supply a request of `request_type`."""
    if request_type not in _active:
        raise ValueError(f"Invalid blood type: {request_type}")
    return set(_active[request_type])


def preferred_donor_order(request_type: str) -> List[str]:
    if request_type not in _active:
        raise ValueError(f"Invalid blood type: {request_type}")
    return list(_active[request_type])


def compatible_recipients_for(donor_type: str) -> Set[str]:
    if donor_type not in BLOOD_TYPES:
        raise ValueError(f"Invalid blood type: {donor_type}")
    return {rec for rec, donors in _active.items() if donor_type in donors}


def is_compatible(donor_type: str, recipient_type: str) -> bool:
    if recipient_type not in _active:
        return False
    return donor_type in _active[recipient_type]


def validate_matrix(matrix: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """
    Check a recipient -> donors table covers all 8 groups and only names
    known groups. Every group must receive its own type and O-, and AB+
    must receive every group.
    """
    missing = [bt for bt in BLOOD_TYPES if bt not in matrix]
    if missing:
        raise ValueError(f"Compatibility table missing recipients: {', '.join(missing)}")
    clean: Dict[str, List[str]] = {}
    for recipient in BLOOD_TYPES:
        donors = list(matrix[recipient])
        unknown = [d for d in donors if d not in BLOOD_TYPES]
        if unknown:
            raise ValueError(f"Unknown donor types for {recipient}: {', '.join(unknown)}")
        if recipient not in donors:
            raise ValueError(f"{recipient} must be able to receive its own type")
        if "O-" not in donors:
            raise ValueError(f"{recipient} must be able to receive O-")
        clean[recipient] = donors
    if set(clean["AB+"]) != set(BLOOD_TYPES):
        raise ValueError("AB+ must be able to receive every group")
    return clean


def matrix_from_grid(grid: Dict[str, Dict[str, bool]]) -> Dict[str, List[str]]:
    # grid[recipient][donor] -> bool; donor order follows BLOOD_TYPES
    return {rec: [d for d in BLOOD_TYPES if row.get(d)] for rec, row in grid.items()}


def load_matrix(path: str) -> Dict[str, List[str]]:
    """
    Read a compatibility table from JSON. Both shapes are accepted:
    {"A+": ["A+", "O+", ...]} or the 8x8 grid {"A+": {"A+": true, ...}}.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("Compatibility file must hold a JSON object")
    if raw and all(isinstance(v, dict) for v in raw.values()):
        raw = matrix_from_grid(raw)
    return validate_matrix(raw)


def use_matrix(matrix: Optional[Dict[str, List[str]]]) -> None:
    """Install a validated table process-wide; None restores the built-in one."""
    global _active
    _active = validate_matrix(matrix) if matrix is not None else COMPATIBILITY
    logger.info("Compatibility table set (%s)", "custom" if matrix is not None else "built-in")
