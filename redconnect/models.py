"""
Record schemas

Pydantic models for the four stored collections. Rows read back from
sqlite are validated through these, so a malformed row surfaces as an
error at load time instead of a silently defaulted value.
"""
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .constants import (AVAILABLE, PENDING, SOURCE_INTERNAL, canonical_status,
                        derive_expiry)
from .errors import ValidationError

BloodGroup = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
UnitType = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-", "Platelets"]
UnitStatus = Literal["Available", "Allocated", "Dispatched"]
RequestStatus = Literal["Pending", "Allocated", "Dispatched", "Received"]
Urgency = Literal["Critical", "High", "Normal"]


class BloodUnit(BaseModel):
    id: str = Field(..., min_length=1)
    type: UnitType
    volume: int = Field(..., gt=0, description="Volume in ml")
    collection_date: date
    expiry_date: Optional[date] = None
    status: UnitStatus = AVAILABLE
    source: str = SOURCE_INTERNAL
    bank_id: Optional[str] = None

    @model_validator(mode="after")
    def _fill_expiry(self):
        if self.expiry_date is None:
            self.expiry_date = derive_expiry(self.type, self.collection_date)
        elif self.expiry_date < self.collection_date:
            raise ValueError("expiry_date precedes collection_date")
        return self


class Coordinates(BaseModel):
    lat: float
    lng: float


class EmergencyRequest(BaseModel):
    id: str = Field(..., min_length=1)
    patient_name: str
    admission_number: Optional[str] = None
    blood_type: BloodGroup
    units_needed: int = Field(..., ge=1)
    urgency: Urgency = "Normal"
    is_platelet_request: bool = False
    hospital: str
    location: str = ""
    contact: str = ""
    coordinates: Optional[Coordinates] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now().replace(microsecond=0))
    status: RequestStatus = PENDING
    allocated_unit_ids: List[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _fold_legacy_status(cls, v):
        # 'Fulfilled' and 'Received' mean the same terminal state
        return canonical_status(v) if isinstance(v, str) else v


class Donor(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    age: Optional[int] = Field(None, ge=16, le=80)
    blood_type: BloodGroup
    phone: str = ""
    email: Optional[str] = None
    last_donation: Optional[date] = None
    is_available: bool = True
    last_bag_id: Optional[str] = None
    donation_count: int = Field(0, ge=0)


class QueuedAction(BaseModel):
    seq: Optional[int] = None
    action: str
    payload: List = Field(default_factory=list)
    queued_at: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None


def coerce(model, data):
    """Model instance from caller input; bad input is a ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e
