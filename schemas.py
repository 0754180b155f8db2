"""
Request and response schemas for the LabPilot back-office API

Documents are stored in MongoDB under the collection names listed in database.py.
Field names follow the camelCase used by the existing frontend and database.
"""
import math
from enum import Enum
from typing import Any, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, create_model, field_validator, model_validator

FIELD_LABELS = {
    "name": "Name",
    "contactNumber": "Contact number",
    "username": "Username",
    "mobileNumber": "Mobile number",
    "patientName": "Patient name",
}


def _required_text(value: Any, field: str) -> str:
    value = "" if value is None else str(value).strip()
    if not value:
        raise ValueError(f"{FIELD_LABELS.get(field, field)} is required")
    return value


def _coerce_price(value: Any) -> Optional[float]:
    """
    Parse a price the way the frontend sends it: numbers or numeric strings.

    Returns None when the value is not a number. Infinity and NaN parse but
    are rejected, since they cannot be stored or serialized as JSON.
    """
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price):
        raise ValueError("Invalid price value")
    return price


# Referrers

class CommissionType(str, Enum):
    flat = "flat"
    percentage = "percentage"


def commission_error(commission_type: Optional[str], value: Optional[float]) -> Optional[str]:
    """Return why a commission type/value pair is invalid, or None."""
    if value is None:
        return None
    if commission_type == CommissionType.percentage.value and not 0 <= value <= 100:
        return "Percentage must be between 0 and 100"
    if value < 0:
        return "Commission value cannot be negative"
    return None


class ReferrerBase(BaseModel):
    model_config = ConfigDict(use_enum_values=True, allow_inf_nan=False)

    @model_validator(mode="after")
    def check_commission(self):
        error = commission_error(self.commissionType, self.commissionValue)
        if error:
            raise ValueError(error)
        return self


class ReferrerIn(ReferrerBase):
    name: str = Field("", validate_default=True)
    contactNumber: str = Field("", validate_default=True)
    commissionType: CommissionType = Field(CommissionType.flat, validate_default=True)
    commissionValue: float = 0
    email: Optional[EmailStr] = None
    isActive: bool = True

    @field_validator("name", "contactNumber")
    @classmethod
    def not_blank(cls, v, info):
        return _required_text(v, info.field_name)


class ReferrerUpdate(ReferrerBase):
    name: Optional[str] = None
    contactNumber: Optional[str] = None
    commissionType: Optional[CommissionType] = None
    commissionValue: Optional[float] = None
    email: Optional[EmailStr] = None
    isActive: Optional[bool] = None

    @field_validator("name", "contactNumber")
    @classmethod
    def not_blank(cls, v, info):
        if v is None:
            return v
        return _required_text(v, info.field_name)


# Staff

class Permission(str, Enum):
    createInvoice = "createInvoice"
    editInvoice = "editInvoice"
    deleteInvoice = "deleteInvoice"
    cashmemo = "cashmemo"
    uploadReport = "uploadReport"

    @classmethod
    def parse(cls, name: Any) -> Optional["Permission"]:
        try:
            return cls(name)
        except ValueError:
            return None


# One boolean per Permission member, absent flags default to False
Permissions = create_model(
    "Permissions",
    **{p.value: (bool, False) for p in Permission},
)


class StaffIn(BaseModel):
    name: str = Field("", validate_default=True)
    username: str = Field("", validate_default=True)
    mobileNumber: str = Field("", validate_default=True)
    permissions: Permissions = Field(default_factory=Permissions)
    isActive: bool = True

    @field_validator("name", "username", "mobileNumber", mode="before")
    @classmethod
    def not_blank(cls, v, info):
        v = _required_text(v, info.field_name)
        return v.lower() if info.field_name == "username" else v

    @field_validator("permissions", mode="before")
    @classmethod
    def default_permissions(cls, v):
        return {} if v is None else v


class StaffUpdate(BaseModel):
    name: Optional[str] = None
    username: Optional[str] = None
    mobileNumber: Optional[str] = None
    permissions: Optional[Permissions] = None
    isActive: Optional[bool] = None

    @field_validator("name", "username", "mobileNumber")
    @classmethod
    def not_blank(cls, v, info):
        if v is None:
            return v
        v = _required_text(v, info.field_name)
        return v.lower() if info.field_name == "username" else v


class PermissionPatch(BaseModel):
    # Checked by the service so that an unknown permission wins over a bad value
    permission: Optional[str] = None
    value: Any = None


# Test catalog

class TestIn(BaseModel):
    name: str = Field("", validate_default=True)
    testId: Optional[str] = None
    categoryId: Optional[str] = None
    schemaId: Optional[str] = None
    price: float = Field(0, validate_default=True)

    @field_validator("name", mode="before")
    @classmethod
    def name_required(cls, v):
        try:
            return _required_text(v, "name")
        except ValueError:
            raise ValueError("Test name is required") from None

    @field_validator("testId", "categoryId")
    @classmethod
    def object_id_or_none(cls, v, info):
        if not v:
            return None
        if not ObjectId.is_valid(v):
            label = "test" if info.field_name == "testId" else "category"
            raise ValueError(f"Invalid {label} ID format")
        return v

    @field_validator("schemaId")
    @classmethod
    def empty_to_none(cls, v):
        return v or None

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, v):
        price = _coerce_price(v)
        if price is None:
            return 0
        if price < 0:
            raise ValueError("Invalid price value")
        return price


class TestUpdate(BaseModel):
    price: Optional[float] = None
    schemaId: Optional[str] = None

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, v):
        if v is None:
            return v
        price = _coerce_price(v)
        if price is None or price < 0:
            raise ValueError("Invalid price value")
        return price

    @model_validator(mode="after")
    def at_least_one(self):
        if not self.model_fields_set & {"price", "schemaId"}:
            raise ValueError("At least one field (price or schemaId) is required")
        return self


# Invoices

class InvoiceTestIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    testId: str
    name: str
    price: float = 0
    schemaId: Optional[str] = None


class InvoiceIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    patientName: str = Field("", validate_default=True)
    gender: Optional[str] = None
    age: Optional[Union[int, float, str]] = None
    contactNumber: Optional[str] = None
    referredBy: Optional[str] = None
    tests: List[InvoiceTestIn] = Field(..., min_length=1)
    totalAmount: float = 0
    hasReferrerDiscount: bool = False
    referrerDiscountPercentage: float = 0
    priceAfterReferrerDiscount: Optional[float] = None
    hasLabAdjustment: bool = False
    labAdjustmentAmount: float = 0
    finalPrice: float = 0

    @field_validator("patientName", mode="before")
    @classmethod
    def patient_name_required(cls, v):
        return _required_text(v, "patientName")


class InvoiceCreated(BaseModel):
    invoiceId: str
    link: str

