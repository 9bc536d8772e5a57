"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _blank_to_none(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: (None if v == "" else v) for k, v in data.items()}
    return data


# Auth schemas
class LoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class UserResponse(BaseModel):
    username: str
    role: str
    permission: str

    model_config = ConfigDict(from_attributes=True)


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


# Cemetery schemas
class CemeteryResponse(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


# Plot schemas
class PlotCreate(BaseModel):
    # Required fields are checked by the orchestrator so a missing value
    # is a 400 validation error like every other rule.
    cemetery_id: Optional[int] = None
    plot_code: Optional[str] = None
    status: Optional[str] = None
    owner_name: Optional[str] = None
    gender: Optional[str] = None
    payment_date: Optional[date] = None
    row_num: Optional[int] = None
    col_num: Optional[int] = None
    coords: Optional[Any] = None

    @model_validator(mode="before")
    @classmethod
    def blank_is_null(cls, data):
        return _blank_to_none(data)


class PlotUpdate(BaseModel):
    """Every field optional; null or omitted leaves the stored value alone."""
    owner_name: Optional[str] = None
    gender: Optional[str] = None
    status: Optional[str] = None
    payment_date: Optional[date] = None
    row_num: Optional[int] = None
    col_num: Optional[int] = None
    coords: Optional[Any] = None

    @field_validator("payment_date", "row_num", "col_num", mode="before")
    @classmethod
    def blank_is_unset(cls, value):
        return None if value == "" else value


class PlotResponse(BaseModel):
    id: int
    cemetery_id: int
    plot_code: str
    status: str
    owner_name: Optional[str]
    gender: Optional[str]
    payment_date: Optional[date]
    row_num: Optional[int]
    col_num: Optional[int]
    coords: Optional[Any]
    deleted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeleteResponse(BaseModel):
    ok: bool = True


# Deceased record schemas
class DeceasedCreate(BaseModel):
    deceased_full_name: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    date_of_death: Optional[date] = None
    burial_type: Optional[str] = None
    burial_date: Optional[date] = None
    next_of_kin_name: Optional[str] = None
    next_of_kin_relationship: Optional[str] = None
    next_of_kin_phone: Optional[str] = None
    next_of_kin_email: Optional[str] = None
    next_of_kin_address: Optional[str] = None
    undertaker_name: Optional[str] = None
    undertaker_phone: Optional[str] = None
    cause_of_death: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def blank_is_null(cls, data):
        return _blank_to_none(data)


# "" means clear the field; null or omitted means keep it
BlankableDate = Optional[Union[date, Literal[""]]]


class DeceasedUpdate(BaseModel):
    deceased_full_name: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: BlankableDate = None
    date_of_death: BlankableDate = None
    burial_type: Optional[str] = None
    burial_date: BlankableDate = None
    next_of_kin_name: Optional[str] = None
    next_of_kin_relationship: Optional[str] = None
    next_of_kin_phone: Optional[str] = None
    next_of_kin_email: Optional[str] = None
    next_of_kin_address: Optional[str] = None
    undertaker_name: Optional[str] = None
    undertaker_phone: Optional[str] = None
    cause_of_death: Optional[str] = None
    notes: Optional[str] = None


class DeceasedResponse(BaseModel):
    id: int
    plot_id: int
    deceased_full_name: str
    id_number: Optional[str]
    date_of_birth: Optional[date]
    date_of_death: Optional[date]
    burial_type: str
    burial_date: Optional[date]
    next_of_kin_name: Optional[str]
    next_of_kin_relationship: Optional[str]
    next_of_kin_phone: Optional[str]
    next_of_kin_email: Optional[str]
    next_of_kin_address: Optional[str]
    undertaker_name: Optional[str]
    undertaker_phone: Optional[str]
    cause_of_death: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Public / misc schemas
class PublicSearchResult(BaseModel):
    plot_code: str
    status: str
    row_num: Optional[int]
    col_num: Optional[int]
    cemetery_name: str


class PublicConfig(BaseModel):
    appMode: str
    isDemo: bool
    plotsPerCemeteryLimit: int
    emailEnabled: bool


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable reason")

