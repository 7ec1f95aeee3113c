from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .utils import is_valid_phone, normalize_phone, sanitize_input


class CamelModel(BaseModel):
    """JSON in camelCase, attributes in snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class APIResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None


# Registration
class RegistrationCreate(CamelModel):
    full_name: str = Field(min_length=2, max_length=255, pattern=r"^[a-zA-Z\s.]+$")
    company_name: str = Field(min_length=2, max_length=255)
    phone_number: str
    note: Optional[str] = Field(default=None, max_length=500)

    @field_validator("full_name", "company_name", mode="before")
    @classmethod
    def _sanitize(cls, value: Any) -> Any:
        return sanitize_input(value) if isinstance(value, str) else value

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        value = value.strip()
        if not is_valid_phone(value):
            raise ValueError("Invalid phone number format (example: 08123456789)")
        return normalize_phone(value)


class RegistrationCreated(APIResponse):
    id: str
    token: str
    qr_code: str
    ticket_url: str


class TicketOut(CamelModel):
    full_name: str
    company_name: str
    status: str
    attendance: bool
    qr_code: str


class RegistrationOut(CamelModel):
    id: str
    full_name: str
    company_name: str
    phone_number: str
    note: Optional[str] = None
    status: str
    attendance: bool
    checked_in_at: Optional[datetime] = None
    check_in_device_id: Optional[str] = None
    created_at: datetime


class RegistrationsListResponse(CamelModel):
    items: List[RegistrationOut]
    total: int
    page: int
    page_size: int
    total_pages: int


class RegistrationAction(CamelModel):
    id: str
    note: Optional[str] = Field(default=None, max_length=500)


# Check-in
class CheckInRequest(CamelModel):
    # Optional so that malformed bodies are reported after the rate-limit check
    token: Optional[Any] = Field(default=None, validation_alias=AliasChoices("token", "qrToken"))
    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceId", "device_id"))


class CheckedInRegistration(CamelModel):
    id: str
    full_name: str
    company_name: str
    checked_in_at: Optional[datetime] = None
    check_in_device_id: Optional[str] = None


class CheckInResponse(APIResponse):
    already_checked_in: bool = False
    registration: Optional[CheckedInRegistration] = None


# Dashboard
class RecentRegistration(CamelModel):
    id: str
    full_name: str
    company_name: str
    attendance: bool
    created_at: datetime
    checked_in_at: Optional[datetime] = None


class DashboardStats(CamelModel):
    total_registrations: int
    total_checked_in: int
    total_pending: int
    attendance_rate: float
    registration_hour_counts: List[int]
    check_in_hour_counts: List[int]
    peak_registration_hour: Optional[int] = None
    peak_check_in_hour: Optional[int] = None
    recent_registrations: List[RecentRegistration]


# Audit log
class AuditLogOut(CamelModel):
    id: int
    action: str
    registration_id: Optional[str] = None
    registration_name: Optional[str] = None
    registration_company: Optional[str] = None
    actor: Optional[str] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime


class AuditLogsListResponse(CamelModel):
    items: List[AuditLogOut]
    total: int
    page: int
    page_size: int
    total_pages: int
