from __future__ import annotations

"""Registrations and their append-only audit trail."""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from .database import Base
from .utils import utcnow


class CheckInState(str, enum.Enum):
    """Attendance state of a registration.

    The only legal transition is ``PENDING -> CHECKED_IN``; it is never reversed.
    """

    PENDING = "pending"
    CHECKED_IN = "checked_in"

    def can_transition_to(self, target: "CheckInState") -> bool:
        return (self, target) == CHECK_IN_TRANSITION


CHECK_IN_TRANSITION = (CheckInState.PENDING, CheckInState.CHECKED_IN)


class AuditAction(str, enum.Enum):
    CHECK_IN = "check_in"
    MANUAL_CHECK_IN = "manual_check_in"
    DELETE = "delete"
    EXPORT = "export"


class Registration(Base):
    __tablename__ = "registrations"
    """
    Attendee registration. ``token`` is the opaque ticket id encoded in the QR code.
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=CheckInState.PENDING.value, nullable=False)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    check_in_device_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    registration_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    audit_logs: Mapped[list["AuditLog"]] = relationship("AuditLog", back_populates="registration")

    __table_args__ = (
        CheckConstraint(
            "(status = 'pending' AND checked_in_at IS NULL) OR (status = 'checked_in' AND checked_in_at IS NOT NULL)",
            name="ck_registration_state_timestamp",
        ),
        Index("ix_registrations_status", "status"),
        Index("ix_registrations_checked_in_at", "checked_in_at"),
    )

    @property
    def state(self) -> CheckInState:
        return CheckInState(self.status)

    @property
    def attendance(self) -> bool:
        return self.state is CheckInState.CHECKED_IN

    def __repr__(self) -> str:
        return f"<Registration {self.full_name} ({self.status})>"


class AuditLog(Base):
    __tablename__ = "audit_logs"
    """
    Append-only record of check-ins and admin actions. Survives deletion of the registration.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    registration_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("registrations.id", ondelete="SET NULL"), nullable=True
    )
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    device_info: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    registration: Mapped[Optional[Registration]] = relationship(Registration, back_populates="audit_logs")

    __table_args__ = (
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_registration", "registration_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )
