from __future__ import annotations

"""
Check-in transition: Pending -> CheckedIn, applied at most once per registration.

The transition is a single conditional UPDATE guarded on the pending state, so
concurrent scans of the same ticket race on the row, not on a read-then-write
window. Only the request whose UPDATE matched writes the audit entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import InternalError, NotFoundError
from .models import CHECK_IN_TRANSITION, AuditAction, AuditLog, Registration
from .rate_limit import RateLimiter
from .tokens import validate_token
from .utils import utcnow


logger = logging.getLogger(__name__)


@dataclass
class CheckInOutcome:
    registration: Registration
    already_checked_in: bool

    @property
    def message(self) -> str:
        if self.already_checked_in:
            return f"{self.registration.full_name} already checked in"
        return f"Welcome, {self.registration.full_name}!"


def apply_check_in(
    db: Session,
    registration: Registration,
    *,
    device_id: Optional[str],
    action: AuditAction = AuditAction.CHECK_IN,
    actor: Optional[str] = None,
    device_info: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> CheckInOutcome:
    """Move ``registration`` to checked-in unless another request already did."""
    source, target = CHECK_IN_TRANSITION
    if not registration.state.can_transition_to(target):
        return CheckInOutcome(registration, already_checked_in=True)

    checked_in_at = now or utcnow()
    try:
        result = db.execute(
            update(Registration)
            .where(Registration.id == registration.id, Registration.status == source.value)
            .values(status=target.value, checked_in_at=checked_in_at, check_in_device_id=device_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Lost the race: someone else checked this ticket in between our read and write
            db.rollback()
            db.refresh(registration)
            logger.info("duplicate check-in registration=%s device=%s", registration.id, device_id)
            return CheckInOutcome(registration, already_checked_in=True)

        db.add(
            AuditLog(
                action=action.value,
                registration_id=registration.id,
                actor=actor,
                device_info=device_info,
                ip_address=ip_address,
                details=details,
            )
        )
        db.commit()
        db.refresh(registration)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("check-in failed registration=%s", registration.id)
        raise InternalError("Check-in failed", details=str(exc)) from exc

    logger.info("checked in registration=%s device=%s action=%s", registration.id, device_id, action.value)
    return CheckInOutcome(registration, already_checked_in=False)


def check_in_by_token(
    db: Session,
    token: Any,
    *,
    device_id: Optional[str],
    ip_address: str,
    user_agent: Optional[str] = None,
    limiter: Optional[RateLimiter] = None,
) -> CheckInOutcome:
    """QR check-in. Each step is a precondition for the next:

    1. rate limit keyed by device id (source IP when absent)
    2. token shape validation, before touching the store
    3. lookup by token (unknown -> NotFoundError)
    4. already checked in -> success without mutation
    5. conditional update plus one audit entry
    """
    identity = device_id or ip_address
    if limiter is not None:
        limiter.enforce(identity, "Too many scans. Please wait a moment.")

    token = validate_token(token)

    try:
        registration = db.execute(select(Registration).where(Registration.token == token)).scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("registration lookup failed")
        raise InternalError("Check-in failed", details=str(exc)) from exc
    if registration is None:
        logger.info("unknown ticket token presented device=%s", identity)
        raise NotFoundError("Invalid QR code")

    return apply_check_in(
        db,
        registration,
        device_id=identity,
        device_info=user_agent,
        ip_address=ip_address,
        details={"method": "qr_scan", "device_id": identity},
    )
