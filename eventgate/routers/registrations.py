from __future__ import annotations

import logging
import math
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..checkin import apply_check_in
from ..deps import ADMIN_ACTOR, client_ip, get_db, require_token, user_agent
from ..models import AuditAction, AuditLog, CheckInState, Registration
from ..schemas import (
    APIResponse,
    CheckedInRegistration,
    CheckInResponse,
    RegistrationAction,
    RegistrationOut,
    RegistrationsListResponse,
)


router = APIRouter(prefix="/api", tags=["registrations"], dependencies=[Depends(require_token)])
logger = logging.getLogger(__name__)

SORTABLE = {
    "created_at": Registration.created_at,
    "full_name": Registration.full_name,
    "company_name": Registration.company_name,
    "checked_in_at": Registration.checked_in_at,
}


@router.get("/registrations.list", response_model=RegistrationsListResponse)
def registrations_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=500),
    search: Optional[str] = None,
    status: Optional[Literal["pending", "checked_in"]] = None,
    sort_by: Literal["created_at", "full_name", "company_name", "checked_in_at"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
):
    stmt = select(Registration)
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Registration.full_name).like(pattern),
                func.lower(Registration.company_name).like(pattern),
                Registration.phone_number.like(f"%{search.strip()}%"),
            )
        )
    if status:
        stmt = stmt.where(Registration.status == CheckInState(status).value)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    column = SORTABLE[sort_by]
    order = column.asc() if sort_order == "asc" else column.desc()
    if sort_by == "checked_in_at":
        order = order.nulls_last()
    stmt = stmt.order_by(order, Registration.id).offset((page - 1) * page_size).limit(page_size)
    items = db.execute(stmt).scalars().all()
    return RegistrationsListResponse(
        items=[RegistrationOut.model_validate(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


@router.post("/registrations.delete", response_model=APIResponse)
def registrations_delete(payload: RegistrationAction, request: Request, db: Session = Depends(get_db)):
    registration: Optional[Registration] = db.get(Registration, payload.id)
    if not registration:
        raise HTTPException(status_code=404, detail="Registration not found")

    deleted = {
        "id": registration.id,
        "full_name": registration.full_name,
        "company_name": registration.company_name,
    }
    db.delete(registration)
    db.add(
        AuditLog(
            action=AuditAction.DELETE.value,
            actor=ADMIN_ACTOR,
            ip_address=client_ip(request),
            details={"deleted_registration": deleted},
        )
    )
    db.commit()
    logger.info("deleted registration=%s", deleted["id"])
    return APIResponse(message="Registration deleted successfully")


@router.post("/registrations.check_in", response_model=CheckInResponse)
def registrations_check_in(payload: RegistrationAction, request: Request, db: Session = Depends(get_db)):
    registration: Optional[Registration] = db.get(Registration, payload.id)
    if not registration:
        raise HTTPException(status_code=404, detail="Registration not found")

    details = {"method": "manual"}
    if payload.note:
        details["note"] = payload.note
    outcome = apply_check_in(
        db,
        registration,
        device_id=ADMIN_ACTOR,
        action=AuditAction.MANUAL_CHECK_IN,
        actor=ADMIN_ACTOR,
        device_info=user_agent(request),
        ip_address=client_ip(request),
        details=details,
    )
    return CheckInResponse(
        message=outcome.message,
        already_checked_in=outcome.already_checked_in,
        registration=CheckedInRegistration.model_validate(outcome.registration),
    )
