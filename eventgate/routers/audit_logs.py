from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from ..deps import get_db, require_token
from ..models import AuditLog
from ..schemas import AuditLogOut, AuditLogsListResponse


router = APIRouter(prefix="/api", tags=["audit"], dependencies=[Depends(require_token)])


@router.get("/audit_logs.list", response_model=AuditLogsListResponse)
def audit_logs_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    action: Optional[str] = None,
    registration_id: Optional[str] = None,
):
    stmt = select(AuditLog)
    if action and action != "all":
        stmt = stmt.where(AuditLog.action == action)
    if registration_id:
        stmt = stmt.where(AuditLog.registration_id == registration_id)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = db.execute(
        stmt.options(selectinload(AuditLog.registration))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).scalars().all()

    return AuditLogsListResponse(
        items=[_audit_out(log) for log in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


def _audit_out(log: AuditLog) -> AuditLogOut:
    return AuditLogOut(
        id=log.id,
        action=log.action,
        registration_id=log.registration_id,
        registration_name=log.registration.full_name if log.registration else None,
        registration_company=log.registration.company_name if log.registration else None,
        actor=log.actor,
        device_info=log.device_info,
        ip_address=log.ip_address,
        details=log.details,
        created_at=log.created_at,
    )
