from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import extract, func, select
from sqlalchemy.orm import Session

from ..deps import get_db, require_token
from ..models import CheckInState, Registration
from ..schemas import DashboardStats, RecentRegistration


router = APIRouter(prefix="/api", tags=["dashboard"], dependencies=[Depends(require_token)])


def _peak_hour(counts: List[int]) -> Optional[int]:
    if not any(counts):
        return None
    return counts.index(max(counts))


def _hour_histogram(db: Session, column) -> List[int]:
    hour = extract("hour", column)
    counts = [0] * 24
    rows = db.execute(select(hour, func.count()).where(column.is_not(None)).group_by(hour)).all()
    for value, count in rows:
        counts[int(value)] = count
    return counts


@router.get("/dashboard.stats", response_model=DashboardStats)
def dashboard_stats(db: Session = Depends(get_db)):
    total = db.execute(select(func.count()).select_from(Registration)).scalar_one()
    checked_in = db.execute(
        select(func.count()).select_from(Registration).where(Registration.status == CheckInState.CHECKED_IN.value)
    ).scalar_one()

    registration_hours = _hour_histogram(db, Registration.created_at)
    check_in_hours = _hour_histogram(db, Registration.checked_in_at)

    recent = db.execute(select(Registration).order_by(Registration.created_at.desc()).limit(5)).scalars().all()

    return DashboardStats(
        total_registrations=total,
        total_checked_in=checked_in,
        total_pending=total - checked_in,
        attendance_rate=round(checked_in / total * 100, 1) if total else 0.0,
        registration_hour_counts=registration_hours,
        check_in_hour_counts=check_in_hours,
        peak_registration_hour=_peak_hour(registration_hours),
        peak_check_in_hour=_peak_hour(check_in_hours),
        recent_registrations=[RecentRegistration.model_validate(r) for r in recent],
    )
