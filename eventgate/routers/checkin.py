from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from ..checkin import check_in_by_token
from ..deps import client_ip, get_db, user_agent
from ..rate_limit import CHECK_IN, get_rate_limiter
from ..schemas import CheckedInRegistration, CheckInRequest, CheckInResponse


router = APIRouter(tags=["check-in"])


@router.post("/check-in", response_model=CheckInResponse)
def check_in(
    payload: CheckInRequest,
    request: Request,
    x_device_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    outcome = check_in_by_token(
        db,
        payload.token,
        device_id=(x_device_id or payload.device_id or "").strip() or None,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        limiter=get_rate_limiter(CHECK_IN),
    )
    return CheckInResponse(
        message=outcome.message,
        already_checked_in=outcome.already_checked_in,
        registration=CheckedInRegistration.model_validate(outcome.registration),
    )
