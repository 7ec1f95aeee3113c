from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..deps import get_db
from ..models import Registration
from ..qr import render_qr_png
from ..schemas import TicketOut
from ..tokens import qr_image_url


router = APIRouter(tags=["qr"])
logger = logging.getLogger(__name__)

# token -> image mapping never changes
IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def _registration_for(db: Session, token: str) -> Registration:
    if not token or not token.strip():
        raise HTTPException(status_code=400, detail="Token is required")
    registration = db.execute(select(Registration).where(Registration.token == token)).scalar_one_or_none()
    if registration is None:
        raise HTTPException(status_code=404, detail="QR code not found")
    return registration


@router.get("/qr/{token}/image")
def qr_image(token: str, db: Session = Depends(get_db)) -> Response:
    registration = _registration_for(db, token)
    try:
        png = render_qr_png(registration.token)
    except Exception as exc:
        logger.exception("qr render failed token=%s", token)
        raise HTTPException(status_code=500, detail=f"Failed to generate QR code: {exc}") from exc
    return Response(content=png, media_type="image/png", headers={"Cache-Control": IMAGE_CACHE_CONTROL})


@router.get("/qr/{token}", response_model=TicketOut)
def ticket(token: str, db: Session = Depends(get_db)):
    registration = _registration_for(db, token)
    return TicketOut(
        full_name=registration.full_name,
        company_name=registration.company_name,
        status=registration.status,
        attendance=registration.attendance,
        qr_code=qr_image_url(registration.token),
    )
