from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps import client_ip, get_db, user_agent
from ..errors import InternalError, ValidationError
from ..models import Registration
from ..rate_limit import REGISTRATION, get_rate_limiter
from ..schemas import RegistrationCreate, RegistrationCreated
from ..tokens import generate_token, qr_image_url, ticket_url


router = APIRouter(tags=["registration"])
logger = logging.getLogger(__name__)

TOKEN_ATTEMPTS = 3


def _phone_taken(db: Session, phone_number: str) -> bool:
    return db.execute(select(Registration.id).where(Registration.phone_number == phone_number)).first() is not None


@router.post("/register", response_model=RegistrationCreated)
def register(payload: RegistrationCreate, request: Request, db: Session = Depends(get_db)):
    ip = client_ip(request)
    get_rate_limiter(REGISTRATION).enforce(ip, "Too many attempts. Please try again later.")

    if _phone_taken(db, payload.phone_number):
        raise ValidationError("Phone number already registered")

    for attempt in range(1, TOKEN_ATTEMPTS + 1):
        registration = Registration(
            id=str(uuid.uuid4()),
            token=generate_token(),
            full_name=payload.full_name,
            company_name=payload.company_name,
            phone_number=payload.phone_number,
            note=payload.note,
            registration_ip=ip,
            user_agent=user_agent(request),
        )
        db.add(registration)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            # Phone uniqueness can also be violated by a concurrent registration
            if _phone_taken(db, payload.phone_number):
                raise ValidationError("Phone number already registered")
            logger.warning("token collision on registration attempt=%s", attempt)
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("registration insert failed")
            raise InternalError("Registration failed", details=str(exc)) from exc

        logger.info("registered id=%s ip=%s", registration.id, ip)
        return RegistrationCreated(
            message="Registration successful",
            id=registration.id,
            token=registration.token,
            qr_code=qr_image_url(registration.token),
            ticket_url=ticket_url(registration.token),
        )

    raise InternalError("Could not allocate a unique ticket token")
