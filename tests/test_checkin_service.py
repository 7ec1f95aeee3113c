from __future__ import annotations

import random
import sys
import threading
import uuid
from pathlib import Path

import pytest
from sqlalchemy import func, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from eventgate.checkin import apply_check_in, check_in_by_token
from eventgate.database import Base, engine, SessionLocal
from eventgate.errors import NotFoundError, RateLimitExceeded, ValidationError
from eventgate.models import AuditAction, AuditLog, CheckInState, Registration
from eventgate.rate_limit import InMemoryRateLimiter
from eventgate.tokens import generate_token


def _phone() -> str:
    return "0812" + "".join(random.choice("0123456789") for _ in range(8))


def _make_registration(db, name: str = "Ada Lovelace") -> Registration:
    registration = Registration(
        id=str(uuid.uuid4()),
        token=generate_token(),
        full_name=name,
        company_name="Analytical Engines",
        phone_number=_phone(),
    )
    db.add(registration)
    db.commit()
    db.refresh(registration)
    return registration


def _audit_count(db, registration_id: str) -> int:
    return db.execute(
        select(func.count()).select_from(AuditLog).where(AuditLog.registration_id == registration_id)
    ).scalar_one()


@pytest.fixture()
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def test_state_machine_has_single_transition() -> None:
    assert CheckInState.PENDING.can_transition_to(CheckInState.CHECKED_IN)
    assert not CheckInState.CHECKED_IN.can_transition_to(CheckInState.PENDING)
    assert not CheckInState.CHECKED_IN.can_transition_to(CheckInState.CHECKED_IN)


def test_first_check_in_transitions_and_audits(db_session) -> None:
    reg = _make_registration(db_session)
    assert reg.state is CheckInState.PENDING and reg.checked_in_at is None

    outcome = check_in_by_token(db_session, reg.token, device_id="kiosk-1", ip_address="10.0.0.5", user_agent="pytest")
    assert outcome.already_checked_in is False
    assert outcome.registration.attendance is True
    assert outcome.registration.checked_in_at is not None
    assert outcome.registration.check_in_device_id == "kiosk-1"
    assert outcome.message.startswith("Welcome")

    logs = db_session.execute(select(AuditLog).where(AuditLog.registration_id == reg.id)).scalars().all()
    assert len(logs) == 1
    assert logs[0].action == AuditAction.CHECK_IN.value
    assert logs[0].ip_address == "10.0.0.5"
    assert logs[0].device_info == "pytest"
    assert logs[0].details == {"method": "qr_scan", "device_id": "kiosk-1"}


def test_repeat_check_in_is_noop_success(db_session) -> None:
    reg = _make_registration(db_session)
    first = check_in_by_token(db_session, reg.token, device_id="kiosk-1", ip_address="10.0.0.5")
    first_at = first.registration.checked_in_at

    second = check_in_by_token(db_session, reg.token, device_id="kiosk-2", ip_address="10.0.0.6")
    assert second.already_checked_in is True
    assert second.registration.checked_in_at == first_at
    assert second.registration.check_in_device_id == "kiosk-1"
    assert "already checked in" in second.message
    assert _audit_count(db_session, reg.id) == 1


def test_transition_guard_follows_state_machine(db_session, monkeypatch: pytest.MonkeyPatch) -> None:
    reg = _make_registration(db_session)
    monkeypatch.setattr(CheckInState, "can_transition_to", lambda self, target: False)

    outcome = apply_check_in(db_session, reg, device_id="kiosk-1")
    assert outcome.already_checked_in is True
    db_session.refresh(reg)
    assert reg.state is CheckInState.PENDING
    assert _audit_count(db_session, reg.id) == 0


def test_device_id_falls_back_to_ip(db_session) -> None:
    reg = _make_registration(db_session)
    outcome = check_in_by_token(db_session, reg.token, device_id=None, ip_address="192.168.1.20")
    assert outcome.registration.check_in_device_id == "192.168.1.20"


def test_unknown_token_is_not_found_without_audit(db_session) -> None:
    before = db_session.execute(select(func.count()).select_from(AuditLog)).scalar_one()
    with pytest.raises(NotFoundError):
        check_in_by_token(db_session, "not-a-real-token", device_id="kiosk-1", ip_address="10.0.0.5")
    after = db_session.execute(select(func.count()).select_from(AuditLog)).scalar_one()
    assert after == before


def test_malformed_token_rejected_before_store_access() -> None:
    # no session at all: validation must fail first
    with pytest.raises(ValidationError):
        check_in_by_token(None, "bad token!", device_id="kiosk-1", ip_address="10.0.0.5")  # type: ignore[arg-type]


def test_rate_limit_checked_before_validation() -> None:
    limiter = InMemoryRateLimiter(1, 60)
    limiter.check("kiosk-9")
    with pytest.raises(RateLimitExceeded):
        check_in_by_token(None, "bad token!", device_id="kiosk-9", ip_address="10.0.0.5", limiter=limiter)  # type: ignore[arg-type]


def test_stale_pending_object_loses_race(db_session) -> None:
    reg = _make_registration(db_session)

    other = SessionLocal()
    try:
        stale = other.get(Registration, reg.id)
        assert stale.state is CheckInState.PENDING
        check_in_by_token(db_session, reg.token, device_id="kiosk-1", ip_address="10.0.0.5")
        # the other session still believes the row is pending
        outcome = apply_check_in(other, stale, device_id="kiosk-2")
        assert outcome.already_checked_in is True
        assert outcome.registration.check_in_device_id == "kiosk-1"
    finally:
        other.close()
    assert _audit_count(db_session, reg.id) == 1


def test_concurrent_duplicate_scans_transition_once(db_session) -> None:
    reg = _make_registration(db_session)
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    errors = []
    lock = threading.Lock()

    def scan(i: int) -> None:
        db = SessionLocal()
        try:
            barrier.wait()
            outcome = check_in_by_token(db, reg.token, device_id=f"kiosk-{i}", ip_address="10.0.0.5")
            with lock:
                outcomes.append((outcome.already_checked_in, outcome.registration.checked_in_at))
        except Exception as exc:  # surfaced through the assertion below
            with lock:
                errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=scan, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(outcomes) == workers
    assert sum(1 for already, _ in outcomes if not already) == 1
    assert len({checked_in_at for _, checked_in_at in outcomes}) == 1
    assert _audit_count(db_session, reg.id) == 1
