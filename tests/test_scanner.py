from __future__ import annotations

import random
import sys
from pathlib import Path
from typing import Optional

import cv2
import httpx
import numpy as np
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from eventgate.main import app
from eventgate.config import get_settings
from eventgate.database import Base, engine
from eventgate.qr import render_qr_png
from eventgate.rate_limit import reset_rate_limiters
from eventgate.scanner import (
    CameraUnavailable,
    CheckInClient,
    Rect,
    ScanLayout,
    Scanner,
    ScannerState,
    extract_token,
    scan_region,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeCamera:
    def __init__(self, frame: np.ndarray) -> None:
        self.frame = frame
        self.released = False
        self.reads = 0

    def read(self):
        self.reads += 1
        return True, self.frame.copy()

    def release(self) -> None:
        self.released = True


class CameraRig:
    """Hands out cameras showing whatever frame is currently in front of the lens."""

    def __init__(self, frame: np.ndarray) -> None:
        self.frame = frame
        self.opened: list[FakeCamera] = []

    def __call__(self) -> FakeCamera:
        camera = FakeCamera(self.frame)
        self.opened.append(camera)
        return camera


def _frame_with_qr(token: Optional[str], width: int = 1280, height: int = 720, offset=(0, 0)) -> np.ndarray:
    frame = np.full((height, width, 3), 255, dtype=np.uint8)
    if token is None:
        return frame
    png = render_qr_png(token, size=400)
    qr = cv2.imdecode(np.frombuffer(png, np.uint8), cv2.IMREAD_COLOR)
    top = (height - 400) // 2 + offset[1]
    left = (width - 400) // 2 + offset[0]
    frame[top : top + 400, left : left + 400] = qr
    return frame


def _phone() -> str:
    return "0878" + "".join(random.choice("0123456789") for _ in range(8))


@pytest.fixture()
def http(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("APP_REGISTRATION_RATE_LIMIT", "1000")
    monkeypatch.setenv("APP_CHECKIN_RATE_LIMIT", "1000")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    reset_rate_limiters()
    Base.metadata.create_all(bind=engine)
    yield TestClient(app)
    get_settings.cache_clear()  # type: ignore[attr-defined]
    reset_rate_limiters()


def _register(http: TestClient, name: str) -> str:
    r = http.post("/register", json={"fullName": name, "companyName": "Kiosk Corp", "phoneNumber": _phone()})
    assert r.status_code == 200, r.text
    return r.json()["token"]


@pytest.mark.parametrize(
    "payload, token",
    [
        ("https://events.example.com/qr/abc-123", "abc-123"),
        ("https://events.example.com/qr/abc-123/", "abc-123"),
        ("https://events.example.com/qr/abc-123?ref=mail", "abc-123"),
        ("  plain-token  ", "plain-token"),
        ("qr/abc", "abc"),
    ],
)
def test_extract_token(payload: str, token: str) -> None:
    assert extract_token(payload) == token


def test_scan_region_scales_display_to_native() -> None:
    # video rendered at half its native resolution
    layout = ScanLayout(640, 360, Rect(212, 72, 216, 216))
    assert scan_region(1280, 720, layout) == (424, 144, 432, 432)


def test_scan_region_clamps_to_frame() -> None:
    layout = ScanLayout(100, 100, Rect(-10, 80, 50, 50))
    assert scan_region(200, 200, layout) == (0, 160, 80, 40)
    outside = ScanLayout(100, 100, Rect(150, 150, 20, 20))
    assert scan_region(200, 200, outside)[2:] == (0, 0)


def test_centered_layout() -> None:
    layout = ScanLayout.centered(1280, 720, fraction=0.5)
    assert layout.window == Rect(460, 180, 360, 360)


def test_scan_check_in_cooldown_and_duplicate(http: TestClient) -> None:
    token = _register(http, "Kiosk Guest")
    rig = CameraRig(_frame_with_qr(token))
    clock = FakeClock()
    results = []
    scanner = Scanner(
        CheckInClient(http=http, device_id="kiosk-7"),
        camera_factory=rig,
        cooldown_seconds=3.0,
        clock=clock,
        on_result=results.append,
    )

    assert scanner.start()
    assert scanner.has_camera
    result = scanner.tick()
    assert result is not None
    assert result.status == "success"
    assert result.name == "Kiosk Guest"
    assert result.company == "Kiosk Corp"
    assert results == [result]

    # single shot: camera released, guard held, no more captures
    assert scanner.state is ScannerState.PROCESSING
    assert scanner.processing is True
    assert rig.opened[0].released is True
    assert not scanner.has_camera
    assert scanner.tick() is None
    assert rig.opened[0].reads == 1

    clock.now += 2.9
    scanner.tick()
    assert scanner.state is ScannerState.PROCESSING

    clock.now += 0.2
    scanner.tick()
    assert scanner.state is ScannerState.SCANNING
    assert scanner.processing is False
    assert scanner.last_result is None
    assert len(rig.opened) == 2

    # same ticket again
    again = scanner.tick()
    assert again is not None
    assert again.already_checked_in is True
    assert again.checked_in_at == result.checked_in_at

    scanner.stop()
    scanner.stop()
    assert scanner.state is ScannerState.STOPPED
    assert all(c.released for c in rig.opened)


def test_no_qr_in_scan_window_keeps_scanning(http: TestClient) -> None:
    token = _register(http, "Edge Case")
    # ticket held at the edge of the frame, outside the centered window
    rig = CameraRig(_frame_with_qr(token, offset=(430, 0)))
    scanner = Scanner(CheckInClient(http=http), camera_factory=rig, clock=FakeClock())
    scanner.start()
    for _ in range(3):
        assert scanner.tick() is None
    assert scanner.state is ScannerState.SCANNING
    assert rig.opened[0].reads == 3
    scanner.stop()


def test_unknown_ticket_shows_error_then_resumes(http: TestClient) -> None:
    rig = CameraRig(_frame_with_qr("not-a-real-token"))
    clock = FakeClock()
    scanner = Scanner(CheckInClient(http=http), camera_factory=rig, cooldown_seconds=1.0, clock=clock)
    scanner.start()
    result = scanner.tick()
    assert result is not None
    assert result.status == "error"
    assert result.message == "Invalid QR code"

    clock.now += 1.0
    scanner.tick()
    assert scanner.state is ScannerState.SCANNING
    assert scanner.processing is False
    scanner.stop()


def test_dismiss_resumes_immediately(http: TestClient) -> None:
    rig = CameraRig(_frame_with_qr("not-a-real-token"))
    scanner = Scanner(CheckInClient(http=http), camera_factory=rig, cooldown_seconds=150, clock=FakeClock())
    scanner.start()
    assert scanner.tick() is not None
    assert scanner.dismiss() is True
    assert scanner.state is ScannerState.SCANNING
    assert scanner.processing is False
    scanner.stop()


def test_network_failure_becomes_error_result() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.Client(base_url="http://gate.local", transport=httpx.MockTransport(refuse))
    rig = CameraRig(_frame_with_qr("abc-123"))
    clock = FakeClock()
    scanner = Scanner(CheckInClient(http=http), camera_factory=rig, cooldown_seconds=3.0, clock=clock)
    scanner.start()
    result = scanner.tick()
    assert result is not None
    assert result.status == "error"
    assert result.message == "QR code not detected"

    clock.now += 3.0
    scanner.tick()
    assert scanner.state is ScannerState.SCANNING


def test_non_json_response_becomes_error_result() -> None:
    http = httpx.Client(
        base_url="http://gate.local",
        transport=httpx.MockTransport(lambda request: httpx.Response(502, text="Bad Gateway")),
    )
    client = CheckInClient(http=http, device_id="kiosk-1")
    result = client.check_in("abc-123")
    assert result.status == "error"


def test_device_id_header_sent() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["device"] = request.headers.get("X-Device-Id")
        seen["body"] = request.read()
        return httpx.Response(
            200,
            json={
                "success": True,
                "message": "Welcome, Ann!",
                "alreadyCheckedIn": False,
                "registration": {"fullName": "Ann", "companyName": "Co", "checkedInAt": "2026-01-01T09:00:00"},
            },
        )

    http = httpx.Client(base_url="http://gate.local", transport=httpx.MockTransport(handler))
    result = CheckInClient(http=http, device_id="kiosk-42").check_in("tok-1")
    assert seen["device"] == "kiosk-42"
    assert b'"token"' in seen["body"] and b"tok-1" in seen["body"]
    assert result.status == "success"
    assert result.name == "Ann"


def test_generated_device_id() -> None:
    client = CheckInClient(base_url="http://gate.local")
    try:
        assert client.device_id.startswith("device_")
    finally:
        client.close()


def test_camera_unavailable_leaves_scanner_idle() -> None:
    def broken():
        raise CameraUnavailable("no camera")

    scanner = Scanner(CheckInClient(base_url="http://gate.local"), camera_factory=broken)
    assert scanner.start() is False
    assert scanner.state is ScannerState.IDLE
    assert scanner.tick() is None
    scanner.run(max_ticks=5, sleep=lambda _: None)
    assert scanner.state is ScannerState.IDLE
    scanner.client.close()


def test_run_loop_stops_and_releases(http: TestClient) -> None:
    token = _register(http, "Loop Guest")
    rig = CameraRig(_frame_with_qr(token))
    results = []
    scanner = Scanner(
        CheckInClient(http=http), camera_factory=rig, cooldown_seconds=0.0, clock=FakeClock(), on_result=results.append
    )
    scanner.run(max_ticks=4, sleep=lambda _: None)
    # tick 1 checks in, tick 2 resumes, tick 3 sees the duplicate, tick 4 resumes
    assert [r.status for r in results] == ["success", "already_checked_in"]
    assert not scanner.has_camera
    assert scanner.state is ScannerState.STOPPED
    assert all(c.released for c in rig.opened)
