from __future__ import annotations

"""
Kiosk QR scanner.

Captures camera frames, decodes QR codes inside a fixed scan window and posts
one check-in per decoded ticket. The loop is single threaded: ``tick()`` does at
most one capture+decode, and a processing guard blocks new triggers until the
cooldown after a check-in has elapsed.
"""

import argparse
import enum
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple
from urllib.parse import urlsplit

import cv2
import httpx
import numpy as np

from .config import get_settings
from .observability import setup_logging
from .qr import decode_qr


logger = logging.getLogger(__name__)

NOT_DETECTED_MESSAGE = "QR code not detected"


class CameraUnavailable(RuntimeError):
    pass


class Camera(Protocol):
    def read(self) -> Tuple[bool, Optional[np.ndarray]]: ...

    def release(self) -> None: ...


def open_camera(index: int = 0, width: int = 1920, height: int = 1080) -> Camera:
    capture = cv2.VideoCapture(index)
    if not capture.isOpened():
        capture.release()
        raise CameraUnavailable(f"Unable to open camera {index}. Check that camera access is permitted.")
    capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    return capture


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class ScanLayout:
    """Size of the rendered video and the scan window inside it, in display units."""

    display_width: float
    display_height: float
    window: Rect

    @classmethod
    def centered(cls, display_width: float, display_height: float, fraction: float = 0.6) -> "ScanLayout":
        side = min(display_width, display_height) * fraction
        window = Rect((display_width - side) / 2, (display_height - side) / 2, side, side)
        return cls(display_width, display_height, window)


def scan_region(frame_width: int, frame_height: int, layout: ScanLayout) -> Tuple[int, int, int, int]:
    """Map the on-screen scan window to native frame pixels as ``(x, y, width, height)``.

    The display may be scaled relative to the camera resolution; the result is
    clamped to the frame.
    """
    scale_x = frame_width / layout.display_width
    scale_y = frame_height / layout.display_height
    left = layout.window.x * scale_x
    top = layout.window.y * scale_y
    right = left + layout.window.width * scale_x
    bottom = top + layout.window.height * scale_y

    x0 = max(0, int(round(left)))
    y0 = max(0, int(round(top)))
    x1 = min(frame_width, int(round(right)))
    y1 = min(frame_height, int(round(bottom)))
    return x0, y0, max(0, x1 - x0), max(0, y1 - y0)


def extract_token(payload: str) -> str:
    """Ticket token from a decoded payload: the last URL path segment, or the payload itself."""
    payload = payload.strip()
    if "/" not in payload:
        return payload
    path = urlsplit(payload).path or payload
    return path.rstrip("/").rsplit("/", 1)[-1]


def new_device_id() -> str:
    return "device_" + secrets.token_hex(6)


@dataclass
class ScanResult:
    status: str  # success | already_checked_in | error
    message: str
    name: Optional[str] = None
    company: Optional[str] = None
    checked_in_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status != "error"

    @property
    def already_checked_in(self) -> bool:
        return self.status == "already_checked_in"

    @classmethod
    def failure(cls, message: str = NOT_DETECTED_MESSAGE) -> "ScanResult":
        return cls(status="error", message=message or NOT_DETECTED_MESSAGE)

    @classmethod
    def from_response(cls, status_code: int, data: dict) -> "ScanResult":
        if status_code >= 400 or data.get("success") is False:
            return cls.failure(data.get("message") or NOT_DETECTED_MESSAGE)
        registration = data.get("registration") or {}
        return cls(
            status="already_checked_in" if data.get("alreadyCheckedIn") else "success",
            message=data.get("message") or "Check-in successful",
            name=registration.get("fullName"),
            company=registration.get("companyName"),
            checked_in_at=registration.get("checkedInAt"),
        )


class CheckInClient:
    """Posts decoded tokens to the check-in endpoint; every failure becomes a ScanResult."""

    def __init__(
        self,
        base_url: str = "",
        device_id: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ) -> None:
        self.device_id = device_id or new_device_id()
        self._owns_http = http is None
        self._http = http if http is not None else httpx.Client(base_url=base_url, timeout=timeout)

    def check_in(self, token: str) -> ScanResult:
        try:
            response = self._http.post("/check-in", json={"token": token}, headers={"X-Device-Id": self.device_id})
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("check-in request failed: %s", exc)
            return ScanResult.failure()
        if not isinstance(data, dict):
            return ScanResult.failure()
        return ScanResult.from_response(response.status_code, data)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()


class ScannerState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    STOPPED = "stopped"


class Scanner:
    def __init__(
        self,
        client: CheckInClient,
        camera_factory: Callable[[], Camera] = open_camera,
        layout: Optional[ScanLayout] = None,
        window_fraction: float = 0.6,
        cooldown_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        on_result: Optional[Callable[[ScanResult], None]] = None,
    ) -> None:
        self.client = client
        self.layout = layout
        self.window_fraction = window_fraction
        self.cooldown_seconds = cooldown_seconds
        self.on_result = on_result
        self._camera_factory = camera_factory
        self._clock = clock
        self._camera: Optional[Camera] = None
        self._resume_at: Optional[float] = None

        self.state = ScannerState.IDLE
        # single-slot guard against re-entrant check-in triggers
        self.processing = False
        self.last_result: Optional[ScanResult] = None

    @property
    def has_camera(self) -> bool:
        return self._camera is not None

    def start(self) -> bool:
        if self.state is ScannerState.SCANNING:
            return True
        if self._camera is None:
            try:
                self._camera = self._camera_factory()
            except CameraUnavailable as exc:
                logger.error("scanner error: %s", exc)
                self.state = ScannerState.IDLE
                return False
        self.state = ScannerState.SCANNING
        return True

    def stop(self) -> None:
        """Release the camera and cancel any pending resume. Safe to call repeatedly."""
        self._release_camera()
        self._resume_at = None
        self.processing = False
        self.state = ScannerState.STOPPED

    def _release_camera(self) -> None:
        camera, self._camera = self._camera, None
        if camera is not None:
            camera.release()

    def resume(self) -> bool:
        self.last_result = None
        self._resume_at = None
        self.processing = False
        self.state = ScannerState.IDLE
        return self.start()

    def dismiss(self) -> bool:
        """Close the result early and resume scanning."""
        if self.state is not ScannerState.PROCESSING:
            return self.state is ScannerState.SCANNING
        return self.resume()

    def tick(self) -> Optional[ScanResult]:
        if self.state is ScannerState.PROCESSING:
            if self._resume_at is not None and self._clock() >= self._resume_at:
                self.resume()
            return None
        if self.state is not ScannerState.SCANNING or self._camera is None:
            return None

        ok, frame = self._camera.read()
        if not ok or frame is None:
            return None
        payload = self._decode(frame)
        if payload is None:
            return None
        return self._handle(payload)

    def _decode(self, frame: np.ndarray) -> Optional[str]:
        height, width = frame.shape[:2]
        layout = self.layout or ScanLayout.centered(width, height, self.window_fraction)
        x, y, w, h = scan_region(width, height, layout)
        if w == 0 or h == 0:
            return None
        return decode_qr(frame[y : y + h, x : x + w])

    def _handle(self, payload: str) -> Optional[ScanResult]:
        if self.processing:
            return None
        self.processing = True
        self.state = ScannerState.PROCESSING
        self._release_camera()

        result = ScanResult.failure()
        try:
            token = extract_token(payload)
            logger.info("qr detected token=%s", token)
            result = self.client.check_in(token)
        except Exception:
            logger.exception("check-in dispatch failed")
        finally:
            self.last_result = result
            self._resume_at = self._clock() + self.cooldown_seconds

        if self.on_result is not None:
            self.on_result(result)
        return result

    def run(self, frame_interval: float = 1 / 30, max_ticks: Optional[int] = None, sleep: Callable[[float], None] = time.sleep) -> None:
        if not self.start():
            return
        ticks = 0
        try:
            while self.state is not ScannerState.STOPPED:
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                if self.state is ScannerState.IDLE:
                    # camera could not be re-acquired after a cooldown
                    break
                sleep(frame_interval)
        except KeyboardInterrupt:
            logger.info("scanner interrupted")
        finally:
            self.stop()


def _log_result(result: ScanResult) -> None:
    if result.status == "success":
        logger.info("welcome %s (%s)", result.name, result.company)
    elif result.already_checked_in:
        logger.info("%s", result.message)
    else:
        logger.warning("%s", result.message)


def main(argv: Optional[list] = None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Scan ticket QR codes and check attendees in.")
    parser.add_argument("--base-url", default=settings.base_url, help="EventGate server URL")
    parser.add_argument("--camera", type=int, default=settings.scanner_camera_index)
    parser.add_argument("--device-id", default=settings.scanner_device_id)
    parser.add_argument("--cooldown", type=float, default=settings.scanner_cooldown_seconds, help="Seconds before scanning resumes")
    parser.add_argument("--window-fraction", type=float, default=settings.scanner_window_fraction)
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)
    client = CheckInClient(base_url=args.base_url, device_id=args.device_id)
    scanner = Scanner(
        client,
        camera_factory=lambda: open_camera(args.camera),
        window_fraction=args.window_fraction,
        cooldown_seconds=args.cooldown,
        on_result=_log_result,
    )
    logger.info("scanner started device=%s server=%s", client.device_id, args.base_url)
    try:
        scanner.run()
    finally:
        client.close()


if __name__ == "__main__":
    main()
