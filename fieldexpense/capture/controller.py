"""Still-image capture from a live video stream.

Drives a video source through a flash-assisted capture, crops the region
under the on-screen guide frame, and encodes it as a JPEG suitable for
recognition and later embedding in reports.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import cv2
import numpy as np

from fieldexpense.utils.config import CaptureConfig
from fieldexpense.utils.logger import get_logger

from .geometry import (
    CaptureFrame,
    CropPlan,
    FrameNotReadyError,
    Rect,
    compute_crop,
    default_guide_rect,
)

logger = get_logger(__name__)


class CaptureError(RuntimeError):
    """Raised when a capture attempt cannot produce an image."""


class CameraUnavailableError(RuntimeError):
    """Raised when the camera cannot be opened or access is denied."""


class CaptureState(StrEnum):
    """Lifecycle states of a capture attempt."""

    IDLE = "idle"
    PRIMING = "priming"
    RASTERIZING = "rasterizing"


@dataclass
class CapturedImage:
    """An encoded still produced by the capture controller."""

    data: bytes
    mime_type: str
    width: int
    height: int


class VideoSource(Protocol):
    """Minimal interface of a live video stream."""

    @property
    def supports_torch(self) -> bool: ...

    def read_frame(self) -> np.ndarray | None: ...

    async def set_torch(self, enabled: bool) -> None: ...

    def close(self) -> None: ...


class OpenCVVideoSource:
    """Video source backed by ``cv2.VideoCapture``.

    Args:
        device_index: Camera index to open.
        requested_width: Preferred capture width in pixels.
        requested_height: Preferred capture height in pixels.
    """

    def __init__(
        self,
        device_index: int = 0,
        requested_width: int = 4096,
        requested_height: int = 2160,
    ) -> None:
        self.device_index = device_index
        self.requested_width = requested_width
        self.requested_height = requested_height
        self._capture: cv2.VideoCapture | None = None

    def open(self) -> None:
        """Open the camera and request the preferred resolution.

        Raises:
            CameraUnavailableError: If the device cannot be opened.
        """
        cap = cv2.VideoCapture(self.device_index)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            raise CameraUnavailableError(
                f"Camera {self.device_index} is unavailable or access was denied"
            )
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.requested_width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.requested_height)
        self._capture = cap
        logger.info(
            "Opened camera %d at %dx%d",
            self.device_index,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    @property
    def supports_torch(self) -> bool:
        # OpenCV exposes no torch control for capture devices.
        return False

    def read_frame(self) -> np.ndarray | None:
        if self._capture is None:
            return None
        ret, frame = self._capture.read()
        return frame if ret else None

    async def set_torch(self, enabled: bool) -> None:
        logger.debug(
            "Ignoring torch request (%s) on camera %d", enabled, self.device_index
        )

    def close(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None


def render_crop(frame: np.ndarray, plan: CropPlan) -> np.ndarray:
    """Draw the plan's source rectangle into a raster of the target size.

    Args:
        frame: Full video frame (BGR).
        plan: Crop plan from the geometry transform.

    Returns:
        Raster of shape ``(target_height, target_width, channels)``.
    """
    src = plan.source
    scale_x = plan.target_width / src.width
    scale_y = plan.target_height / src.height
    matrix = np.float32(
        [
            [scale_x, 0.0, -src.x * scale_x],
            [0.0, scale_y, -src.y * scale_y],
        ]
    )
    return cv2.warpAffine(
        frame,
        matrix,
        (plan.target_width, plan.target_height),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_REPLICATE,
    )


class CaptureController:
    """Flash-assisted capture state machine for one video stream.

    A capture moves ``IDLE -> PRIMING -> RASTERIZING -> IDLE``. Calls made
    while a capture is in flight are ignored.

    Args:
        source: Live video stream to capture from.
        config: Capture configuration (oversampling, delays, quality).
        guide_rect: Guide rectangle in viewport units. Defaults to the
            centered guide for the configured viewport.
        on_flash: Optional callback toggled with the on-screen flash overlay.
    """

    def __init__(
        self,
        source: VideoSource,
        config: CaptureConfig,
        guide_rect: Rect | None = None,
        on_flash: Callable[[bool], None] | None = None,
    ) -> None:
        self.source = source
        self.config = config
        self.guide_rect = guide_rect or default_guide_rect(
            config.viewport_width,
            config.viewport_height,
            width_ratio=config.guide_width_ratio,
            height_ratio=config.guide_height_ratio,
            max_width=config.guide_max_width,
            max_height=config.guide_max_height,
        )
        self.on_flash = on_flash
        self._state = CaptureState.IDLE
        self.flash_active = False

    @property
    def state(self) -> CaptureState:
        return self._state

    async def capture(self) -> CapturedImage | None:
        """Capture the region under the guide frame.

        Returns:
            The encoded image, or None if a capture is already running.

        Raises:
            CaptureError: If no frame is ready or rasterization fails.
        """
        if self._state is not CaptureState.IDLE:
            logger.debug("Capture ignored while %s", self._state)
            return None

        self._state = CaptureState.PRIMING
        try:
            await self._set_torch(True)
            self._set_flash_overlay(True)
            await asyncio.sleep(self.config.settle_delay_ms / 1000)

            self._state = CaptureState.RASTERIZING
            return self._rasterize()
        finally:
            await self._set_torch(False)
            self._set_flash_overlay(False)
            self._state = CaptureState.IDLE

    def _rasterize(self) -> CapturedImage:
        frame = self.source.read_frame()
        if frame is None or frame.size == 0:
            raise CaptureError("Video stream has no decoded frame ready")

        video_height, video_width = frame.shape[:2]
        try:
            plan = compute_crop(
                CaptureFrame(
                    video_width=video_width,
                    video_height=video_height,
                    viewport_width=self.config.viewport_width,
                    viewport_height=self.config.viewport_height,
                    guide_rect=self.guide_rect,
                ),
                oversampling=self.config.oversampling,
            )
            raster = render_crop(frame, plan)
            ok, encoded = cv2.imencode(
                ".jpg", raster, [cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality]
            )
        except (FrameNotReadyError, cv2.error) as exc:
            raise CaptureError(f"Rasterization failed: {exc}") from exc

        if not ok:
            raise CaptureError("JPEG encoding failed")

        logger.info(
            "Captured %dx%d still from %dx%d frame",
            plan.target_width,
            plan.target_height,
            video_width,
            video_height,
        )
        return CapturedImage(
            data=encoded.tobytes(),
            mime_type="image/jpeg",
            width=plan.target_width,
            height=plan.target_height,
        )

    async def _set_torch(self, enabled: bool) -> None:
        if not self.source.supports_torch:
            return
        try:
            await self.source.set_torch(enabled)
        except Exception as exc:
            logger.warning("Hardware flash control failed: %s", exc)

    def _set_flash_overlay(self, active: bool) -> None:
        self.flash_active = active
        if self.on_flash is not None:
            self.on_flash(active)


def open_camera(config: CaptureConfig) -> OpenCVVideoSource:
    """Open the configured camera device.

    Args:
        config: Capture configuration naming the device and resolution.

    Returns:
        An opened video source.

    Raises:
        CameraUnavailableError: If the device cannot be opened.
    """
    source = OpenCVVideoSource(
        device_index=config.device_index,
        requested_width=config.requested_width,
        requested_height=config.requested_height,
    )
    source.open()
    return source
