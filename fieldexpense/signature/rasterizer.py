"""Freehand signature capture and flattening.

Pointer and touch strokes are drawn as connected lines on a transparent
BGRA surface. On confirm the strokes are composited over opaque white,
since PDF embedding does not handle alpha reliably, and encoded as JPEG.
"""

from dataclasses import dataclass
from enum import StrEnum

import cv2
import numpy as np

from fieldexpense.utils.config import SignatureConfig
from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)


class PointerEventType(StrEnum):
    """Input events understood by the signature pad."""

    POINTER_DOWN = "pointerdown"
    POINTER_MOVE = "pointermove"
    POINTER_UP = "pointerup"
    POINTER_LEAVE = "pointerleave"
    TOUCH_START = "touchstart"
    TOUCH_MOVE = "touchmove"
    TOUCH_END = "touchend"


_STROKE_START = {PointerEventType.POINTER_DOWN, PointerEventType.TOUCH_START}
_STROKE_MOVE = {PointerEventType.POINTER_MOVE, PointerEventType.TOUCH_MOVE}
_STROKE_END = {
    PointerEventType.POINTER_UP,
    PointerEventType.POINTER_LEAVE,
    PointerEventType.TOUCH_END,
}


@dataclass
class PointerEvent:
    """A single pointer or touch event in surface coordinates."""

    type: PointerEventType
    x: float = 0.0
    y: float = 0.0


def parse_hex_color(value: str) -> tuple[int, int, int]:
    """Convert ``#rrggbb`` to an OpenCV BGR tuple.

    Args:
        value: Hex color string, with or without the leading ``#``.

    Returns:
        ``(blue, green, red)`` components.

    Raises:
        ValueError: If the string is not a six-digit hex color.
    """
    digits = value.lstrip("#")
    if len(digits) != 6:
        raise ValueError(f"Invalid hex color: {value!r}")
    red, green, blue = (int(digits[i : i + 2], 16) for i in (0, 2, 4))
    return blue, green, red


class SignaturePad:
    """Drawing surface that records a handwritten signature.

    Args:
        config: Surface size, stroke style, and export quality.
    """

    def __init__(self, config: SignatureConfig) -> None:
        self.config = config
        self.width = config.width
        self.height = config.height
        self._color = (*parse_hex_color(config.stroke_color), 255)
        self._layer = np.zeros((self.height, self.width, 4), dtype=np.uint8)
        self._last_point: tuple[int, int] | None = None
        self._drawing = False

    @property
    def is_drawing(self) -> bool:
        return self._drawing

    @property
    def is_empty(self) -> bool:
        """True when no ink has been laid down on the surface."""
        return not bool(self._layer[:, :, 3].any())

    def handle_event(self, event: PointerEvent) -> None:
        """Dispatch a pointer or touch event to the stroke operations."""
        if event.type in _STROKE_START:
            self.begin_stroke(event.x, event.y)
        elif event.type in _STROKE_MOVE:
            self.extend_stroke(event.x, event.y)
        elif event.type in _STROKE_END:
            self.end_stroke()

    def begin_stroke(self, x: float, y: float) -> None:
        self._last_point = self._to_pixel(x, y)
        self._drawing = True

    def extend_stroke(self, x: float, y: float) -> None:
        if not self._drawing or self._last_point is None:
            return
        point = self._to_pixel(x, y)
        cv2.line(
            self._layer,
            self._last_point,
            point,
            self._color,
            thickness=self.config.line_width,
            lineType=cv2.LINE_AA,
        )
        self._last_point = point

    def end_stroke(self) -> None:
        self._drawing = False
        self._last_point = None

    def clear(self) -> None:
        """Erase all strokes, keeping the surface size and stroke style."""
        self._layer[:] = 0
        self.end_stroke()

    def flatten(self) -> np.ndarray:
        """Composite the stroke layer onto an opaque white background.

        Returns:
            BGR image of the same size as the surface.
        """
        # Anti-aliased drawing onto a zeroed layer leaves colors premultiplied.
        alpha = self._layer[:, :, 3:4].astype(np.float32) / 255.0
        strokes = self._layer[:, :, :3].astype(np.float32)
        composite = strokes + 255.0 * (1.0 - alpha)
        return np.clip(composite, 0, 255).astype(np.uint8)

    def export(self) -> bytes:
        """Flatten and encode the signature as JPEG.

        Returns:
            JPEG-encoded signature image.

        Raises:
            RuntimeError: If encoding fails.
        """
        ok, encoded = cv2.imencode(
            ".jpg",
            self.flatten(),
            [cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality],
        )
        if not ok:
            raise RuntimeError("Signature encoding failed")
        logger.info("Exported %dx%d signature", self.width, self.height)
        return encoded.tobytes()

    def _to_pixel(self, x: float, y: float) -> tuple[int, int]:
        return int(round(x)), int(round(y))
