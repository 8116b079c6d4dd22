"""Guide-frame to video-pixel geometry for document capture.

The live video is displayed at viewport size with an aspect-preserving
cover crop, so the guide rectangle drawn over it must be mapped in two
stages: viewport -> displayed (cover-fit) region -> native video pixels.
"""

from dataclasses import dataclass

from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)


class FrameNotReadyError(RuntimeError):
    """Raised when the video stream has not decoded a frame yet."""


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle with a top-left origin."""

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height


@dataclass(frozen=True)
class CaptureFrame:
    """Dimensions involved in a single capture attempt.

    The guide rectangle is expressed in viewport (CSS) units.
    """

    video_width: int
    video_height: int
    viewport_width: float
    viewport_height: float
    guide_rect: Rect


@dataclass(frozen=True)
class CropPlan:
    """Source region in video pixels and the raster size to draw it into."""

    source: Rect
    target_width: int
    target_height: int


def cover_fit_source(
    video_width: float,
    video_height: float,
    viewport_width: float,
    viewport_height: float,
) -> Rect:
    """Compute the part of the video frame visible under a cover-fit display.

    Args:
        video_width: Native video width in pixels.
        video_height: Native video height in pixels.
        viewport_width: Display width in viewport units.
        viewport_height: Display height in viewport units.

    Returns:
        Visible region in video pixel space. The overflowing dimension is
        centered and clipped; with equal aspect ratios the full frame is
        returned.
    """
    video_aspect = video_width / video_height
    viewport_aspect = viewport_width / viewport_height

    if video_aspect > viewport_aspect:
        width = video_height * viewport_aspect
        return Rect((video_width - width) / 2, 0.0, width, float(video_height))
    if video_aspect < viewport_aspect:
        height = video_width / viewport_aspect
        return Rect(0.0, (video_height - height) / 2, float(video_width), height)
    return Rect(0.0, 0.0, float(video_width), float(video_height))


def default_guide_rect(
    viewport_width: float,
    viewport_height: float,
    width_ratio: float = 0.85,
    height_ratio: float = 0.6,
    max_width: float = 450,
    max_height: float = 600,
) -> Rect:
    """Build the centered on-screen guide rectangle for a viewport.

    Args:
        viewport_width: Viewport width in CSS units.
        viewport_height: Viewport height in CSS units.
        width_ratio: Fraction of the viewport width the guide may occupy.
        height_ratio: Fraction of the viewport height the guide may occupy.
        max_width: Upper bound on the guide width.
        max_height: Upper bound on the guide height.

    Returns:
        Guide rectangle centered in the viewport.
    """
    width = min(viewport_width * width_ratio, max_width)
    height = min(viewport_height * height_ratio, max_height)
    return Rect(
        (viewport_width - width) / 2,
        (viewport_height - height) / 2,
        width,
        height,
    )


def compute_crop(frame: CaptureFrame, oversampling: int = 3) -> CropPlan:
    """Map the guide rectangle onto the native video frame.

    The guide's position and size are taken as fractions of the viewport
    and applied to the cover-fit region, not the raw video dimensions.

    Args:
        frame: Video, viewport, and guide dimensions for this capture.
        oversampling: Multiplier from guide CSS size to output raster size.

    Returns:
        Crop plan with the source rectangle and target raster size.

    Raises:
        FrameNotReadyError: If the video has no decoded frame dimensions.
        ValueError: If the viewport or guide rectangle is degenerate.
    """
    if frame.video_width <= 0 or frame.video_height <= 0:
        raise FrameNotReadyError("Video stream has not produced a frame yet")
    if frame.viewport_width <= 0 or frame.viewport_height <= 0:
        raise ValueError("Viewport dimensions must be positive")

    guide = frame.guide_rect
    if guide.width <= 0 or guide.height <= 0:
        raise ValueError("Guide rectangle must have a positive size")
    if oversampling < 1:
        raise ValueError("Oversampling factor must be at least 1")

    visible = cover_fit_source(
        frame.video_width,
        frame.video_height,
        frame.viewport_width,
        frame.viewport_height,
    )

    x_pct = guide.x / frame.viewport_width
    y_pct = guide.y / frame.viewport_height
    w_pct = guide.width / frame.viewport_width
    h_pct = guide.height / frame.viewport_height

    x = visible.x + x_pct * visible.width
    y = visible.y + y_pct * visible.height
    w = w_pct * visible.width
    h = h_pct * visible.height

    # Float error can push an edge a hair past the frame.
    x = min(max(x, 0.0), float(frame.video_width))
    y = min(max(y, 0.0), float(frame.video_height))
    w = min(w, frame.video_width - x)
    h = min(h, frame.video_height - y)

    plan = CropPlan(
        source=Rect(x, y, w, h),
        target_width=round(guide.width * oversampling),
        target_height=round(guide.height * oversampling),
    )
    logger.debug(
        "Crop plan: video %dx%d, visible %s, source %s, target %dx%d",
        frame.video_width,
        frame.video_height,
        visible,
        plan.source,
        plan.target_width,
        plan.target_height,
    )
    return plan
