"""Tests for the guide-frame to video-pixel geometry."""

import itertools

import pytest

from fieldexpense.capture.geometry import (
    CaptureFrame,
    FrameNotReadyError,
    Rect,
    compute_crop,
    cover_fit_source,
    default_guide_rect,
)

_VIDEO_SIZES = [(4096, 2160), (1920, 1080), (1080, 1920), (640, 480), (1000, 1000)]
_VIEWPORTS = [(1080, 1920), (1920, 1080), (390, 844), (800, 800)]
_GUIDE_FRACTIONS = [
    (0.0, 0.0, 1.0, 1.0),
    (0.2, 0.1, 0.6, 0.8),
    (0.5, 0.5, 0.5, 0.5),
    (0.05, 0.7, 0.3, 0.3),
]


def _guide(viewport: tuple[int, int], fractions: tuple[float, ...]) -> Rect:
    vw, vh = viewport
    fx, fy, fw, fh = fractions
    return Rect(fx * vw, fy * vh, fw * vw, fh * vh)


class TestCoverFit:
    """Tests for the cover-fit visible region."""

    def test_wider_video_clips_sides(self) -> None:
        visible = cover_fit_source(4096, 2160, 1080, 1920)
        assert visible.width == pytest.approx(1215.0)
        assert visible.x == pytest.approx(1440.5)
        assert visible.y == 0.0
        assert visible.height == 2160

    def test_taller_video_clips_top_and_bottom(self) -> None:
        visible = cover_fit_source(1080, 1920, 1920, 1080)
        assert visible.x == 0.0
        assert visible.width == 1080
        assert visible.height == pytest.approx(607.5)
        assert visible.y == pytest.approx(656.25)

    def test_equal_aspect_is_full_frame(self) -> None:
        visible = cover_fit_source(1920, 1080, 960, 540)
        assert visible == Rect(0.0, 0.0, 1920.0, 1080.0)

    def test_visible_region_keeps_viewport_aspect(self) -> None:
        visible = cover_fit_source(640, 480, 390, 844)
        assert visible.width / visible.height == pytest.approx(390 / 844)


class TestDefaultGuideRect:
    def test_capped_on_large_viewport(self) -> None:
        guide = default_guide_rect(1080, 1920)
        assert guide.width == 450
        assert guide.height == 600
        assert guide.x == pytest.approx((1080 - 450) / 2)
        assert guide.y == pytest.approx((1920 - 600) / 2)

    def test_ratio_on_small_viewport(self) -> None:
        guide = default_guide_rect(390, 844)
        assert guide.width == pytest.approx(390 * 0.85)
        assert guide.height == pytest.approx(844 * 0.6)


class TestComputeCrop:
    """Tests for the two-stage guide mapping."""

    def test_center_guide_on_uhd_stream(self) -> None:
        frame = CaptureFrame(
            video_width=4096,
            video_height=2160,
            viewport_width=1080,
            viewport_height=1920,
            guide_rect=Rect(216, 192, 648, 1536),
        )
        plan = compute_crop(frame, oversampling=3)

        assert plan.source.x == pytest.approx(1683.5)
        assert plan.source.y == pytest.approx(216.0)
        assert plan.source.width == pytest.approx(729.0)
        assert plan.source.height == pytest.approx(1728.0)
        assert plan.source.right <= 4096
        assert plan.source.bottom <= 2160
        assert (plan.target_width, plan.target_height) == (648 * 3, 1536 * 3)

    def test_target_follows_oversampling(self) -> None:
        frame = CaptureFrame(1920, 1080, 1080, 1920, Rect(100, 100, 300, 400))
        plan = compute_crop(frame, oversampling=2)
        assert (plan.target_width, plan.target_height) == (600, 800)

    def test_matching_aspect_uses_raw_percentages(self) -> None:
        frame = CaptureFrame(1920, 1080, 960, 540, Rect(96, 54, 480, 270))
        plan = compute_crop(frame)
        assert plan.source.x == pytest.approx(192.0)
        assert plan.source.y == pytest.approx(108.0)
        assert plan.source.width == pytest.approx(960.0)
        assert plan.source.height == pytest.approx(540.0)

    @pytest.mark.parametrize(
        "video,viewport,fractions",
        list(itertools.product(_VIDEO_SIZES, _VIEWPORTS, _GUIDE_FRACTIONS)),
    )
    def test_source_stays_inside_video(
        self,
        video: tuple[int, int],
        viewport: tuple[int, int],
        fractions: tuple[float, ...],
    ) -> None:
        frame = CaptureFrame(*video, *viewport, _guide(viewport, fractions))
        plan = compute_crop(frame)
        source = plan.source
        assert source.x >= 0
        assert source.y >= 0
        assert source.right <= video[0] + 1e-6
        assert source.bottom <= video[1] + 1e-6
        assert source.width > 0
        assert source.height > 0

    @pytest.mark.parametrize("video", [(0, 0), (0, 1080), (1920, 0)])
    def test_no_frame_is_not_ready(self, video: tuple[int, int]) -> None:
        frame = CaptureFrame(*video, 1080, 1920, Rect(0, 0, 100, 100))
        with pytest.raises(FrameNotReadyError):
            compute_crop(frame)

    def test_degenerate_guide_rejected(self) -> None:
        frame = CaptureFrame(1920, 1080, 1080, 1920, Rect(0, 0, 0, 100))
        with pytest.raises(ValueError):
            compute_crop(frame)

    def test_invalid_oversampling_rejected(self) -> None:
        frame = CaptureFrame(1920, 1080, 1080, 1920, Rect(0, 0, 100, 100))
        with pytest.raises(ValueError):
            compute_crop(frame, oversampling=0)
