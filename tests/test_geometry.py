"""
Unit Tests for the Geometry Engine

This module tests the screen window -> sensor rect mapping:
- Preview scale and letterbox offsets (FIT and FILL)
- Mapping for every effective rotation
- Forward projection round trip
- Clamping and empty crops
- Upright rotation of crops

Usage:
    pytest tests/test_geometry.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from biocapture.frames import FrameGeometry
from biocapture.geometry import (
    CaptureWindow,
    Rect,
    ScaleMode,
    ScreenLayout,
    compute_preview_transform,
    crop_to_rect,
    crop_window,
    map_window_to_sensor_rect,
    project_sensor_rect_to_screen,
    rotate_frame_upright,
)


def assert_rect_close(actual, expected, tol=1.0):
    assert actual.left == pytest.approx(expected.left, abs=tol)
    assert actual.top == pytest.approx(expected.top, abs=tol)
    assert actual.right == pytest.approx(expected.right, abs=tol)
    assert actual.bottom == pytest.approx(expected.bottom, abs=tol)


# ============================================================
# Test FrameGeometry
# ============================================================

class TestFrameGeometry:
    """Tests for the effective rotation and size."""

    def test_effective_rotation(self):
        geometry = FrameGeometry(1920, 1080, sensor_rotation_degrees=90, device_rotation_degrees=0)
        assert geometry.effective_rotation == 90

        geometry = FrameGeometry(1920, 1080, sensor_rotation_degrees=90, device_rotation_degrees=180)
        assert geometry.effective_rotation == 270

        geometry = FrameGeometry(1920, 1080, sensor_rotation_degrees=0, device_rotation_degrees=90)
        assert geometry.effective_rotation == 270

    def test_effective_size_swaps_for_quarter_turns(self):
        assert FrameGeometry(1920, 1080, 90).effective_size == (1080, 1920)
        assert FrameGeometry(1920, 1080, 270).effective_size == (1080, 1920)
        assert FrameGeometry(1920, 1080, 180).effective_size == (1920, 1080)

    def test_invalid_rotation_rejected(self):
        with pytest.raises(ValueError):
            FrameGeometry(640, 480, sensor_rotation_degrees=45)

    def test_invalid_size_rejected(self):
        with pytest.raises(ValueError):
            FrameGeometry(0, 480)


# ============================================================
# Test Preview Transform
# ============================================================

class TestPreviewTransform:
    """Tests for compute_preview_transform()."""

    def test_exact_fit(self):
        geometry = FrameGeometry(1920, 1080, 90)
        transform = compute_preview_transform(Rect.from_size(1080, 1920), geometry)
        assert transform.scale == pytest.approx(1.0)
        assert transform.offset_x == pytest.approx(0.0)
        assert transform.offset_y == pytest.approx(0.0)

    def test_letterbox_wide_image(self):
        """Test that a wider image is fit to the surface width with bars top and bottom."""
        geometry = FrameGeometry(1920, 1080)
        transform = compute_preview_transform(Rect.from_size(960, 960), geometry)
        assert transform.scale == pytest.approx(0.5)
        assert transform.offset_x == pytest.approx(0.0)
        assert transform.offset_y == pytest.approx((960 - 540) / 2)

    def test_fill_crops_wide_image(self):
        """Test that FILL covers the surface and overflows horizontally."""
        geometry = FrameGeometry(1920, 1080)
        transform = compute_preview_transform(Rect.from_size(960, 960), geometry, ScaleMode.FILL)
        assert transform.scale == pytest.approx(960 / 1080)
        assert transform.offset_x < 0
        assert transform.offset_y == pytest.approx(0.0)

    def test_empty_surface_rejected(self):
        with pytest.raises(ValueError):
            compute_preview_transform(Rect(0, 0, 0, 100), FrameGeometry(640, 480))


# ============================================================
# Test Window Mapping
# ============================================================

class TestWindowMapping:
    """Tests for map_window_to_sensor_rect()."""

    def test_portrait_phone_rotation_90(self):
        """Test the 90 degree case: window centred on screen maps to sensor centre, transposed."""
        geometry = FrameGeometry(1920, 1080, sensor_rotation_degrees=90, device_rotation_degrees=0)
        window = CaptureWindow(540, 960, 150, 100)
        rect = map_window_to_sensor_rect(window, (1080, 1920), Rect.from_size(1080, 1920), geometry)

        assert_rect_close(rect, Rect(860, 390, 1060, 690))
        assert rect.width == pytest.approx(200)
        assert rect.height == pytest.approx(300)
        assert rect.center == pytest.approx((960, 540))

    def test_rotation_0_identity(self):
        geometry = FrameGeometry(640, 480)
        window = CaptureWindow(320, 240, 50, 80)
        rect = map_window_to_sensor_rect(window, (640, 480), Rect.from_size(640, 480), geometry)
        assert_rect_close(rect, Rect(270, 160, 370, 320))

    def test_rotation_180_mirrors_position(self):
        geometry = FrameGeometry(640, 480, sensor_rotation_degrees=180)
        window = CaptureWindow(100, 100, 50, 50)
        rect = map_window_to_sensor_rect(window, (640, 480), Rect.from_size(640, 480), geometry)
        assert_rect_close(rect, Rect(490, 330, 590, 430))

    def test_rotation_270_off_centre(self):
        """Test that a window near the top of the screen lands on the sensor's left side."""
        geometry = FrameGeometry(1920, 1080, sensor_rotation_degrees=270)
        window = CaptureWindow(540, 200, 100, 100)
        rect = map_window_to_sensor_rect(window, (1080, 1920), Rect.from_size(1080, 1920), geometry)
        # effective (x, y) -> sensor (W - y, x)
        assert_rect_close(rect, Rect(1620, 440, 1820, 640))

    def test_letterboxed_surface(self):
        """Test that bars around the preview are taken out of the mapping."""
        geometry = FrameGeometry(1920, 1080)
        surface = Rect.from_size(960, 960)
        window = CaptureWindow(480, 480, 100, 100)
        rect = map_window_to_sensor_rect(window, (960, 960), surface, geometry)
        assert_rect_close(rect, Rect(760, 340, 1160, 740))

    def test_overlay_origin_offset(self):
        geometry = FrameGeometry(640, 480)
        surface = Rect.from_size(640, 480, x=100, y=50)
        window = CaptureWindow(320, 240, 20, 20)
        rect = map_window_to_sensor_rect(
            window, (640, 480), surface, geometry, overlay_origin=(100, 50)
        )
        assert_rect_close(rect, Rect(300, 220, 340, 260))

    def test_default_surface_from_geometry(self):
        geometry = FrameGeometry(640, 480, display_width=640, display_height=480)
        window = CaptureWindow(320, 240, 20, 20)
        rect = map_window_to_sensor_rect(window, (640, 480), None, geometry)
        assert_rect_close(rect, Rect(300, 220, 340, 260))

    def test_result_clamped_to_sensor(self):
        """Test that a window overflowing the image is clamped to the sensor bounds."""
        geometry = FrameGeometry(1920, 1080)
        surface = Rect.from_size(960, 960)
        window = CaptureWindow(480, 480, 400, 400)
        rect = map_window_to_sensor_rect(window, (960, 960), surface, geometry)
        assert rect.left >= 0 and rect.top >= 0
        assert rect.right <= 1920 and rect.bottom <= 1080

    def test_window_in_letterbox_bar_is_empty(self):
        """Test that a window entirely inside a letterbox bar gives no valid crop."""
        geometry = FrameGeometry(1920, 1080)
        surface = Rect.from_size(960, 960)
        window = CaptureWindow(480, 60, 400, 40)
        rect = map_window_to_sensor_rect(window, (960, 960), surface, geometry)
        assert rect.is_empty

    def test_window_outside_overlay_is_empty(self):
        geometry = FrameGeometry(640, 480)
        window = CaptureWindow(1000, 1000, 10, 10)
        rect = map_window_to_sensor_rect(window, (640, 480), Rect.from_size(640, 480), geometry)
        assert rect.is_empty

    @pytest.mark.parametrize("rotation", [0, 90, 180, 270])
    @pytest.mark.parametrize("sensor_size", [(1920, 1080), (1080, 1920), (640, 640)])
    def test_round_trip(self, rotation, sensor_size):
        """Test that projecting the sensor rect back lands on the window within 1 px."""
        geometry = FrameGeometry(*sensor_size, sensor_rotation_degrees=rotation)
        surface = Rect.from_size(1080, 1920)
        transform = compute_preview_transform(surface, geometry)
        preview = transform.preview_rect(surface)

        cx, cy = preview.center
        window = CaptureWindow(cx + 20, cy - 35, preview.width / 6, preview.height / 7)
        sensor_rect = map_window_to_sensor_rect(window, (1080, 1920), surface, geometry)
        projected = project_sensor_rect_to_screen(sensor_rect, surface, geometry)

        assert_rect_close(projected, window.to_rect(), tol=1.0)


# ============================================================
# Test Capture Windows and Layouts
# ============================================================

class TestCaptureWindow:
    """Tests for the palm and finger window shapes."""

    def test_palm_square(self):
        window = CaptureWindow.palm((1080, 1920), fraction=0.8)
        assert window.center_x == 540 and window.center_y == 960
        assert window.half_width == pytest.approx(432)
        assert window.half_height == pytest.approx(432)

    def test_finger_stadium(self):
        window = CaptureWindow.finger((1080, 1920), density=2.0, radius_dp=85, straight_dp=80)
        assert window.half_width == pytest.approx(170)
        assert window.half_height == pytest.approx(80 + 170)

    def test_from_normalized(self):
        window = CaptureWindow.from_normalized(0.5, 0.25, 200, 100, (1000, 800))
        assert window.to_rect() == Rect(400, 150, 600, 250)


# ============================================================
# Test Cropping
# ============================================================

class TestCropping:
    """Tests for crop_to_rect(), rotate_frame_upright() and crop_window()."""

    def test_crop_to_rect(self):
        image = np.arange(100 * 200).reshape(100, 200)
        crop = crop_to_rect(image, Rect(10, 20, 60, 40))
        assert crop.shape == (20, 50)
        assert crop[0, 0] == image[20, 10]

    def test_empty_rect_gives_none(self):
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        assert crop_to_rect(image, Rect(0, 0, 0, 0)) is None
        assert crop_to_rect(image, Rect(300, 10, 400, 50)) is None

    @pytest.mark.parametrize("rotation,expected", [
        (0, (100, 200, 3)),
        (90, (200, 100, 3)),
        (180, (100, 200, 3)),
        (270, (200, 100, 3)),
    ])
    def test_rotate_shapes(self, rotation, expected):
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        assert rotate_frame_upright(image, rotation).shape == expected

    def test_rotate_90_is_clockwise(self):
        """Test that the sensor's bottom-left corner becomes the top-left after 90 degrees."""
        image = np.zeros((2, 3), dtype=np.uint8)
        image[1, 0] = 255
        rotated = rotate_frame_upright(image, 90)
        assert rotated[0, 0] == 255

    def test_rotate_invalid(self):
        with pytest.raises(ValueError):
            rotate_frame_upright(np.zeros((4, 4)), 45)

    def test_crop_window_upright(self):
        """Test that a crop of a rotated sensor frame comes out in screen orientation."""
        geometry = FrameGeometry(1920, 1080, sensor_rotation_degrees=90)
        layout = ScreenLayout(CaptureWindow(540, 960, 150, 100), (1080, 1920), Rect.from_size(1080, 1920))
        image = np.zeros((1080, 1920, 3), dtype=np.uint8)

        crop = crop_window(image, layout, geometry)
        assert crop.shape == (200, 300, 3)

    def test_crop_window_none_when_empty(self):
        geometry = FrameGeometry(640, 480)
        layout = ScreenLayout(CaptureWindow(5000, 5000, 10, 10), (640, 480), Rect.from_size(640, 480))
        assert crop_window(np.zeros((480, 640, 3), dtype=np.uint8), layout, geometry) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
