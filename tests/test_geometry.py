"""
Tests for transform geometry (no pixels involved).
"""

import pytest

from uploadkit.domain.errors import InvalidGeometry, InvalidOptions
from uploadkit.domain.models import Anchor, FlipAxis, Rect
from uploadkit.services import geometry


class TestResize:
    """Fitting images into bounding boxes."""

    def test_single_width_keeps_aspect(self):
        descriptor = geometry.resize(800, 400, 400, None)
        assert (descriptor.width, descriptor.height) == (400, 200)
        assert descriptor.source == Rect(0, 0, 800, 400)
        assert descriptor.dest == Rect(0, 0, 400, 200)
        assert descriptor.append == "_resized_400x200"

    def test_single_height_keeps_aspect(self):
        descriptor = geometry.resize(800, 400, None, 100)
        assert (descriptor.width, descriptor.height) == (200, 100)

    def test_both_bounds_smaller_scale_wins(self):
        descriptor = geometry.resize(800, 400, 200, 200)
        assert (descriptor.width, descriptor.height) == (200, 100)

    def test_both_bounds_without_aspect_stretch(self):
        descriptor = geometry.resize(800, 400, 300, 300, aspect=False)
        assert (descriptor.width, descriptor.height) == (300, 300)

    def test_larger_bound_without_expand_keeps_original(self):
        descriptor = geometry.resize(100, 50, 200, None)
        assert (descriptor.width, descriptor.height) == (100, 50)

    def test_larger_bound_with_expand_grows(self):
        descriptor = geometry.resize(2, 2, 4, 4, expand=True)
        assert (descriptor.width, descriptor.height) == (4, 4)
        assert descriptor.source == Rect(0, 0, 2, 2)

    def test_requires_a_bound(self):
        with pytest.raises(InvalidOptions):
            geometry.resize(800, 400)

    def test_rejects_non_positive_bounds(self):
        with pytest.raises(InvalidGeometry):
            geometry.resize(800, 400, -10, None)

    def test_rejects_degenerate_result(self):
        with pytest.raises(InvalidGeometry):
            geometry.resize(1000, 1, 10, None)


class TestScale:
    def test_half(self):
        descriptor = geometry.scale(801, 401, 0.5)
        assert (descriptor.width, descriptor.height) == (401, 201)
        assert descriptor.append == "_scaled_401x201"

    def test_rejects_non_positive_percent(self):
        with pytest.raises(InvalidOptions):
            geometry.scale(10, 10, 0)


class TestCrop:
    """Cover-resize then cut at the anchor."""

    def test_default_crop_is_centered_square(self):
        descriptor = geometry.crop(800, 400)
        assert (descriptor.width, descriptor.height) == (400, 400)
        assert descriptor.source == Rect(200, 0, 400, 400)
        assert descriptor.dest == Rect(0, 0, 400, 400)
        assert descriptor.append == "_cropped_400x400"

    def test_box_maps_back_to_original_coordinates(self):
        descriptor = geometry.crop(800, 400, 100, 100)
        assert (descriptor.width, descriptor.height) == (100, 100)
        assert descriptor.source == Rect(200, 0, 400, 400)

    def test_single_dimension_crops_square(self):
        descriptor = geometry.crop(800, 400, 50)
        assert (descriptor.width, descriptor.height) == (50, 50)

    @pytest.mark.parametrize(
        "anchor, expected_x",
        [(Anchor.LEFT, 0), (Anchor.TOP, 0), (Anchor.RIGHT, 400), (Anchor.BOTTOM, 400)],
    )
    def test_anchor_positions_window(self, anchor, expected_x):
        descriptor = geometry.crop(800, 400, anchor=anchor)
        assert descriptor.source.x == expected_x
        assert descriptor.source.y == 0

    def test_portrait_center_anchor(self):
        descriptor = geometry.crop(300, 601)
        assert descriptor.source == Rect(0, 151, 300, 300)


class TestFlip:
    @pytest.mark.parametrize(
        "axis, horizontal, vertical, label",
        [
            (FlipAxis.VERTICAL, False, True, "_flipped_vert"),
            (FlipAxis.HORIZONTAL, True, False, "_flipped_hor"),
            (FlipAxis.BOTH, True, True, "_flipped_both"),
        ],
    )
    def test_axes(self, axis, horizontal, vertical, label):
        descriptor = geometry.flip(20, 10, axis)
        assert (descriptor.width, descriptor.height) == (20, 10)
        assert descriptor.flip_horizontal is horizontal
        assert descriptor.flip_vertical is vertical
        assert descriptor.append == label

    def test_unknown_axis(self):
        with pytest.raises(InvalidOptions):
            geometry.flip(20, 10, "diagonal")
