"""
Pure geometry for image transforms.

Every function takes the original width/height plus transform options and
returns a `TransformDescriptor`; nothing here touches pixels or the disk.
"""

from __future__ import annotations

import math
from typing import Optional

from uploadkit.domain.errors import InvalidGeometry, InvalidOptions
from uploadkit.domain.models import Anchor, FlipAxis, Rect, TransformDescriptor
from uploadkit.services.size_policy import round_half_up


def _require_positive(*dimensions: int) -> None:
    for value in dimensions:
        if value is None or value <= 0:
            raise InvalidGeometry(f"Dimensions must be positive, got {dimensions}")


def _full_frame(width: int, height: int, new_width: int, new_height: int, append: str) -> TransformDescriptor:
    _require_positive(new_width, new_height)
    return TransformDescriptor(
        source=Rect(0, 0, width, height),
        dest=Rect(0, 0, new_width, new_height),
        width=new_width,
        height=new_height,
        append=append,
    )


def resize(
    width: int,
    height: int,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
    expand: bool = False,
    aspect: bool = True,
) -> TransformDescriptor:
    """
    Fit the image into `max_width` x `max_height`.

    With a single bound the other side follows the aspect ratio. With both
    bounds and `aspect`, the smaller scale factor wins. Unless `expand` is
    set, asking for more than the original on either side keeps the original
    dimensions.
    """
    _require_positive(width, height)
    if not max_width and not max_height:
        raise InvalidOptions("Resize needs a width, a height or both")
    for bound in (max_width, max_height):
        if bound is not None and bound <= 0:
            raise InvalidGeometry(f"Resize bounds must be positive, got {bound}")

    if not expand and ((max_width or 0) > width or (max_height or 0) > height):
        new_width, new_height = width, height
    elif max_width and not max_height:
        new_width = max_width
        new_height = (height / width) * max_width
    elif max_height and not max_width:
        new_width = (width / height) * max_height
        new_height = max_height
    elif aspect:
        width_scale = max_width / width
        height_scale = max_height / height
        if width_scale < height_scale:
            new_width = max_width
            new_height = (height * new_width) / width
        elif width_scale > height_scale:
            new_height = max_height
            new_width = (new_height * width) / height
        else:
            new_width, new_height = max_width, max_height
    else:
        new_width, new_height = max_width, max_height

    new_width = round_half_up(new_width)
    new_height = round_half_up(new_height)
    return _full_frame(width, height, new_width, new_height, f"_resized_{new_width}x{new_height}")


def scale(width: int, height: int, percent: float = 0.5) -> TransformDescriptor:
    """Multiply both sides by `percent`, rounding each independently."""
    _require_positive(width, height)
    if percent is None or percent <= 0:
        raise InvalidOptions(f"Scale percent must be positive, got {percent}")

    new_width = round_half_up(width * percent)
    new_height = round_half_up(height * percent)
    return _full_frame(width, height, new_width, new_height, f"_scaled_{new_width}x{new_height}")


def crop(
    width: int,
    height: int,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    anchor: Anchor = Anchor.CENTER,
) -> TransformDescriptor:
    """
    Resize to cover the target box, then cut the box out at `anchor`.

    Without a target the crop is a square of the shorter side. The source
    window is expressed in original-image coordinates.
    """
    _require_positive(width, height)
    anchor = Anchor(anchor)

    if target_width and target_height:
        box_width, box_height = target_width, target_height
    elif target_width or target_height:
        side = target_width or target_height
        box_width = box_height = side
    else:
        box_width = box_height = min(width, height)
    _require_positive(box_width, box_height)

    # Intermediate resize covering the box; the window is the box mapped back.
    factor = max(box_width / width, box_height / height)
    src_width = min(width, round_half_up(box_width / factor))
    src_height = min(height, round_half_up(box_height / factor))
    _require_positive(src_width, src_height)

    excess_x = width - src_width
    excess_y = height - src_height
    if anchor is Anchor.CENTER:
        src_x = math.ceil(excess_x / 2)
        src_y = math.ceil(excess_y / 2)
    elif anchor in (Anchor.BOTTOM, Anchor.RIGHT):
        src_x, src_y = excess_x, excess_y
    else:
        src_x = src_y = 0

    return TransformDescriptor(
        source=Rect(src_x, src_y, src_width, src_height),
        dest=Rect(0, 0, box_width, box_height),
        width=box_width,
        height=box_height,
        append=f"_cropped_{box_width}x{box_height}",
    )


def flip(width: int, height: int, axis: FlipAxis = FlipAxis.VERTICAL) -> TransformDescriptor:
    """Mirror the image along `axis`; dimensions are unchanged."""
    _require_positive(width, height)
    try:
        axis = FlipAxis(axis)
    except ValueError:
        raise InvalidOptions(f"Unknown flip direction: {axis!r}") from None

    short = {FlipAxis.VERTICAL: "vert", FlipAxis.HORIZONTAL: "hor", FlipAxis.BOTH: "both"}[axis]
    return TransformDescriptor(
        source=Rect(0, 0, width, height),
        dest=Rect(0, 0, width, height),
        width=width,
        height=height,
        flip_horizontal=axis in (FlipAxis.HORIZONTAL, FlipAxis.BOTH),
        flip_vertical=axis in (FlipAxis.VERTICAL, FlipAxis.BOTH),
        append=f"_flipped_{short}",
    )
