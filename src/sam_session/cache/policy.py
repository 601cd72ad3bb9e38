"""Re-encode decision policy.

Encoding an image region is the expensive step of a SAM query; decoding a
prompt against an existing encoding is cheap. ReencodeDecisionEngine decides,
for each incoming prompt, whether the region held by the engine can be reused
or must be replaced first.

Point prompts are evaluated against a request rectangle: either an explicit
rectangle supplied by the caller (typically the zoomed view) or, when none is
given, the currently usable encoded region. Box prompts use a resolution
check and a containment check instead.

The engine is pure: it never talks to the worker, it only returns a
ReencodeDecision that the session acts on.

Example:
    policy = ReencodeDecisionEngine(image_width=4000, image_height=3000)
    decision = policy.evaluate_points(prompt, region)
    if decision.reencode:
        session.reencode(decision.target)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sam_session.config import (
    ENCODE_MARGIN,
    INSET_MARGIN_FRACTION,
    LOWER_REENCODE_THRESH,
    MAX_ENCODED_AREA_RS,
    OPTIMAL_BBOX_IM_RATIO,
    OVERSIZE_RATIO,
)
from sam_session.errors import ArgumentError
from sam_session.geometry import Rect
from sam_session.prompts import BoxPrompt

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sam_session.cache.region import EncodedRegion
    from sam_session.prompts import PointsPrompt


@dataclass(frozen=True)
class ReencodeDecision:
    """Outcome of a cache evaluation.

    Attributes:
        reencode: Whether the encoding must be replaced before decoding.
        target: Image rectangle to encode when ``reencode`` is True.
        reason: Short explanation, used for logging.
    """

    reencode: bool
    target: Rect | None = None
    reason: str = ""

    @classmethod
    def reuse(cls, reason: str) -> ReencodeDecision:
        """Keep the current encoding."""
        return cls(reencode=False, target=None, reason=reason)

    @classmethod
    def to(cls, target: Rect, reason: str) -> ReencodeDecision:
        """Replace the encoding with ``target``."""
        return cls(reencode=True, target=target, reason=reason)


def points_outside(points: Sequence[tuple[int, int]], rect: Rect) -> list[tuple[int, int]]:
    """Points that do not lie in ``rect`` (edges count as inside)."""
    return [p for p in points if not rect.contains_point(p[0], p[1])]


class ReencodeDecisionEngine:
    """Decides when the engine's encoding has to be replaced.

    Attributes:
        image_width: Width of the source image.
        image_height: Height of the source image.
        encode_margin: Minimum context kept around prompt points, in pixels.
        oversize_ratio: Scale under which an encoding is still fine enough.
        lower_reencode_thresh: Box-to-encoding ratio that triggers a tighter crop.
        bbox_ratio: Target crop-to-box ratio for box re-encodes.
    """

    def __init__(
        self,
        image_width: int,
        image_height: int,
        encode_margin: int = ENCODE_MARGIN,
        oversize_ratio: float = OVERSIZE_RATIO,
        lower_reencode_thresh: int = LOWER_REENCODE_THRESH,
        bbox_ratio: int = OPTIMAL_BBOX_IM_RATIO,
    ) -> None:
        self.image_width = image_width
        self.image_height = image_height
        self.encode_margin = encode_margin
        self.oversize_ratio = oversize_ratio
        self.lower_reencode_thresh = lower_reencode_thresh
        self.bbox_ratio = bbox_ratio

    # -------------------------------------------------------------------------
    # Shared geometry
    # -------------------------------------------------------------------------

    def needed_area(self, points: Sequence[tuple[int, int]], request: Rect) -> Rect:
        """Bounding box of the points plus context, clamped to the image.

        The context on each axis is 10% of the request rectangle's extent
        on that axis, but never less than ``encode_margin``.

        Args:
            points: Prompt points in image coordinates.
            request: Rectangle the prompt was issued in.

        Returns:
            Area the engine needs to see to answer the prompt well.
        """
        bbox = Rect.bounding(points)
        margin_x = max(request.width * 0.1, self.encode_margin)
        margin_y = max(request.height * 0.1, self.encode_margin)

        x0 = int(max(0, bbox.x - margin_x))
        y0 = int(max(0, bbox.y - margin_y))
        x1 = int(min(self.image_width, bbox.right + margin_x))
        y1 = int(min(self.image_height, bbox.bottom + margin_y))
        return Rect.from_corners(x0, y0, x1, y1)

    def is_oversized(self, encoded: Rect, wanted: Rect) -> bool:
        """Whether ``encoded`` is disproportionately larger than ``wanted``.

        Both axes are compared against their own extent.
        """
        return (
            encoded.width * self.oversize_ratio > wanted.width
            or encoded.height * self.oversize_ratio > wanted.height
        )

    def crop_target(self, rect: Rect) -> Rect:
        """Encoding rectangle whose trusted region still covers ``rect``.

        A cropped encoding loses a margin on each side (see
        EncodedRegion.current_region), so the crop is grown by that margin
        and then shifted inside the image. Near the border the grown crop
        keeps its size, and the request's outermost pixels fall in the
        inset unless the crop spans the whole image.
        """
        grow = INSET_MARGIN_FRACTION / (2 * (1 - INSET_MARGIN_FRACTION))
        grow_x = math.ceil(rect.width * grow) + 2
        grow_y = math.ceil(rect.height * grow) + 2
        grown = Rect(
            rect.x - grow_x,
            rect.y - grow_y,
            rect.width + 2 * grow_x,
            rect.height + 2 * grow_y,
        )
        return grown.shifted_inside(self.image_width, self.image_height)

    def _window_around(self, points: Sequence[tuple[int, int]], width: int, height: int) -> Rect:
        """Window of the given size centred on the points, covering their needed area."""
        cx, cy = Rect.bounding(points).center
        window = Rect(int(cx - width / 2), int(cy - height / 2), width, height)
        window = window.shifted_inside(self.image_width, self.image_height)
        needed = self.needed_area(points, window)
        if not window.contains(needed):
            window = window.union(needed).clamped(self.image_width, self.image_height)
        return window

    def _check_in_image(self, points: Sequence[tuple[int, int]]) -> None:
        # last pixel is width - 1; contains_point is inclusive
        pixels = Rect(0, 0, self.image_width - 1, self.image_height - 1)
        outside = points_outside(points, pixels)
        if outside:
            x, y = outside[0]
            raise ArgumentError(f"Point {{x={x}, y={y}}} lies outside the image")

    # -------------------------------------------------------------------------
    # Point prompts
    # -------------------------------------------------------------------------

    def evaluate_points(
        self,
        prompt: PointsPrompt,
        region: EncodedRegion | None,
        request: Rect | None = None,
    ) -> ReencodeDecision:
        """Decide whether a points prompt can use the current encoding.

        Args:
            prompt: Positive and negative points, full-image coordinates.
            region: Current encoding, or None if nothing is encoded yet.
            request: Explicit rectangle the prompt was issued in, if any.

        Returns:
            The decision, with a target rectangle when re-encoding.

        Raises:
            ArgumentError: If a point lies outside the explicit rectangle
                or outside the image.
        """
        points = prompt.all_points
        self._check_in_image(points)

        if request is not None:
            outside = points_outside(points, request)
            if outside:
                x, y = outside[0]
                raise ArgumentError(
                    "The rectangle of the area to encode should contain all the points. "
                    f"Point {{x={x}, y={y}}} is out of the region."
                )
            request = request.clamped(self.image_width, self.image_height)
            if request.is_empty:
                raise ArgumentError("The rectangle of the area to encode is empty")

        if region is None:
            if request is None:
                side = MAX_ENCODED_AREA_RS
                window = self._window_around(
                    points, min(side, self.image_width), min(side, self.image_height)
                )
                return ReencodeDecision.to(window, "nothing encoded yet")
            return ReencodeDecision.to(self.crop_target(request), "nothing encoded yet")

        encoded = region.current_region()

        if request is None:
            request = encoded
            if points_outside(points, request):
                # same size as the current extent, so repeated moves never grow it
                window = self._window_around(points, region.width, region.height)
                return self._unless_current(region, window, "points outside the encoded region")

        if encoded.contains(request):
            if not self.is_oversized(encoded, request):
                return ReencodeDecision.reuse("request rectangle already encoded")
            return self._unless_current(
                region, self.crop_target(request), "encoding too coarse for the request rectangle"
            )

        needed = self.needed_area(points, request)
        if encoded.contains(needed) and not self.is_oversized(encoded, needed):
            return ReencodeDecision.reuse("prompt area already encoded")

        return self._unless_current(
            region, self.crop_target(request), "request rectangle not encoded"
        )

    # -------------------------------------------------------------------------
    # Box prompts
    # -------------------------------------------------------------------------

    def clamp_box(self, box: BoxPrompt) -> BoxPrompt:
        """Clip a box to the image pixels.

        Raises:
            ArgumentError: If the box does not overlap the image at all.
        """
        if box.x0 >= self.image_width or box.y0 >= self.image_height or box.x1 < 0 or box.y1 < 0:
            raise ArgumentError(
                f"Box ({box.x0}, {box.y0}, {box.x1}, {box.y1}) lies outside the "
                f"{self.image_width}x{self.image_height} image"
            )
        return BoxPrompt(
            max(0, box.x0),
            max(0, box.y0),
            min(self.image_width - 1, box.x1),
            min(self.image_height - 1, box.y1),
        )

    def needs_more_resolution(self, box: BoxPrompt, region: EncodedRegion | None) -> bool:
        """Whether the box is too small relative to the encoded extent.

        A box more than ``lower_reencode_thresh`` times smaller than the
        encoding on both axes is poorly resolved by the engine, so a tighter
        crop is needed.
        """
        if region is None:
            return True
        return (
            box.width * self.lower_reencode_thresh < region.width
            and box.height * self.lower_reencode_thresh < region.height
        )

    def is_area_encoded(self, box: BoxPrompt, region: EncodedRegion | None) -> bool:
        """Whether all four box corners lie strictly inside the encoded extent.

        On an extent side that coincides with the image border, a corner on
        that border counts as inside.
        """
        if region is None:
            return False
        extent = region.extent

        def within(value: int, low: int, high: int, low_border: bool, high_border: bool) -> bool:
            above = value >= low if low_border else value > low
            below = value <= high if high_border else value < high
            return above and below

        x_borders = (extent.x == 0, extent.right == self.image_width)
        y_borders = (extent.y == 0, extent.bottom == self.image_height)
        return (
            within(box.x0, extent.x, extent.right, *x_borders)
            and within(box.x1, extent.x, extent.right, *x_borders)
            and within(box.y0, extent.y, extent.bottom, *y_borders)
            and within(box.y1, extent.y, extent.bottom, *y_borders)
        )

    def box_target(self, box: BoxPrompt) -> Rect:
        """Crop centred on the box, sized for good resolution with margin."""
        side_x = max(box.width * self.bbox_ratio, box.width + 2 * self.encode_margin)
        side_y = max(box.height * self.bbox_ratio, box.height + 2 * self.encode_margin)
        side_x = min(side_x, self.image_width)
        side_y = min(side_y, self.image_height)

        cx, cy = box.as_rect().center
        target = Rect(int(round(cx - side_x / 2)), int(round(cy - side_y / 2)), side_x, side_y)
        return target.shifted_inside(self.image_width, self.image_height)

    def evaluate_box(self, box: BoxPrompt, region: EncodedRegion | None) -> ReencodeDecision:
        """Decide whether a box prompt can use the current encoding.

        Args:
            box: Box prompt, already clipped to the image.
            region: Current encoding, or None if nothing is encoded yet.

        Returns:
            The decision, with a target rectangle when re-encoding.
        """
        if self.needs_more_resolution(box, region):
            reason = "box too small for the encoded extent"
        elif not self.is_area_encoded(box, region):
            reason = "box not inside the encoded extent"
        else:
            return ReencodeDecision.reuse("box already encoded")

        target = self.box_target(box)
        if region is None:
            return ReencodeDecision.to(target, reason)
        return self._unless_current(region, target, reason)

    @staticmethod
    def _unless_current(region: EncodedRegion, target: Rect, reason: str) -> ReencodeDecision:
        """Skip re-encodes that would reproduce the current encoding."""
        if target == region.extent:
            return ReencodeDecision.reuse(f"{reason}; target already encoded")
        return ReencodeDecision.to(target, reason)
