"""Prompt value types accepted by a segmentation session.

A prompt is one of:
- PointsPrompt: positive and negative clicks
- BoxPrompt: a bounding box given by its corners (x0, y0, x1, y1)
- MaskPrompt: a 2D label image, one object per non-zero label

All prompts are immutable and live for a single request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

import numpy as np

from sam_session.errors import ArgumentError
from sam_session.geometry import Rect

if TYPE_CHECKING:
    from collections.abc import Iterable


def _as_points(points: Iterable[Iterable[float]]) -> tuple[tuple[int, int], ...]:
    """Normalize a point sequence to integer (x, y) tuples."""
    result = []
    for point in points:
        coords = tuple(point)
        if len(coords) != 2:
            raise ArgumentError(f"Points must have exactly 2 coordinates, got {coords}")
        result.append((int(coords[0]), int(coords[1])))
    return tuple(result)


@dataclass(frozen=True)
class PointsPrompt:
    """Positive (object) and negative (background) clicks.

    Attributes:
        positive: Points on the object of interest.
        negative: Points on the background.
    """

    positive: tuple[tuple[int, int], ...]
    negative: tuple[tuple[int, int], ...] = ()

    def __post_init__(self) -> None:
        """Normalize coordinates and require at least one point."""
        object.__setattr__(self, "positive", _as_points(self.positive))
        object.__setattr__(self, "negative", _as_points(self.negative))
        if not self.positive and not self.negative:
            raise ArgumentError("A points prompt needs at least one point")

    @property
    def all_points(self) -> tuple[tuple[int, int], ...]:
        """Negative and positive points together."""
        return self.negative + self.positive


@dataclass(frozen=True)
class BoxPrompt:
    """Bounding box prompt, corners inclusive.

    Attributes:
        x0: Left edge.
        y0: Top edge.
        x1: Right edge.
        y1: Bottom edge.
    """

    x0: int
    y0: int
    x1: int
    y1: int

    def __post_init__(self) -> None:
        """Reject boxes whose corners are swapped."""
        if self.x1 < self.x0 or self.y1 < self.y0:
            raise ArgumentError(
                f"Box corners must satisfy x0 <= x1 and y0 <= y1, got "
                f"({self.x0}, {self.y0}, {self.x1}, {self.y1})"
            )

    @property
    def width(self) -> int:
        """Box extent along x."""
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        """Box extent along y."""
        return self.y1 - self.y0

    def as_rect(self) -> Rect:
        """Box as a Rect."""
        return Rect.from_corners(self.x0, self.y0, self.x1, self.y1)

    def translated(self, dx: int, dy: int) -> BoxPrompt:
        """Return the box shifted by (dx, dy)."""
        return BoxPrompt(self.x0 + dx, self.y0 + dy, self.x1 + dx, self.y1 + dy)


@dataclass(frozen=True)
class MaskPrompt:
    """Label image prompt.

    Attributes:
        labels: 2D integer array; 0 is background, every other value
            identifies one object.
    """

    labels: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        """Validate dimensionality and freeze the array."""
        labels = np.asarray(self.labels)
        if labels.ndim == 3 and labels.shape[2] == 1:
            labels = labels[:, :, 0]
        if labels.ndim != 2:
            raise ArgumentError(
                f"Mask prompt must be a 2D single-channel label image, got shape {labels.shape}"
            )
        if labels.dtype == np.bool_:
            labels = labels.astype(np.uint8)
        # fractional labels would collapse to 0 once sent to the worker
        if not np.issubdtype(labels.dtype, np.integer):
            raise ArgumentError(f"Mask prompt labels must be integers, got dtype {labels.dtype}")
        labels = labels.copy()
        labels.flags.writeable = False
        object.__setattr__(self, "labels", labels)

    @property
    def label_values(self) -> list[int]:
        """Sorted distinct non-zero labels."""
        return [int(v) for v in np.unique(self.labels) if v > 0]


Prompt = Union[PointsPrompt, BoxPrompt, MaskPrompt]
