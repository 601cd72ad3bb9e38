"""Integer rectangles and polygons in image pixel coordinates.

Coordinates follow the image convention: x grows to the right (columns),
y grows downwards (rows), the origin is the top-left pixel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


@dataclass(frozen=True)
class Rect:
    """Axis-aligned integer rectangle.

    Attributes:
        x: Left edge.
        y: Top edge.
        width: Extent along x.
        height: Extent along y.
    """

    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_corners(cls, x0: int, y0: int, x1: int, y1: int) -> Rect:
        """Build a rectangle from its top-left and bottom-right corners."""
        return cls(x0, y0, x1 - x0, y1 - y0)

    @classmethod
    def bounding(cls, points: Iterable[tuple[int, int]]) -> Rect:
        """Smallest rectangle containing all points.

        Raises:
            ValueError: If no points are given.
        """
        xs, ys = [], []
        for px, py in points:
            xs.append(px)
            ys.append(py)
        if not xs:
            raise ValueError("Cannot bound an empty point set")
        return cls.from_corners(min(xs), min(ys), max(xs), max(ys))

    @property
    def right(self) -> int:
        """Right edge (x + width)."""
        return self.x + self.width

    @property
    def bottom(self) -> int:
        """Bottom edge (y + height)."""
        return self.y + self.height

    @property
    def center(self) -> tuple[float, float]:
        """Center point as floats."""
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def is_empty(self) -> bool:
        """True when the rectangle covers no area."""
        return self.width <= 0 or self.height <= 0

    def contains_point(self, px: int, py: int) -> bool:
        """Check point containment, inclusive on every edge."""
        return self.x <= px <= self.right and self.y <= py <= self.bottom

    def contains(self, other: Rect) -> bool:
        """Check that ``other`` lies entirely inside this rectangle."""
        return (
            self.x <= other.x
            and self.y <= other.y
            and self.right >= other.right
            and self.bottom >= other.bottom
        )

    def union(self, other: Rect) -> Rect:
        """Smallest rectangle containing both rectangles."""
        return Rect.from_corners(
            min(self.x, other.x),
            min(self.y, other.y),
            max(self.right, other.right),
            max(self.bottom, other.bottom),
        )

    def clamped(self, image_width: int, image_height: int) -> Rect:
        """Intersect with the image bounds."""
        x0 = max(0, self.x)
        y0 = max(0, self.y)
        x1 = min(image_width, self.right)
        y1 = min(image_height, self.bottom)
        return Rect.from_corners(x0, y0, max(x0, x1), max(y0, y1))

    def shifted_inside(self, image_width: int, image_height: int) -> Rect:
        """Translate into the image bounds, shrinking only if it cannot fit."""
        width = min(self.width, image_width)
        height = min(self.height, image_height)
        x = min(max(0, self.x), image_width - width)
        y = min(max(0, self.y), image_height - height)
        return Rect(x, y, width, height)


@dataclass(frozen=True)
class Polygon:
    """Closed polygon with integer vertices.

    The last vertex implicitly connects back to the first.

    Attributes:
        xs: Vertex x coordinates.
        ys: Vertex y coordinates, same length as ``xs``.
        label: Mask label the polygon was traced from, if any.
    """

    xs: tuple[int, ...]
    ys: tuple[int, ...]
    label: int | None = None

    def __post_init__(self) -> None:
        """Validate that both coordinate lists have the same length."""
        if len(self.xs) != len(self.ys):
            raise ValueError(
                f"Vertex count mismatch: {len(self.xs)} x values, {len(self.ys)} y values"
            )

    @classmethod
    def from_vertices(cls, vertices: Sequence[tuple[int, int]], label: int | None = None) -> Polygon:
        """Build a polygon from (x, y) pairs."""
        return cls(
            xs=tuple(int(v[0]) for v in vertices),
            ys=tuple(int(v[1]) for v in vertices),
            label=label,
        )

    @property
    def num_vertices(self) -> int:
        """Number of vertices."""
        return len(self.xs)

    @property
    def vertices(self) -> list[tuple[int, int]]:
        """Vertices as (x, y) pairs."""
        return list(zip(self.xs, self.ys))

    def translated(self, dx: int, dy: int) -> Polygon:
        """Return a copy shifted by (dx, dy)."""
        return Polygon(
            xs=tuple(x + dx for x in self.xs),
            ys=tuple(y + dy for y in self.ys),
            label=self.label,
        )

    def bounds(self) -> Rect:
        """Bounding rectangle of the vertices."""
        return Rect.bounding(self.vertices)
