"""Conversion of worker contour outputs into polygons."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from sam_session.errors import ProtocolError
from sam_session.geometry import Polygon


def _require_list(outputs: Mapping[str, Any], key: str) -> Sequence[Any]:
    value = outputs.get(key)
    if value is None:
        raise ProtocolError(f"Engine output is missing '{key}'")
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ProtocolError(f"Engine output '{key}' must be a list, got {type(value).__name__}")
    return value


def decode_contours(outputs: Mapping[str, Any], origin: tuple[int, int] = (0, 0)) -> list[Polygon]:
    """Build full-image polygons from ``contours_x`` / ``contours_y``.

    Contours are traced in the coordinates of the encoded crop; every vertex
    is shifted by the crop origin.

    Args:
        outputs: Task outputs. ``contour_labels`` is optional.
        origin: (x, y) of the encoded crop in the full image.

    Returns:
        One polygon per contour, in output order.

    Raises:
        ProtocolError: If a coordinate list is missing or the lists disagree
            in length.
    """
    all_x = _require_list(outputs, "contours_x")
    all_y = _require_list(outputs, "contours_y")
    if len(all_x) != len(all_y):
        raise ProtocolError(
            f"Engine returned {len(all_x)} x contours but {len(all_y)} y contours"
        )

    labels = outputs.get("contour_labels")
    if labels is not None and len(labels) != len(all_x):
        raise ProtocolError(
            f"Engine returned {len(labels)} contour labels for {len(all_x)} contours"
        )

    dx, dy = origin
    polygons = []
    for i, (xs, ys) in enumerate(zip(all_x, all_y)):
        if len(xs) != len(ys):
            raise ProtocolError(
                f"Contour {i} has {len(xs)} x coordinates but {len(ys)} y coordinates"
            )
        polygons.append(
            Polygon(
                xs=tuple(int(x) + dx for x in xs),
                ys=tuple(int(y) + dy for y in ys),
                label=int(labels[i]) if labels is not None else None,
            )
        )
    return polygons
