"""Polygon tracing of binary masks, run inside the worker.

Contours are returned as parallel x and y coordinate lists, the wire format
read back by sam_session.decoding.decode_contours.
"""

from __future__ import annotations

import cv2
import numpy as np


def polygons_from_binary_mask(
    mask: np.ndarray,
    only_biggest: bool = False,
) -> tuple[list[list[int]], list[list[int]]]:
    """Trace the outer contours of a binary mask.

    Args:
        mask: 2D array, non-zero where the object is.
        only_biggest: Keep only the contour enclosing the largest area.

    Returns:
        Tuple of (contours_x, contours_y), one inner list per contour.
        Both are empty if the mask has no foreground.

    Raises:
        ValueError: If the mask is not 2D.
    """
    if mask.ndim != 2:
        raise ValueError(f"Expected 2D mask, got shape {mask.shape}")

    binary = (mask > 0).astype(np.uint8)
    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not contours:
        return [], []

    if only_biggest and len(contours) > 1:
        areas = [cv2.contourArea(c) for c in contours]
        contours = [contours[int(np.argmax(areas))]]

    contours_x: list[list[int]] = []
    contours_y: list[list[int]] = []
    for contour in contours:
        points = contour.reshape(-1, 2)
        contours_x.append(points[:, 0].astype(int).tolist())
        contours_y.append(points[:, 1].astype(int).tolist())
    return contours_x, contours_y
