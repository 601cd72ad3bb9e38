"""Marshalling of images and masks into shared buffers.

The worker expects:
- full-image encodes as (H, W, 3) uint8, row-major
- cropped encodes as (3, h, w) uint8, channel first
- mask prompts as (h, w) int32 labels, aligned with the encoded crop

SharedMemoryTransport builds those payloads and scopes each buffer to a
single task with the ``share`` context manager.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

from sam_session.errors import ArgumentError
from sam_session.transport.shm import SharedBuffer

if TYPE_CHECKING:
    from sam_session.cache.region import EncodedRegion

logger = logging.getLogger(__name__)


def _to_uint8(array: np.ndarray) -> np.ndarray:
    """Min-max rescale any numeric array to uint8."""
    if array.dtype == np.uint8:
        return array
    if array.dtype == np.bool_:
        return array.astype(np.uint8) * 255
    if not np.issubdtype(array.dtype, np.number):
        raise ArgumentError(f"Image must be numeric, got dtype {array.dtype}")

    values = array.astype(np.float64)
    if not np.all(np.isfinite(values)):
        raise ArgumentError("Image contains NaN or infinite values")
    low, high = float(values.min()), float(values.max())
    if high == low:
        return np.zeros(array.shape, dtype=np.uint8)
    return np.round((values - low) / (high - low) * 255.0).astype(np.uint8)


def prepare_image(image: np.ndarray | Image.Image) -> np.ndarray:
    """Convert an input image to the (H, W, 3) uint8 layout the engine uses.

    Single-channel images are replicated to three channels. Non-uint8 data
    is rescaled to the full uint8 range.

    Args:
        image: NumPy array of shape (H, W), (H, W, 1) or (H, W, 3), or a PIL image.

    Returns:
        Read-only contiguous array of shape (H, W, 3).

    Raises:
        ArgumentError: If the image has an unsupported shape or dtype.
    """
    if isinstance(image, Image.Image):
        image = np.asarray(image.convert("RGB"))

    array = np.asarray(image)
    if array.ndim == 3 and array.shape[2] == 1:
        array = array[:, :, 0]

    if array.ndim == 2:
        array = np.stack([array, array, array], axis=-1)
    elif array.ndim != 3 or array.shape[2] != 3:
        raise ArgumentError(
            f"Image must have shape (H, W), (H, W, 1) or (H, W, 3), got {array.shape}"
        )

    if array.shape[0] == 0 or array.shape[1] == 0:
        raise ArgumentError(f"Image is empty: shape {array.shape}")

    prepared = np.ascontiguousarray(_to_uint8(array))
    if prepared is array or prepared.base is not None:
        prepared = prepared.copy()
    prepared.flags.writeable = False
    return prepared


class SharedMemoryTransport:
    """Moves arrays to the worker through per-task shared buffers.

    Every buffer handed out by ``share`` is released when its block exits,
    on success, on error and on interrupt alike.
    """

    def __init__(self) -> None:
        self._live: dict[str, SharedBuffer] = {}

    @property
    def outstanding(self) -> int:
        """Number of buffers currently allocated by this transport."""
        return len(self._live)

    @contextmanager
    def share(self, array: np.ndarray) -> Iterator[SharedBuffer]:
        """Copy ``array`` into a fresh buffer for the duration of one task.

        Example:
            with transport.share(payload) as buffer:
                session.run(EncodeRequest(buffer=buffer.bind()))
        """
        buffer = SharedBuffer.from_array(array)
        self._live[buffer.name] = buffer
        try:
            yield buffer
        finally:
            self._live.pop(buffer.name, None)
            buffer.release()

    def release_all(self) -> None:
        """Release any buffer still held, e.g. when the session closes."""
        for name in list(self._live):
            logger.warning("Releasing leftover shared buffer %s", name)
            self._live.pop(name).release()

    @staticmethod
    def image_payload(region: EncodedRegion) -> tuple[np.ndarray, bool]:
        """Pixels to encode for ``region``.

        Returns:
            Tuple of (payload, channel_first). Whole-image encodes are sent
            as (H, W, 3); crops are transposed to (3, h, w).
        """
        if region.covers_whole_image:
            return region.source_image, False
        crop = region.pixels()
        return np.ascontiguousarray(np.transpose(crop, (2, 0, 1))), True

    @staticmethod
    def mask_payload(labels: np.ndarray, region: EncodedRegion) -> np.ndarray:
        """Label image aligned with the encoded crop.

        Args:
            labels: Labels at full-image size or at the encoded crop size.
            region: Current encoding.

        Returns:
            Contiguous int32 array of shape (region.height, region.width).

        Raises:
            ArgumentError: If ``labels`` matches neither size.
        """
        if labels.shape == (region.image_height, region.image_width):
            labels = labels[
                region.origin_y : region.origin_y + region.height,
                region.origin_x : region.origin_x + region.width,
            ]
        elif labels.shape != (region.height, region.width):
            raise ArgumentError(
                f"Mask shape {labels.shape} matches neither the image "
                f"({region.image_height}, {region.image_width}) nor the encoded crop "
                f"({region.height}, {region.width})"
            )
        return np.ascontiguousarray(labels, dtype=np.int32)
