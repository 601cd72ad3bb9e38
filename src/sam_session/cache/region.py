"""Bookkeeping for the image area currently encoded by the engine.

The engine holds the embedding of exactly one region of the source image.
EncodedRegion records which one, so prompts can be translated to crop-local
coordinates and the re-encode policy can reason about coverage.

Example:
    region = EncodedRegion.whole_image(image)
    region.current_region()  # Rect(0, 0, W, H), no margin for full encodes

    crop = EncodedRegion.crop(image, Rect(100, 100, 400, 300))
    crop.current_region()    # inset by 5% of the extent on each side
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from sam_session.config import INSET_MARGIN_FRACTION
from sam_session.errors import ArgumentError
from sam_session.geometry import Rect


@dataclass(frozen=True)
class EncodedRegion:
    """Rectangle of the source image embedded in the engine.

    Instances are replaced on every re-encode, never mutated.

    Attributes:
        origin_x: Column of the top-left encoded pixel in the source image.
        origin_y: Row of the top-left encoded pixel in the source image.
        height: Encoded rows.
        width: Encoded columns.
        channels: Channels sent to the engine (always 3 after preparation).
        source_image: Full prepared image, shape (H, W, C). Borrowed, read-only.
    """

    origin_x: int
    origin_y: int
    height: int
    width: int
    channels: int
    source_image: np.ndarray = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        """Check that the region lies inside the source image."""
        image_h, image_w = self.source_image.shape[:2]
        if self.origin_x < 0 or self.origin_y < 0:
            raise ArgumentError(
                f"Encoded origin must be non-negative, got ({self.origin_x}, {self.origin_y})"
            )
        if self.width <= 0 or self.height <= 0:
            raise ArgumentError(f"Encoded extent must be positive, got {self.width}x{self.height}")
        if self.origin_x + self.width > image_w or self.origin_y + self.height > image_h:
            raise ArgumentError(
                f"Encoded region {self.extent} exceeds image bounds {image_w}x{image_h}"
            )

    @classmethod
    def whole_image(cls, source_image: np.ndarray) -> EncodedRegion:
        """Region covering the full image."""
        image_h, image_w = source_image.shape[:2]
        return cls.crop(source_image, Rect(0, 0, image_w, image_h))

    @classmethod
    def crop(cls, source_image: np.ndarray, rect: Rect) -> EncodedRegion:
        """Region covering ``rect`` of the image."""
        channels = source_image.shape[2] if source_image.ndim == 3 else 1
        return cls(
            origin_x=rect.x,
            origin_y=rect.y,
            height=rect.height,
            width=rect.width,
            channels=channels,
            source_image=source_image,
        )

    @property
    def image_width(self) -> int:
        """Width of the full source image."""
        return int(self.source_image.shape[1])

    @property
    def image_height(self) -> int:
        """Height of the full source image."""
        return int(self.source_image.shape[0])

    @property
    def origin(self) -> tuple[int, int]:
        """Top-left corner as (x, y)."""
        return self.origin_x, self.origin_y

    @property
    def extent(self) -> Rect:
        """Raw encoded rectangle, without any margin."""
        return Rect(self.origin_x, self.origin_y, self.width, self.height)

    @property
    def covers_whole_image(self) -> bool:
        """True when the encoding is the full image."""
        return (
            self.origin_x == 0
            and self.origin_y == 0
            and self.width == self.image_width
            and self.height == self.image_height
        )

    def current_region(self) -> Rect:
        """Area of the encoding that can be trusted for prompts.

        Cropped encodings lose 10% of each axis near their edges, half on
        each side, border sides included. Only a whole-image encoding is
        trusted up to its edges.
        """
        if self.covers_whole_image:
            return self.extent

        x_margin = int(self.width * INSET_MARGIN_FRACTION)
        y_margin = int(self.height * INSET_MARGIN_FRACTION)
        return Rect(
            self.origin_x + x_margin // 2,
            self.origin_y + y_margin // 2,
            self.width - x_margin,
            self.height - y_margin,
        )

    def pixels(self) -> np.ndarray:
        """View of the encoded pixels, shape (height, width, channels)."""
        return self.source_image[
            self.origin_y : self.origin_y + self.height,
            self.origin_x : self.origin_x + self.width,
        ]

    def to_local(self, x: int, y: int) -> tuple[int, int]:
        """Translate a full-image point to crop-local coordinates."""
        return x - self.origin_x, y - self.origin_y
