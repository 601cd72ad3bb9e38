"""Shared pytest fixtures for SAM session tests."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import pytest
from fakes import make_fake_predictor

from sam_session.cache.region import EncodedRegion
from sam_session.engine.channel import LocalChannel
from sam_session.geometry import Rect
from sam_session.session import SegmentationSession

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


@pytest.fixture
def make_image() -> Callable[..., np.ndarray]:
    """Factory fixture for deterministic test images.

    Returns a factory creating (height, width, 3) uint8 images by default,
    or (height, width) when channels is None.
    """

    def _make(
        height: int = 100,
        width: int = 100,
        channels: int | None = 3,
        dtype: type = np.uint8,
    ) -> np.ndarray:
        rng = np.random.default_rng(seed=height * 10_007 + width)
        shape = (height, width) if channels is None else (height, width, channels)
        if np.issubdtype(dtype, np.integer):
            return rng.integers(0, 256, size=shape).astype(dtype)
        return rng.random(size=shape).astype(dtype)

    return _make


@pytest.fixture
def make_region() -> Callable[..., EncodedRegion]:
    """Factory for EncodedRegion instances over a blank image.

    ``rect`` is (x, y, width, height); None encodes the whole image.
    """

    def _make(
        image_width: int,
        image_height: int,
        rect: tuple[int, int, int, int] | None = None,
    ) -> EncodedRegion:
        image = np.zeros((image_height, image_width, 3), dtype=np.uint8)
        if rect is None:
            return EncodedRegion.whole_image(image)
        return EncodedRegion.crop(image, Rect(*rect))

    return _make


@pytest.fixture
def local_channel() -> Iterator[LocalChannel]:
    """In-process channel backed by a FakePredictor."""
    channel = LocalChannel(make_fake_predictor)
    yield channel
    channel.close()


@pytest.fixture
def test_logger() -> logging.Logger:
    """Logger sink handed to sessions under test."""
    return logging.getLogger("sam_session.tests")


@pytest.fixture
def make_session(local_channel, test_logger) -> Iterator[Callable[..., SegmentationSession]]:
    """Factory for SegmentationSession instances on the local fake channel.

    Sessions are created without warm-up so the fake predictor only sees
    real encodes. Every session is closed at teardown.
    """
    sessions: list[SegmentationSession] = []

    def _make(image: np.ndarray) -> SegmentationSession:
        session = SegmentationSession.instantiate(
            image, logger=test_logger, channel=local_channel, warm_up=False
        )
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        session.close_process()

