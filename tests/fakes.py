"""Stand-in predictors for running the worker without model weights.

Factories are module-level so they can be pickled into a spawned worker
process.
"""

from __future__ import annotations

import os

import numpy as np

from sam_session.engine.channel import LocalChannel
from sam_session.engine.protocol import InitRequest

# Half-size of the square painted around positive clicks.
CLICK_RADIUS = 3


class FakePredictor:
    """Predictor that paints squares instead of running SAM.

    Points: a square covering the positive clicks, grown by CLICK_RADIUS.
    Box: the box itself.

    Attributes:
        encoded_shapes: Shape of every image passed to set_image.
        predict_calls: Keyword arguments of every predict call.
    """

    def __init__(self) -> None:
        self.encoded_shapes: list[tuple[int, ...]] = []
        self.predict_calls: list[dict] = []
        self._shape: tuple[int, int] | None = None

    def set_image(self, image: np.ndarray) -> None:
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Expected (H, W, 3) image, got shape {image.shape}")
        self.encoded_shapes.append(image.shape)
        self._shape = (image.shape[0], image.shape[1])

    def reset_image(self) -> None:
        self._shape = None

    def predict(self, points=None, labels=None, box=None) -> np.ndarray:
        if self._shape is None:
            raise RuntimeError("An image must be set with set_image() before predict()")
        self.predict_calls.append({"points": points, "labels": labels, "box": box})

        height, width = self._shape
        mask = np.zeros((height, width), dtype=bool)
        if box is not None:
            x0, y0, x1, y1 = box
            mask[y0 : y1 + 1, x0 : x1 + 1] = True
            return mask

        positive = [p for p, label in zip(points, labels) if label == 1]
        if not positive:
            return mask
        xs = [p[0] for p in positive]
        ys = [p[1] for p in positive]
        x0 = max(0, min(xs) - CLICK_RADIUS)
        y0 = max(0, min(ys) - CLICK_RADIUS)
        x1 = min(width, max(xs) + CLICK_RADIUS + 1)
        y1 = min(height, max(ys) + CLICK_RADIUS + 1)
        mask[y0:y1, x0:x1] = True
        return mask

    @property
    def encode_count(self) -> int:
        return len(self.encoded_shapes)

    @property
    def decode_count(self) -> int:
        return len(self.predict_calls)


def make_fake_predictor(request: InitRequest) -> FakePredictor:
    """Factory returning a fresh FakePredictor."""
    return FakePredictor()


def failing_predictor(request: InitRequest) -> FakePredictor:
    """Factory that fails like a missing checkpoint."""
    raise FileNotFoundError(f"No weights found for {request.model_id}")


def crashing_predictor(request: InitRequest) -> FakePredictor:
    """Factory that kills the worker process outright."""
    os._exit(3)


def predictor_of(channel: LocalChannel) -> FakePredictor:
    """The FakePredictor loaded by a LocalChannel's worker."""
    predictor = channel.worker.predictor
    assert isinstance(predictor, FakePredictor)
    return predictor
