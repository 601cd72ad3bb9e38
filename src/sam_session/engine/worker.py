"""Request handling inside the inference worker.

SegmentationWorker owns the predictor and turns each protocol request into a
TaskResult. It never raises: any exception while handling a task becomes a
FAILED result carrying the error text, and the worker stays usable.

``worker_main`` is the entry point of the worker process. It reads requests
from a multiprocessing connection until it receives a ShutdownRequest or the
connection closes.
"""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import numpy as np

from sam_session.engine.contours import polygons_from_binary_mask
from sam_session.engine.predictor import Predictor, load_sam_predictor, warm_up
from sam_session.engine.protocol import (
    DecodeBoxRequest,
    DecodeMaskRequest,
    DecodePointsRequest,
    EncodeRequest,
    InitRequest,
    Operation,
    ProgressMessage,
    TaskRequest,
    TaskResult,
    TaskStatus,
)
from sam_session.transport.shm import attach_array

if TYPE_CHECKING:
    from multiprocessing.connection import Connection

logger = logging.getLogger(__name__)

PredictorFactory = Callable[[InitRequest], Predictor]
ProgressCallback = Callable[[str, str], None]


def sample_indices(count: int, limit: int) -> np.ndarray:
    """Evenly spaced indices selecting at most ``limit`` of ``count`` items."""
    if count <= limit:
        return np.arange(count)
    return np.unique(np.linspace(0, count - 1, num=limit).round().astype(int))


class SegmentationWorker:
    """Executes protocol requests against a lazily created predictor.

    Attributes:
        predictor: The loaded predictor, None until an init request succeeded.
        encoded_shape: (height, width) of the current embedding, if any.
    """

    def __init__(
        self,
        predictor_factory: PredictorFactory | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._factory = predictor_factory or load_sam_predictor
        self._progress = progress
        self.predictor: Predictor | None = None
        self.encoded_shape: tuple[int, int] | None = None

        self._handlers: dict[Operation, Callable[[Any], dict[str, Any]]] = {
            Operation.INIT: self._init,
            Operation.ENCODE: self._encode,
            Operation.DECODE_POINTS: self._decode_points,
            Operation.DECODE_BOX: self._decode_box,
            Operation.DECODE_MASK: self._decode_mask,
        }

    def handle(self, request: TaskRequest) -> TaskResult:
        """Run one request and report its outcome."""
        handler = self._handlers.get(request.operation)
        if handler is None:
            return TaskResult(
                task_id=request.task_id,
                status=TaskStatus.FAILED,
                message=f"Unsupported operation: {request.operation}",
            )

        try:
            outputs = handler(request)
        except Exception as e:
            logger.exception("Task %s (%s) failed", request.task_id, request.operation.value)
            return TaskResult(
                task_id=request.task_id,
                status=TaskStatus.FAILED,
                message=f"{type(e).__name__}: {e}",
            )
        return TaskResult(task_id=request.task_id, status=TaskStatus.COMPLETE, outputs=outputs)

    def _emit(self, task_id: str, message: str) -> None:
        logger.debug("%s", message)
        if self._progress is not None:
            self._progress(task_id, message)

    def _require_predictor(self) -> Predictor:
        if self.predictor is None:
            raise RuntimeError("Model is not loaded; send an init request first")
        return self.predictor

    def _require_encoding(self) -> Predictor:
        predictor = self._require_predictor()
        if self.encoded_shape is None:
            raise RuntimeError("No image has been encoded yet")
        return predictor

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _init(self, request: InitRequest) -> dict[str, Any]:
        self._emit(request.task_id, f"Loading model {request.model_id}")
        self.predictor = self._factory(request)
        self.encoded_shape = None
        if request.warm_up:
            self._emit(request.task_id, "Warming up model")
            warm_up(self.predictor)
        self._emit(request.task_id, "Model ready")
        return {"ready": True}

    def _encode(self, request: EncodeRequest) -> dict[str, Any]:
        predictor = self._require_predictor()
        image = attach_array(request.buffer)
        if request.channel_first:
            image = np.transpose(image, (1, 2, 0))
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Encode expects a 3-channel image, got shape {image.shape}")

        self._emit(request.task_id, f"Encoding image of shape {image.shape}")
        self.encoded_shape = None
        predictor.set_image(np.ascontiguousarray(image))
        self.encoded_shape = (int(image.shape[0]), int(image.shape[1]))
        return {"shape": list(image.shape)}

    def _decode_points(self, request: DecodePointsRequest) -> dict[str, Any]:
        predictor = self._require_encoding()
        points = list(request.input_neg_points) + list(request.input_points)
        labels = [0] * len(request.input_neg_points) + [1] * len(request.input_points)
        if not points:
            raise ValueError("Points prompt contains no points")

        mask = predictor.predict(points=points, labels=labels)
        contours_x, contours_y = polygons_from_binary_mask(mask, request.only_biggest)
        self._emit(request.task_id, f"Points prompt produced {len(contours_x)} contours")
        return {"contours_x": contours_x, "contours_y": contours_y}

    def _decode_box(self, request: DecodeBoxRequest) -> dict[str, Any]:
        predictor = self._require_encoding()
        mask = predictor.predict(box=request.input_box)
        contours_x, contours_y = polygons_from_binary_mask(mask, request.only_biggest)
        self._emit(request.task_id, f"Box prompt produced {len(contours_x)} contours")
        return {"contours_x": contours_x, "contours_y": contours_y}

    def _decode_mask(self, request: DecodeMaskRequest) -> dict[str, Any]:
        predictor = self._require_encoding()
        labels = attach_array(request.buffer)
        if labels.shape != self.encoded_shape:
            raise ValueError(
                f"Mask shape {labels.shape} does not match encoded shape {self.encoded_shape}"
            )

        contours_x: list[list[int]] = []
        contours_y: list[list[int]] = []
        contour_labels: list[int] = []
        for value in np.unique(labels):
            if value <= 0:
                continue
            ys, xs = np.nonzero(labels == value)
            keep = sample_indices(len(xs), request.max_points)
            neg_ys, neg_xs = np.nonzero((labels != value) & (labels != 0))
            keep_neg = sample_indices(len(neg_xs), request.max_points)

            points = [(int(x), int(y)) for x, y in zip(neg_xs[keep_neg], neg_ys[keep_neg])]
            points += [(int(x), int(y)) for x, y in zip(xs[keep], ys[keep])]
            point_labels = [0] * len(keep_neg) + [1] * len(keep)

            mask = predictor.predict(points=points, labels=point_labels)
            label_x, label_y = polygons_from_binary_mask(mask, request.only_biggest)
            contours_x.extend(label_x)
            contours_y.extend(label_y)
            contour_labels.extend([int(value)] * len(label_x))

        self._emit(request.task_id, f"Mask prompt produced {len(contours_x)} contours")
        return {
            "contours_x": contours_x,
            "contours_y": contours_y,
            "contour_labels": contour_labels,
        }


def worker_main(conn: Connection, predictor_factory: PredictorFactory | None = None) -> None:
    """Serve requests from ``conn`` until shutdown.

    Interrupts are left to the parent process, which decides whether a
    running task is abandoned.

    Args:
        conn: Worker end of a multiprocessing Pipe.
        predictor_factory: Builds the predictor from the init request.
            Must be picklable (a module-level callable).
    """
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    def report(task_id: str, message: str) -> None:
        conn.send(ProgressMessage(task_id=task_id, message=message))

    worker = SegmentationWorker(predictor_factory, progress=report)
    try:
        while True:
            try:
                request = conn.recv()
            except EOFError:
                break
            if request.operation == Operation.SHUTDOWN:
                conn.send(TaskResult(task_id=request.task_id, status=TaskStatus.COMPLETE))
                break
            conn.send(worker.handle(request))
    finally:
        conn.close()
