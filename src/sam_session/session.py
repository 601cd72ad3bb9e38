"""Segmentation session: the entry point used by annotation front ends.

A SegmentationSession owns one worker, one prepared image and the encoding
cache for that image. Each prompt goes through the same pipeline:

    prompt -> ReencodeDecisionEngine -> (optional encode) -> decode -> polygons

Polygons are always returned in full-image coordinates.

Example:
    session = SegmentationSession.instantiate(image, variant="vit-b")
    try:
        polygons = session.fetch_2d_segmentation([(120, 80)])
        polygons = session.fetch_2d_segmentation_from_box((40, 40, 90, 120))
    finally:
        session.close_process()
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from sam_session.cache.policy import ReencodeDecision, ReencodeDecisionEngine
from sam_session.cache.region import EncodedRegion
from sam_session.config import MAX_ENCODED_AREA_RS, MAX_ENCODED_SIDE, ModelVariant
from sam_session.decoding import decode_contours
from sam_session.engine.channel import ProcessChannel
from sam_session.engine.protocol import (
    DecodeBoxRequest,
    DecodeMaskRequest,
    DecodePointsRequest,
    EncodeRequest,
)
from sam_session.engine.registry import build_init_request, resolve_variant
from sam_session.engine.session import InferenceSession
from sam_session.errors import (
    ArgumentError,
    ProcessError,
    ProtocolError,
    ResourceError,
    SessionError,
)
from sam_session.geometry import Polygon, Rect
from sam_session.prompts import BoxPrompt, MaskPrompt, PointsPrompt, Prompt
from sam_session.transport.marshal import SharedMemoryTransport, prepare_image

if TYPE_CHECKING:
    from PIL import Image

    from sam_session.engine.channel import Channel

logger = logging.getLogger(__name__)


def _as_rect(region: Rect | Sequence[int] | None) -> Rect | None:
    """Accept a Rect or an (x, y, width, height) sequence."""
    if region is None or isinstance(region, Rect):
        return region
    values = tuple(int(v) for v in region)
    if len(values) != 4:
        raise ArgumentError(f"Region must be (x, y, width, height), got {values}")
    return Rect(*values)


def _as_box(box: BoxPrompt | Sequence[int]) -> BoxPrompt:
    """Accept a BoxPrompt or an (x0, y0, x1, y1) sequence."""
    if isinstance(box, BoxPrompt):
        return box
    values = tuple(int(v) for v in box)
    if len(values) != 4:
        raise ArgumentError(f"Box must be (x0, y0, x1, y1), got {values}")
    return BoxPrompt(*values)


def exceeds_encode_limits(width: int, height: int) -> bool:
    """Whether an image is too large to be encoded whole up front."""
    return width * height > MAX_ENCODED_AREA_RS**2 or max(width, height) > MAX_ENCODED_SIDE


class SegmentationSession:
    """Interactive segmentation of one image with cached encodings.

    Create sessions with ``instantiate``. A session handles one request at a
    time; a failed request leaves it usable.

    Attributes:
        variant: Model variant the worker runs.
    """

    def __init__(
        self,
        image: np.ndarray,
        inference: InferenceSession,
        log: logging.Logger,
        variant: ModelVariant,
    ) -> None:
        self.variant = variant
        self._log = log
        self._inference = inference
        self._transport = SharedMemoryTransport()
        self._only_biggest = False
        self._set_image(image)

    @classmethod
    def instantiate(
        cls,
        image: np.ndarray | Image.Image,
        logger: logging.Logger | None = None,
        variant: str | ModelVariant | None = None,
        channel: Channel | None = None,
        env_root: Path | None = None,
        device: str | None = None,
        warm_up: bool = True,
    ) -> SegmentationSession:
        """Start a worker, load the model and encode the image.

        Images larger than the up-front encoding limits are not encoded
        here; the first prompt selects the area to encode instead.

        Args:
            image: Array (H, W), (H, W, 1), (H, W, 3) or a PIL image.
            logger: Sink for progress and errors. Defaults to this module's logger.
            variant: Model variant name or alias. Defaults to DEFAULT_VARIANT.
            channel: Worker channel. Defaults to a new ProcessChannel.
            env_root: Root of locally installed checkpoints.
            device: Device override for the worker.
            warm_up: Run a dummy inference while loading.

        Returns:
            A ready session.

        Raises:
            ArgumentError: If the image or variant is not acceptable.
            ProcessError: If the worker fails to start or to encode.
        """
        log = logger if logger is not None else logging.getLogger(__name__)
        try:
            resolved = resolve_variant(variant)
        except ValueError as e:
            log.error("%s", e)
            raise ArgumentError(str(e)) from e
        try:
            prepared = prepare_image(image)
        except ArgumentError as e:
            log.error("Rejected input image: %s", e)
            raise

        init_request = build_init_request(resolved, env_root=env_root, device=device, warm_up=warm_up)
        height, width = prepared.shape[:2]
        log.info("Starting %s session for a %dx%d image", resolved.value, width, height)

        try:
            inference = InferenceSession.start(
                channel if channel is not None else ProcessChannel(), init_request, log
            )
        except SessionError as e:
            log.error("Could not start %s: %s", resolved.value, e)
            raise

        session = cls(prepared, inference, log, resolved)
        try:
            session._initial_encode()
        except BaseException:
            session.close_process()
            raise
        return session

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def image(self) -> np.ndarray:
        """The prepared (H, W, 3) uint8 image."""
        return self._image

    @property
    def encoded_region(self) -> EncodedRegion | None:
        """The encoding held by the worker, None if nothing is encoded."""
        return self._region

    @property
    def only_biggest(self) -> bool:
        return self._only_biggest

    @property
    def closed(self) -> bool:
        return self._inference.closed

    def _set_image(self, image: np.ndarray) -> None:
        self._image = image
        height, width = image.shape[:2]
        self._policy = ReencodeDecisionEngine(width, height)
        self._region: EncodedRegion | None = None

    def _initial_encode(self) -> None:
        height, width = self._image.shape[:2]
        if exceeds_encode_limits(width, height):
            self._log.info(
                "Image of %dx%d is too large to encode whole; deferring to the first prompt",
                width,
                height,
            )
            return
        self._encode(EncodedRegion.whole_image(self._image))

    def _encode(self, region: EncodedRegion) -> None:
        payload, channel_first = self._transport.image_payload(region)
        # The worker drops its embedding as soon as an encode starts
        self._region = None
        with self._transport.share(payload) as buffer:
            outputs = self._inference.run(
                EncodeRequest(buffer=buffer.bind(), channel_first=channel_first)
            )
        self._region = region
        self._log.debug("Encoded %s, worker reports shape %s", region.extent, outputs.get("shape"))

    def _apply(self, decision: ReencodeDecision) -> None:
        if not decision.reencode:
            self._log.debug("Reusing encoding: %s", decision.reason)
            return
        self._log.info("Re-encoding %s: %s", decision.target, decision.reason)
        self._encode(EncodedRegion.crop(self._image, decision.target))

    def _require_region(self) -> EncodedRegion:
        if self._region is None:
            raise ProcessError("No image area is encoded")
        return self._region

    def _local_points(self, points: Sequence[tuple[int, int]]) -> list[tuple[int, int]]:
        """Translate points to the encoded crop, clipped to its pixels."""
        region = self._require_region()
        local = []
        for x, y in points:
            lx, ly = region.to_local(x, y)
            local.append((min(max(lx, 0), region.width - 1), min(max(ly, 0), region.height - 1)))
        return local

    def _decode(self, outputs: dict[str, Any]) -> list[Polygon]:
        polygons = decode_contours(outputs, self._require_region().origin)
        self._log.debug("Obtained %d polygons", len(polygons))
        return polygons

    @contextmanager
    def _logged_failures(self, what: str) -> Iterator[None]:
        """Log request failures raised before or after the worker call."""
        try:
            yield
        except (ArgumentError, ProtocolError, ResourceError) as e:
            self._log.error("%s failed: %s", what, e)
            raise

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    def fetch_2d_segmentation(
        self,
        points: Sequence[tuple[int, int]],
        neg_points: Sequence[tuple[int, int]] = (),
        region: Rect | Sequence[int] | None = None,
    ) -> list[Polygon]:
        """Segment from positive and negative clicks.

        Args:
            points: Clicks on the object, full-image (x, y).
            neg_points: Clicks on the background, full-image (x, y).
            region: Optional (x, y, width, height) of the area the clicks
                were made in, e.g. the current zoomed view. Every click must
                lie inside it, edges included.

        Returns:
            Polygons in full-image coordinates.

        Raises:
            ArgumentError: If a click lies outside ``region`` or the image.
            ProcessError: If the worker fails.
            ProtocolError: If the worker output is malformed.
        """
        with self._logged_failures("Points prompt"):
            prompt = PointsPrompt(positive=tuple(points), negative=tuple(neg_points))
            return self._segment_points(prompt, _as_rect(region))

    def fetch_2d_segmentation_from_box(self, box: BoxPrompt | Sequence[int]) -> list[Polygon]:
        """Segment the object inside a box (x0, y0, x1, y1), full-image coordinates."""
        with self._logged_failures("Box prompt"):
            return self._segment_box(_as_box(box))

    def fetch_2d_segmentation_from_mask(self, labels: np.ndarray) -> list[Polygon]:
        """Segment every non-zero label of a label image.

        Args:
            labels: 2D label image at full-image size or at the size of the
                current encoding. Each non-zero value is one object.

        Returns:
            Polygons in full-image coordinates, each tagged with its label.
        """
        with self._logged_failures("Mask prompt"):
            return self._segment_mask(MaskPrompt(labels))

    def segment(self, prompt: Prompt) -> list[Polygon]:
        """Segment from any prompt type."""
        with self._logged_failures(f"{type(prompt).__name__}"):
            if isinstance(prompt, PointsPrompt):
                return self._segment_points(prompt, None)
            if isinstance(prompt, BoxPrompt):
                return self._segment_box(prompt)
            if isinstance(prompt, MaskPrompt):
                return self._segment_mask(prompt)
            raise ArgumentError(f"Unsupported prompt type: {type(prompt).__name__}")

    def _segment_points(self, prompt: PointsPrompt, request: Rect | None) -> list[Polygon]:
        self._apply(self._policy.evaluate_points(prompt, self._region, request))
        outputs = self._inference.run(
            DecodePointsRequest(
                input_points=self._local_points(prompt.positive),
                input_neg_points=self._local_points(prompt.negative),
                only_biggest=self._only_biggest,
            )
        )
        return self._decode(outputs)

    def _segment_box(self, box: BoxPrompt) -> list[Polygon]:
        box = self._policy.clamp_box(box)
        self._apply(self._policy.evaluate_box(box, self._region))
        region = self._require_region()
        local = box.translated(-region.origin_x, -region.origin_y)
        outputs = self._inference.run(
            DecodeBoxRequest(
                input_box=(local.x0, local.y0, local.x1, local.y1),
                only_biggest=self._only_biggest,
            )
        )
        return self._decode(outputs)

    def _segment_mask(self, prompt: MaskPrompt) -> list[Polygon]:
        if not prompt.label_values:
            self._log.debug("Mask prompt has no labels")
            return []

        labels = prompt.labels
        height, width = self._image.shape[:2]
        if labels.shape == (height, width):
            ys, xs = np.nonzero(labels > 0)
            labelled = Rect.from_corners(int(xs.min()), int(ys.min()), int(xs.max()) + 1, int(ys.max()) + 1)
            if self._region is None or not self._region.extent.contains(labelled):
                self._apply(
                    ReencodeDecision.to(
                        self._policy.crop_target(labelled), "mask labels outside the encoded extent"
                    )
                )
        elif self._region is None:
            raise ArgumentError(
                f"Mask shape {labels.shape} does not match the {width}x{height} image "
                "and nothing is encoded yet"
            )

        payload = self._transport.mask_payload(labels, self._require_region())
        with self._transport.share(payload) as buffer:
            outputs = self._inference.run(
                DecodeMaskRequest(buffer=buffer.bind(), only_biggest=self._only_biggest)
            )
        return self._decode(outputs)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def update_image(self, image: np.ndarray | Image.Image) -> None:
        """Switch to a new image, dropping the current encoding."""
        prepared = prepare_image(image)
        self._set_image(prepared)
        height, width = prepared.shape[:2]
        self._log.info("Switched to a %dx%d image", width, height)
        self._initial_encode()

    def set_return_only_biggest(self, only_biggest: bool) -> None:
        """Return only the largest polygon per object instead of all of them."""
        self._only_biggest = bool(only_biggest)

    def notify_ui_has_been_closed(self) -> None:
        """The front end went away; stop the worker."""
        self._log.info("%s: UI closed, shutting down", self.variant.value)
        self.close_process()

    def close_process(self) -> None:
        """Stop the worker and release every buffer. Safe to call more than once."""
        self._transport.release_all()
        if not self._inference.closed:
            self._inference.close()
            self._log.info("%s session closed", self.variant.value)

    def __enter__(self) -> SegmentationSession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close_process()
