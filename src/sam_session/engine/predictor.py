"""SAM predictor running inside the worker process.

SamPredictor wraps the HuggingFace SamModel / SamProcessor pair and splits
inference the way an interactive client needs it: ``set_image`` runs the
heavy image encoder once and keeps the embedding, ``predict`` runs only the
prompt encoder and mask decoder against that embedding.

Example:
    >>> predictor = SamPredictor("facebook/sam-vit-base")
    >>> predictor.set_image(image)  # (H, W, 3) uint8
    >>> mask = predictor.predict(points=[(50, 50)], labels=[1])
    >>> mask.shape
    (H, W)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np
import torch
from transformers import SamModel, SamProcessor

from sam_session.utils.device import clear_memory, device_info, get_device, get_dtype_for_device

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sam_session.engine.protocol import InitRequest

logger = logging.getLogger(__name__)

# Side of the blank image encoded during warm-up.
_WARM_UP_SIDE = 64


@runtime_checkable
class Predictor(Protocol):
    """Interface the worker needs from a promptable segmentation model."""

    def set_image(self, image: np.ndarray) -> None:
        """Encode an (H, W, 3) uint8 image and keep its embedding."""
        ...

    def predict(
        self,
        points: Sequence[tuple[int, int]] | None = None,
        labels: Sequence[int] | None = None,
        box: tuple[int, int, int, int] | None = None,
    ) -> np.ndarray:
        """Return a boolean (H, W) mask for the prompt."""
        ...

    def reset_image(self) -> None:
        """Drop the cached embedding."""
        ...


class SamPredictor:
    """Embedding-caching SAM predictor.

    Attributes:
        source: HuggingFace model id or local checkpoint directory.
        device: Compute device.
        dtype: Dtype of the model weights.
    """

    def __init__(
        self,
        source: str,
        device: torch.device | None = None,
        dtype: torch.dtype | None = None,
    ) -> None:
        """Load processor and model.

        Args:
            source: HuggingFace model id or local checkpoint directory.
            device: Target device. Auto-detects if None.
            dtype: Weight dtype. Uses the device default if None.
        """
        self.source = source
        self.device = device or get_device()
        self.dtype = dtype or get_dtype_for_device(self.device)

        self.processor = SamProcessor.from_pretrained(source)
        self.model = SamModel.from_pretrained(source).to(device=self.device, dtype=self.dtype)
        self.model.eval()

        self._embeddings: torch.Tensor | None = None
        # (1, 2) tensors of (height, width) before and after the processor resize
        self._original_sizes: torch.Tensor | None = None
        self._reshaped_sizes: torch.Tensor | None = None

    @property
    def is_image_set(self) -> bool:
        """True once ``set_image`` has produced an embedding."""
        return self._embeddings is not None

    def set_image(self, image: np.ndarray) -> None:
        """Run the image encoder and cache the embedding.

        Args:
            image: Array of shape (H, W, 3), uint8.
        """
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Expected (H, W, 3) image, got shape {image.shape}")

        self.reset_image()
        inputs = self.processor(images=image, return_tensors="pt")
        pixel_values = inputs["pixel_values"].to(device=self.device, dtype=self.dtype)
        with torch.no_grad():
            self._embeddings = self.model.get_image_embeddings(pixel_values)
        self._original_sizes = inputs["original_sizes"]
        self._reshaped_sizes = inputs["reshaped_input_sizes"]

    def reset_image(self) -> None:
        """Drop the cached embedding."""
        if self._embeddings is None:
            return
        self._embeddings = None
        self._original_sizes = None
        self._reshaped_sizes = None
        clear_memory(self.device)

    def predict(
        self,
        points: Sequence[tuple[int, int]] | None = None,
        labels: Sequence[int] | None = None,
        box: tuple[int, int, int, int] | None = None,
    ) -> np.ndarray:
        """Decode a single mask for the prompt.

        Prompt coordinates are scaled by the resize recorded in set_image,
        so the image itself is not preprocessed again.

        Args:
            points: (x, y) clicks in the encoded image's coordinates.
            labels: 1 for positive clicks, 0 for negative ones.
            box: (x0, y0, x1, y1) box in the encoded image's coordinates.

        Returns:
            Boolean mask of shape (H, W) of the encoded image.

        Raises:
            RuntimeError: If no image has been set.
            ValueError: If neither points nor box is given.
        """
        if self._embeddings is None or self._original_sizes is None:
            raise RuntimeError("An image must be set with set_image() before predict()")
        if not points and box is None:
            raise ValueError("A prompt needs points or a box")

        orig_h, orig_w = self._original_sizes[0].tolist()
        new_h, new_w = self._reshaped_sizes[0].tolist()
        scale = torch.tensor([new_w / orig_w, new_h / orig_h])

        prompt = {}
        if points:
            coords = torch.tensor(points, dtype=torch.float32) * scale
            prompt["input_points"] = coords.reshape(1, 1, -1, 2)
            point_labels = list(labels) if labels is not None else [1] * len(points)
            prompt["input_labels"] = torch.tensor(point_labels, dtype=torch.long).reshape(1, 1, -1)
        if box is not None:
            corners = torch.tensor(box, dtype=torch.float32).reshape(2, 2) * scale
            prompt["input_boxes"] = corners.reshape(1, 1, 4)

        model_inputs = {}
        for key, value in prompt.items():
            value = value.to(self.device)
            if value.is_floating_point():
                value = value.to(self.dtype)
            model_inputs[key] = value

        with torch.no_grad():
            outputs = self.model(
                image_embeddings=self._embeddings,
                multimask_output=False,
                **model_inputs,
            )
        masks = self.processor.image_processor.post_process_masks(
            outputs.pred_masks.float().cpu(), self._original_sizes, self._reshaped_sizes
        )
        # (point_batch, num_masks, H, W) for the single image
        return masks[0][0, 0].numpy().astype(bool)


def load_sam_predictor(request: InitRequest) -> SamPredictor:
    """Build the predictor described by an init request.

    A local checkpoint directory wins over the HuggingFace id when it exists.
    """
    source = request.model_id
    if request.checkpoint and Path(request.checkpoint).is_dir():
        source = request.checkpoint
    device = get_device(request.device)
    logger.info("Loading SAM weights from %s on %s", source, device_info(device)["name"])
    return SamPredictor(source, device=device)


def warm_up(predictor: Predictor) -> None:
    """Run one encode and one decode on a blank image, then drop the embedding."""
    blank = np.zeros((_WARM_UP_SIDE, _WARM_UP_SIDE, 3), dtype=np.uint8)
    predictor.set_image(blank)
    predictor.predict(points=[(_WARM_UP_SIDE // 2, _WARM_UP_SIDE // 2)], labels=[1])
    predictor.reset_image()
