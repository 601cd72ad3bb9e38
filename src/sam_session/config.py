"""Centralized configuration for SAM sessions.

This module provides a single source of truth for the supported model
variants and for the constants that drive the encoding cache.

Usage:
    from sam_session.config import MODELS, ModelVariant, ENCODE_MARGIN

    # Access model config
    base = MODELS[ModelVariant.SAM_VIT_BASE]
    print(base.model_id)  # "facebook/sam-vit-base"

    # Access cache constants
    print(ENCODE_MARGIN)  # 64
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


# =============================================================================
# Model Variants
# =============================================================================


class ModelVariant(str, Enum):
    """Supported segmentation model variants.

    The set is closed: an identifier that is not listed here cannot be used
    to start a session.
    """

    SAM_VIT_BASE = "sam-vit-base"
    SAM_VIT_LARGE = "sam-vit-large"
    SAM_VIT_HUGE = "sam-vit-huge"
    SLIMSAM_50 = "slimsam-50"
    SLIMSAM_77 = "slimsam-77"


@dataclass(frozen=True)
class ModelConfig:
    """Constant metadata for a model variant.

    Attributes:
        model_id: HuggingFace model identifier (e.g., "facebook/sam-vit-base").
        checkpoint_dir: Directory name of a local copy under the environment root.
        weights_size_mb: Approximate size of the weights on disk.
        description: Short human-readable description.
    """

    model_id: str
    checkpoint_dir: str
    weights_size_mb: int
    description: str


MODELS: dict[ModelVariant, ModelConfig] = {
    ModelVariant.SAM_VIT_BASE: ModelConfig(
        model_id="facebook/sam-vit-base",
        checkpoint_dir="sam-vit-base",
        weights_size_mb=375,
        description="SAM ViT-B, fastest of the original SAM encoders",
    ),
    ModelVariant.SAM_VIT_LARGE: ModelConfig(
        model_id="facebook/sam-vit-large",
        checkpoint_dir="sam-vit-large",
        weights_size_mb=1250,
        description="SAM ViT-L, balanced speed and accuracy",
    ),
    ModelVariant.SAM_VIT_HUGE: ModelConfig(
        model_id="facebook/sam-vit-huge",
        checkpoint_dir="sam-vit-huge",
        weights_size_mb=2560,
        description="SAM ViT-H, best accuracy, slowest encoder",
    ),
    ModelVariant.SLIMSAM_50: ModelConfig(
        model_id="Zigeng/SlimSAM-uniform-50",
        checkpoint_dir="slimsam-uniform-50",
        weights_size_mb=38,
        description="SlimSAM pruned to 50% of SAM ViT-B parameters",
    ),
    ModelVariant.SLIMSAM_77: ModelConfig(
        model_id="Zigeng/SlimSAM-uniform-77",
        checkpoint_dir="slimsam-uniform-77",
        weights_size_mb=22,
        description="SlimSAM pruned to 23% of SAM ViT-B parameters",
    ),
}

# Alternative names that map to canonical variants.
MODEL_ALIASES: dict[str, ModelVariant] = {
    "vit-b": ModelVariant.SAM_VIT_BASE,
    "vit-l": ModelVariant.SAM_VIT_LARGE,
    "vit-h": ModelVariant.SAM_VIT_HUGE,
    "slimsam": ModelVariant.SLIMSAM_77,
}

DEFAULT_VARIANT: ModelVariant = ModelVariant.SAM_VIT_BASE


# =============================================================================
# Encoding Cache Geometry
# =============================================================================

# Fraction of a cropped encoding treated as unreliable near its edges.
# Half of it is taken from each side of an axis.
INSET_MARGIN_FRACTION: float = 0.1

# Minimum context, in pixels, kept around prompt points.
ENCODE_MARGIN: int = 64

# An encoding whose side, scaled by this ratio, is still larger than the
# requested side is considered too coarse for the request.
OVERSIZE_RATIO: float = 0.9

# A box this many times smaller than the encoded extent (on both axes)
# needs a tighter crop.
LOWER_REENCODE_THRESH: int = 20

# Target ratio between a crop side and the box side it was made for.
OPTIMAL_BBOX_IM_RATIO: int = 10

# Images above these limits are not encoded up front; the first prompt
# selects the crop instead.
MAX_ENCODED_AREA_RS: int = 3000
MAX_ENCODED_SIDE: int = MAX_ENCODED_AREA_RS * 3


# =============================================================================
# Engine Defaults
# =============================================================================

# Upper bound on points sampled from each label of a mask prompt.
MASK_PROMPT_MAX_POINTS: int = 64

# Seconds to wait for the worker to exit before killing it.
WORKER_JOIN_TIMEOUT: float = 5.0

# Poll interval while waiting on the worker, in seconds.
WORKER_POLL_INTERVAL: float = 0.1


# =============================================================================
# Paths
# =============================================================================

# Root directory holding local model checkpoints.
# Can be overridden via SAM_SESSION_ENV_ROOT environment variable.
_DEFAULT_ENV_ROOT = Path.home() / ".cache" / "sam_session"
ENV_ROOT: Path = Path(os.environ.get("SAM_SESSION_ENV_ROOT", _DEFAULT_ENV_ROOT))

# Optional device override ("cuda", "mps", "cpu").
DEVICE_OVERRIDE: str | None = os.environ.get("SAM_SESSION_DEVICE") or None
