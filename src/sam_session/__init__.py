"""SAM Session Library.

Interactive Segment Anything segmentation backed by a worker process, with
an encoding cache that avoids re-running the image encoder on every prompt.

Key modules:
- session: SegmentationSession facade used by annotation front ends
- cache: Encoded region bookkeeping and the re-encode policy
- transport: Shared-memory buffers for images and masks
- engine: Task protocol, worker process and SAM predictor
- config: Centralized configuration for model variants and cache constants
"""

__version__ = "0.1.0"

# Re-export commonly used items for convenience
from sam_session.config import MODELS, ModelConfig, ModelVariant
from sam_session.errors import (
    ArgumentError,
    ProcessError,
    ProcessInterruptedError,
    ProtocolError,
    ResourceError,
    SessionError,
)
from sam_session.geometry import Polygon, Rect
from sam_session.prompts import BoxPrompt, MaskPrompt, PointsPrompt
from sam_session.session import SegmentationSession

__all__ = [
    # Version
    "__version__",
    # Config
    "MODELS",
    "ModelConfig",
    "ModelVariant",
    # Session
    "SegmentationSession",
    # Geometry and prompts
    "Polygon",
    "Rect",
    "BoxPrompt",
    "MaskPrompt",
    "PointsPrompt",
    # Errors
    "SessionError",
    "ArgumentError",
    "ProcessError",
    "ProcessInterruptedError",
    "ProtocolError",
    "ResourceError",
]
