"""Inference engine plumbing.

Key modules:
- protocol: Typed requests, results and task lifecycle
- channel: Worker process and in-process channels
- session: Blocking task execution with error mapping
- worker: Request handling inside the worker
- predictor: transformers SAM predictor with embedding cache
- contours: OpenCV contour tracing of predicted masks
- registry: Model variant lookup
"""

from sam_session.engine.channel import Channel, LocalChannel, ProcessChannel
from sam_session.engine.protocol import (
    DecodeBoxRequest,
    DecodeMaskRequest,
    DecodePointsRequest,
    EncodeRequest,
    InferenceTask,
    InitRequest,
    Operation,
    TaskResult,
    TaskStatus,
)
from sam_session.engine.session import InferenceSession

__all__ = [
    # Channels
    "Channel",
    "LocalChannel",
    "ProcessChannel",
    # Protocol
    "DecodeBoxRequest",
    "DecodeMaskRequest",
    "DecodePointsRequest",
    "EncodeRequest",
    "InferenceTask",
    "InitRequest",
    "Operation",
    "TaskResult",
    "TaskStatus",
    # Session
    "InferenceSession",
]
