"""Task protocol between the session and the inference worker.

Each request is a typed pydantic model tagged with its Operation and a
unique ``task_id``. The worker answers every request with a TaskResult
carrying the same ``task_id``; while working it may also emit
ProgressMessage objects.

On the session side each request is tracked by an InferenceTask whose
status only moves forward:

    QUEUED -> RUNNING -> COMPLETE | FAILED | CRASHED | CANCELED

Example:
    task = InferenceTask(EncodeRequest(buffer=descriptor, channel_first=False))
    task.transition(TaskStatus.RUNNING)
    task.transition(TaskStatus.COMPLETE, outputs={"shape": [3, 100, 100]})
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from sam_session.config import MASK_PROMPT_MAX_POINTS
from sam_session.errors import ProtocolError
from sam_session.transport.shm import BufferDescriptor


class TaskStatus(str, Enum):
    """Lifecycle states of an engine task."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        """True for states a task never leaves."""
        return self not in (TaskStatus.QUEUED, TaskStatus.RUNNING)


class Operation(str, Enum):
    """Operations understood by the worker."""

    INIT = "init"
    ENCODE = "encode"
    DECODE_POINTS = "decode_points"
    DECODE_BOX = "decode_box"
    DECODE_MASK = "decode_mask"
    SHUTDOWN = "shutdown"


def _new_task_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Requests
# =============================================================================


class InitRequest(BaseModel):
    """Load the model and warm it up."""

    operation: Literal[Operation.INIT] = Operation.INIT
    task_id: str = Field(default_factory=_new_task_id)
    model_id: str = Field(..., description="HuggingFace model id or local path")
    checkpoint: str | None = Field(None, description="Local checkpoint directory, if any")
    env_root: str | None = Field(None, description="Root of locally installed checkpoints")
    device: str | None = Field(None, description="Device override ('cuda', 'mps', 'cpu')")
    warm_up: bool = Field(True, description="Run one dummy encode after loading")


class EncodeRequest(BaseModel):
    """Compute and keep the image embedding of the shared pixels."""

    operation: Literal[Operation.ENCODE] = Operation.ENCODE
    task_id: str = Field(default_factory=_new_task_id)
    buffer: BufferDescriptor
    channel_first: bool = Field(False, description="Pixels are (3, h, w) instead of (h, w, 3)")


class DecodePointsRequest(BaseModel):
    """Segment from positive and negative clicks, crop-local coordinates."""

    operation: Literal[Operation.DECODE_POINTS] = Operation.DECODE_POINTS
    task_id: str = Field(default_factory=_new_task_id)
    input_points: list[tuple[int, int]] = Field(default_factory=list)
    input_neg_points: list[tuple[int, int]] = Field(default_factory=list)
    only_biggest: bool = False


class DecodeBoxRequest(BaseModel):
    """Segment the object inside a box (x0, y0, x1, y1), crop-local coordinates."""

    operation: Literal[Operation.DECODE_BOX] = Operation.DECODE_BOX
    task_id: str = Field(default_factory=_new_task_id)
    input_box: tuple[int, int, int, int]
    only_biggest: bool = False


class DecodeMaskRequest(BaseModel):
    """Segment every non-zero label of a shared label image."""

    operation: Literal[Operation.DECODE_MASK] = Operation.DECODE_MASK
    task_id: str = Field(default_factory=_new_task_id)
    buffer: BufferDescriptor
    only_biggest: bool = False
    max_points: int = Field(MASK_PROMPT_MAX_POINTS, gt=0, description="Points sampled per label")


class ShutdownRequest(BaseModel):
    """Ask the worker loop to exit."""

    operation: Literal[Operation.SHUTDOWN] = Operation.SHUTDOWN
    task_id: str = Field(default_factory=_new_task_id)


TaskRequest = Union[
    InitRequest,
    EncodeRequest,
    DecodePointsRequest,
    DecodeBoxRequest,
    DecodeMaskRequest,
    ShutdownRequest,
]


# =============================================================================
# Responses
# =============================================================================


class TaskResult(BaseModel):
    """Terminal answer to a request."""

    task_id: str
    status: TaskStatus
    outputs: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None


class ProgressMessage(BaseModel):
    """Intermediate log line emitted by the worker while running a task."""

    task_id: str
    message: str


# =============================================================================
# Session-side task tracking
# =============================================================================

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.CRASHED, TaskStatus.CANCELED}
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.CRASHED, TaskStatus.CANCELED}
    ),
}


@dataclass
class InferenceTask:
    """One request and its evolving status.

    Attributes:
        request: The request sent to the worker.
        status: Current lifecycle state.
        outputs: Named outputs once the task completed.
        message: Failure description, if any.
    """

    request: TaskRequest
    status: TaskStatus = TaskStatus.QUEUED
    outputs: dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    @property
    def task_id(self) -> str:
        return self.request.task_id

    def transition(
        self,
        status: TaskStatus,
        outputs: dict[str, Any] | None = None,
        message: str | None = None,
    ) -> None:
        """Move to ``status``.

        Raises:
            ProtocolError: If the move is not allowed from the current state.
        """
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ProtocolError(
                f"Task {self.task_id}: illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status
        if outputs is not None:
            self.outputs = outputs
        if message is not None:
            self.message = message

    def resolve(self, result: TaskResult) -> None:
        """Apply a worker result to this task.

        Raises:
            ProtocolError: If the result belongs to another task or is not terminal.
        """
        if result.task_id != self.task_id:
            raise ProtocolError(
                f"Result for task {result.task_id} delivered to task {self.task_id}"
            )
        if not result.status.is_terminal:
            raise ProtocolError(
                f"Task {self.task_id}: worker answered with non-terminal status "
                f"{result.status.value}"
            )
        self.transition(result.status, outputs=result.outputs, message=result.message)
