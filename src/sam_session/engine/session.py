"""Blocking task execution against a worker channel.

InferenceSession wraps a Channel with the task lifecycle: every request is
tracked by an InferenceTask, progress lines are forwarded to the logger
sink, and any terminal status other than COMPLETE becomes a ProcessError.

Example:
    session = InferenceSession.start(ProcessChannel(), InitRequest(model_id=...))
    try:
        outputs = session.run(DecodePointsRequest(input_points=[(10, 10)]))
    finally:
        session.close()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sam_session.engine.protocol import InferenceTask, TaskStatus
from sam_session.errors import ProcessError, ProcessInterruptedError

if TYPE_CHECKING:
    from sam_session.engine.channel import Channel
    from sam_session.engine.protocol import InitRequest, TaskRequest

logger = logging.getLogger(__name__)

# Worker output after this marker is a raw coordinate dump, not a log line.
_CONTOUR_MARKER = "contours_x"


def strip_contour_dump(text: str) -> str:
    """Drop everything from the first ``contours_x`` on."""
    index = text.find(_CONTOUR_MARKER)
    if index < 0:
        return text
    return text[:index].rstrip()


class InferenceSession:
    """One worker, one request at a time.

    Use ``InferenceSession.start`` to obtain a session; it only returns once
    the worker has loaded its model.

    Attributes:
        last_task: The most recent task, for inspection after an error.
    """

    def __init__(self, channel: Channel, log: logging.Logger | None = None) -> None:
        self._channel = channel
        self._log = log or logger
        self._closed = False
        self.last_task: InferenceTask | None = None

    @classmethod
    def start(
        cls,
        channel: Channel,
        init_request: InitRequest,
        log: logging.Logger | None = None,
    ) -> InferenceSession:
        """Initialize the worker and return a ready session.

        Raises:
            ProcessError: If initialization does not complete. The channel is
                closed before the error propagates.
        """
        session = cls(channel, log)
        try:
            session.run(init_request)
        except BaseException:
            session.close()
            raise
        return session

    @property
    def closed(self) -> bool:
        return self._closed

    def _forward_progress(self, text: str) -> None:
        line = strip_contour_dump(text)
        if line:
            self._log.debug("%s", line)

    def run(self, request: TaskRequest) -> dict[str, Any]:
        """Submit ``request`` and block until it resolves.

        Returns:
            The task outputs.

        Raises:
            ProcessError: If the task ends FAILED, CRASHED or CANCELED, or
                the session is closed.
            ProcessInterruptedError: If the wait is interrupted.
        """
        operation = request.operation.value
        if self._closed:
            raise ProcessError(f"Cannot run {operation}: session is closed", TaskStatus.CANCELED)

        task = InferenceTask(request)
        self.last_task = task
        task.transition(TaskStatus.RUNNING)

        try:
            result = self._channel.submit(request, on_progress=self._forward_progress)
        except KeyboardInterrupt as e:
            task.transition(TaskStatus.CANCELED, message="Interrupted while waiting")
            self._log.error("Task %s (%s) was interrupted", task.task_id, operation)
            raise ProcessInterruptedError(
                f"Task {operation} was interrupted", TaskStatus.CANCELED
            ) from e

        task.resolve(result)
        if task.status is not TaskStatus.COMPLETE:
            message = f"Task {operation} ended {task.status.value}"
            if task.message:
                message = f"{message}: {task.message}"
            self._log.error("%s", message)
            raise ProcessError(message, task.status)
        return task.outputs

    def close(self) -> None:
        """Stop the worker. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._channel.close()

    def __enter__(self) -> InferenceSession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
