"""Request/response channels between a session and its worker.

A Channel delivers one request at a time and blocks until the matching
TaskResult arrives. Two implementations are provided:
- ProcessChannel: the worker runs in a separate spawned process and talks
  over a multiprocessing Pipe. Worker death resolves the pending task as
  CRASHED instead of hanging.
- LocalChannel: the worker runs in the calling process. Useful for tests
  and debugging.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sam_session.config import WORKER_JOIN_TIMEOUT, WORKER_POLL_INTERVAL
from sam_session.engine.protocol import (
    ProgressMessage,
    ShutdownRequest,
    TaskRequest,
    TaskResult,
    TaskStatus,
)
from sam_session.engine.worker import SegmentationWorker, worker_main

if TYPE_CHECKING:
    from sam_session.engine.worker import PredictorFactory

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str], None]


@runtime_checkable
class Channel(Protocol):
    """Transport for protocol requests."""

    def submit(self, request: TaskRequest, on_progress: ProgressSink | None = None) -> TaskResult:
        """Send ``request`` and block until its result arrives."""
        ...

    def close(self) -> None:
        """Stop the worker. Safe to call more than once."""
        ...


class LocalChannel:
    """Runs the worker in the current process."""

    def __init__(self, predictor_factory: PredictorFactory | None = None) -> None:
        self._sink: ProgressSink | None = None
        self._worker = SegmentationWorker(predictor_factory, progress=self._forward)
        self._closed = False

    @property
    def worker(self) -> SegmentationWorker:
        return self._worker

    def _forward(self, task_id: str, message: str) -> None:
        if self._sink is not None:
            self._sink(message)

    def submit(self, request: TaskRequest, on_progress: ProgressSink | None = None) -> TaskResult:
        if self._closed:
            return TaskResult(
                task_id=request.task_id,
                status=TaskStatus.CANCELED,
                message="Channel is closed",
            )
        self._sink = on_progress
        try:
            return self._worker.handle(request)
        finally:
            self._sink = None

    def close(self) -> None:
        self._closed = True
        self._worker.predictor = None


class ProcessChannel:
    """Runs the worker in a spawned child process.

    Attributes:
        join_timeout: Seconds to wait for a clean worker exit on close.
        poll_interval: Seconds between liveness checks while waiting.
    """

    def __init__(
        self,
        predictor_factory: PredictorFactory | None = None,
        join_timeout: float = WORKER_JOIN_TIMEOUT,
        poll_interval: float = WORKER_POLL_INTERVAL,
    ) -> None:
        """Start the worker process.

        Args:
            predictor_factory: Module-level callable building the predictor
                from the init request. Defaults to the transformers SAM loader.
            join_timeout: Seconds to wait for a clean exit on close.
            poll_interval: Seconds between liveness checks.
        """
        self.join_timeout = join_timeout
        self.poll_interval = poll_interval
        self._closed = False

        ctx = mp.get_context("spawn")
        self._conn, child_conn = ctx.Pipe(duplex=True)
        self._process = ctx.Process(
            target=worker_main,
            args=(child_conn, predictor_factory),
            name="sam-session-worker",
            daemon=True,
        )
        self._process.start()
        child_conn.close()
        logger.info("Started worker process %s", self._process.pid)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._process.is_alive()

    def _crashed(self, request: TaskRequest) -> TaskResult:
        return TaskResult(
            task_id=request.task_id,
            status=TaskStatus.CRASHED,
            message=f"Worker process exited unexpectedly (exit code {self._process.exitcode})",
        )

    def submit(self, request: TaskRequest, on_progress: ProgressSink | None = None) -> TaskResult:
        """Send ``request`` and wait for the result with the same task id.

        Results of earlier, abandoned tasks are discarded. A KeyboardInterrupt
        while waiting propagates to the caller; the worker keeps running and
        its late answer is dropped on the next submit.
        """
        if self._closed:
            return TaskResult(
                task_id=request.task_id,
                status=TaskStatus.CANCELED,
                message="Channel is closed",
            )
        if not self._process.is_alive():
            return self._crashed(request)

        try:
            self._conn.send(request)
        except (BrokenPipeError, OSError):
            logger.exception("Could not send task %s to the worker", request.task_id)
            return self._crashed(request)

        while True:
            if not self._conn.poll(self.poll_interval):
                if not self._process.is_alive():
                    return self._crashed(request)
                continue

            try:
                message = self._conn.recv()
            except (EOFError, OSError):
                self._process.join(self.poll_interval)
                return self._crashed(request)

            if isinstance(message, ProgressMessage):
                if message.task_id == request.task_id and on_progress is not None:
                    on_progress(message.message)
            elif isinstance(message, TaskResult):
                if message.task_id == request.task_id:
                    return message
                logger.debug("Discarding stale result for task %s", message.task_id)
            else:
                logger.warning("Ignoring unexpected worker message of type %s", type(message).__name__)

    def close(self) -> None:
        """Ask the worker to exit, then terminate it if it does not."""
        if self._closed:
            return
        self._closed = True

        if self._process.is_alive():
            try:
                self._conn.send(ShutdownRequest())
            except (BrokenPipeError, OSError):
                logger.debug("Worker pipe already closed")
            self._process.join(self.join_timeout)

        if self._process.is_alive():
            logger.warning("Worker %s did not exit, terminating", self._process.pid)
            self._process.terminate()
            self._process.join(self.join_timeout)
            if self._process.is_alive():
                self._process.kill()
                self._process.join()

        self._conn.close()
        logger.info("Worker process %s stopped (exit code %s)", self._process.pid, self._process.exitcode)
