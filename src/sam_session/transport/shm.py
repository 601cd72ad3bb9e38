"""Shared-memory buffers for moving arrays between the session and the worker.

A SharedBuffer is created right before a transfer, bound to exactly one task
and released (closed and unlinked) as soon as that task resolves. The worker
only ever sees a BufferDescriptor and copies the data out before answering,
so the creating side can unlink safely.

Example:
    with SharedBuffer.from_array(image) as buffer:
        request = EncodeRequest(buffer=buffer.bind(), channel_first=False)
        session.run(request)
    # buffer is unlinked here, even if run() raised

    # Worker side
    image = attach_array(request.buffer)
"""

from __future__ import annotations

import logging
import math
from multiprocessing import shared_memory

import numpy as np
from pydantic import BaseModel, Field

from sam_session.errors import ResourceError

logger = logging.getLogger(__name__)


class BufferDescriptor(BaseModel):
    """Everything the worker needs to map a shared buffer."""

    name: str = Field(..., description="Shared memory segment name")
    shape: tuple[int, ...] = Field(..., description="Array shape, row-major")
    dtype: str = Field(..., description="NumPy dtype string (e.g., 'uint8')")
    byte_size: int = Field(..., ge=0, description="Payload size in bytes")


def expected_byte_size(shape: tuple[int, ...], dtype: np.dtype | str) -> int:
    """Bytes needed to hold an array of ``shape`` and ``dtype``."""
    return int(math.prod(shape)) * np.dtype(dtype).itemsize


class SharedBuffer:
    """Named shared-memory segment holding one array.

    Attributes:
        shape: Array shape.
        dtype: Array dtype.
        byte_size: Payload size, always ``prod(shape) * dtype.itemsize``.
    """

    def __init__(self, shape: tuple[int, ...], dtype: np.dtype | str) -> None:
        """Allocate a segment sized exactly for ``shape`` and ``dtype``.

        Raises:
            ResourceError: If the segment cannot be allocated.
        """
        self.shape = tuple(int(s) for s in shape)
        self.dtype = np.dtype(dtype)
        self.byte_size = expected_byte_size(self.shape, self.dtype)
        self._bound = False
        self._released = False

        try:
            # Zero-sized segments are rejected by the OS
            self._shm = shared_memory.SharedMemory(create=True, size=max(self.byte_size, 1))
        except (OSError, ValueError) as e:
            raise ResourceError(
                f"Cannot allocate shared buffer of {self.byte_size} bytes for "
                f"shape {self.shape} ({self.dtype})"
            ) from e

        logger.debug("Allocated shared buffer %s (%d bytes)", self._shm.name, self.byte_size)

    @classmethod
    def from_array(cls, array: np.ndarray) -> SharedBuffer:
        """Allocate a buffer and copy ``array`` into it."""
        buffer = cls(array.shape, array.dtype)
        try:
            buffer.write(array)
        except BaseException:
            buffer.release()
            raise
        return buffer

    @property
    def name(self) -> str:
        """Name of the underlying segment."""
        return self._shm.name

    @property
    def released(self) -> bool:
        """True once the segment has been unlinked."""
        return self._released

    def _view(self) -> np.ndarray:
        """Writable view of the buffer contents."""
        if self._released:
            raise ResourceError(f"Shared buffer {self.name} has already been released")
        return np.ndarray(self.shape, dtype=self.dtype, buffer=self._shm.buf)

    def write(self, array: np.ndarray) -> None:
        """Copy ``array`` into the buffer in row-major order.

        Raises:
            ResourceError: If the array does not match the buffer layout.
        """
        data = np.ascontiguousarray(array, dtype=self.dtype)
        if data.shape != self.shape:
            raise ResourceError(
                f"Array shape {data.shape} does not match buffer shape {self.shape}"
            )
        if data.nbytes != self.byte_size:
            raise ResourceError(
                f"Array holds {data.nbytes} bytes, buffer expects {self.byte_size}"
            )
        self._view()[...] = data

    def bind(self) -> BufferDescriptor:
        """Hand the buffer to a task.

        A buffer serves exactly one task; binding it twice is an error.

        Raises:
            ResourceError: If the buffer was already bound or released.
        """
        if self._released:
            raise ResourceError(f"Shared buffer {self.name} has already been released")
        if self._bound:
            raise ResourceError(f"Shared buffer {self.name} is already bound to a task")
        self._bound = True
        return BufferDescriptor(
            name=self.name,
            shape=self.shape,
            dtype=self.dtype.str,
            byte_size=self.byte_size,
        )

    def release(self) -> None:
        """Close and unlink the segment. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        try:
            self._shm.close()
        finally:
            try:
                self._shm.unlink()
            except FileNotFoundError:
                logger.debug("Shared buffer %s was already unlinked", self._shm.name)
        logger.debug("Released shared buffer %s", self._shm.name)

    def __enter__(self) -> SharedBuffer:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else ("bound" if self._bound else "free")
        return (
            f"SharedBuffer(name={self._shm.name!r}, shape={self.shape}, "
            f"dtype={self.dtype.str!r}, {state})"
        )


def attach_array(descriptor: BufferDescriptor) -> np.ndarray:
    """Map a buffer created by another process and copy its contents out.

    The segment is closed before returning; the creator remains responsible
    for unlinking it.

    Args:
        descriptor: Descriptor received in a task request.

    Returns:
        A private copy of the shared array.

    Raises:
        ResourceError: If the segment is missing or smaller than described.
    """
    expected = expected_byte_size(descriptor.shape, descriptor.dtype)
    if expected != descriptor.byte_size:
        raise ResourceError(
            f"Descriptor for {descriptor.name} claims {descriptor.byte_size} bytes, "
            f"shape {descriptor.shape} needs {expected}"
        )

    try:
        shm = shared_memory.SharedMemory(name=descriptor.name, create=False)
    except (OSError, ValueError) as e:
        raise ResourceError(f"Cannot attach shared buffer {descriptor.name}") from e

    try:
        if shm.size < descriptor.byte_size:
            raise ResourceError(
                f"Shared buffer {descriptor.name} holds {shm.size} bytes, "
                f"expected {descriptor.byte_size}"
            )
        view = np.ndarray(descriptor.shape, dtype=np.dtype(descriptor.dtype), buffer=shm.buf)
        result = view.copy()
        del view
    finally:
        shm.close()
    return result
