"""Shared-memory transport between the session and the worker process.

This package provides:
- SharedBuffer / BufferDescriptor: one named segment per task
- attach_array: worker-side copy out of a segment
- SharedMemoryTransport / prepare_image: image and mask marshalling
"""

from sam_session.transport.marshal import SharedMemoryTransport, prepare_image
from sam_session.transport.shm import BufferDescriptor, SharedBuffer, attach_array

__all__ = [
    "BufferDescriptor",
    "SharedBuffer",
    "attach_array",
    "SharedMemoryTransport",
    "prepare_image",
]
