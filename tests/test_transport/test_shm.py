"""Tests for shared-memory buffers.

These use real shared memory segments; every test releases what it creates.
"""

from __future__ import annotations

import numpy as np
import pytest

from sam_session.errors import ResourceError
from sam_session.transport.shm import (
    BufferDescriptor,
    SharedBuffer,
    attach_array,
    expected_byte_size,
)


class TestSharedBuffer:
    """Test buffer sizing, binding and release."""

    @pytest.mark.parametrize(
        ("shape", "dtype", "expected"),
        [
            ((100, 100, 3), np.uint8, 30_000),
            ((3, 4, 5), np.float32, 240),
            ((7, 9), np.int32, 252),
        ],
    )
    def test_byte_size_matches_layout(self, shape, dtype, expected):
        """Verify byte_size is prod(shape) * itemsize."""
        with SharedBuffer(shape, dtype) as buffer:
            assert buffer.byte_size == expected
            assert buffer.bind().byte_size == expected_byte_size(shape, dtype)

    def test_contents_reach_attacher(self, make_image):
        """Verify attach_array sees exactly what was written."""
        image = make_image(32, 48)

        with SharedBuffer.from_array(image) as buffer:
            copy = attach_array(buffer.bind())

        np.testing.assert_array_equal(copy, image)
        assert copy.dtype == np.uint8

    def test_bind_twice_raises(self):
        """Verify a buffer serves a single task."""
        with SharedBuffer((4,), np.uint8) as buffer:
            buffer.bind()
            with pytest.raises(ResourceError, match="already bound"):
                buffer.bind()

    def test_release_is_idempotent(self):
        """Verify releasing twice is harmless."""
        buffer = SharedBuffer((4,), np.uint8)
        buffer.release()
        buffer.release()

        assert buffer.released

    def test_bind_after_release_raises(self):
        """Verify released buffers cannot be handed out."""
        buffer = SharedBuffer((4,), np.uint8)
        buffer.release()

        with pytest.raises(ResourceError, match="released"):
            buffer.bind()

    def test_released_segment_is_gone(self):
        """Verify release unlinks the segment."""
        buffer = SharedBuffer.from_array(np.arange(6, dtype=np.int32))
        descriptor = buffer.bind()
        buffer.release()

        with pytest.raises(ResourceError, match="Cannot attach"):
            attach_array(descriptor)

    def test_write_shape_mismatch_raises(self):
        """Verify writes must match the allocated layout."""
        with SharedBuffer((2, 3), np.uint8) as buffer:
            with pytest.raises(ResourceError, match="does not match"):
                buffer.write(np.zeros((3, 2), dtype=np.uint8))

    def test_context_manager_releases_on_error(self):
        """Verify the segment is released when the block raises."""
        with pytest.raises(RuntimeError):
            with SharedBuffer((8,), np.uint8) as buffer:
                raise RuntimeError("task failed")

        assert buffer.released


class TestAttachArray:
    """Test worker-side attachment."""

    def test_inconsistent_descriptor_raises(self):
        """Verify descriptors whose size disagrees with the shape are rejected."""
        with SharedBuffer((2, 2), np.uint8) as buffer:
            descriptor = BufferDescriptor(name=buffer.name, shape=(2, 2), dtype="|u1", byte_size=3)

            with pytest.raises(ResourceError, match="claims 3 bytes"):
                attach_array(descriptor)

    def test_unknown_segment_raises(self):
        """Verify a missing segment becomes a ResourceError."""
        descriptor = BufferDescriptor(
            name="sam_session_missing_segment", shape=(1,), dtype="|u1", byte_size=1
        )

        with pytest.raises(ResourceError):
            attach_array(descriptor)

    def test_copy_is_independent(self):
        """Verify the attached copy outlives the segment."""
        with SharedBuffer.from_array(np.array([1, 2, 3], dtype=np.int32)) as buffer:
            copy = attach_array(buffer.bind())

        copy[0] = 10
        assert copy.tolist() == [10, 2, 3]
