"""Tests for device utilities."""

from __future__ import annotations

from unittest.mock import patch

import torch

from sam_session.utils.device import (
    clear_memory,
    device_info,
    get_device,
    get_dtype_for_device,
)


class TestGetDevice:
    """Test device selection order."""

    def test_explicit_name_wins(self):
        """Verify an explicit device name is used as is."""
        assert get_device("cpu") == torch.device("cpu")

    def test_override_before_detection(self):
        """Verify the environment override beats auto-detection."""
        with patch("sam_session.utils.device.DEVICE_OVERRIDE", "cpu"):
            assert get_device() == torch.device("cpu")

    def test_cpu_fallback(self):
        """Verify CPU is chosen when no accelerator is available."""
        with (
            patch("sam_session.utils.device.DEVICE_OVERRIDE", None),
            patch("torch.cuda.is_available", return_value=False),
            patch("torch.backends.mps.is_available", return_value=False),
        ):
            assert get_device() == torch.device("cpu")

    def test_cuda_preferred(self):
        """Verify CUDA is chosen when available."""
        with (
            patch("sam_session.utils.device.DEVICE_OVERRIDE", None),
            patch("torch.cuda.is_available", return_value=True),
        ):
            assert get_device().type == "cuda"


class TestGetDtype:
    """Test dtype selection."""

    def test_cpu_is_float32(self):
        """Verify CPU always uses float32."""
        assert get_dtype_for_device(torch.device("cpu"), half_precision=True) == torch.float32

    def test_cuda_half(self):
        """Verify half precision applies on CUDA only when requested."""
        cuda = torch.device("cuda")

        assert get_dtype_for_device(cuda) == torch.float32
        assert get_dtype_for_device(cuda, half_precision=True) == torch.float16


class TestInfo:
    """Test device description and cleanup."""

    def test_cpu_info(self):
        """Verify CPU devices are described."""
        assert device_info(torch.device("cpu")) == {"device": "cpu", "name": "CPU"}

    def test_clear_memory_on_cpu(self):
        """Verify clearing CPU memory only runs the garbage collector."""
        with patch("torch.cuda.empty_cache") as empty_cache:
            clear_memory(torch.device("cpu"))

        empty_cache.assert_not_called()
