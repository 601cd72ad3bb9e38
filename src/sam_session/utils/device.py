"""Device detection and memory management for the inference worker."""

import gc

import torch

from sam_session.config import DEVICE_OVERRIDE


def get_device(name: str | None = None) -> torch.device:
    """Pick the compute device: explicit name > SAM_SESSION_DEVICE > CUDA > MPS > CPU.

    Args:
        name: Explicit device name (e.g., "cuda", "cpu"). Takes precedence.

    Returns:
        torch.device: The selected compute device.
    """
    requested = name or DEVICE_OVERRIDE
    if requested:
        return torch.device(requested)

    if torch.cuda.is_available():
        return torch.device("cuda")
    elif torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def get_dtype_for_device(device: torch.device | None = None, half_precision: bool = False) -> torch.dtype:
    """Get the inference dtype for a device.

    Float32 everywhere unless half precision is requested on CUDA.

    Args:
        device: Target device. If None, auto-detects.
        half_precision: Use float16 on CUDA devices.

    Returns:
        torch.dtype: Dtype for model weights and floating inputs.
    """
    if device is None:
        device = get_device()

    if half_precision and device.type == "cuda":
        return torch.float16
    return torch.float32


def clear_memory(device: torch.device | None = None) -> None:
    """Free cached device memory after dropping an image embedding.

    Args:
        device: Device to clear. If None, uses the auto-detected device.
    """
    gc.collect()

    if device is None:
        device = get_device()

    if device.type == "cuda":
        torch.cuda.empty_cache()
    elif device.type == "mps":
        # MPS requires explicit cache clearing
        torch.mps.empty_cache()


def device_info(device: torch.device | None = None) -> dict[str, str | int | float]:
    """Describe the device the worker runs on.

    Returns:
        dict with device type, name, and memory info if available.
    """
    if device is None:
        device = get_device()
    info: dict[str, str | int | float] = {"device": str(device)}

    if device.type == "cuda":
        index = device.index or 0
        info["name"] = torch.cuda.get_device_name(index)
        info["memory_total_gb"] = torch.cuda.get_device_properties(index).total_memory / 1e9
    elif device.type == "mps":
        info["name"] = "Apple Silicon (MPS)"
    else:
        info["name"] = "CPU"

    return info
