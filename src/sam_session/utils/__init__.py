"""Utility functions.

This module provides utility functions for:
- Device selection (with environment override)
- Memory clearing
- Dtype selection
"""

from sam_session.utils.device import (
    clear_memory,
    device_info,
    get_device,
    get_dtype_for_device,
)

__all__ = [
    "get_device",
    "get_dtype_for_device",
    "clear_memory",
    "device_info",
]
