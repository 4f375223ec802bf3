from __future__ import annotations

from .base import (
    BackendAdapter,
    BackendUnavailable,
    CaptureError,
    DeviceUnavailable,
    FatalAdapterFault,
    PermissionDenied,
    SecureContextRequired,
)

__all__ = [
    "BackendAdapter",
    "BackendUnavailable",
    "CaptureError",
    "DeviceUnavailable",
    "FatalAdapterFault",
    "PermissionDenied",
    "SecureContextRequired",
]
