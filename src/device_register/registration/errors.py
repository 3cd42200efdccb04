"""
Error types raised by the device registration workflow.
"""

from typing import Optional


class DeviceRegisterError(Exception):
    """Base class for all device registration failures."""


class RegistrarError(DeviceRegisterError):
    """The device API answered with an unexpected status or payload."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class RegistrationError(DeviceRegisterError):
    """A registration or re-registration call to the device API failed."""


class NotRegisteredError(DeviceRegisterError):
    """A rename was requested but this device has no identity yet."""


class TelemetryFlushError(DeviceRegisterError):
    """Pending events could not be flushed before the identity changed."""
