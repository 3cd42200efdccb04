"""
Data types describing a device identity and a single registration request.
"""

from dataclasses import dataclass


@dataclass
class DeviceIdentity:
    """Identity assigned to this device by the device API.

    A device_id of 0 means the device has not been registered yet.
    """

    device_id: int = 0
    name: str = ""
    group: str = ""
    password: str = ""

    @property
    def is_registered(self) -> bool:
        """True once the API has assigned a device id."""
        return self.device_id != 0


@dataclass(frozen=True)
class RegistrationRequest:
    """Input to one registration call."""

    name: str
    group: str
    password: str
    existing_device_id: int = 0
