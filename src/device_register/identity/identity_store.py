"""
Persistent storage for this device's identity.

The identity lives in a YAML file with two sections, ``device`` (id, name,
group) and ``secrets`` (password), so other tools on the device can read the
non-secret part. The file is only readable by its owner.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from src.device_register.identity.models import DeviceIdentity
from src.device_register.utils.atomic_file import atomic_write_text, fsync_directory

DEFAULT_IDENTITY_FILE = "/etc/cacophony/device.yaml"
DEVICE_KEY = "device"
SECRETS_KEY = "secrets"


class LocalIdentityStore:
    """Reads, writes and removes the persisted device identity."""

    def __init__(self, path: str = DEFAULT_IDENTITY_FILE):
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)

    def load(self) -> DeviceIdentity:
        """
        Load the stored identity.

        Raises:
            OSError: if the file cannot be read.
            ValueError: if the file is not valid YAML or has the wrong shape.
        """
        with open(self.path, "r", encoding="utf-8") as file_handle:
            try:
                data = yaml.safe_load(file_handle) or {}
            except yaml.YAMLError as error:
                raise ValueError(f"Invalid YAML in {self.path}: {error}") from error

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected content in {self.path}")
        device = data.get(DEVICE_KEY) or {}
        secrets_section = data.get(SECRETS_KEY) or {}
        if not isinstance(device, dict) or not isinstance(secrets_section, dict):
            raise ValueError(f"Unexpected content in {self.path}")

        try:
            device_id = int(device.get("id", 0) or 0)
        except (TypeError, ValueError) as error:
            raise ValueError(f"Invalid device id in {self.path}") from error

        return DeviceIdentity(
            device_id=device_id,
            name=str(device.get("name", "") or ""),
            group=str(device.get("group", "") or ""),
            password=str(secrets_section.get("password", "") or ""),
        )

    def is_identity_present(self) -> bool:
        """True iff a readable identity with a non-zero device id is stored."""
        try:
            identity = self.load()
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as error:
            self.logger.debug("Ignoring unreadable identity file: %s", error)
            return False
        return identity.is_registered

    def save(self, identity: DeviceIdentity) -> None:
        """Atomically persist ``identity``."""
        data: Dict[str, Any] = {
            DEVICE_KEY: {
                "id": identity.device_id,
                "name": identity.name,
                "group": identity.group,
            },
            SECRETS_KEY: {"password": identity.password},
        }
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        atomic_write_text(self.path, content, mode=0o600)
        self.logger.info(
            "Saved identity for device %s (%s) to %s",
            identity.device_id,
            identity.name,
            self.path,
        )

    def remove(self) -> None:
        """
        Delete the stored identity and its secrets.

        Any pending events recorded under this identity must be flushed first.
        """
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            self.logger.debug("No identity file at %s to remove", self.path)
            return
        fsync_directory(self.path.parent)
        self.logger.info("Removed device config %s", self.path)
