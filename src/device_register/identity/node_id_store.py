"""
Node id file handling.

The configuration-management agent identifies this device by a single-line
record such as ``pi-42`` (by default in ``/etc/salt/minion_id``). The record
is owned jointly with that agent, so parsing is lenient: anything that does
not end in an integer is treated as "no id yet".
"""

import logging
from pathlib import Path
from typing import Optional

from src.device_register.utils.atomic_file import atomic_write_text

DEFAULT_NODE_ID_FILE = "/etc/salt/minion_id"
SEPARATOR = "-"


class NodeIdStore:
    """Reads and writes the node id record."""

    def __init__(self, path: str = DEFAULT_NODE_ID_FILE):
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)

    def read(self) -> Optional[str]:
        """
        Read the node id record.

        Returns:
            The stripped record text, or None if the file is absent or empty.

        Raises:
            OSError: if the file exists but cannot be read.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        record = raw.strip()
        if not record:
            self.logger.info(
                "Node id file %s is empty, a new id will be made", self.path
            )
            return None
        self.logger.info("Node id: %s", record)
        return record

    def extract_id(self, record: str) -> int:
        """Return the integer after the last separator, or 0 if there isn't one."""
        _, _, tail = record.rpartition(SEPARATOR)
        # ASCII digits only; int() would also take "+42", "4_2" and other scripts
        if tail.isascii() and tail.isdigit():
            return int(tail)
        self.logger.warning(
            "Could not parse a device id from node id '%s', treating it as unset",
            record,
        )
        return 0

    def resolve_existing_id(self) -> int:
        """Device id embedded in the current record, 0 when there is none."""
        record = self.read()
        if record is None:
            return 0
        return self.extract_id(record)

    def write(self, prefix: str, device_id: int) -> str:
        """
        Atomically replace the record with ``<prefix>-<device_id>``.

        Returns:
            The record that was written.

        Raises:
            OSError: if the record could not be written and synced.
        """
        record = f"{prefix}{SEPARATOR}{device_id}"
        self.logger.info("Setting node id to '%s'", record)
        atomic_write_text(self.path, record, mode=0o644)
        return record
