"""
Flushes events queued under the current device identity.

Events recorded on the device are uploaded by a separate reporter. They must
be sent before the identity they belong to is removed or renamed, otherwise
they would be orphaned or filed under the wrong device.
"""

import asyncio
import logging
from typing import List, Optional

from src.device_register.registration.errors import TelemetryFlushError


class PendingTelemetryFlush:
    """Runs the event reporter's flush command."""

    def __init__(self, command: Optional[List[str]] = None):
        self.command = list(command or [])
        self.logger = logging.getLogger(__name__)

    async def flush(self) -> None:
        """
        Upload all queued events.

        An empty command skips the flush, as does a reporter that is not
        installed (then there is nothing queued to lose).

        Raises:
            TelemetryFlushError: if the flush command exits non-zero.
        """
        if not self.command:
            self.logger.info("No event flush command configured, skipping flush")
            return

        self.logger.info("Flushing queued events")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            self.logger.warning(
                "Event reporter '%s' not installed, nothing to flush", self.command[0]
            )
            return

        _stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise TelemetryFlushError(
                f"Flushing events failed with exit code {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        self.logger.info("Queued events flushed")
