"""
Process and machine level side effects.
"""

import logging
import subprocess  # nosec B404
import sys


class SystemControl:
    """Reboots the device and ends the process."""

    def __init__(self, reboot_command=("reboot",)):
        self.reboot_command = list(reboot_command)
        self.logger = logging.getLogger(__name__)

    def reboot(self) -> None:
        """
        Restart the device.

        Raises:
            subprocess.CalledProcessError: if the reboot command fails.
        """
        self.logger.info("Restarting device")
        subprocess.run(self.reboot_command, check=True)  # nosec B603

    def exit_process(self, code: int) -> None:
        """End the process with ``code``."""
        sys.exit(code)
