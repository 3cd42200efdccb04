"""
Configuration management for device-register.
Reads an optional YAML configuration file and provides configuration data.
"""

import logging
import os
import shlex
from typing import Any, Dict, List, Optional

import yaml

DEFAULT_CONFIG_FILE = "/etc/device-register.yaml"
CONFIG_ENV_VAR = "DEVICE_REGISTER_CONFIG"

DEFAULT_API_URL = "https://api.cacophony.org.nz"
DEFAULT_TEST_API_URL = "https://api-test.cacophony.org.nz"


class ConfigManager:  # pylint: disable=too-many-public-methods
    """Manages configuration for device-register.

    Registration runs on freshly imaged devices, so a missing configuration
    file is normal and every value has a built-in default.
    """

    def __init__(self, config_file: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self.config_file = self._determine_config_path(config_file)
        self.config_data: Dict[str, Any] = {}
        self.load_config()

    @staticmethod
    def _determine_config_path(config_file: Optional[str]) -> str:
        """
        Determine configuration file path.

        Priority order:
        1. Explicit path (command line, tests)
        2. $DEVICE_REGISTER_CONFIG
        3. /etc/device-register.yaml
        """
        if config_file:
            return config_file
        return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE

    def load_config(self) -> None:
        """Load configuration from YAML file, if there is one."""
        if not os.path.exists(self.config_file):
            self.logger.debug(
                "No configuration file at %s, using defaults", self.config_file
            )
            self.config_data = {}
            return

        try:
            with open(self.config_file, "r", encoding="utf-8") as file:
                data = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(
                f"Configuration file '{self.config_file}' must contain a mapping"
            )
        self.config_data = data

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the configuration key (e.g., 'api.url')
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        value = self.config_data

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def get_api_url(self) -> str:
        """Get the device API base URL."""
        return self.get("api.url", DEFAULT_API_URL)

    def get_test_api_url(self) -> str:
        """Get the URL used when registering against the test API."""
        return self.get("api.test_url", DEFAULT_TEST_API_URL)

    def should_verify_ssl(self) -> bool:
        """Check if SSL certificates should be verified."""
        return self.get("api.verify_ssl", True)

    def get_api_timeout(self) -> int:
        """Get HTTP request timeout in seconds."""
        return self.get("api.timeout", 30)

    def get_default_group(self) -> str:
        """Get the group new devices register into."""
        return self.get("registration.group", "new")

    def get_node_id_prefix(self) -> str:
        """Get the prefix written in front of the device id in the node id."""
        return self.get("registration.prefix", "pi")

    def get_retry_wait(self) -> float:
        """Get the delay between registration attempts in seconds."""
        return self.get("registration.retry_wait", 5)

    def get_node_id_file(self) -> str:
        """Get the path of the configuration-management node id file."""
        return self.get("node_id.file", "/etc/salt/minion_id")

    def get_identity_file(self) -> str:
        """Get the path of the persisted device identity."""
        return self.get("identity.file", "/etc/cacophony/device.yaml")

    def get_connection_timeout(self) -> float:
        """Get how long one connectivity wait may take, in seconds."""
        return self.get("connectivity.timeout", 120)

    def get_connection_retry_interval(self) -> float:
        """Get the delay between connectivity waits, in seconds."""
        return self.get("connectivity.retry_interval", 600)

    def get_connection_max_attempts(self) -> int:
        """Get the number of connectivity waits; -1 waits forever."""
        return self.get("connectivity.max_attempts", -1)

    def get_flush_command(self) -> List[str]:
        """Get the command that flushes queued events, empty to skip flushing."""
        command = self.get("telemetry.flush_command", "event-reporter --flush")
        if not command:
            return []
        if isinstance(command, str):
            return shlex.split(command)
        return [str(part) for part in command]

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.get("logging.level", "INFO")

    def get_log_file(self) -> Optional[str]:
        """Get log file path if specified."""
        return self.get("logging.file")
