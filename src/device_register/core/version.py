"""
Version lookup for the device-register tools.
"""

import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

logger = logging.getLogger(__name__)

PACKAGE_NAME = "device-register"
UNKNOWN_VERSION = "<not set>"

_CACHED_VERSION: dict[str, str] = {}


def get_version() -> str:
    """
    Get the installed device-register version.

    Falls back to "<not set>" when running from a source checkout that was
    never installed. The result is cached after the first call.
    """
    if "value" in _CACHED_VERSION:
        return _CACHED_VERSION["value"]

    try:
        _CACHED_VERSION["value"] = pkg_version(PACKAGE_NAME)
    except PackageNotFoundError:
        logger.debug("%s is not installed, version unknown", PACKAGE_NAME)
        _CACHED_VERSION["value"] = UNKNOWN_VERSION
    return _CACHED_VERSION["value"]
