"""
Waits until the device API can be reached.

Field devices often boot before their modem or WiFi link is up, so
registration first blocks here until an HTTP round trip succeeds.
"""

import asyncio
import logging
import time

import aiohttp

PROBE_INTERVAL = 5


class ConnectivityGate:
    """Blocks until the API URL answers an HTTP request."""

    def __init__(self, url: str, probe_timeout: float = 10, sleep=asyncio.sleep):
        self.url = url
        self.probe_timeout = probe_timeout
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    async def probe(self) -> bool:
        """Return True if any HTTP response comes back from the URL."""
        timeout = aiohttp.ClientTimeout(total=self.probe_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.head(self.url, allow_redirects=False) as response:
                    self.logger.debug(
                        "Probe of %s returned %s", self.url, response.status
                    )
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            self.logger.debug("Probe of %s failed: %s", self.url, error)
            return False

    async def _wait_once(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if await self.probe():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await self.sleep(min(PROBE_INTERVAL, remaining))

    async def wait_until_reachable(
        self, timeout: float, retry_interval: float, max_attempts: int = -1
    ) -> bool:
        """
        Wait for connectivity.

        Each attempt probes for up to ``timeout`` seconds; between attempts it
        waits ``retry_interval`` seconds.

        Args:
            timeout: Length of one attempt in seconds
            retry_interval: Pause between failed attempts in seconds
            max_attempts: Number of attempts, -1 for no limit

        Returns:
            True once reachable, False if every attempt failed
        """
        attempt = 0
        while max_attempts == -1 or attempt < max_attempts:
            attempt += 1
            if await self._wait_once(timeout):
                return True

            if max_attempts != -1 and attempt >= max_attempts:
                break
            self.logger.warning(
                "%s not reachable, retrying in %s seconds", self.url, retry_interval
            )
            await self.sleep(retry_interval)

        self.logger.error("%s not reachable after %d attempts", self.url, attempt)
        return False
