"""
Client for the device API.

Handles the three calls registration needs: creating (or re-claiming) a
device record, authenticating as an existing device, and renaming it.
"""

import logging
import ssl
from typing import Any, Dict, Optional, Tuple

import aiohttp

from src.device_register.identity.models import DeviceIdentity
from src.device_register.registration.errors import RegistrarError

REGISTER_PATH = "/api/v1/devices"
AUTHENTICATE_PATH = "/authenticate_device"
REREGISTER_PATH = "/api/v1/devices/reregister"


class RemoteRegistrar:
    """Talks to the device API over HTTP(S)."""

    def __init__(self, api_url: str, verify_ssl: bool = True, timeout: float = 30):
        self.api_url = api_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.api_url.startswith("https"):
            return None
        ssl_context = ssl.create_default_context()
        if not self.verify_ssl:
            ssl_context.check_hostname = False  # NOSONAR - verification is configurable
            ssl_context.verify_mode = ssl.CERT_NONE  # NOSONAR
        return ssl_context

    async def _post(
        self, path: str, payload: Dict[str, Any], token: Optional[str] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """POST ``payload`` as JSON and return the status and decoded body."""
        url = f"{self.api_url}{path}"
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = token

        connector = aiohttp.TCPConnector(ssl=self._ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(
            connector=connector, timeout=timeout
        ) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                text = await response.text()
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                if response.status != 200 or not isinstance(data, dict):
                    raise RegistrarError(
                        f"POST {path} failed with status {response.status}: {text}",
                        status=response.status,
                        body=text,
                    )
                return response.status, data

    async def register(
        self, name: str, password: str, group: str, existing_device_id: int = 0
    ) -> int:
        """
        Register this device and return the device id the API assigned.

        When ``existing_device_id`` is non-zero the API is asked to re-claim
        that record instead of creating a new one, which makes re-running
        registration after a crash safe.

        Raises:
            RegistrarError: if the API rejects the request.
            aiohttp.ClientError: on connection failures.
        """
        payload: Dict[str, Any] = {
            "devicename": name,
            "password": password,
            "group": group,
        }
        if existing_device_id > 0:
            payload["saltId"] = existing_device_id

        self.logger.debug(
            "Registering '%s' in group '%s' at %s (existing id %d)",
            name,
            group,
            self.api_url,
            existing_device_id,
        )
        _, data = await self._post(REGISTER_PATH, payload)
        if not data.get("success", True):
            raise RegistrarError(
                f"Registration rejected: {data.get('messages') or data}",
                status=200,
                body=str(data),
            )

        try:
            device_id = int(data["id"])
        except (KeyError, TypeError, ValueError) as error:
            raise RegistrarError(
                "Registration response has no device id", status=200, body=str(data)
            ) from error
        if device_id == 0:
            raise RegistrarError("Registration returned device id 0", body=str(data))
        return device_id

    async def login(self, identity: DeviceIdentity) -> "RegistrarSession":
        """Authenticate as ``identity`` and return a session for it."""
        payload = {
            "devicename": identity.name,
            "groupname": identity.group,
            "password": identity.password,
        }
        _, data = await self._post(AUTHENTICATE_PATH, payload)
        token = data.get("token")
        if not token:
            raise RegistrarError("Authentication response has no token", body=str(data))
        return RegistrarSession(
            registrar=self,
            token=token,
            device_name=data.get("devicename", identity.name),
            group_name=data.get("groupname", identity.group),
        )


class RegistrarSession:
    """An authenticated session for the current device."""

    def __init__(
        self,
        registrar: RemoteRegistrar,
        token: str,
        device_name: str,
        group_name: str,
    ):
        self.registrar = registrar
        self.token = token
        self.device_name = device_name
        self.group_name = group_name

    async def rename(self, name: str, group: str, password: str) -> None:
        """Change this device's name, group and password; the device id stays."""
        payload = {"newName": name, "newGroup": group, "newPassword": password}
        _, data = await self.registrar._post(  # pylint: disable=protected-access
            REREGISTER_PATH, payload, token=self.token
        )
        if not data.get("success", True):
            raise RegistrarError(
                f"Re-registration rejected: {data.get('messages') or data}",
                status=200,
                body=str(data),
            )
        self.device_name = name
        self.group_name = group
