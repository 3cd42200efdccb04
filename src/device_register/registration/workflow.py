"""
Registration workflow.

Keeps three pieces of state in agreement: the device record held by the API,
the identity persisted on the device, and the node id file read by the
configuration-management agent. Every step is ordered so that a crash or a
failed call at any point leaves state the next run can converge from:

- the node id file is written before the local identity, so an interrupted
  run re-presents the same device id instead of minting a new device;
- device config removal happens before the API call, so a failed call never
  leaves a local identity the API disagrees with;
- nothing is persisted when the API call fails.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp

from src.device_register.identity.models import DeviceIdentity, RegistrationRequest
from src.device_register.registration.errors import (
    NotRegisteredError,
    RegistrarError,
    RegistrationError,
    TelemetryFlushError,
)
from src.device_register.utils.credentials import generate_name, generate_password

DEFAULT_GROUP = "new"
DEFAULT_PREFIX = "pi"
DEFAULT_RETRY_WAIT = 5.0

REMOTE_ERRORS = (RegistrarError, aiohttp.ClientError, asyncio.TimeoutError)


class RegistrationResult(str, Enum):
    """Outcome of a successful register() call."""

    REGISTERED = "registered"
    ALREADY_REGISTERED = "already_registered"


@dataclass
class RegistrationOptions:
    """Switches that change how a registration attempt behaves."""

    prefix: str = DEFAULT_PREFIX
    test_api: bool = False
    ignore_node_id: bool = False
    remove_device_config: bool = False
    reregister: bool = False
    retry_wait: float = DEFAULT_RETRY_WAIT

    @property
    def node_id_prefix(self) -> str:
        """Prefix written in front of the device id, e.g. ``pi`` or ``pi-test``."""
        if self.test_api:
            return f"{self.prefix}-test"
        return self.prefix


class RegistrationWorkflow:  # pylint: disable=too-many-instance-attributes
    """Registers, re-registers and renames this device."""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        identity_store,
        node_id_store,
        registrar,
        telemetry_flush,
        random_source=None,
        logger: Optional[logging.Logger] = None,
        sleep=asyncio.sleep,
    ):
        self.identity_store = identity_store
        self.node_id_store = node_id_store
        self.registrar = registrar
        self.telemetry_flush = telemetry_flush
        self.random_source = (
            random_source if random_source is not None else secrets.SystemRandom()
        )
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep

    def _resolve_existing_id(self, options: RegistrationOptions) -> int:
        if options.ignore_node_id:
            return 0
        return self.node_id_store.resolve_existing_id()

    def _build_request(
        self,
        name: Optional[str],
        group: Optional[str],
        password: Optional[str],
        existing_device_id: int,
    ) -> RegistrationRequest:
        # Fresh defaults every attempt so a retry never reuses a rejected name
        return RegistrationRequest(
            name=name or generate_name(),
            group=group or DEFAULT_GROUP,
            password=password or generate_password(random_source=self.random_source),
            existing_device_id=existing_device_id,
        )

    async def _remove_device_config(self) -> None:
        await self.telemetry_flush.flush()
        self.identity_store.remove()

    async def register(
        self,
        name: Optional[str] = None,
        group: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[RegistrationOptions] = None,
    ) -> RegistrationResult:
        """
        Run one registration attempt.

        Args:
            name: Device name, a random pet name if not given
            group: Group to register into, "new" if not given
            password: Device password, a random one if not given
            options: Attempt switches, defaults if not given

        Returns:
            ALREADY_REGISTERED if an identity exists and re-registration was
            not requested (nothing is changed), REGISTERED otherwise.

        Raises:
            RegistrationError: if the API call fails; nothing is persisted.
            TelemetryFlushError: if events could not be flushed before removal.
            OSError: if the node id or identity file cannot be read or written.
            asyncio.CancelledError: if the caller was cancelled; this is only
                raised once the attempt has run to completion.
        """
        return await self._run_to_completion(
            self._register_attempt(
                name, group, password, options or RegistrationOptions()
            )
        )

    async def _run_to_completion(self, coro):
        """
        Await ``coro`` in its own task so cancelling the caller cannot
        interrupt it. A pending cancellation is re-raised once it finishes.
        """
        attempt = asyncio.ensure_future(coro)
        try:
            return await asyncio.shield(attempt)
        except asyncio.CancelledError:
            self.logger.info("Cancelled, finishing the current attempt first")
            await asyncio.wait({attempt})
            if not attempt.cancelled() and attempt.exception() is not None:
                self.logger.warning(
                    "Attempt finished with an error after cancellation: %s",
                    attempt.exception(),
                )
            raise

    async def _register_attempt(
        self,
        name: Optional[str],
        group: Optional[str],
        password: Optional[str],
        options: RegistrationOptions,
    ) -> RegistrationResult:
        if not options.reregister and self.identity_store.is_identity_present():
            self.logger.info("Device is already registered, nothing to do")
            return RegistrationResult.ALREADY_REGISTERED

        existing_id = self._resolve_existing_id(options)
        request = self._build_request(name, group, password, existing_id)

        if options.remove_device_config:
            await self._remove_device_config()

        try:
            device_id = await self.registrar.register(
                request.name,
                request.password,
                request.group,
                request.existing_device_id,
            )
        except REMOTE_ERRORS as error:
            raise RegistrationError(f"Failed to register device: {error}") from error

        self.logger.info("Registered")
        self.logger.info(
            "devicename: '%s', deviceID: '%d', group: '%s'",
            request.name,
            device_id,
            request.group,
        )

        if not options.ignore_node_id:
            if existing_id == 0:
                self.node_id_store.write(options.node_id_prefix, device_id)
            elif existing_id != device_id:
                self.logger.warning(
                    "API returned device id %d but node id holds %d, leaving node id unchanged",
                    device_id,
                    existing_id,
                )

        self.identity_store.save(
            DeviceIdentity(
                device_id=device_id,
                name=request.name,
                group=request.group,
                password=request.password,
            )
        )
        return RegistrationResult.REGISTERED

    async def register_until_success(
        self,
        name: Optional[str] = None,
        group: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[RegistrationOptions] = None,
    ) -> RegistrationResult:
        """
        Call register() until it succeeds or an identity appears some other way.

        Failed attempts are logged and retried after ``options.retry_wait``
        seconds, without limit. Cancel the surrounding task to give up; an
        attempt already in flight is finished before the cancellation is
        raised, so a device the API created is always persisted locally.
        """
        options = options or RegistrationOptions()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.register(name, group, password, options)
            except (RegistrationError, TelemetryFlushError, OSError) as error:
                self.logger.warning(
                    "Failed to register (attempt %d) but will retry until registered. %s",
                    attempt,
                    error,
                )

            if self.identity_store.is_identity_present():
                self.logger.info("Device identity appeared, stopping retries")
                return RegistrationResult.ALREADY_REGISTERED
            await self.sleep(options.retry_wait)

    async def _open_session(self, identity: DeviceIdentity):
        try:
            return await self.registrar.login(identity)
        except REMOTE_ERRORS as error:
            raise RegistrationError(
                f"Failed to authenticate device {identity.device_id}: {error}"
            ) from error

    def _load_registered_identity(self) -> DeviceIdentity:
        if not self.identity_store.is_identity_present():
            raise NotRegisteredError("Device is not registered")
        return self.identity_store.load()

    async def reregister(
        self,
        name: Optional[str] = None,
        group: Optional[str] = None,
        password: Optional[str] = None,
    ) -> DeviceIdentity:
        """
        Change name, group and password while keeping the device id.

        A missing name or group keeps the value the API currently has; a
        missing password is replaced by a random one. The node id is left
        alone since the device id does not change.

        Raises:
            NotRegisteredError: if there is no identity to re-register.
            RegistrationError: if authentication or the rename fails.
        """
        identity = self._load_registered_identity()
        await self.telemetry_flush.flush()

        session = await self._open_session(identity)
        new_name = name or session.device_name
        new_group = group or session.group_name
        new_password = password or generate_password(random_source=self.random_source)

        self.logger.info(
            "Reregister with name '%s' and group '%s'", new_name, new_group
        )
        return await self._rename(identity, session, new_name, new_group, new_password)

    async def rename(
        self, name: Optional[str] = None, group: Optional[str] = None
    ) -> DeviceIdentity:
        """
        Change the device name and/or group, keeping the current password.

        Raises:
            ValueError: if neither name nor group is given.
            NotRegisteredError: if there is no identity to rename.
            RegistrationError: if authentication or the rename fails.
        """
        if not name and not group:
            raise ValueError("New group or new device name must be set")

        identity = self._load_registered_identity()
        await self.telemetry_flush.flush()

        session = await self._open_session(identity)
        new_name = name or session.device_name
        new_group = group or session.group_name

        self.logger.info("Setting name to '%s' and group to '%s'", new_name, new_group)
        return await self._rename(
            identity, session, new_name, new_group, identity.password
        )

    async def _rename(  # pylint: disable=too-many-arguments
        self, identity, session, name: str, group: str, password: str
    ) -> DeviceIdentity:
        # The API may accept the new password before we see the reply
        return await self._run_to_completion(
            self._apply_rename(identity, session, name, group, password)
        )

    async def _apply_rename(  # pylint: disable=too-many-arguments
        self, identity, session, name: str, group: str, password: str
    ) -> DeviceIdentity:
        try:
            await session.rename(name, group, password)
        except REMOTE_ERRORS as error:
            raise RegistrationError(
                f"Failed to re-register device {identity.device_id}: {error}"
            ) from error

        updated = DeviceIdentity(
            device_id=identity.device_id, name=name, group=group, password=password
        )
        self.identity_store.save(updated)
        return updated
