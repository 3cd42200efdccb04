"""
Tests for the registration workflow.
"""

# pylint: disable=redefined-outer-name,protected-access

import asyncio
import random
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from src.device_register.identity.models import DeviceIdentity
from src.device_register.registration.errors import (
    NotRegisteredError,
    RegistrarError,
    RegistrationError,
    TelemetryFlushError,
)
from src.device_register.registration.workflow import (
    RegistrationOptions,
    RegistrationResult,
    RegistrationWorkflow,
)


def _register_identity(identity_store, device_id=7):
    identity_store.save(
        DeviceIdentity(device_id=device_id, name="old-name", group="g0", password="pw")
    )


class TestRegister:
    """Tests for a single registration attempt."""

    @pytest.mark.asyncio
    async def test_first_registration_writes_node_id_and_identity(
        self, workflow, registrar, node_id_store, identity_store
    ):
        """No node id and no identity: a new id is requested and recorded."""
        result = await workflow.register("fox-lamp-otter", "g1", "secret123")

        assert result is RegistrationResult.REGISTERED
        registrar.register.assert_awaited_once_with(
            "fox-lamp-otter", "secret123", "g1", 0
        )
        assert node_id_store.path.read_text(encoding="utf-8") == "pi-42"
        assert identity_store.load() == DeviceIdentity(
            device_id=42, name="fox-lamp-otter", group="g1", password="secret123"
        )

    @pytest.mark.asyncio
    async def test_existing_node_id_is_reused_and_not_rewritten(
        self, workflow, registrar, node_id_store, identity_store
    ):
        """A node id with a trailing number re-claims that device id."""
        node_id_store.path.parent.mkdir(parents=True)
        node_id_store.path.write_text("pi-test-42", encoding="utf-8")
        mtime = node_id_store.path.stat().st_mtime_ns

        result = await workflow.register("fox-lamp-otter", "g1", "secret123")

        assert result is RegistrationResult.REGISTERED
        registrar.register.assert_awaited_once_with(
            "fox-lamp-otter", "secret123", "g1", 42
        )
        assert node_id_store.path.read_text(encoding="utf-8") == "pi-test-42"
        assert node_id_store.path.stat().st_mtime_ns == mtime
        assert identity_store.load().device_id == 42

    @pytest.mark.asyncio
    async def test_unparseable_node_id_requests_new_id(
        self, workflow, registrar, node_id_store
    ):
        """A node id without a number is treated as no id at all."""
        node_id_store.path.parent.mkdir(parents=True)
        node_id_store.path.write_text("pi-notanumber", encoding="utf-8")
        registrar.register.return_value = 99

        await workflow.register("fox-lamp-otter", "g1", "secret123")

        assert registrar.register.await_args.args[3] == 0
        assert node_id_store.path.read_text(encoding="utf-8") == "pi-99"

    @pytest.mark.asyncio
    async def test_already_registered_is_a_no_op(
        self, workflow, registrar, identity_store, node_id_store
    ):
        """An existing identity short-circuits registration."""
        _register_identity(identity_store)

        result = await workflow.register("fox-lamp-otter", "g1", "secret123")

        assert result is RegistrationResult.ALREADY_REGISTERED
        registrar.register.assert_not_awaited()
        assert not node_id_store.path.exists()
        assert identity_store.load().device_id == 7

    @pytest.mark.asyncio
    async def test_reregister_option_bypasses_guard(
        self, workflow, registrar, identity_store
    ):
        """Requesting re-registration registers even with an identity present."""
        _register_identity(identity_store)

        result = await workflow.register(
            "fox-lamp-otter", "g1", "secret123", RegistrationOptions(reregister=True)
        )

        assert result is RegistrationResult.REGISTERED
        registrar.register.assert_awaited_once()
        assert identity_store.load().device_id == 42

    @pytest.mark.asyncio
    async def test_test_api_prefix(self, workflow, node_id_store):
        """Test API registrations are marked in the node id."""
        await workflow.register(
            "n", "g", "p", RegistrationOptions(prefix="tc2", test_api=True)
        )

        assert node_id_store.path.read_text(encoding="utf-8") == "tc2-test-42"

    @pytest.mark.asyncio
    async def test_ignore_node_id(self, workflow, registrar, node_id_store):
        """Ignoring the node id neither reads nor writes it."""
        node_id_store.path.parent.mkdir(parents=True)
        node_id_store.path.write_text("pi-5", encoding="utf-8")

        await workflow.register("n", "g", "p", RegistrationOptions(ignore_node_id=True))

        assert registrar.register.await_args.args[3] == 0
        assert node_id_store.path.read_text(encoding="utf-8") == "pi-5"

    @pytest.mark.asyncio
    async def test_defaults_generated_when_unset(self, workflow, registrar):
        """Missing name, group and password get defaults."""
        await workflow.register()

        name, password, group, _ = registrar.register.await_args.args
        assert len(name.split("-")) == 3
        assert len(password) == 20
        assert group == "new"

    @pytest.mark.asyncio
    async def test_defaults_are_fresh_per_attempt(self, workflow, registrar):
        """A retry does not reuse the previous attempt's generated name."""
        registrar.register.side_effect = [RegistrarError("name taken"), 42]

        with patch(
            "src.device_register.utils.credentials.petname.generate",
            side_effect=["wholly-merry-otter", "boldly-keen-lynx"],
        ):
            with pytest.raises(RegistrationError):
                await workflow.register()
            await workflow.register()

        first = registrar.register.await_args_list[0].args
        second = registrar.register.await_args_list[1].args
        assert first[0] != second[0]
        assert first[1] != second[1]

    @pytest.mark.asyncio
    async def test_remove_device_config_order(
        self, identity_store, node_id_store, telemetry_flush
    ):
        """Flush happens before removal, and removal before the API call."""
        _register_identity(identity_store)
        calls = []

        async def flush():
            calls.append("flush")

        def remove():
            calls.append("remove")
            return original_remove()

        async def register(*_args):
            calls.append("register")
            assert not identity_store.is_identity_present()
            return 43

        original_remove = identity_store.remove
        identity_store.remove = remove
        telemetry_flush.flush = AsyncMock(side_effect=flush)
        registrar = Mock()
        registrar.register = AsyncMock(side_effect=register)
        workflow = RegistrationWorkflow(
            identity_store, node_id_store, registrar, telemetry_flush
        )

        await workflow.register(
            "n",
            "g",
            "p",
            RegistrationOptions(remove_device_config=True, reregister=True),
        )

        assert calls == ["flush", "remove", "register"]
        assert identity_store.load().device_id == 43

    @pytest.mark.asyncio
    async def test_flush_failure_keeps_identity(
        self, workflow, registrar, identity_store, telemetry_flush
    ):
        """A failed flush stops before anything is removed."""
        _register_identity(identity_store)
        telemetry_flush.flush.side_effect = TelemetryFlushError("reporter down")

        with pytest.raises(TelemetryFlushError):
            await workflow.register(
                options=RegistrationOptions(remove_device_config=True, reregister=True)
            )

        assert identity_store.is_identity_present()
        registrar.register.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RegistrarError("bad request", status=400),
            aiohttp.ClientConnectionError("down"),
            asyncio.TimeoutError(),
        ],
    )
    async def test_registrar_failure_persists_nothing(
        self, workflow, registrar, identity_store, node_id_store, error
    ):
        """API failures are wrapped and leave no files behind."""
        registrar.register.side_effect = error

        with pytest.raises(RegistrationError) as exc_info:
            await workflow.register("n", "g", "p")

        assert exc_info.value.__cause__ is error
        assert not identity_store.path.exists()
        assert not node_id_store.path.exists()

    @pytest.mark.asyncio
    async def test_node_id_read_error_propagates(
        self, workflow, registrar, node_id_store
    ):
        """Errors other than a missing node id file are surfaced."""
        node_id_store.path.mkdir(parents=True)

        with pytest.raises(OSError):
            await workflow.register("n", "g", "p")
        registrar.register.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mismatched_id_does_not_overwrite_node_id(
        self, workflow, registrar, node_id_store
    ):
        """An embedded device id is never replaced by another one."""
        node_id_store.path.parent.mkdir(parents=True)
        node_id_store.path.write_text("pi-42", encoding="utf-8")
        registrar.register.return_value = 77

        await workflow.register("n", "g", "p")

        assert node_id_store.path.read_text(encoding="utf-8") == "pi-42"


class TestRegisterUntilSuccess:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_retries_until_success(
        self, workflow, registrar, sleep, identity_store
    ):
        """Two failures then a success means three calls and two waits."""
        registrar.register.side_effect = [
            RegistrarError("busy", status=500),
            aiohttp.ClientConnectionError("down"),
            42,
        ]

        result = await workflow.register_until_success(
            "n", "g", "p", RegistrationOptions(retry_wait=5)
        )

        assert result is RegistrationResult.REGISTERED
        assert registrar.register.await_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(5)
        assert identity_store.load().device_id == 42

    @pytest.mark.asyncio
    async def test_already_registered_does_not_loop(self, workflow, registrar, sleep):
        """An existing identity ends the loop immediately."""
        _register_identity(workflow.identity_store)

        result = await workflow.register_until_success("n", "g", "p")

        assert result is RegistrationResult.ALREADY_REGISTERED
        registrar.register.assert_not_awaited()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stops_when_identity_appears_elsewhere(
        self, workflow, registrar, identity_store, sleep
    ):
        """An identity written by another path stops the retries."""

        async def fail_and_register_elsewhere(*_args):
            _register_identity(identity_store, device_id=11)
            raise RegistrarError("conflict", status=409)

        registrar.register.side_effect = fail_and_register_elsewhere

        result = await workflow.register_until_success("n", "g", "p")

        assert result is RegistrationResult.ALREADY_REGISTERED
        assert registrar.register.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancellation_between_attempts(
        self, identity_store, node_id_store, registrar, telemetry_flush
    ):
        """Cancelling the task while it waits ends the loop."""
        registrar.register.side_effect = RegistrarError("busy", status=503)
        workflow = RegistrationWorkflow(
            identity_store,
            node_id_store,
            registrar,
            telemetry_flush,
            random_source=random.Random(1),
        )

        task = asyncio.create_task(
            workflow.register_until_success(
                "n", "g", "p", RegistrationOptions(retry_wait=60)
            )
        )
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert registrar.register.await_count == 1
        assert not identity_store.path.exists()

    @pytest.mark.asyncio
    async def test_cancellation_waits_for_registrar_call(
        self, workflow, registrar, identity_store, node_id_store
    ):
        """Cancelling during the API call finishes the attempt before stopping."""
        call_started = asyncio.Event()
        completed = []

        async def slow_register(*_args):
            call_started.set()
            await asyncio.sleep(0.1)
            completed.append(True)
            return 42

        registrar.register.side_effect = slow_register

        task = asyncio.create_task(workflow.register_until_success("n", "g", "p"))
        await call_started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert completed == [True]
        assert registrar.register.await_count == 1
        assert node_id_store.path.read_text(encoding="utf-8") == "pi-42"
        assert identity_store.load().device_id == 42

    @pytest.mark.asyncio
    async def test_identity_save_failure_reuses_written_node_id(
        self, workflow, registrar, identity_store, node_id_store, sleep
    ):
        """A crash after the node id write re-claims the same device next time."""
        real_save = identity_store.save

        def save_failing_once(identity):
            if identity_store.save.call_count == 1:
                raise OSError("disk full")
            return real_save(identity)

        with patch.object(identity_store, "save", side_effect=save_failing_once):
            with patch.object(
                node_id_store, "write", wraps=node_id_store.write
            ) as write:
                result = await workflow.register_until_success("n", "g", "p")

        assert result is RegistrationResult.REGISTERED
        assert registrar.register.await_count == 2
        assert registrar.register.await_args_list[0].args[3] == 0
        assert registrar.register.await_args_list[1].args[3] == 42
        write.assert_called_once_with("pi", 42)
        assert node_id_store.path.read_text(encoding="utf-8") == "pi-42"
        assert identity_store.load().device_id == 42
        assert sleep.await_count == 1


class TestReregister:
    """Tests for renaming an existing device."""

    def _session(self, name="api-name", group="api-group"):
        session = Mock()
        session.device_name = name
        session.group_name = group
        session.rename = AsyncMock()
        return session

    @pytest.mark.asyncio
    async def test_requires_identity(self, workflow, registrar):
        """Re-registering an unregistered device fails."""
        with pytest.raises(NotRegisteredError):
            await workflow.reregister("n", "g", "p")
        registrar.login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reregister_keeps_device_id(
        self, workflow, registrar, identity_store, node_id_store, telemetry_flush
    ):
        """Name, group and password change, the device id does not."""
        _register_identity(identity_store)
        session = self._session()
        registrar.login.return_value = session

        updated = await workflow.reregister("new-name", "new-group", "new-pw")

        telemetry_flush.flush.assert_awaited_once()
        registrar.login.assert_awaited_once_with(
            DeviceIdentity(device_id=7, name="old-name", group="g0", password="pw")
        )
        session.rename.assert_awaited_once_with("new-name", "new-group", "new-pw")
        assert updated == DeviceIdentity(7, "new-name", "new-group", "new-pw")
        assert identity_store.load() == updated
        assert not node_id_store.path.exists()

    @pytest.mark.asyncio
    async def test_reregister_keeps_current_name_and_group(
        self, workflow, registrar, identity_store
    ):
        """Omitted name and group come from the API session."""
        _register_identity(identity_store)
        session = self._session()
        registrar.login.return_value = session

        updated = await workflow.reregister()

        name, group, password = session.rename.await_args.args
        assert (name, group) == ("api-name", "api-group")
        assert len(password) == 20
        assert updated.password == password

    @pytest.mark.asyncio
    async def test_reregister_failure_keeps_old_identity(
        self, workflow, registrar, identity_store
    ):
        """A failed rename leaves the stored identity untouched."""
        _register_identity(identity_store)
        session = self._session()
        session.rename.side_effect = RegistrarError("forbidden", status=403)
        registrar.login.return_value = session

        with pytest.raises(RegistrationError):
            await workflow.reregister("new-name", "new-group", "new-pw")

        assert identity_store.load().name == "old-name"

    @pytest.mark.asyncio
    async def test_login_failure_is_registration_error(
        self, workflow, registrar, identity_store
    ):
        """Authentication failures surface as RegistrationError."""
        _register_identity(identity_store)
        registrar.login.side_effect = aiohttp.ClientConnectionError("down")

        with pytest.raises(RegistrationError):
            await workflow.reregister("n")

    @pytest.mark.asyncio
    async def test_cancellation_during_rename_saves_new_password(
        self, workflow, registrar, identity_store
    ):
        """A rename the API has started is saved locally before cancelling."""
        _register_identity(identity_store)
        session = self._session()
        call_started = asyncio.Event()

        async def slow_rename(*_args):
            call_started.set()
            await asyncio.sleep(0.1)

        session.rename.side_effect = slow_rename
        registrar.login.return_value = session

        task = asyncio.create_task(workflow.reregister("new-name", "g1", "new-pw"))
        await call_started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert identity_store.load() == DeviceIdentity(7, "new-name", "g1", "new-pw")


class TestRename:
    """Tests for the name/group only rename."""

    @pytest.mark.asyncio
    async def test_requires_name_or_group(self, workflow):
        """Nothing to change is an error."""
        with pytest.raises(ValueError):
            await workflow.rename()

    @pytest.mark.asyncio
    async def test_rename_group_keeps_name_and_password(
        self, workflow, registrar, identity_store
    ):
        """Only the group changes when only a group is given."""
        _register_identity(identity_store)
        session = Mock(device_name="old-name", group_name="g0")
        session.rename = AsyncMock()
        registrar.login.return_value = session

        updated = await workflow.rename(group="g9")

        session.rename.assert_awaited_once_with("old-name", "g9", "pw")
        assert updated == DeviceIdentity(7, "old-name", "g9", "pw")
