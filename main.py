"""
Command line entry points for device-register.

``device-register`` gives a freshly imaged device its identity on the device
API (or re-registers it under a new name and group). ``device-rename``
changes the name and/or group of an already registered device.
"""

import argparse
import asyncio
import logging
import signal
import subprocess  # nosec B404
from typing import List, Optional
from urllib.parse import urlparse

from src.device_register.communication.connectivity import ConnectivityGate
from src.device_register.core.config import ConfigManager
from src.device_register.core.version import get_version
from src.device_register.identity.identity_store import LocalIdentityStore
from src.device_register.identity.node_id_store import NodeIdStore
from src.device_register.operations.system_control import SystemControl
from src.device_register.operations.telemetry_flush import PendingTelemetryFlush
from src.device_register.registration.errors import DeviceRegisterError
from src.device_register.registration.registrar import RemoteRegistrar
from src.device_register.registration.workflow import (
    RegistrationOptions,
    RegistrationResult,
    RegistrationWorkflow,
)
from src.device_register.utils.logging_setup import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_register_parser() -> argparse.ArgumentParser:
    """Argument parser for device-register."""
    parser = argparse.ArgumentParser(
        prog="device-register",
        description="Register this device with the device API and save its identity.",
    )
    parser.add_argument(
        "-r", "--reboot", action="store_true", help="reboot device after registering"
    )
    parser.add_argument("-a", "--api", help="url for the api server to register to")
    parser.add_argument(
        "-i",
        "--ignore-minion-id",
        action="store_true",
        help="don't check or write to minion id file",
    )
    parser.add_argument(
        "-d",
        "--remove-device-config",
        action="store_true",
        help="remove the device config files. This is useful if you need to register "
        "as a new device or to a different server. This normally wants to be used with '-i'",
    )
    parser.add_argument(
        "-t",
        "--test-api",
        action="store_true",
        help="use the test API. This will overwrite the API param",
    )
    parser.add_argument(
        "--reregister",
        action="store_true",
        help="reregister the device to the same API with a new name and group",
    )
    parser.add_argument("-g", "--group", help="new group name")
    parser.add_argument(
        "-n", "--name", help="new device name. If not given a random name will be generated"
    )
    parser.add_argument(
        "-p",
        "--password",
        help="new password. If not given a random password will be generated",
    )
    parser.add_argument("--prefix", help="prefix used in minion id")
    parser.add_argument(
        "--retry-until-registered",
        action="store_true",
        help="will continue to try until it has registered",
    )
    _add_common_arguments(parser)
    return parser


def build_rename_parser() -> argparse.ArgumentParser:
    """Argument parser for device-rename."""
    parser = argparse.ArgumentParser(
        prog="device-rename", description="Rename this device or move it to a new group."
    )
    parser.add_argument("-n", "--name", help="new devicename")
    parser.add_argument("-g", "--group", help="new groupname")
    _add_common_arguments(parser)
    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", help="path to the configuration file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging"
    )
    parser.add_argument("--version", action="version", version=get_version())


def resolve_api_url(args: argparse.Namespace, config: ConfigManager) -> str:
    """Pick the API URL from the flags and config and check it is usable."""
    if getattr(args, "test_api", False):
        api_url = config.get_test_api_url()
    else:
        api_url = getattr(args, "api", None) or config.get_api_url()

    parsed = urlparse(api_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid API url '{api_url}'")
    return api_url


def build_workflow(config: ConfigManager, api_url: str) -> RegistrationWorkflow:
    """Wire the workflow to the real stores, API client and flush command."""
    return RegistrationWorkflow(
        identity_store=LocalIdentityStore(config.get_identity_file()),
        node_id_store=NodeIdStore(config.get_node_id_file()),
        registrar=RemoteRegistrar(
            api_url,
            verify_ssl=config.should_verify_ssl(),
            timeout=config.get_api_timeout(),
        ),
        telemetry_flush=PendingTelemetryFlush(config.get_flush_command()),
    )


def _cancel_on_sigterm() -> None:
    task = asyncio.current_task()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        # Windows event loops have no signal handlers
        logger.debug("SIGTERM handler not installed")


async def run_register(
    args: argparse.Namespace,
    config: ConfigManager,
    system: SystemControl,
    workflow: Optional[RegistrationWorkflow] = None,
    gate: Optional[ConnectivityGate] = None,
) -> int:
    """Run device-register and return the exit code."""
    _cancel_on_sigterm()
    api_url = resolve_api_url(args, config)
    logger.info(api_url)
    workflow = workflow or build_workflow(config, api_url)
    gate = gate or ConnectivityGate(api_url)

    logger.info("requesting internet connection")
    reachable = await gate.wait_until_reachable(
        config.get_connection_timeout(),
        config.get_connection_retry_interval(),
        config.get_connection_max_attempts(),
    )
    if not reachable:
        raise DeviceRegisterError(f"Could not reach {api_url}")
    logger.info("internet connection made")

    if args.reregister:
        await workflow.reregister(args.name, args.group, args.password)
    else:
        options = RegistrationOptions(
            prefix=args.prefix or config.get_node_id_prefix(),
            test_api=args.test_api,
            ignore_node_id=args.ignore_minion_id,
            remove_device_config=args.remove_device_config,
            retry_wait=config.get_retry_wait(),
        )
        group = args.group or config.get_default_group()
        if args.retry_until_registered:
            result = await workflow.register_until_success(
                args.name, group, args.password, options
            )
        else:
            result = await workflow.register(args.name, group, args.password, options)

        if result is RegistrationResult.ALREADY_REGISTERED:
            return EXIT_OK

    if args.reboot:
        system.reboot()
    return EXIT_OK


async def run_rename(
    args: argparse.Namespace,
    config: ConfigManager,
    workflow: Optional[RegistrationWorkflow] = None,
) -> int:
    """Run device-rename and return the exit code."""
    workflow = workflow or build_workflow(config, resolve_api_url(args, config))
    await workflow.rename(args.name, args.group)
    return EXIT_OK


def _run(parser: argparse.ArgumentParser, runner, argv: Optional[List[str]]) -> int:
    args = parser.parse_args(argv)
    try:
        config = ConfigManager(args.config)
        setup_logging(config, verbose=args.verbose)
        logger.info("running version: %s", get_version())
        return asyncio.run(runner(args, config))
    except (
        DeviceRegisterError,
        OSError,
        ValueError,
        subprocess.SubprocessError,
    ) as error:
        logger.error("%s", error)
        return EXIT_FAILURE
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Interrupted")
        return EXIT_INTERRUPTED


def main(argv: Optional[List[str]] = None, system: Optional[SystemControl] = None):
    """Entry point for device-register."""
    system = system or SystemControl()
    code = _run(
        build_register_parser(),
        lambda args, config: run_register(args, config, system),
        argv,
    )
    system.exit_process(code)


def rename_main(
    argv: Optional[List[str]] = None, system: Optional[SystemControl] = None
):
    """Entry point for device-rename."""
    system = system or SystemControl()
    system.exit_process(_run(build_rename_parser(), run_rename, argv))


if __name__ == "__main__":
    main()
