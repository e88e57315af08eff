"""Build engine + emulator pair scoped to one task."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sailfish_runner.config import Settings, settings
from sailfish_runner.models.machine import ConnectionDescriptor, MachineState, ResolvedMachine
from sailfish_runner.services.lifecycle import LifecycleController
from sailfish_runner.services.providers import EMULATOR, SDK
from sailfish_runner.services.registry import MachineRegistry
from sailfish_runner.services.vbox import VBoxManage
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class VirtualMachineManager:
    """Resolved build engine and emulator of the configured provider."""

    def __init__(
        self,
        cfg: Settings | None = None,
        *,
        registry: MachineRegistry | None = None,
        lifecycle: LifecycleController | None = None,
    ) -> None:
        self._cfg = cfg or settings
        vbox = VBoxManage(self._cfg)
        self.registry = registry or MachineRegistry(vbox)
        self.lifecycle = lifecycle or LifecycleController(vbox, self._cfg)
        machines = self.registry.resolve(self._cfg.provider)
        self.sdk: ResolvedMachine = machines[SDK]
        self.emulator: ResolvedMachine = machines[EMULATOR]

    def start_sdk(self) -> None:
        self.lifecycle.start(self.sdk)

    def start_emulator(self, headless: bool = True) -> None:
        self.lifecycle.start(self.emulator, headless=headless)

    def shutdown_sdk(self) -> None:
        self.lifecycle.shutdown(self.sdk)

    def shutdown_emulator(self) -> None:
        self.lifecycle.shutdown(self.emulator)

    @property
    def sdk_connection(self) -> ConnectionDescriptor:
        return self.sdk.connection

    @property
    def emulator_connection(self) -> ConnectionDescriptor:
        return self.emulator.connection

    @property
    def sdk_rsync_shell(self) -> str:
        """``-e`` argument for rsync to reach the build engine."""
        conn = self.sdk_connection
        return f"ssh -p {conn.port} -i {conn.key_list()[0]} -o StrictHostKeyChecking=no"

    @property
    def sdk_network_location(self) -> str:
        return self.sdk_connection.network_location

    def states(self) -> dict[str, MachineState]:
        return {
            SDK: self.lifecycle.refresh(self.sdk),
            EMULATOR: self.lifecycle.refresh(self.emulator),
        }


@contextmanager
def environment(
    start_emulator: bool,
    *,
    cfg: Settings | None = None,
    manager: VirtualMachineManager | None = None,
) -> Iterator[VirtualMachineManager]:
    """Start the machines for the duration of a ``with`` block.

    With ``shutdown_vm`` set (batch mode) the emulator and then the build
    engine are shut down when the block exits, whether or not it raised.
    A shutdown failure after the block raised is logged and the block's
    own error is re-raised. In user mode the machines are left running.
    """
    _cfg = cfg or settings
    _mgr = manager or VirtualMachineManager(_cfg)

    _mgr.start_sdk()
    emulator_started = False
    try:
        if start_emulator:
            emulator_started = True
            _mgr.start_emulator(headless=_cfg.shutdown_vm)
        yield _mgr
    except BaseException:
        if _cfg.shutdown_vm:
            _teardown(_mgr, emulator_started, body_failed=True)
        raise
    else:
        if _cfg.shutdown_vm:
            _teardown(_mgr, emulator_started, body_failed=False)


def _teardown(mgr: VirtualMachineManager, emulator_started: bool, *, body_failed: bool) -> None:
    log.info("vm.teardown", emulator=emulator_started)
    try:
        try:
            if emulator_started:
                mgr.shutdown_emulator()
        finally:
            mgr.shutdown_sdk()
    except Exception as exc:
        if not body_failed:
            raise
        log.error("vm.teardown_failed", error=str(exc), error_type=type(exc).__name__)


def with_environment(
    start_emulator: bool,
    body: Callable[[Settings, VirtualMachineManager], T],
    *,
    cfg: Settings | None = None,
    manager: VirtualMachineManager | None = None,
) -> T:
    """Run ``body(settings, manager)`` inside :func:`environment`."""
    _cfg = cfg or settings
    with environment(start_emulator, cfg=_cfg, manager=manager) as mgr:
        return body(_cfg, mgr)
