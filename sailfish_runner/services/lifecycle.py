"""Start, readiness and shutdown of VirtualBox machines.

A machine listed as running by VirtualBox is not necessarily accepting SSH
sessions yet: :meth:`LifecycleController.start` only returns once an
authenticated session could be established.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from sailfish_runner.config import Settings, settings
from sailfish_runner.errors import (
    MachineNotFoundError,
    MachineShutdownTimeout,
    MachineStartError,
)
from sailfish_runner.models.machine import ConnectionDescriptor, MachineState, ResolvedMachine
from sailfish_runner.services.ssh_session import open_session
from sailfish_runner.services.vbox import VBoxManage
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)


class LifecycleController:
    """Drives machines through ``stopped -> starting -> running -> shutting_down``."""

    def __init__(
        self,
        vbox: VBoxManage | None = None,
        cfg: Settings | None = None,
        *,
        probe: Optional[Callable[[ConnectionDescriptor], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cfg = cfg or settings
        self._vbox = vbox or VBoxManage(self._cfg)
        self._probe = probe or self._probe_ssh
        self._sleep = sleep
        self._states: dict[str, MachineState] = {}

    # ── state tracking ────────────────────────────────────────────────

    def state(self, machine: ResolvedMachine) -> MachineState:
        return self._states.get(machine.machine_id, MachineState.unknown)

    def _set_state(self, machine: ResolvedMachine, state: MachineState) -> None:
        previous = self.state(machine)
        self._states[machine.machine_id] = state
        if previous != state:
            log.debug("vm.state", name=machine.name, old=previous.value, new=state.value)

    def is_installed(self, machine: ResolvedMachine) -> bool:
        return any(machine.name in m.name for m in self._vbox.list_installed_machines())

    def is_running(self, machine: ResolvedMachine) -> bool:
        return any(m.id == machine.machine_id for m in self._vbox.list_running_machines())

    def refresh(self, machine: ResolvedMachine) -> MachineState:
        """Recompute the state from the VirtualBox listings."""
        if not self.is_installed(machine):
            self._set_state(machine, MachineState.not_installed)
        elif self.is_running(machine):
            if self.state(machine) not in (MachineState.running, MachineState.shutting_down):
                self._set_state(machine, MachineState.running)
        else:
            self._set_state(machine, MachineState.stopped)
        return self.state(machine)

    # ── start ─────────────────────────────────────────────────────────

    def start(self, machine: ResolvedMachine, headless: bool = True) -> None:
        """Start *machine* unless it runs already, then wait for SSH."""
        log.info("vm.starting", name=machine.name, headless=headless)
        if not self.is_installed(machine):
            self._set_state(machine, MachineState.not_installed)
            raise MachineNotFoundError(f"Machine '{machine.name}' is not installed")

        if self.is_running(machine):
            log.info("vm.already_running", name=machine.name)
        else:
            self._set_state(machine, MachineState.starting)
            if not self._vbox.start_machine(machine.machine_id, headless=headless):
                self._set_state(machine, MachineState.stopped)
                raise MachineStartError(f"Machine '{machine.name}' did not start")

        self.wait_until_reachable(machine.connection)
        self._set_state(machine, MachineState.running)
        log.info("vm.running", name=machine.name)

    def _probe_ssh(self, connection: ConnectionDescriptor) -> None:
        with open_session(connection, self._cfg):
            pass

    def wait_until_reachable(self, connection: ConnectionDescriptor) -> None:
        """Block until an SSH session can be opened.

        Retries ``ssh_connect_attempts`` times; the last probe error is
        re-raised as is.
        """
        attempts = self._cfg.ssh_connect_attempts
        log.info("vm.probe_ssh", host=connection.host, port=connection.port)
        for attempt in range(1, attempts + 1):
            try:
                self._probe(connection)
                return
            except Exception as exc:
                if attempt >= attempts:
                    log.error("vm.unreachable", port=connection.port, attempts=attempts, error=str(exc))
                    raise
                log.info("vm.probe_retry", port=connection.port, attempt=attempt, error=str(exc))
                self._sleep(self._cfg.ssh_connect_backoff_seconds)

    # ── shutdown ──────────────────────────────────────────────────────

    def shutdown(self, machine: ResolvedMachine) -> int:
        """Press the ACPI power button and wait for the machine to stop.

        Returns the number of running-list polls it took.
        """
        log.info("vm.shutting_down", name=machine.name)
        self._set_state(machine, MachineState.shutting_down)
        self._vbox.power_button(machine.machine_id)

        limit = self._cfg.shutdown_max_polls
        polls = 0
        while True:
            polls += 1
            if not self.is_running(machine):
                self._set_state(machine, MachineState.stopped)
                log.info("vm.stopped", name=machine.name, polls=polls)
                return polls
            if limit is not None and polls >= limit:
                raise MachineShutdownTimeout(
                    f"Machine '{machine.name}' still running after {polls} checks",
                )
            self._sleep(self._cfg.shutdown_poll_interval_seconds)
