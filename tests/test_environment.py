"""Tests for the task-scoped build engine / emulator environment."""

from __future__ import annotations

import pytest

from sailfish_runner.errors import CommandExecutionError, MachineShutdownTimeout, MachineStartError
from sailfish_runner.models.machine import MachineState
from sailfish_runner.services.environment import (
    VirtualMachineManager,
    environment,
    with_environment,
)
from sailfish_runner.services.lifecycle import LifecycleController
from sailfish_runner.services.registry import MachineRegistry
from tests.mock_vbox import EMULATOR_ID, LIST_RUNNING_VMS_SDK, SDK_ID


class RecordingManager:
    """Records start / shutdown calls in order."""

    def __init__(self, fail_on: str | None = None, error: type[Exception] = MachineStartError):
        self.events: list[str] = []
        self.fail_on = fail_on
        self.error = error

    def _record(self, event: str) -> None:
        self.events.append(event)
        if event == self.fail_on:
            raise self.error(event)

    def start_sdk(self):
        self._record("start_sdk")

    def start_emulator(self, headless=True):
        self._record(f"start_emulator:{'headless' if headless else 'gui'}")

    def shutdown_sdk(self):
        self._record("shutdown_sdk")

    def shutdown_emulator(self):
        self._record("shutdown_emulator")


@pytest.fixture
def batch_settings(test_settings):
    return test_settings.model_copy(update={"shutdown_vm": True})


class TestEnvironment:
    def test_user_mode_never_shuts_down(self, test_settings):
        mgr = RecordingManager()
        with environment(True, cfg=test_settings, manager=mgr):
            pass
        assert mgr.events == ["start_sdk", "start_emulator:gui"]

    def test_user_mode_keeps_machines_on_error(self, test_settings):
        mgr = RecordingManager()
        with pytest.raises(RuntimeError):
            with environment(True, cfg=test_settings, manager=mgr):
                raise RuntimeError("build broke")
        assert "shutdown_sdk" not in mgr.events
        assert "shutdown_emulator" not in mgr.events

    def test_batch_mode_shuts_down_emulator_then_sdk(self, batch_settings):
        mgr = RecordingManager()
        with environment(True, cfg=batch_settings, manager=mgr):
            mgr.events.append("body")
        assert mgr.events == [
            "start_sdk",
            "start_emulator:headless",
            "body",
            "shutdown_emulator",
            "shutdown_sdk",
        ]

    def test_batch_mode_without_emulator(self, batch_settings):
        mgr = RecordingManager()
        with environment(False, cfg=batch_settings, manager=mgr):
            pass
        assert mgr.events == ["start_sdk", "shutdown_sdk"]

    def test_batch_mode_shuts_down_on_error(self, batch_settings):
        mgr = RecordingManager()
        with pytest.raises(CommandExecutionError):
            with environment(True, cfg=batch_settings, manager=mgr):
                raise CommandExecutionError("mb2 build", "/src", "", "")
        assert mgr.events[-2:] == ["shutdown_emulator", "shutdown_sdk"]

    def test_sdk_shut_down_when_emulator_fails_to_start(self, batch_settings):
        mgr = RecordingManager(fail_on="start_emulator:headless")
        with pytest.raises(MachineStartError):
            with environment(True, cfg=batch_settings, manager=mgr):
                pass
        assert mgr.events[-1] == "shutdown_sdk"

    def test_sdk_shut_down_when_emulator_shutdown_fails(self, batch_settings):
        mgr = RecordingManager(fail_on="shutdown_emulator")
        with pytest.raises(MachineStartError):
            with environment(True, cfg=batch_settings, manager=mgr):
                pass
        assert mgr.events[-1] == "shutdown_sdk"

    def test_body_error_survives_failed_shutdown(self, batch_settings):
        mgr = RecordingManager(fail_on="shutdown_sdk", error=MachineShutdownTimeout)

        def body(cfg, m):
            raise CommandExecutionError("mb2 build", "/src", "compiling", "error: qmake", exit_code=2)

        with pytest.raises(CommandExecutionError) as excinfo:
            with_environment(True, body, cfg=batch_settings, manager=mgr)
        assert excinfo.value.stderr == "error: qmake"
        assert mgr.events[-2:] == ["shutdown_emulator", "shutdown_sdk"]

    def test_failed_shutdown_raises_after_successful_body(self, batch_settings):
        mgr = RecordingManager(fail_on="shutdown_sdk", error=MachineShutdownTimeout)
        with pytest.raises(MachineShutdownTimeout):
            with_environment(True, lambda cfg, m: None, cfg=batch_settings, manager=mgr)

    def test_with_environment_returns_body_result(self, test_settings):
        mgr = RecordingManager()
        result = with_environment(
            False, lambda cfg, m: (cfg.provider.value, m is mgr), cfg=test_settings, manager=mgr,
        )
        assert result == ("sailfish", True)


class TestVirtualMachineManager:
    def _manager(self, fake_vbox, cfg) -> VirtualMachineManager:
        lifecycle = LifecycleController(fake_vbox, cfg, probe=lambda conn: None, sleep=lambda s: None)
        return VirtualMachineManager(cfg, registry=MachineRegistry(fake_vbox), lifecycle=lifecycle)

    def test_resolves_on_construction(self, fake_vbox, test_settings):
        mgr = self._manager(fake_vbox, test_settings)
        assert mgr.sdk.machine_id == SDK_ID
        assert mgr.emulator.machine_id == EMULATOR_ID
        assert mgr.sdk_network_location == "mersdk@localhost"
        assert mgr.emulator_connection.port == 2223

    def test_rsync_shell(self, fake_vbox, test_settings, vmshare):
        mgr = self._manager(fake_vbox, test_settings)
        key = vmshare / "ssh" / "private_keys" / "engine" / "mersdk"
        assert mgr.sdk_rsync_shell == f"ssh -p 2222 -i {key} -o StrictHostKeyChecking=no"

    def test_states(self, fake_vbox, test_settings):
        fake_vbox.set_running(LIST_RUNNING_VMS_SDK)
        states = self._manager(fake_vbox, test_settings).states()
        assert states == {"sdk": MachineState.running, "emulator": MachineState.stopped}

    def test_full_batch_cycle(self, fake_vbox, test_settings):
        cfg = test_settings.model_copy(update={"shutdown_vm": True})
        mgr = self._manager(fake_vbox, cfg)
        with environment(True, cfg=cfg, manager=mgr):
            pass
        started = [call[1] for call in fake_vbox.calls if call[0] == "startvm"]
        stopped = [call[1] for call in fake_vbox.calls if call[0] == "acpipowerbutton"]
        assert started == [SDK_ID, EMULATOR_ID]
        assert stopped == [EMULATOR_ID, SDK_ID]
