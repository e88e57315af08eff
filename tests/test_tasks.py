"""Tests for the end-to-end tasks wired through the environment."""

from __future__ import annotations

import pytest

from sailfish_runner.errors import CommandExecutionError
from sailfish_runner.models.commands import CommandResult
from sailfish_runner.models.machine import ConnectionDescriptor
from sailfish_runner.models.project import Architecture, DeviceTest
from sailfish_runner.services import build, tasks


class FakeManager:
    sdk_connection = ConnectionDescriptor(user="mersdk", port=2222, keys=frozenset({"/k/mersdk"}))
    emulator_connection = ConnectionDescriptor(user="nemo", port=2223, keys=frozenset({"/k/nemo"}))
    sdk_rsync_shell = "ssh -p 2222 -i /k/mersdk -o StrictHostKeyChecking=no"

    def __init__(self):
        self.events: list[str] = []

    def start_sdk(self):
        self.events.append("start_sdk")

    def start_emulator(self, headless=True):
        self.events.append("start_emulator")

    def shutdown_sdk(self):
        self.events.append("shutdown_sdk")

    def shutdown_emulator(self):
        self.events.append("shutdown_emulator")


@pytest.fixture
def steps(monkeypatch):
    """Replace the build steps with recorders."""
    calls: list[tuple] = []

    def record(name, result=None):
        def step(*args, **kwargs):
            calls.append((name, args))
            return result
        return step

    monkeypatch.setattr(build, "compile_project", record("compile_project", ["app-1.0.i486.rpm"]))
    monkeypatch.setattr(build, "compile_app_in_vm", record("compile_app_in_vm", ["RPMS/app.rpm"]))
    monkeypatch.setattr(build, "install_archive", record("install_archive"))
    monkeypatch.setattr(build, "install_test_packages", record("install_test_packages"))
    monkeypatch.setattr(
        build,
        "execute_tests",
        record("execute_tests", {"tst-app": CommandResult(command="tst-app", exit_code=0)}),
    )
    monkeypatch.setattr(build, "sign_rpm_file", record("sign_rpm_file"))
    monkeypatch.setattr(build, "customer_sign_file", record("customer_sign_file"))
    return calls


def _names(calls) -> list[str]:
    return [name for name, _ in calls]


class TestRunTests:
    def test_full_cycle(self, steps, test_settings):
        cfg = test_settings.model_copy(update={"tests": [DeviceTest(name="tst-app")]})
        mgr = FakeManager()
        results = tasks.run_tests(cfg, mgr)
        assert list(results) == ["tst-app"]
        assert _names(steps) == [
            "compile_project", "install_archive", "install_test_packages", "execute_tests",
        ]
        compile_args = steps[0][1]
        assert compile_args[0] == FakeManager.sdk_connection
        assert compile_args[2] == Architecture.i486
        assert steps[1][1] == (FakeManager.emulator_connection, ["app-1.0.i486.rpm"])
        assert mgr.events == ["start_sdk", "start_emulator"]

    def test_no_tests_selected(self, steps, test_settings):
        assert tasks.run_tests(test_settings, FakeManager()) == {}
        assert steps == []

    def test_batch_mode_stops_machines(self, steps, test_settings):
        cfg = test_settings.model_copy(
            update={"tests": [DeviceTest(name="tst-app")], "shutdown_vm": True},
        )
        mgr = FakeManager()
        tasks.run_tests(cfg, mgr)
        assert mgr.events[-2:] == ["shutdown_emulator", "shutdown_sdk"]


class TestBuildApp:
    def test_unsigned(self, steps, test_settings):
        mgr = FakeManager()
        files = tasks.build_app(test_settings, mgr)
        assert files == ["app-1.0.i486.rpm"]
        assert _names(steps) == ["compile_project"]
        assert steps[0][1][2] == test_settings.arch
        assert mgr.events == ["start_sdk"]

    def test_signing(self, steps, test_settings):
        cfg = test_settings.model_copy(update={"sign": True, "customer_sign": True})
        tasks.build_app(cfg, FakeManager())
        assert _names(steps) == ["compile_project", "sign_rpm_file", "customer_sign_file"]
        sign_args = steps[1][1]
        assert sign_args[1].endswith("app-1.0.i486.rpm")
        assert sign_args[2] == cfg.cert_password
        assert steps[2][1][2] == cfg.customer_cert_file

    def test_failure_still_stops_machines_in_batch_mode(self, monkeypatch, test_settings):
        def failing(*args, **kwargs):
            raise CommandExecutionError("mb2 build", "/src", "", "boom", exit_code=1)

        monkeypatch.setattr(build, "compile_project", failing)
        cfg = test_settings.model_copy(update={"shutdown_vm": True})
        mgr = FakeManager()
        with pytest.raises(CommandExecutionError):
            tasks.build_app(cfg, mgr)
        assert mgr.events == ["start_sdk", "shutdown_sdk"]


def test_build_app_in_vm(steps, test_settings):
    cfg = test_settings.model_copy(update={"name": "harbour-app"})
    files = tasks.build_app_in_vm(cfg, FakeManager())
    assert files == ["RPMS/app.rpm"]
    name, args = steps[0]
    assert name == "compile_app_in_vm"
    assert args[1] == FakeManager.sdk_rsync_shell
    assert args[3] == "harbour-app"
