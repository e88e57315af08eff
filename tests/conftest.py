"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Keep the settings singleton away from the developer's environment
os.environ.setdefault("SAILFISH_LOG_LEVEL", "warning")
os.environ.setdefault("SAILFISH_VBOXMANAGE_BINARY", "VBoxManage-not-installed")

import pytest

from sailfish_runner.config import Settings
from sailfish_runner.models.machine import ConnectionDescriptor, HostKeyPolicy, ResolvedMachine
from tests.mock_ssh import FakeSession, FakeSessionFactory
from tests.mock_vbox import EMULATOR_ID, SDK_ID, FakeVBox, showvminfo


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    """Settings with tiny intervals, isolated from any .tests.yaml in cwd."""
    monkeypatch.chdir(tmp_path)
    return Settings(
        ssh_connect_attempts=3,
        ssh_connect_backoff_seconds=0,
        shutdown_poll_interval_seconds=0,
        shutdown_max_polls=10,
        channel_poll_interval_seconds=0,
        command_timeout_seconds=5,
    )


@pytest.fixture
def vmshare(tmp_path):
    """A vmshare folder holding the keys of both machines."""
    share = tmp_path / "vmshare"
    keys = share / "ssh" / "private_keys"
    (keys / "engine").mkdir(parents=True)
    (keys / "Sailfish_OS-Emulator-latest").mkdir(parents=True)
    (keys / "engine" / "mersdk").write_text("PRIVATE KEY\n")
    (keys / "Sailfish_OS-Emulator-latest" / "nemo").write_text("PRIVATE KEY\n")
    (keys / "Sailfish_OS-Emulator-latest" / "nemo.pub").write_text("PUBLIC KEY\n")
    return share


@pytest.fixture
def fake_vbox(vmshare) -> FakeVBox:
    return FakeVBox(info=showvminfo(str(vmshare)))


@pytest.fixture
def mock_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def session_factory(monkeypatch) -> FakeSessionFactory:
    """Replace ``open_session`` in the build steps with recorded fakes."""
    import sailfish_runner.services.build as build_mod

    factory = FakeSessionFactory()
    monkeypatch.setattr(build_mod, "open_session", factory)
    return factory


@pytest.fixture
def sdk_machine() -> ResolvedMachine:
    return ResolvedMachine(
        name="Sailfish OS Build Engine",
        machine_id=SDK_ID,
        connection=ConnectionDescriptor(
            user="mersdk",
            port=2222,
            keys=frozenset({"/share/ssh/private_keys/engine/mersdk"}),
            verify_host_key=HostKeyPolicy.never,
        ),
    )


@pytest.fixture
def emulator_machine() -> ResolvedMachine:
    return ResolvedMachine(
        name="Sailfish OS Emulator",
        architecture="i486",
        machine_id=EMULATOR_ID,
        connection=ConnectionDescriptor(
            user="nemo",
            port=2223,
            keys=frozenset({"/share/ssh/private_keys/emulator/nemo"}),
            verify_host_key=HostKeyPolicy.never,
        ),
    )
