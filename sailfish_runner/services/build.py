"""Build, install, test and signing steps run on the SDK machines.

Each step opens its own SSH session; the command strings are the Sailfish
SDK tool invocations (``mb2``, ``sb2-config``, ``pkcon``, signing tools).
"""

from __future__ import annotations

import glob
import os
import posixpath
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence

from sailfish_runner.config import Settings, settings
from sailfish_runner.errors import CommandExecutionError, ConfigurationError
from sailfish_runner.models.commands import CommandResult
from sailfish_runner.models.machine import ConnectionDescriptor
from sailfish_runner.models.project import Architecture, BuildType, DeviceTest
from sailfish_runner.services.ssh_executor import (
    execute_checked,
    execute_one_shot,
)
from sailfish_runner.services.ssh_session import RemoteSession, open_session
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)

TEST_PACKAGES = ("qt5-qtdeclarative-import-qttest", "qt5-qtdeclarative-devel-tools")
RESULTS_DIR = "test-results"
REMOTE_UPLOAD_DIR = "/tmp"
CERT_DIR = "~/share/.mersdk"


# ── helpers ───────────────────────────────────────────────────────────────

def share_path(local_path: str, share_root: str, home: Optional[str] = None) -> str:
    """Path of a host file as seen from the build engine.

    The build engine mounts the host home directory at *share_root*.
    """
    home = home or str(Path.home())
    local_path = os.path.abspath(local_path)
    if local_path == home or local_path.startswith(home.rstrip(os.sep) + os.sep):
        relative = os.path.relpath(local_path, home)
    else:
        relative = local_path.lstrip(os.sep)
    if relative == ".":
        return share_root
    return posixpath.join(share_root, *relative.split(os.sep))


def _run(session: RemoteSession, command: str, input_data: str = "") -> CommandResult:
    """One-shot command whose failure is only logged."""
    result = execute_one_shot(session, command, input_data)
    if not result.ok:
        log.warning(
            "build.step_failed",
            command=command,
            exit_code=result.exit_code,
            stderr=result.stderr_text.strip()[:200],
        )
    return result


def find_toolchain(session: RemoteSession, architecture: Optional[str] = None) -> str:
    command = "sb2-config -l"
    if architecture:
        command += f" | grep {architecture}"
    lines = [l.strip() for l in _run(session, command).stdout_text.splitlines() if l.strip()]
    if not lines:
        raise ConfigurationError(
            f"No build toolchain found on the build engine for '{architecture or 'any'}'",
        )
    log.info("build.toolchain", toolchain=lines[0])
    return lines[0]


def local_rpms(local_build_path: str) -> list[str]:
    """RPMs produced in *local_build_path*, without debuginfo/debugsource."""
    return sorted(
        path
        for path in glob.glob(os.path.join(local_build_path, "RPMS", "*.rpm"))
        if "debuginfo" not in path and "debugsource" not in path
    )


# ── compile on the shared folder ──────────────────────────────────────────

def compile_project(
    sdk: ConnectionDescriptor,
    provider: str,
    architecture: Architecture | str,
    build: BuildType | str = BuildType.debug,
    clean_build: bool = False,
    *,
    cfg: Settings | None = None,
    project_dir: Optional[str] = None,
) -> list[str]:
    """Build the project in the working directory; returns the produced RPMs.

    The project is reached through the build engine's view of the host
    home directory, so nothing is copied.
    """
    _cfg = cfg or settings
    arch = Architecture(architecture).value
    build = BuildType(build)
    project_dir = project_dir or os.getcwd()
    log.info("build.compile", provider=str(provider), arch=arch, build=build.value, clean=clean_build)

    local_build_path = os.path.join("build", str(provider), arch, build.value)
    flags = "--with debug" if build == BuildType.debug else ""

    vm_path = share_path(project_dir, _cfg.sdk_share_path)
    build_path = posixpath.join(vm_path, *local_build_path.split(os.sep))

    with open_session(sdk, _cfg) as session:
        toolchain = find_toolchain(session, arch)
        if clean_build:
            _run(session, f"rm -rf {build_path}")
        _run(session, f"mkdir -p {build_path}")
        _run(session, f"specify {vm_path}/rpm/*.yaml")
        execute_checked(session, vm_path, f"mb2 -t {toolchain} installdeps", cfg=_cfg)
        execute_checked(
            session, build_path, f"mb2 -t {toolchain} build ../../../.. {flags}".rstrip(), cfg=_cfg,
        )
        execute_checked(session, build_path, f"mb2 -t {toolchain} rpm", cfg=_cfg)

    return local_rpms(os.path.join(project_dir, local_build_path))


# ── compile inside the VM (rsync) ─────────────────────────────────────────

def rsync_to(
    source_dir: str,
    rsync_shell: str,
    destination: str,
) -> None:
    """Mirror *source_dir* to *destination* (``user@host:path``) with rsync."""
    cmd = ["rsync", "-avz", "-e", rsync_shell, ".", destination]
    log.info("build.rsync", destination=destination)
    proc = subprocess.run(cmd, cwd=source_dir, capture_output=True, text=True)
    if proc.returncode != 0:
        raise CommandExecutionError(
            command=" ".join(cmd),
            directory=source_dir,
            stdout=proc.stdout,
            stderr=proc.stderr,
            exit_code=proc.returncode,
        )


def compile_app_in_vm(
    sdk: ConnectionDescriptor,
    rsync_shell: str,
    architecture: Architecture | str,
    application_name: str,
    build: BuildType | str = BuildType.debug,
    clean_build: bool = False,
    *,
    cfg: Settings | None = None,
    project_dir: Optional[str] = None,
) -> list[str]:
    """Copy the working tree into the build engine, build there, fetch RPMS/."""
    _cfg = cfg or settings
    arch = Architecture(architecture).value
    build = BuildType(build)
    project_dir = project_dir or os.getcwd()
    relative_path = f"~/build/{application_name}/{arch}/{build.value}"

    with open_session(sdk, _cfg) as session:
        build_path = _run(session, f"echo {relative_path}").stdout_text.strip()
        if clean_build:
            log.info("build.clean", path=build_path)
            _run(session, f"rm -rf {build_path}")
        _run(session, f"mkdir -p {build_path}")

        rsync_to(project_dir, rsync_shell, f"{sdk.network_location}:{build_path}")

        toolchain = find_toolchain(session)
        flags = "-d" if build == BuildType.debug else ""
        output = execute_checked(
            session, build_path, f"mb2 -t {toolchain} build {flags}".rstrip(), cfg=_cfg,
        )
        log.debug("build.output", output=output[-2000:])

        return session.download(f"{build_path}/RPMS", project_dir, recursive=True)


# ── install & test on the emulator ────────────────────────────────────────

def install_archive(
    device: ConnectionDescriptor,
    file_paths: Sequence[str],
    *,
    cfg: Settings | None = None,
) -> None:
    """Upload RPMs to the device and (re)install them."""
    _cfg = cfg or settings
    log.info("install.archive", files=[os.path.basename(p) for p in file_paths])
    with open_session(device, _cfg) as session:
        remote_paths: list[str] = []
        for path in file_paths:
            remote_path = posixpath.join(REMOTE_UPLOAD_DIR, os.path.basename(path))
            session.upload(path, remote_path)
            remote_paths.append(remote_path)

        for path in remote_paths:
            package_name = _run(session, f"rpm --queryformat '%{{NAME}}' -qp {path}").stdout_text.strip()
            if package_name:
                _run(session, f"sudo pkcon remove -y {package_name}")

        all_files = " ".join(remote_paths)
        execute_checked(session, "~", f"sudo pkcon install-local -y {all_files}", cfg=_cfg)
        execute_checked(session, "~", f"rm {all_files}", cfg=_cfg)


def install_test_packages(device: ConnectionDescriptor, *, cfg: Settings | None = None) -> None:
    """Install the QtTest QML runtime needed by the test binaries."""
    _cfg = cfg or settings
    log.info("install.test_packages", packages=list(TEST_PACKAGES))
    with open_session(device, _cfg) as session:
        for package in TEST_PACKAGES:
            execute_checked(session, "~", f"sudo pkcon install -y {package}", cfg=_cfg)


def execute_tests(
    device: ConnectionDescriptor,
    tests: Iterable[DeviceTest],
    output_to_file: bool = False,
    *,
    cfg: Settings | None = None,
    results_dir: str = RESULTS_DIR,
) -> dict[str, CommandResult]:
    """Run each test binary on the device.

    With *output_to_file* the xunit XML of each test is written to
    ``<results_dir>/<name>.xml``.
    """
    _cfg = cfg or settings
    shutil.rmtree(results_dir, ignore_errors=True)
    os.makedirs(results_dir, exist_ok=True)

    results: dict[str, CommandResult] = {}
    with open_session(device, _cfg) as session:
        for test in tests:
            log.info("tests.running", name=test.name)
            _run(session, f"rm -rf ~/.local/share/{test.name}")
            if output_to_file:
                result = execute_one_shot(session, f"{test.name} -o -,xunitxml", cfg=_cfg)
                Path(results_dir, f"{test.name}.xml").write_bytes(result.stdout)
            else:
                result = execute_one_shot(session, test.name, cfg=_cfg)
            log.info("tests.finished", name=test.name, exit_code=result.exit_code)
            results[test.name] = result
    return results


# ── signing ───────────────────────────────────────────────────────────────

def sign_rpm_file(
    sdk: ConnectionDescriptor,
    local_rpm_path: str,
    certificate_password: str,
    *,
    cfg: Settings | None = None,
) -> None:
    _cfg = cfg or settings
    vm_file_path = share_path(local_rpm_path, _cfg.sdk_share_path)
    log.info("sign.rpm", file=local_rpm_path)
    with open_session(sdk, _cfg) as session:
        execute_checked(
            session, _cfg.sdk_share_path, f"customer-sign {vm_file_path}", certificate_password, cfg=_cfg,
        )
    log.info("sign.done", file=local_rpm_path)


def customer_sign_file(
    sdk: ConnectionDescriptor,
    local_rpm_path: str,
    certificate_name: str,
    certificate_password: str,
    *,
    cfg: Settings | None = None,
) -> None:
    """Add the customer's own signature on top of the vendor one."""
    _cfg = cfg or settings
    vm_file_path = share_path(local_rpm_path, _cfg.sdk_share_path)
    log.info("sign.customer", file=local_rpm_path, certificate=certificate_name)
    command = (
        f"ompcert-cli sign {vm_file_path} {CERT_DIR}/packages-key.pem "
        f"{CERT_DIR}/{certificate_name}"
    )
    with open_session(sdk, _cfg) as session:
        execute_checked(session, _cfg.sdk_share_path, command, certificate_password, cfg=_cfg)
    log.info("sign.customer_done", file=local_rpm_path)
