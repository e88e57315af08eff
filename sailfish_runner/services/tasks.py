"""End-to-end tasks: build, build inside the VM, build + install + test."""

from __future__ import annotations

import os

from sailfish_runner.config import Settings, settings
from sailfish_runner.models.commands import CommandResult
from sailfish_runner.models.project import Architecture
from sailfish_runner.services import build
from sailfish_runner.services.environment import VirtualMachineManager, with_environment
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)

# Tests always run on the x86 emulator
TEST_ARCHITECTURE = Architecture.i486


def run_tests(
    cfg: Settings | None = None,
    manager: VirtualMachineManager | None = None,
) -> dict[str, CommandResult]:
    """Build for the emulator, install there and run the selected tests.

    Returns an empty mapping without touching the build when no test is
    selected.
    """
    _cfg = cfg or settings

    def body(options: Settings, mgr: VirtualMachineManager) -> dict[str, CommandResult]:
        if not options.tests:
            log.warning("tests.none_selected")
            return {}
        files = build.compile_project(
            mgr.sdk_connection,
            options.provider.value,
            TEST_ARCHITECTURE,
            options.build,
            options.clean,
            cfg=options,
        )
        build.install_archive(mgr.emulator_connection, files, cfg=options)
        build.install_test_packages(mgr.emulator_connection, cfg=options)
        return build.execute_tests(
            mgr.emulator_connection, options.tests, options.output_to_file, cfg=options,
        )

    return with_environment(True, body, cfg=_cfg, manager=manager)


def build_app(
    cfg: Settings | None = None,
    manager: VirtualMachineManager | None = None,
) -> list[str]:
    """Build RPMs through the shared folder, signing them when configured."""
    _cfg = cfg or settings

    def body(options: Settings, mgr: VirtualMachineManager) -> list[str]:
        log.info(
            "build.start",
            application=options.name,
            arch=options.arch.value,
            build=options.build.value,
            clean=options.clean,
            provider=options.provider.value,
        )
        files = build.compile_project(
            mgr.sdk_connection,
            options.provider.value,
            options.arch,
            options.build,
            options.clean,
            cfg=options,
        )
        for file in files:
            full_path = os.path.abspath(file)
            if options.sign:
                build.sign_rpm_file(mgr.sdk_connection, full_path, options.cert_password, cfg=options)
            if options.customer_sign:
                build.customer_sign_file(
                    mgr.sdk_connection,
                    full_path,
                    options.customer_cert_file,
                    options.cert_password,
                    cfg=options,
                )
        log.info("build.files", files=files)
        return files

    return with_environment(False, body, cfg=_cfg, manager=manager)


def build_app_in_vm(
    cfg: Settings | None = None,
    manager: VirtualMachineManager | None = None,
) -> list[str]:
    """Build a copy of the working tree inside the build engine."""
    _cfg = cfg or settings

    def body(options: Settings, mgr: VirtualMachineManager) -> list[str]:
        log.info(
            "build.start_in_vm",
            application=options.name,
            arch=options.arch.value,
            build=options.build.value,
            clean=options.clean,
        )
        return build.compile_app_in_vm(
            mgr.sdk_connection,
            mgr.sdk_rsync_shell,
            options.arch,
            options.name,
            options.build,
            options.clean,
            cfg=options,
        )

    return with_environment(False, body, cfg=_cfg, manager=manager)
