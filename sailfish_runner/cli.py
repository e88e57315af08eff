"""Command line entry point: ``sailfish-runner build|build-in-vm|test|machines``."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import typer

from sailfish_runner import __version__
from sailfish_runner.config import Settings
from sailfish_runner.errors import ChannelSetupError, CommandExecutionError, SailfishRunnerError
from sailfish_runner.models.machine import Provider
from sailfish_runner.models.project import Architecture, BuildType
from sailfish_runner.services import tasks
from sailfish_runner.services.environment import VirtualMachineManager
from sailfish_runner.utils.logging import get_logger, setup_logging
from sailfish_runner.utils.project import find_app_name, select_tests

log = get_logger(__name__)

app = typer.Typer(
    help="Build and test Sailfish OS / Aurora OS applications in the SDK virtual machines.",
    no_args_is_help=True,
)

# Exit code for a refused SSH channel; distinct from ordinary failures
EXIT_CHANNEL_SETUP = 2


def load_settings(**overrides: Any) -> Settings:
    """Settings with CLI flags on top; flags left unset fall through to yaml/env."""
    cfg = Settings(**{k: v for k, v in overrides.items() if v is not None})
    if not cfg.name:
        cfg = cfg.model_copy(update={"name": find_app_name()})
    setup_logging(cfg.log_level, cfg.log_json)
    return cfg


@contextmanager
def reporting_errors() -> Iterator[None]:
    try:
        yield
    except ChannelSetupError as exc:
        log.critical("ssh.channel_setup_failed", error=str(exc))
        typer.echo(f"Aborting: {exc}", err=True)
        raise typer.Exit(EXIT_CHANNEL_SETUP)
    except CommandExecutionError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1)
    except SailfishRunnerError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)


def _integration_overrides(integration: Optional[bool]) -> dict[str, Any]:
    if integration is None:
        return {}
    # Integration (batch) mode stops the machines and keeps output in files
    return {"shutdown_vm": integration, "output_to_file": integration}


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=_version_callback, is_eager=True, help="Show the version and exit",
    ),
) -> None:
    pass


@app.command("build")
def build_command(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Name of the application"),
    arch: Optional[Architecture] = typer.Option(None, "--arch", help="Target architecture, armv7hl by default"),
    build: Optional[BuildType] = typer.Option(None, "--build", "-b", help="debug or release, debug by default"),
    clean: Optional[bool] = typer.Option(None, "--clean/--no-clean", "-c", help="Perform a clean build"),
    provider: Optional[Provider] = typer.Option(None, "--provider", help="VM build provider, sailfish by default"),
    sign: Optional[bool] = typer.Option(None, "--sign/--no-sign", help="Sign packages with the OMP tools"),
    customer_sign: Optional[bool] = typer.Option(
        None, "--customer-sign/--no-customer-sign", help="Add our own signature as a customer",
    ),
    cert_password: Optional[str] = typer.Option(None, "--cert-password", help="Password for the certificate"),
    customer_cert_file: Optional[str] = typer.Option(
        None, "--customer-cert-name", help="Name of the customer certificate to use",
    ),
    integration: Optional[bool] = typer.Option(
        None, "--integration/--no-integration", "-i", help="Batch mode: stop the VMs afterwards",
    ),
) -> None:
    """Build RPMs on the build engine through the shared folder."""
    cfg = load_settings(
        name=name,
        arch=arch,
        build=build,
        clean=clean,
        provider=provider,
        sign=sign,
        customer_sign=customer_sign,
        cert_password=cert_password,
        customer_cert_file=customer_cert_file,
        **_integration_overrides(integration),
    )
    with reporting_errors():
        files = tasks.build_app(cfg)
    typer.echo(f"Files: {' '.join(files)}")


@app.command("build-in-vm")
def build_in_vm_command(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Name of the application"),
    arch: Optional[Architecture] = typer.Option(None, "--arch", help="Target architecture, armv7hl by default"),
    build: Optional[BuildType] = typer.Option(None, "--build", "-b", help="debug or release, debug by default"),
    clean: Optional[bool] = typer.Option(None, "--clean/--no-clean", "-c", help="Perform a clean build"),
    provider: Optional[Provider] = typer.Option(None, "--provider", help="VM build provider, sailfish by default"),
    integration: Optional[bool] = typer.Option(
        None, "--integration/--no-integration", "-i", help="Batch mode: stop the VMs afterwards",
    ),
) -> None:
    """Copy the working tree into the build engine and build it there."""
    cfg = load_settings(
        name=name,
        arch=arch,
        build=build,
        clean=clean,
        provider=provider,
        **_integration_overrides(integration),
    )
    if not cfg.name:
        typer.echo("Unable to detect the application name, pass --name", err=True)
        raise typer.Exit(1)
    with reporting_errors():
        files = tasks.build_app_in_vm(cfg)
    typer.echo(f"Files: {' '.join(files)}")


@app.command("test")
def test_command(
    test: Optional[str] = typer.Option(None, "--test", "-t", help="Only run the test with this name"),
    labels: Optional[str] = typer.Option(None, "--labels", "-l", help="Comma separated test labels to run"),
    build: Optional[BuildType] = typer.Option(None, "--build", "-b", help="debug or release, debug by default"),
    clean: Optional[bool] = typer.Option(None, "--clean/--no-clean", "-c", help="Perform a clean build"),
    provider: Optional[Provider] = typer.Option(None, "--provider", help="VM build provider, sailfish by default"),
    integration: Optional[bool] = typer.Option(
        None,
        "--integration/--no-integration",
        "-i",
        help="Batch mode: stop the VMs and save results to files. "
        "User mode keeps the VMs running and prints the output",
    ),
    save_to_file: bool = typer.Option(
        False, "--save-to-file", help="Save test results to test-results/ instead of stdout",
    ),
) -> None:
    """Build for the emulator, install the package and run the tests."""
    overrides = _integration_overrides(integration)
    if save_to_file:
        overrides["output_to_file"] = True
    cfg = load_settings(build=build, clean=clean, provider=provider, **overrides)

    selected = select_tests(cfg.tests, name=test, labels=(labels or "").split(","))
    if not selected:
        typer.echo("You did not select tests to be run on the machine!", err=True)
        raise typer.Exit(1)
    cfg = cfg.model_copy(update={"tests": selected})

    with reporting_errors():
        results = tasks.run_tests(cfg)

    failed = [name for name, result in results.items() if not result.ok]
    if not cfg.output_to_file:
        for name, result in results.items():
            typer.echo(f"== {name} ==")
            typer.echo(result.stdout_text)
    if failed:
        typer.echo(f"Failed tests: {', '.join(failed)}", err=True)
        raise typer.Exit(1)


@app.command("machines")
def machines_command(
    provider: Optional[Provider] = typer.Option(None, "--provider", help="VM build provider, sailfish by default"),
) -> None:
    """Show the resolved build engine / emulator and their state."""
    cfg = load_settings(provider=provider)
    with reporting_errors():
        manager = VirtualMachineManager(cfg)
        states = manager.states()
    for role, machine in (("sdk", manager.sdk), ("emulator", manager.emulator)):
        conn = machine.connection
        typer.echo(
            f"{role:9} {machine.name} {{{machine.machine_id}}} "
            f"{conn.network_location}:{conn.port} {states[role].value}",
        )
        for key in conn.key_list():
            typer.echo(f"{'':9} key {key}")


if __name__ == "__main__":
    app()
