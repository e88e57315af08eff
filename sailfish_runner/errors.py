"""Exception hierarchy shared by the VM and SSH layers."""

from __future__ import annotations

from typing import Optional


class SailfishRunnerError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SailfishRunnerError):
    """The host environment is misconfigured (machines, shared folders, keys)."""


class VBoxManageError(SailfishRunnerError):
    """A VBoxManage listing or introspection command failed."""


class MachineNotFoundError(SailfishRunnerError):
    """The requested machine is not installed on this host."""


class MachineStartError(SailfishRunnerError):
    """VBoxManage reported that the machine did not start."""


class MachineShutdownTimeout(SailfishRunnerError):
    """The machine was still running after the shutdown poll budget."""


class ChannelSetupError(SailfishRunnerError):
    """An SSH channel could not be opened or refused the shell/exec request.

    Never handled inside the package; the CLI aborts the process on it.
    """


class CommandExecutionError(SailfishRunnerError):
    """A checked remote command finished with a non-zero or unknown status."""

    def __init__(
        self,
        command: str,
        directory: str,
        stdout: str,
        stderr: str,
        exit_code: Optional[int] = None,
        exit_signal: Optional[str] = None,
    ) -> None:
        self.command = command
        self.directory = directory
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.exit_signal = exit_signal
        super().__init__(self._format())

    @property
    def status(self) -> str:
        if self.exit_code is not None:
            return f"exit code {self.exit_code}"
        if self.exit_signal is not None:
            return f"signal {self.exit_signal}"
        return "unknown exit status"

    def _format(self) -> str:
        return (
            f"Error during {self.command} execution ({self.status}) "
            f"in {self.directory} directory.\n{self.stdout}\n{self.stderr}"
        )
