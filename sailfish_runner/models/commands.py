"""Command-related data structures."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator


class CommandResult(BaseModel):
    """Outcome of one remote command, captured from its SSH channel.

    Exactly one terminal state holds: an exit code, an exit signal, or
    neither (channel closed abnormally or the command timed out).
    """

    model_config = ConfigDict(frozen=True)

    command: str
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    elapsed_time: float = 0.0

    @model_validator(mode="after")
    def _single_terminal_state(self) -> "CommandResult":
        if self.exit_code is not None and self.exit_signal is not None:
            raise ValueError("a command cannot report both an exit code and an exit signal")
        return self

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def aborted(self) -> bool:
        """True when the channel closed without reporting any status."""
        return self.exit_code is None and self.exit_signal is None
