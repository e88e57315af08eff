"""Remote command execution with exit status capture.

Two channel flavours are used against a :class:`RemoteSession`:

* interactive - a pty-backed shell; the command is typed into it followed
  by ``exit $?`` so the shell's exit status is the command's own.
* one-shot - a plain ``exec`` request, optionally fed with input.

Both block until the channel closes and return a :class:`CommandResult`
with stdout, stderr, and the exit code or exit signal.  A refused channel
request raises :class:`ChannelSetupError`; a command that ran and failed
does not raise here, only :func:`execute_checked` turns that into
:class:`CommandExecutionError`.
"""

from __future__ import annotations

import time
from typing import Optional

import paramiko

from sailfish_runner.config import Settings, settings
from sailfish_runner.errors import ChannelSetupError, CommandExecutionError
from sailfish_runner.models.commands import CommandResult
from sailfish_runner.services.ssh_session import RemoteSession
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)

BUFFER_SIZE = 32768

_DOUBLE_QUOTE_SPECIALS = ("\\", '"', "$", "`")


def quote_here_string(text: str) -> str:
    """Escape *text* for use inside ``<<< "..."``."""
    for char in _DOUBLE_QUOTE_SPECIALS:
        text = text.replace(char, "\\" + char)
    return text


def interactive_script(directory: str, command: str, input_data: str = "") -> str:
    """Lines typed into the interactive shell for one command."""
    return (
        f'cd {directory} && {command} <<< "{quote_here_string(input_data)}"\n'
        "exit $?\n"
    )


# ── channel draining ──────────────────────────────────────────────────────

def _exit_status(channel: paramiko.Channel) -> tuple[Optional[int], Optional[str]]:
    signal = getattr(channel, "exit_signal", None)
    if signal is not None:
        return None, signal
    # paramiko keeps -1 until an exit-status request arrives
    if channel.exit_status_ready() and channel.exit_status >= 0:
        return channel.exit_status, None
    return None, None


def _drain(channel: paramiko.Channel, stdout: bytearray, stderr: bytearray) -> bool:
    """Read whatever is buffered on both streams; True if anything arrived."""
    progressed = False
    while channel.recv_ready():
        chunk = channel.recv(BUFFER_SIZE)
        if not chunk:
            break
        stdout += chunk
        progressed = True
    while channel.recv_stderr_ready():
        chunk = channel.recv_stderr(BUFFER_SIZE)
        if not chunk:
            break
        stderr += chunk
        progressed = True
    return progressed


def _collect(
    channel: paramiko.Channel,
    command: str,
    *,
    timeout: Optional[float],
    poll_interval: float,
) -> CommandResult:
    stdout = bytearray()
    stderr = bytearray()
    started = time.monotonic()

    while True:
        if _drain(channel, stdout, stderr):
            continue

        if channel.closed or (channel.eof_received and channel.exit_status_ready()):
            # The transport thread may have buffered a last chunk before closing
            _drain(channel, stdout, stderr)
            break

        if timeout is not None and time.monotonic() - started >= timeout:
            log.warning("ssh.exec_timeout", command=command, timeout=timeout)
            channel.close()
            return CommandResult(
                command=command,
                stdout=bytes(stdout),
                stderr=bytes(stderr),
                elapsed_time=time.monotonic() - started,
            )
        time.sleep(poll_interval)

    exit_code, exit_signal = _exit_status(channel)
    result = CommandResult(
        command=command,
        stdout=bytes(stdout),
        stderr=bytes(stderr),
        exit_code=exit_code,
        exit_signal=exit_signal,
        elapsed_time=time.monotonic() - started,
    )
    log.debug(
        "ssh.exec_done",
        command=command,
        exit_code=exit_code,
        exit_signal=exit_signal,
        elapsed=round(result.elapsed_time, 3),
    )
    return result


def _timeouts(
    cfg: Settings,
    timeout: Optional[float],
    poll_interval: Optional[float],
) -> tuple[Optional[float], float]:
    return (
        timeout if timeout is not None else cfg.command_timeout_seconds,
        poll_interval if poll_interval is not None else cfg.channel_poll_interval_seconds,
    )


# ── public: executors ─────────────────────────────────────────────────────

def execute_interactive(
    session: RemoteSession,
    directory: str,
    command: str,
    input_data: str = "",
    *,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    cfg: Settings | None = None,
) -> CommandResult:
    """Run *command* in *directory* through a pty shell and wait for it."""
    timeout, poll_interval = _timeouts(cfg or settings, timeout, poll_interval)
    log.debug("ssh.exec", mode="interactive", directory=directory, command=command)

    channel = session.open_channel()
    try:
        try:
            channel.get_pty()
            channel.invoke_shell()
        except paramiko.SSHException as exc:
            raise ChannelSetupError(f"couldn't start a shell for {command!r}: {exc}") from exc
        channel.sendall(interactive_script(directory, command, input_data))
        return _collect(channel, command, timeout=timeout, poll_interval=poll_interval)
    finally:
        session.release_channel(channel)


def execute_one_shot(
    session: RemoteSession,
    command: str,
    input_data: str = "",
    *,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    cfg: Settings | None = None,
) -> CommandResult:
    """Run *command* through an ``exec`` request, feeding *input_data* on stdin."""
    timeout, poll_interval = _timeouts(cfg or settings, timeout, poll_interval)
    log.debug("ssh.exec", mode="one_shot", command=command)

    channel = session.open_channel()
    try:
        try:
            channel.exec_command(command)
        except paramiko.SSHException as exc:
            log.error("ssh.exec_refused", command=command, error=str(exc))
            raise ChannelSetupError(f"FAILED: couldn't execute command {command!r}") from exc
        try:
            channel.sendall(f"{input_data}\n")
            channel.shutdown_write()
        except OSError:
            # The command finished and closed the channel before reading stdin
            log.debug("ssh.stdin_closed", command=command)
        return _collect(channel, command, timeout=timeout, poll_interval=poll_interval)
    finally:
        session.release_channel(channel)


def execute_checked(
    session: RemoteSession,
    directory: str,
    command: str,
    input_data: str = "",
    *,
    cfg: Settings | None = None,
) -> str:
    """Interactive execution that only accepts exit code 0; returns stdout."""
    result = execute_interactive(session, directory, command, input_data, cfg=cfg)
    if not result.ok:
        log.warning(
            "ssh.command_failed",
            command=command,
            directory=directory,
            exit_code=result.exit_code,
            exit_signal=result.exit_signal,
        )
        raise CommandExecutionError(
            command=command,
            directory=directory,
            stdout=result.stdout_text,
            stderr=result.stderr_text,
            exit_code=result.exit_code,
            exit_signal=result.exit_signal,
        )
    return result.stdout_text
