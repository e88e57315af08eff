"""paramiko-backed SSH session to one virtual machine.

A :class:`RemoteSession` owns the paramiko client, hands out channels for
the executors and moves files over SFTP.  Sessions are context managers:
channels and the transport are closed on every exit path.
"""

from __future__ import annotations

import os
import posixpath
import stat
from contextlib import contextmanager
from typing import Iterator, Optional

import paramiko
from paramiko.common import MSG_CHANNEL_REQUEST

from sailfish_runner.config import Settings, settings
from sailfish_runner.errors import ChannelSetupError
from sailfish_runner.models.machine import ConnectionDescriptor, HostKeyPolicy
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)


# ── exit-signal capture ───────────────────────────────────────────────────

def _handle_channel_request(channel: paramiko.Channel, m: paramiko.Message) -> None:
    """Record ``exit-signal`` on the channel, defer everything else to paramiko.

    paramiko's client side answers ``exit-signal`` with a failure and drops
    the payload, so a command killed by a signal would look like one that
    reported nothing at all.
    """
    start = m.packet.tell()
    if m.get_text() == "exit-signal":
        m.get_boolean()  # want_reply is always false for exit-signal
        channel.exit_signal = m.get_text()
        channel.status_event.set()
        return
    m.packet.seek(start)
    paramiko.Channel._handle_request(channel, m)


def _install_exit_signal_hook(transport: paramiko.Transport) -> None:
    table = dict(transport._channel_handler_table)
    table[MSG_CHANNEL_REQUEST] = _handle_channel_request
    transport._channel_handler_table = table


# ── session ───────────────────────────────────────────────────────────────

class RemoteSession:
    """A live, authenticated SSH connection to a single machine."""

    def __init__(
        self,
        connection: ConnectionDescriptor,
        cfg: Settings | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self.connection = connection
        self._client: Optional[paramiko.SSHClient] = None
        self._channels: list[paramiko.Channel] = []

    # ── connection lifecycle ──────────────────────────────────────────

    def _build_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.connection.verify_host_key == HostKeyPolicy.never:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.load_system_host_keys()
            if self.connection.verify_host_key == HostKeyPolicy.accept_new:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
        return client

    def open(self) -> "RemoteSession":
        conn = self.connection
        log.debug("ssh.connecting", host=conn.host, port=conn.port, user=conn.user)
        client = self._build_client()
        try:
            client.connect(
                hostname=conn.host,
                port=conn.port,
                username=conn.user,
                key_filename=conn.key_list() or None,
                look_for_keys=False,
                allow_agent=False,
                timeout=self._cfg.ssh_connect_timeout_seconds,
                banner_timeout=self._cfg.ssh_connect_timeout_seconds,
                auth_timeout=self._cfg.ssh_connect_timeout_seconds,
            )
        except Exception:
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None:
            _install_exit_signal_hook(transport)
        self._client = client
        log.debug("ssh.connected", host=conn.host, port=conn.port)
        return self

    def close(self) -> None:
        for channel in self._channels:
            channel.close()
        self._channels.clear()
        if self._client is not None:
            self._client.close()
            self._client = None
            log.debug("ssh.closed", host=self.connection.host, port=self.connection.port)

    def __enter__(self) -> "RemoteSession":
        if self._client is None:
            self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    # ── channels ──────────────────────────────────────────────────────

    def open_channel(self) -> paramiko.Channel:
        """Open a fresh session channel, tracked for cleanup."""
        if self._client is None:
            raise ChannelSetupError("SSH session is not connected")
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise ChannelSetupError(
                f"SSH transport to {self.connection.host}:{self.connection.port} is not active",
            )
        try:
            channel = transport.open_session()
        except paramiko.SSHException as exc:
            raise ChannelSetupError(f"couldn't open SSH channel: {exc}") from exc
        channel.exit_signal = None
        self._channels.append(channel)
        return channel

    def release_channel(self, channel: paramiko.Channel) -> None:
        channel.close()
        if channel in self._channels:
            self._channels.remove(channel)

    # ── file transfer ─────────────────────────────────────────────────

    def _sftp(self) -> paramiko.SFTPClient:
        if self._client is None:
            raise ChannelSetupError("SSH session is not connected")
        return self._client.open_sftp()

    def upload(self, local_path: str, remote_path: str) -> None:
        log.info("ssh.upload", local=local_path, remote=remote_path)
        with self._sftp() as sftp:
            sftp.put(local_path, remote_path)

    def download(self, remote_path: str, local_path: str, recursive: bool = False) -> list[str]:
        """Copy *remote_path* to *local_path*; returns the local files written.

        With *recursive*, a remote directory is recreated under *local_path*
        the way ``scp -r`` does it.
        """
        log.info("ssh.download", remote=remote_path, local=local_path, recursive=recursive)
        with self._sftp() as sftp:
            mode = sftp.stat(remote_path).st_mode
            if recursive and mode is not None and stat.S_ISDIR(mode):
                target = os.path.join(local_path, posixpath.basename(remote_path.rstrip("/")))
                return _download_tree(sftp, remote_path.rstrip("/"), target)
            if os.path.isdir(local_path):
                local_path = os.path.join(local_path, posixpath.basename(remote_path))
            sftp.get(remote_path, local_path)
            return [local_path]


def _download_tree(sftp: paramiko.SFTPClient, remote_dir: str, local_dir: str) -> list[str]:
    os.makedirs(local_dir, exist_ok=True)
    written: list[str] = []
    for entry in sftp.listdir_attr(remote_dir):
        remote = posixpath.join(remote_dir, entry.filename)
        local = os.path.join(local_dir, entry.filename)
        if entry.st_mode is not None and stat.S_ISDIR(entry.st_mode):
            written.extend(_download_tree(sftp, remote, local))
        else:
            sftp.get(remote, local)
            written.append(local)
    return written


@contextmanager
def open_session(
    connection: ConnectionDescriptor,
    cfg: Settings | None = None,
) -> Iterator[RemoteSession]:
    """``with open_session(conn) as session:`` - connect, yield, always close."""
    session = RemoteSession(connection, cfg)
    try:
        session.open()
        yield session
    finally:
        session.close()
