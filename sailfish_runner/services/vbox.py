"""Thin wrapper around the VBoxManage command line.

Parsing of VBoxManage output lives in pure functions so it can be tested
against recorded samples; :class:`VBoxManage` only runs the binary.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional

from sailfish_runner.config import Settings, settings
from sailfish_runner.errors import VBoxManageError
from sailfish_runner.models.machine import MachineListing
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)

# "Sailfish OS Build Engine" {0b6f0d1e-...}
VM_LIST_RE = re.compile(r'^"(.*)" \{(.*)\}$')
# SharedFolderNameMachineMapping1="vmshare" / "Forwarding(0)"="ssh,tcp,..."
INFO_LINE_RE = re.compile(r'^("?)(.+?)\1=(.*)$')

SHARED_FOLDER_KINDS = ("Machine", "Transient")


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def parse_machine_list(output: str) -> list[MachineListing]:
    """Parse ``VBoxManage list vms`` / ``list runningvms`` output."""
    machines: list[MachineListing] = []
    for line in output.splitlines():
        m = VM_LIST_RE.match(line.strip())
        if m:
            machines.append(MachineListing(name=m.group(1), id=m.group(2)))
    return machines


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def parse_machine_info(output: str) -> dict[str, str]:
    """Parse ``VBoxManage showvminfo --machinereadable`` into a flat dict."""
    info: dict[str, str] = {}
    for line in output.splitlines():
        m = INFO_LINE_RE.match(line.strip())
        if m:
            info[m.group(2)] = _unquote(m.group(3))
    return info


def find_shared_folder(info: dict[str, str], tag: str) -> Optional[str]:
    """Host path of the shared folder whose name is exactly *tag*."""
    for kind in SHARED_FOLDER_KINDS:
        prefix = f"SharedFolderName{kind}Mapping"
        for key, value in info.items():
            if key.startswith(prefix) and value == tag:
                index = key[len(prefix):]
                path = info.get(f"SharedFolderPath{kind}Mapping{index}")
                if path:
                    return path
    return None


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VBoxResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


class VBoxManage:
    """Runs VBoxManage subcommands and returns parsed results."""

    def __init__(
        self,
        cfg: Settings | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._cfg = cfg or settings
        self._runner = runner

    def run(self, *args: str, check: bool = True) -> VBoxResult:
        cmd = [self._cfg.vboxmanage_binary, *args]
        try:
            proc = self._runner(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise VBoxManageError(f"{self._cfg.vboxmanage_binary} not found: {exc}") from exc
        result = VBoxResult(
            args=cmd,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            returncode=proc.returncode,
        )
        log.debug("vbox.exec", args=args, rc=result.returncode)
        if check and not result.ok():
            raise VBoxManageError(
                f"{' '.join(cmd)} failed (rc={result.returncode}): {result.stderr.strip()}",
            )
        return result

    def list_installed_machines(self) -> list[MachineListing]:
        return parse_machine_list(self.run("list", "vms").stdout)

    def list_running_machines(self) -> list[MachineListing]:
        return parse_machine_list(self.run("list", "runningvms").stdout)

    def introspect(self, machine_id: str) -> dict[str, str]:
        return parse_machine_info(
            self.run("showvminfo", "--machinereadable", machine_id).stdout,
        )

    def start_machine(self, machine_id: str, headless: bool = True) -> bool:
        args = ["startvm", machine_id]
        if headless:
            args += ["--type", "headless"]
        result = self.run(*args, check=False)
        if not result.ok():
            log.warning("vbox.start_failed", id=machine_id, stderr=result.stderr.strip())
        return result.ok()

    def power_button(self, machine_id: str) -> bool:
        """Send the ACPI power button event (graceful guest shutdown)."""
        result = self.run("controlvm", machine_id, "acpipowerbutton", check=False)
        if not result.ok():
            log.warning("vbox.power_button_failed", id=machine_id, stderr=result.stderr.strip())
        return result.ok()
