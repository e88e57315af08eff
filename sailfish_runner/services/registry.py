"""Discovery of the installed build engine / emulator machines and their SSH keys."""

from __future__ import annotations

import os
from typing import Iterable, Optional

from sailfish_runner.errors import ConfigurationError
from sailfish_runner.models.machine import (
    HostKeyPolicy,
    MachineListing,
    MachineTemplate,
    Provider,
    ResolvedMachine,
)
from sailfish_runner.services.providers import SDK, ProviderRegistry, default_providers
from sailfish_runner.services.vbox import VBoxManage, find_shared_folder
from sailfish_runner.utils.logging import get_logger

log = get_logger(__name__)

VMSHARE_TAG = "vmshare"
KEYS_SUBDIR = os.path.join("ssh", "private_keys")


def find_machine(machines: Iterable[MachineListing], name: str) -> Optional[MachineListing]:
    """First installed machine whose name contains *name*."""
    for machine in machines:
        if name in machine.name:
            return machine
    return None


def find_key_files(key_dir: str, user: str) -> set[str]:
    """All files under *key_dir* (recursively) named exactly *user*."""
    found: set[str] = set()
    for root, _dirs, files in os.walk(key_dir):
        for filename in files:
            if filename == user:
                found.add(os.path.join(root, filename))
    return found


class MachineRegistry:
    """Resolves provider templates against the machines VirtualBox knows about.

    Discovery runs once per provider and is cached for the registry's
    lifetime.
    """

    def __init__(
        self,
        vbox: VBoxManage | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        self._vbox = vbox or VBoxManage()
        self._providers = providers or default_providers()
        self._resolved: dict[Provider, dict[str, ResolvedMachine]] = {}

    def resolve(self, provider: Provider | str) -> dict[str, ResolvedMachine]:
        """Return ``{"sdk": ResolvedMachine, "emulator": ResolvedMachine}``."""
        templates = self._providers.templates(provider)
        provider = Provider(provider)
        if provider in self._resolved:
            return dict(self._resolved[provider])

        machines = self._vbox.list_installed_machines()
        listings: dict[str, MachineListing] = {}
        for role, template in templates.items():
            listing = find_machine(machines, template.name)
            if listing is None:
                raise ConfigurationError(
                    f"No installed virtual machine matches '{template.name}'",
                )
            listings[role] = listing

        key_dir = self.key_directory(listings[SDK])
        resolved = {
            role: self._resolve_template(template, listings[role], key_dir)
            for role, template in templates.items()
        }
        self._resolved[provider] = resolved
        log.info(
            "vm.resolved",
            provider=provider.value,
            machines={role: m.machine_id for role, m in resolved.items()},
        )
        return dict(resolved)

    def key_directory(self, sdk: MachineListing) -> str:
        """``<vmshare>/ssh/private_keys`` of the build engine's shared folder."""
        info = self._vbox.introspect(sdk.id)
        vmshare = find_shared_folder(info, VMSHARE_TAG)
        if vmshare is None:
            raise ConfigurationError(
                f"Unable to detect the path to VM configuration: machine '{sdk.name}' "
                f"has no '{VMSHARE_TAG}' shared folder",
            )
        key_dir = os.path.join(vmshare, KEYS_SUBDIR)
        if not os.path.isdir(key_dir):
            raise ConfigurationError(f"The detected vmshare directory {key_dir} does not exist!")
        return key_dir

    def _resolve_template(
        self,
        template: MachineTemplate,
        listing: MachineListing,
        key_dir: str,
    ) -> ResolvedMachine:
        user = template.connection.user
        keys = frozenset(template.connection.keys | find_key_files(key_dir, user))
        if not keys:
            raise ConfigurationError(
                f"Unable to find keys to the machine '{template.name}' in '{key_dir}'",
            )
        connection = template.connection.model_copy(
            update={"keys": keys, "verify_host_key": HostKeyPolicy.never},
        )
        return ResolvedMachine(
            name=template.name,
            architecture=template.architecture,
            connection=connection,
            machine_id=listing.id,
        )
