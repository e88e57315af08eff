"""Virtual machine and connection models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Provider(str, Enum):
    sailfish = "sailfish"
    aurora = "aurora"


class HostKeyPolicy(str, Enum):
    never = "never"
    accept_new = "accept_new"
    always = "always"


class MachineState(str, Enum):
    unknown = "unknown"
    not_installed = "not_installed"
    stopped = "stopped"
    starting = "starting"
    running = "running"
    shutting_down = "shutting_down"


class ConnectionDescriptor(BaseModel):
    """Everything needed to open an SSH session to one machine."""

    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    user: str
    port: int
    keys: frozenset[str] = Field(default_factory=frozenset)
    verify_host_key: HostKeyPolicy = HostKeyPolicy.always

    @property
    def network_location(self) -> str:
        return f"{self.user}@{self.host}"

    def key_list(self) -> list[str]:
        return sorted(self.keys)


class MachineTemplate(BaseModel):
    """Static description of a machine before it is discovered on the host."""

    model_config = ConfigDict(frozen=True)

    name: str
    architecture: Optional[str] = None
    connection: ConnectionDescriptor


class ResolvedMachine(MachineTemplate):
    """A template bound to an installed VirtualBox machine and its keys."""

    machine_id: str

    @model_validator(mode="after")
    def _keys_present(self) -> "ResolvedMachine":
        if not self.connection.keys:
            raise ValueError(f"machine '{self.name}' resolved without any SSH key")
        return self


class MachineListing(BaseModel):
    """One `"<name>" {<uuid>}` row from VBoxManage."""

    model_config = ConfigDict(frozen=True)

    name: str
    id: str
