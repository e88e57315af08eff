"""Project-level build and test options."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class BuildType(str, Enum):
    debug = "debug"
    release = "release"


class Architecture(str, Enum):
    i486 = "i486"
    armv7hl = "armv7hl"


class DeviceTest(BaseModel):
    """A test executable installed on the emulator by the project RPM."""

    name: str
    labels: list[str] = Field(default_factory=list)
