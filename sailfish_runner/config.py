"""Runner settings loaded from CLI overrides, environment and `.tests.yaml`."""

from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    YamlConfigSettingsSource,
)

from sailfish_runner.models.machine import Provider
from sailfish_runner.models.project import Architecture, BuildType, DeviceTest

# Project configuration file, looked up in the working directory
CONFIGURATION_FILE = ".tests.yaml"


class Settings(BaseSettings):
    """Priority: constructor arguments > SAILFISH_* env vars > .env > .tests.yaml > defaults."""

    # Application
    name: str = ""
    provider: Provider = Provider.sailfish
    build: BuildType = BuildType.debug
    arch: Architecture = Architecture.armv7hl
    clean: bool = False

    # Tests
    tests: list[DeviceTest] = Field(default_factory=list)
    output_to_file: bool = False

    # Batch (integration) mode stops the machines afterwards and starts
    # the emulator headless; user mode leaves them running with a display.
    shutdown_vm: bool = False

    # Signing
    sign: bool = False
    customer_sign: bool = False
    customer_cert_file: str = "packages-client-cert.pem"
    cert_password: str = "password"

    # Host tooling
    vboxmanage_binary: str = "VBoxManage"
    sdk_share_path: str = "/home/mersdk/share"

    # SSH
    ssh_connect_timeout_seconds: float = 15.0
    ssh_connect_attempts: int = Field(default=10, ge=1)
    ssh_connect_backoff_seconds: float = 5.0
    command_timeout_seconds: Optional[float] = None
    channel_poll_interval_seconds: float = 0.05

    # VM shutdown
    shutdown_poll_interval_seconds: float = 2.0
    shutdown_max_polls: Optional[int] = Field(default=150, ge=1)

    # Logging
    log_level: str = "info"
    log_json: bool = False

    model_config = {
        "env_prefix": "SAILFISH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "yaml_file": CONFIGURATION_FILE,
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton – import this from anywhere
settings = Settings()
