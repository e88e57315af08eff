"""Machine templates for each supported SDK provider."""

from __future__ import annotations

from typing import Mapping

from sailfish_runner.errors import ConfigurationError
from sailfish_runner.models.machine import ConnectionDescriptor, MachineTemplate, Provider

SDK = "sdk"
EMULATOR = "emulator"

EMULATOR_ARCHITECTURE = "i486"


def _templates(sdk_name: str, emulator_name: str) -> dict[str, MachineTemplate]:
    return {
        SDK: MachineTemplate(
            name=sdk_name,
            connection=ConnectionDescriptor(host="localhost", user="mersdk", port=2222),
        ),
        EMULATOR: MachineTemplate(
            name=emulator_name,
            architecture=EMULATOR_ARCHITECTURE,
            connection=ConnectionDescriptor(host="localhost", user="nemo", port=2223),
        ),
    }


class ProviderRegistry:
    """Provider -> {"sdk": template, "emulator": template}."""

    def __init__(self, providers: Mapping[Provider, Mapping[str, MachineTemplate]]) -> None:
        self._providers = {provider: dict(pair) for provider, pair in providers.items()}

    def templates(self, provider: Provider | str) -> dict[str, MachineTemplate]:
        try:
            pair = self._providers[Provider(provider)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Unknown VM provider '{provider}'") from None
        if SDK not in pair or EMULATOR not in pair:
            raise ConfigurationError(
                f"Provider '{provider}' must define both '{SDK}' and '{EMULATOR}' templates",
            )
        return dict(pair)

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers)


def default_providers() -> ProviderRegistry:
    return ProviderRegistry({
        Provider.sailfish: _templates("Sailfish OS Build Engine", "Sailfish OS Emulator"),
        Provider.aurora: _templates("Aurora Build Engine", "Aurora Emulator"),
    })
