"""Provider adapters and the registry the orchestration core resolves them from."""

from pixelrelay.services.providers.base import (
    ProviderAdapter,
    ProviderReport,
    ProviderState,
    SourceImage,
    Submission,
    classify_provider_error,
    normalize_status,
)
from pixelrelay.services.providers.fal import FalAdapter
from pixelrelay.services.providers.freepik import FreepikAdapter
from pixelrelay.services.providers.replicate_client import ReplicateAdapter


class ProviderRegistry:
    """Name -> adapter lookup built once at startup."""

    def __init__(self, adapters: list[ProviderAdapter]):
        self._adapters = {adapter.name: adapter for adapter in adapters}

    def get(self, name: str) -> ProviderAdapter:
        """Return the adapter for a provider.

        Raises:
            KeyError: If no adapter is registered under that name
        """
        return self._adapters[name]

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def names(self) -> list[str]:
        return sorted(self._adapters)


__all__ = [
    "ProviderAdapter",
    "ProviderReport",
    "ProviderState",
    "ProviderRegistry",
    "SourceImage",
    "Submission",
    "classify_provider_error",
    "normalize_status",
    "FalAdapter",
    "FreepikAdapter",
    "ReplicateAdapter",
]
