from provisioning.providers.base import (
    ProviderResult,
    ResourceHandle,
    ResourceProvider,
    ResourceRequest,
)
from provisioning.providers.memory import InMemoryProvider

__all__ = [
    "InMemoryProvider",
    "ProviderResult",
    "ResourceHandle",
    "ResourceProvider",
    "ResourceRequest",
]
