"""Health provider adapters.

Each adapter implements the HealthProviderAdapter ABC and handles:
- The one-time access handshake
- Fetching the authoritative daily summary and the raw sample feeds
- Workouts and, where supported, weight and BMI

Available adapters:
    AppleHealthAdapter — Apple HealthKit via the on-device bridge
    OuraAdapter        — Oura API v2 (bearer token)

Every other known provider resolves to an UnavailableAdapter.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from src.healthsync.adapters.apple_health import AppleHealthAdapter
from src.healthsync.adapters.oura import OuraAdapter
from src.healthsync.adapters.unavailable import UnavailableAdapter
from src.healthsync.base import HealthProviderAdapter

if TYPE_CHECKING:
    from src.config import Settings

__all__ = [
    "AppleHealthAdapter",
    "OuraAdapter",
    "UnavailableAdapter",
    "KNOWN_PROVIDERS",
    "ADAPTER_REGISTRY",
    "get_adapter_class",
    "resolve_adapter",
    "resolve_adapters",
]

logger = logging.getLogger("healthsync.adapters")

# Every provider the engine keeps a connection record for, with display names.
KNOWN_PROVIDERS: dict[str, str] = {
    "apple_health": "Apple Health",
    "google_fit": "Google Fit",
    "fitbit": "Fitbit",
    "garmin": "Garmin Connect",
    "samsung_health": "Samsung Health",
    "whoop": "WHOOP",
    "oura": "Oura Ring",
}

# Registry: provider_id → adapter class
ADAPTER_REGISTRY: dict[str, type[HealthProviderAdapter]] = {
    "apple_health": AppleHealthAdapter,
    "oura": OuraAdapter,
}


def get_adapter_class(provider_id: str) -> type[HealthProviderAdapter]:
    """Return the adapter class for a provider slug.

    Raises:
        KeyError: If the provider_id is not registered.
    """
    if provider_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for provider '{provider_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[provider_id]


def _build(provider_id: str, settings: "Settings", http_client: httpx.AsyncClient | None) -> HealthProviderAdapter:
    adapter_cls = get_adapter_class(provider_id)
    if adapter_cls is AppleHealthAdapter:
        return AppleHealthAdapter(base_url=settings.healthkit_bridge_url, http_client=http_client)
    if adapter_cls is OuraAdapter:
        return OuraAdapter(access_token=settings.oura_access_token, http_client=http_client)
    return adapter_cls()


def resolve_adapter(
    provider_id: str,
    settings: "Settings",
    http_client: httpx.AsyncClient | None = None,
) -> HealthProviderAdapter:
    """Construct the adapter for ``provider_id`` and probe its availability once.

    Returns:
        The live adapter, or an UnavailableAdapter carrying the reason.

    Raises:
        KeyError: If ``provider_id`` is not a known provider at all.
    """
    if provider_id not in KNOWN_PROVIDERS:
        raise KeyError(f"Unknown provider '{provider_id}'. Known: {list(KNOWN_PROVIDERS)}")
    name = KNOWN_PROVIDERS[provider_id]
    if provider_id not in ADAPTER_REGISTRY:
        return UnavailableAdapter(provider_id, f"{name} is not supported yet")

    adapter = _build(provider_id, settings, http_client)
    if not adapter.is_available():
        logger.info("Provider %s is not available in this environment", provider_id)
        return UnavailableAdapter(provider_id, f"{name} is not available on this device")
    return adapter


def resolve_adapters(
    settings: "Settings",
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, HealthProviderAdapter]:
    """Resolve every known provider; the result always has one entry per provider."""
    return {pid: resolve_adapter(pid, settings, http_client) for pid in KNOWN_PROVIDERS}
