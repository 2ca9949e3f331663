"""
Provider registry.

Holds the configured chat backends and knows the fallback order: the local
provider first, then the hosted ones (PROVIDER_PRIORITY). Providers with ids
outside that list are tried last, in registration order.

Health probes are cached for HEALTH_CACHE_TTL_SECONDS so that listing
providers or picking a fallback doesn't hammer every backend.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from junkrat.lib.constants import HEALTH_CACHE_TTL_SECONDS, PROVIDER_PRIORITY
from junkrat.providers.base import ChatProvider

logger = logging.getLogger(__name__)

__all__ = ["ProviderRegistry", "ProviderStatus"]


@dataclass
class ProviderStatus:
    id: str
    available: bool
    last_checked: float  # time.monotonic() of the probe
    response_time: float | None = None  # seconds
    error: str | None = None


class ProviderRegistry:
    """Mutable set of providers plus the active-provider pointer."""

    def __init__(
        self,
        providers: Iterable[ChatProvider] = (),
        cache_ttl: float = HEALTH_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._providers: dict[str, ChatProvider] = {}
        self._active_id: str | None = None
        self._health: dict[str, ProviderStatus] = {}
        self._cache_ttl = cache_ttl
        self._clock = clock
        for provider in providers:
            self.register(provider)

    def register(self, provider: ChatProvider) -> None:
        """Add or replace a provider. The first one registered becomes active."""
        self._providers[provider.id] = provider
        self._health.pop(provider.id, None)
        if self._active_id is None:
            self._active_id = provider.id
        logger.debug(f"[REGISTRY] Registered provider {provider.id}")

    def unregister(self, provider_id: str) -> bool:
        removed = self._providers.pop(provider_id, None) is not None
        self._health.pop(provider_id, None)
        if removed and self._active_id == provider_id:
            self._active_id = next(iter(self._providers), None)
        return removed

    def get(self, provider_id: str | None = None) -> ChatProvider | None:
        """Provider by id, or the active provider when no id is given."""
        if provider_id:
            return self._providers.get(provider_id)
        return self._providers.get(self._active_id) if self._active_id else None

    def set_active(self, provider_id: str) -> None:
        if provider_id not in self._providers:
            raise KeyError(f"Provider not found: {provider_id}")
        self._active_id = provider_id

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def list_ids(self) -> list[str]:
        return list(self._providers)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def clear(self) -> None:
        self._providers.clear()
        self._health.clear()
        self._active_id = None

    def __len__(self) -> int:
        return len(self._providers)

    def _ordered_ids(self) -> list[str]:
        ordered = [pid for pid in PROVIDER_PRIORITY if pid in self._providers]
        ordered += [pid for pid in self._providers if pid not in PROVIDER_PRIORITY]
        return ordered

    def providers_in_order(self) -> list[ChatProvider]:
        return [self._providers[pid] for pid in self._ordered_ids()]

    def next_available(self, excluded: Iterable[str] = ()) -> ChatProvider | None:
        """First registered provider in priority order that isn't excluded."""
        skip = set(excluded)
        for pid in self._ordered_ids():
            if pid not in skip:
                return self._providers[pid]
        return None

    async def check_health(self, provider_id: str, use_cache: bool = True) -> ProviderStatus:
        """Probe a provider, reusing a cached result younger than the TTL.

        Never raises; probe failures are reported as unavailable.
        """
        now = self._clock()
        cached = self._health.get(provider_id)
        if use_cache and cached and (now - cached.last_checked) < self._cache_ttl:
            logger.debug(f"[REGISTRY] Health cache hit for {provider_id}")
            return cached

        provider = self._providers.get(provider_id)
        if provider is None:
            return ProviderStatus(id=provider_id, available=False, last_checked=now, error="Provider not registered")

        start = self._clock()
        try:
            available = await provider.is_available()
            error = None
        except Exception as e:
            logger.warning(f"[REGISTRY] Health probe for {provider_id} raised: {e}")
            available, error = False, str(e)

        status = ProviderStatus(
            id=provider_id,
            available=available,
            last_checked=now,
            response_time=self._clock() - start,
            error=error,
        )
        self._health[provider_id] = status
        return status

    async def check_all(self, use_cache: bool = True) -> list[ProviderStatus]:
        return [await self.check_health(pid, use_cache) for pid in self._ordered_ids()]

    def invalidate_health(self, provider_id: str | None = None) -> None:
        if provider_id is None:
            self._health.clear()
        else:
            self._health.pop(provider_id, None)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
