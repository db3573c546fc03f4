"""Boundaries to the external systems the orchestrator polls.

Discovery lists the tenants to monitor and the telemetry adapter runs a
:class:`~apps_monitor.models.query.Query` against one tenant's telemetry
source.  Concrete cloud adapters live outside this package and are plugged in
through ``"package.module:callable"`` factories in the settings; each factory
is called with the :class:`~apps_monitor.config.Settings` object.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generic, Protocol, TypeVar

from apps_monitor.clock import Clock, SystemClock
from apps_monitor.config import Settings
from apps_monitor.models.query import Query
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import TelemetryEntity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceOwnerDiscovery(Protocol):
    async def discover(self) -> list[ServiceOwner]: ...


class TelemetryAdapter(Protocol):
    async def query(
        self,
        service_owner: ServiceOwner,
        query: Query,
        search_from: datetime,
        search_to: datetime,
    ) -> list[list[TelemetryEntity]]:
        """Return the rows in ``(search_from, search_to]``, one list per source table."""
        ...


class StaticServiceOwnerDiscovery:
    """Discovery over a fixed, configured list of tenants."""

    def __init__(self, service_owners: list[str]) -> None:
        self._service_owners = [ServiceOwner.parse(value) for value in service_owners]

    async def discover(self) -> list[ServiceOwner]:
        return list(self._service_owners)


def load_factory(path: str) -> Callable[[Settings], Any]:
    """Resolve a ``"package.module:callable"`` reference.

    Raises
    ------
    ValueError
        If *path* is malformed or does not name a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid factory reference {path!r}: expected 'package.module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"Factory reference {path!r} does not name a callable")
    return factory  # type: ignore[no-any-return]


def build_discovery(settings: Settings) -> ServiceOwnerDiscovery:
    if settings.discovery_factory:
        return load_factory(settings.discovery_factory)(settings)  # type: ignore[no-any-return]
    return StaticServiceOwnerDiscovery(settings.service_owners)


def build_telemetry_adapter(settings: Settings) -> TelemetryAdapter:
    if not settings.telemetry_adapter_factory:
        raise ValueError("No telemetry adapter configured; set MONITOR_TELEMETRY_ADAPTER_FACTORY")
    return load_factory(settings.telemetry_adapter_factory)(settings)  # type: ignore[no-any-return]


# ---------------------------------------------------------------------------
# Per-tenant client cache
# ---------------------------------------------------------------------------


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    created_at: datetime


class ClientCache(Generic[T]):
    """Async cache of per-tenant clients keyed by ``(tenant, environment)``.

    Creation is single-flight per key: concurrent callers for a missing key
    share one factory call.  Entries older than *ttl_seconds* are recreated.
    Evicted values are handed to *on_evict* (for example to close them).
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        clock: Clock | None = None,
        on_evict: Callable[[T], Awaitable[None]] | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        self._clock = clock or SystemClock()
        self._on_evict = on_evict
        self._entries: dict[Hashable, _CacheEntry[T]] = {}
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, key: Hashable) -> _CacheEntry[T] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._ttl is not None and self._clock.now() - entry.created_at >= self._ttl:
            return None
        return entry

    async def get_or_create(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        entry = self._fresh(key)
        if entry is not None:
            return entry.value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._fresh(key)
            if entry is not None:
                return entry.value
            stale = self._entries.pop(key, None)
            if stale is not None:
                await self._evict(key, stale.value)
            value = await factory()
            self._entries[key] = _CacheEntry(value=value, created_at=self._clock.now())
            logger.debug("Created client for %s", key)
            return value

    async def invalidate(self, key: Hashable | None = None) -> None:
        """Drop *key*, or every entry when *key* is ``None``."""
        keys = list(self._entries) if key is None else [key]
        for k in keys:
            entry = self._entries.pop(k, None)
            if entry is not None:
                await self._evict(k, entry.value)

    async def _evict(self, key: Hashable, value: T) -> None:
        if self._on_evict is None:
            return
        try:
            await self._on_evict(value)
        except Exception:
            logger.warning("Failed to dispose client for %s", key, exc_info=True)
