"""Model discovery and the TTL-cached model registry."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from runtime_config import RuntimeConfig, ServerSpec

log = logging.getLogger("llm_gateway")

FetchModels = Callable[[ServerSpec], Awaitable[List[str]]]


@dataclass(frozen=True)
class ModelEntry:
    """A routable model id and the server that serves it."""

    id: str
    server_name: str
    endpoint: str
    api_key: Optional[str]
    virtual: bool
    base_model: str
    profile_suffix: Optional[str] = None

    def to_model_dict(self) -> Dict[str, Any]:
        """Convert to an entry of the /models listing."""
        return {"id": self.id, "object": "model"}


def build_entries(server: ServerSpec, model_ids: List[str]) -> Dict[str, ModelEntry]:
    """
    Build base and virtual entries for one server's discovered ids.

    Ids are sorted and filtered by the server's allow-list. Every surviving
    id yields a base entry (unless hidden) plus one ``<id>-<suffix>`` entry
    per profile.
    """
    out: Dict[str, ModelEntry] = {}
    endpoint = server.representative_endpoint
    api_key = server.bearer_key
    suffixes = sorted(server.profiles)

    for mid in sorted(set(model_ids)):
        if not server.allows(mid):
            continue
        if not server.hide_base_models:
            out[mid] = ModelEntry(
                id=mid,
                server_name=server.name,
                endpoint=endpoint,
                api_key=api_key,
                virtual=False,
                base_model=mid,
            )
        for suffix in suffixes:
            vid = f"{mid}-{suffix}"
            out[vid] = ModelEntry(
                id=vid,
                server_name=server.name,
                endpoint=endpoint,
                api_key=api_key,
                virtual=True,
                base_model=mid,
                profile_suffix=suffix,
            )
    return out


class ModelRegistry:
    """
    Map of model id -> ModelEntry, refreshed from every server's /models.

    The map is an immutable snapshot replaced wholesale after each refresh,
    so readers only ever see a complete previous or a complete new map.
    Concurrent refresh triggers share the refresh already in flight.
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        fetch_models: FetchModels,
        *,
        ttl_s: float = 60.0,
        timeout_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runtime = runtime
        self._fetch_models = fetch_models
        self._ttl_s = ttl_s
        self._timeout_s = timeout_s
        self._clock = clock
        self._snapshot: Mapping[str, ModelEntry] = MappingProxyType({})
        self._last_refresh: Optional[float] = None
        self._inflight: Optional[asyncio.Task[Mapping[str, ModelEntry]]] = None

    @property
    def last_refresh(self) -> Optional[float]:
        return self._last_refresh

    def snapshot(self) -> Mapping[str, ModelEntry]:
        """Current registry map (read-only)."""
        return self._snapshot

    def is_fresh(self) -> bool:
        if self._last_refresh is None:
            return False
        return self._clock() < self._last_refresh + self._ttl_s

    async def ensure_fresh(self) -> Mapping[str, ModelEntry]:
        """Refresh if the TTL has expired; return the current snapshot."""
        if self.is_fresh():
            return self._snapshot
        return await self.refresh()

    async def refresh(self) -> Mapping[str, ModelEntry]:
        """Refresh now, joining a refresh that is already running."""
        task = self._inflight
        if task is None or task.done():
            task = asyncio.create_task(self._refresh(), name="llm_gateway.models_refresh")
            self._inflight = task
        return await asyncio.shield(task)

    async def lookup(self, model_id: str) -> Optional[ModelEntry]:
        """Find a model after making sure the registry is fresh."""
        snapshot = await self.ensure_fresh()
        return snapshot.get(model_id)

    async def list_models(self) -> List[Dict[str, Any]]:
        """Sorted /models listing entries."""
        snapshot = await self.ensure_fresh()
        return [snapshot[mid].to_model_dict() for mid in sorted(snapshot)]

    async def run_periodic(self, interval_s: float) -> None:
        """Refresh on a fixed schedule until cancelled."""
        log.info("Periodic model refresh scheduled every %.0f s", interval_s)
        while True:
            await asyncio.sleep(interval_s)
            log.info("Starting periodic model refresh")
            try:
                await self.refresh()
            except Exception:
                log.exception("Periodic model refresh failed")

    async def _fetch_server(self, server: ServerSpec) -> Optional[List[str]]:
        t0 = time.time()
        try:
            ids = await self._fetch_models(server)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Model discovery failed server=%s: %s", server.name, e)
            return None
        dt = (time.time() - t0) * 1000
        log.info("Server %s provides %d models ms=%.1f", server.name, len(ids), dt)
        return list(ids)

    async def _refresh(self) -> Mapping[str, ModelEntry]:
        servers = list(self._runtime.servers.values())
        tasks = {
            server.name: asyncio.create_task(
                self._fetch_server(server), name=f"llm_gateway.discover.{server.name}"
            )
            for server in servers
        }

        if tasks:
            _, pending = await asyncio.wait(tasks.values(), timeout=self._timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        new_map: Dict[str, ModelEntry] = {}
        # Config order, not completion order, so overwrites are deterministic.
        for server in servers:
            task = tasks[server.name]
            if task.cancelled():
                log.warning("Model discovery timed out server=%s timeout_s=%.1f", server.name, self._timeout_s)
                continue
            ids = task.result()
            if ids is None:
                continue
            for mid, entry in build_entries(server, ids).items():
                prev = new_map.get(mid)
                if prev is not None and prev.server_name != entry.server_name:
                    log.debug(
                        "Model id %s from server %s overrides server %s",
                        mid,
                        entry.server_name,
                        prev.server_name,
                    )
                new_map[mid] = entry

        self._snapshot = MappingProxyType(new_map)
        self._last_refresh = self._clock()
        log.info("Total models available: %d", len(new_map))
        return self._snapshot
