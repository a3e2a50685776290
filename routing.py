"""Resolve a requested model id into a backend and a merged rule set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from models import ModelRegistry
from runtime_config import ProfileSpec, RuntimeConfig, ServerSpec, thaw
from transform import apply_overrides, merge_rule_lists

log = logging.getLogger("llm_gateway")

MODEL_NOT_FOUND = "model_not_found"
SERVER_NOT_FOUND = "server_not_found"


@dataclass(frozen=True)
class RouteTarget:
    """Where a request goes and how its body is rewritten."""

    server_name: str
    endpoint: str
    api_key: Optional[str]
    is_virtual: bool
    base_model: str
    deny: Tuple[str, ...] = ()
    defaults: Dict[str, Any] = field(default_factory=dict)
    overrides: Dict[str, Any] = field(default_factory=dict)
    system_message: Optional[str] = None
    developer_message: Optional[str] = None


@dataclass(frozen=True)
class RouteFailure:
    reason: str
    message: str


RouteResult = Union[RouteTarget, RouteFailure]


def match_profile(model_id: str, server: ServerSpec) -> Optional[Tuple[str, ProfileSpec]]:
    """
    Find the profile whose ``-<suffix>`` ends ``model_id``.

    When several suffixes match ("a" and "fast-a" for "model-fast-a") the
    longest one wins. The remaining base name must be non-empty.
    """
    best: Optional[ProfileSpec] = None
    for suffix, profile in server.profiles.items():
        tag = f"-{suffix}"
        if len(model_id) <= len(tag) or not model_id.endswith(tag):
            continue
        if best is None or len(suffix) > len(best.suffix):
            best = profile
    if best is None:
        return None
    return model_id[: -(len(best.suffix) + 1)], best


class RouteResolver:
    """Combine server-level and profile-level rules for a requested model."""

    def __init__(self, runtime: RuntimeConfig, registry: ModelRegistry) -> None:
        self._runtime = runtime
        self._registry = registry

    def _owning_server(self, server_name: str, endpoint: str) -> Optional[ServerSpec]:
        server = self._runtime.servers.get(server_name)
        if server is not None and endpoint in server.endpoints:
            return server
        return self._runtime.find_server_by_endpoint(endpoint)

    async def resolve(self, requested_model: str) -> RouteResult:
        entry = await self._registry.lookup(requested_model)
        if entry is None:
            log.warning("Model %r not found", requested_model)
            return RouteFailure(MODEL_NOT_FOUND, f"Model '{requested_model}' not found")

        server = self._owning_server(entry.server_name, entry.endpoint)
        if server is None:
            log.warning("No server config found for endpoint: %s", entry.endpoint)
            return RouteFailure(
                SERVER_NOT_FOUND,
                f"No server configured for model '{requested_model}'",
            )

        base_model = requested_model
        profile: Optional[ProfileSpec] = None
        if entry.virtual:
            # The registry entry decides which base/profile an id stands for.
            profile = server.profiles.get(entry.profile_suffix or "")
            if profile is not None:
                base_model = entry.base_model
            else:
                matched = match_profile(requested_model, server)
                if matched is not None:
                    base_model, profile = matched

        deny = merge_rule_lists(server.deny, profile.deny if profile else None)

        defaults = thaw(server.defaults)
        overrides = thaw(server.overrides)
        if profile is not None:
            # Profile values win over server values in both rule sets.
            apply_overrides(defaults, thaw(profile.defaults))
            apply_overrides(overrides, thaw(profile.overrides))

        return RouteTarget(
            server_name=server.name,
            endpoint=server.next_endpoint(),
            api_key=server.bearer_key,
            is_virtual=profile is not None,
            base_model=base_model,
            deny=tuple(deny),
            defaults=defaults,
            overrides=overrides,
            system_message=profile.system_message if profile else None,
            developer_message=profile.developer_message if profile else None,
        )
