"""
Routing configuration: compile a raw nested config tree into immutable specs.

Schema (TOML shown, YAML is equivalent):

    [OpenAI]
    endpoints = ["https://api.openai.com/v1"]  # or: endpoint = "http://host", ports = [8080, 8081]
    api_key = "sk-..."                         # optional; present => Bearer auth
    models = ["gpt-5", "gpt-4.1"]              # optional allow-list
    defaults = { temperature = 0.2 }           # applied if missing
    overrides = { stream = true }              # force-set
    deny = ["/temperature", "stream_options.include_usage"]
    hide_base_models = false                   # true => only profile models are exposed

    [OpenAI.high]                              # profile, suffix "high"
    overrides = { reasoning_effort = "high" }
    system_message = "..."
    developer_message = "..."
"""

from __future__ import annotations

import itertools
import logging
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import yaml

from logger import mask_secret
from transform import to_pointer

log = logging.getLogger("llm_gateway")

AUTH_NONE = "none"
AUTH_BEARER = "bearer"

RESERVED_SERVER_KEYS = frozenset({
    "endpoint",
    "endpoints",
    "port",
    "ports",
    "api_key",
    "models",
    "defaults",
    "overrides",
    "deny",
    "hide_base_models",
})

PROFILE_KEYS = frozenset({
    "defaults",
    "overrides",
    "deny",
    "system_message",
    "developer_message",
})


class ConfigError(ValueError):
    """Raised when the routing configuration cannot be compiled."""


def _freeze(value: Any) -> Any:
    """Return a read-only view of nested config objects."""
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Turn a frozen config value back into plain, mutable JSON data."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ProfileSpec:
    """Rules of a virtual model variant, layered on top of its server's rules."""

    suffix: str
    defaults: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    overrides: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    deny: Tuple[str, ...] = ()
    system_message: Optional[str] = None
    developer_message: Optional[str] = None


@dataclass(frozen=True)
class ServerSpec:
    """A backend server: endpoint pool, auth, allow-list, rules and profiles."""

    name: str
    endpoints: Tuple[str, ...]
    auth_type: str = AUTH_NONE
    api_key: Optional[str] = None
    allowed_models: Optional[Tuple[str, ...]] = None
    defaults: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    overrides: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    deny: Tuple[str, ...] = ()
    profiles: Mapping[str, ProfileSpec] = field(default_factory=lambda: MappingProxyType({}))
    hide_base_models: bool = False
    _rr: Any = field(default_factory=itertools.count, repr=False, compare=False)
    _rr_lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def representative_endpoint(self) -> str:
        """First pool endpoint, used for model discovery."""
        return self.endpoints[0]

    @property
    def bearer_key(self) -> Optional[str]:
        """API key to send upstream, or None when auth is disabled."""
        return self.api_key if self.auth_type == AUTH_BEARER else None

    def next_endpoint(self) -> str:
        """Pick the next pool endpoint (round-robin)."""
        with self._rr_lock:
            idx = next(self._rr)
        return self.endpoints[idx % len(self.endpoints)]

    def allows(self, model_id: str) -> bool:
        """Allow-list check: None accepts all, an empty list rejects all."""
        if self.allowed_models is None:
            return True
        return model_id in self.allowed_models


@dataclass(frozen=True)
class RuntimeConfig:
    """Compiled, validated, immutable routing configuration."""

    servers: Mapping[str, ServerSpec]

    def find_server_by_endpoint(self, endpoint: str) -> Optional[ServerSpec]:
        for server in self.servers.values():
            if endpoint in server.endpoints:
                return server
        return None


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------

def _label(server: str, profile: Optional[str] = None) -> str:
    return f"[{server}.{profile}]" if profile else f"[{server}]"


def _get_text(obj: Mapping[str, Any], key: str, where: str) -> Optional[str]:
    v = obj.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise ConfigError(f"{where} '{key}' must be a string")
    return v


def _get_bool(obj: Mapping[str, Any], key: str, where: str, default: bool) -> bool:
    v = obj.get(key)
    if v is None:
        return default
    if not isinstance(v, bool):
        raise ConfigError(f"{where} expected boolean for '{key}' but got {type(v).__name__}")
    return v


def _get_string_list(obj: Mapping[str, Any], key: str, where: str) -> Optional[List[str]]:
    v = obj.get(key)
    if v is None:
        return None
    if not isinstance(v, list):
        raise ConfigError(f"{where} '{key}' must be an array of strings")
    for el in v:
        if not isinstance(el, str):
            raise ConfigError(f"{where} '{key}' must be an array of strings, got {el!r}")
    return list(v)


def _get_object(obj: Mapping[str, Any], key: str, where: str) -> Mapping[str, Any]:
    v = obj.get(key)
    if v is None:
        return MappingProxyType({})
    if not isinstance(v, dict):
        raise ConfigError(f"{where} '{key}' must be a table/object")
    return _freeze(v)


def _compile_deny(obj: Mapping[str, Any], where: str) -> Tuple[str, ...]:
    paths = _get_string_list(obj, "deny", where) or []
    return tuple(to_pointer(p) for p in paths)


def _is_port(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

def validate_url(url: str, where: str) -> str:
    """Require scheme and host; return the url without trailing slashes."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
        _ = parts.port  # raises on a non-numeric port
    except ValueError:
        raise ConfigError(f"{where} endpoint invalid: {url!r}")
    if not parts.scheme or not host:
        raise ConfigError(f"{where} endpoint invalid: {url!r}")
    return url.rstrip("/")


def apply_port(base_url: str, port: int) -> str:
    """Rewrite the port component of ``base_url``."""
    parts = urlsplit(base_url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    userinfo = ""
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo += f":{parts.password}"
        userinfo += "@"
    return urlunsplit((parts.scheme, f"{userinfo}{host}:{port}", parts.path, parts.query, parts.fragment))


def build_endpoints(name: str, obj: Mapping[str, Any]) -> List[str]:
    """
    Expand endpoint settings into the server's pool.

    Either ``endpoints`` (+ optional shared ``port``) or a single
    ``endpoint`` (+ optional ``ports``, one pool entry per port).
    """
    where = _label(name)
    endpoints = obj.get("endpoints")
    endpoint = obj.get("endpoint")
    ports = obj.get("ports")
    port = obj.get("port")

    if port is not None and not _is_port(port):
        raise ConfigError(f"Server {where} 'port' must be an integer")

    bases: List[str] = []
    if endpoints is not None:
        bases = _get_string_list(obj, "endpoints", where) or []
        bases = [validate_url(b, f"Server {where}") for b in bases]
        if port is not None:
            return [apply_port(b, port) for b in bases]
        return bases

    if endpoint is not None:
        if not isinstance(endpoint, str):
            raise ConfigError(f"Server {where} 'endpoint' must be a string")
        base = validate_url(endpoint, f"Server {where}")
        if ports is not None:
            if not isinstance(ports, list):
                raise ConfigError(f"Server {where} 'ports' must be an array of integers")
            if ports:
                out = []
                for p in ports:
                    if not _is_port(p):
                        raise ConfigError(f"Server {where} ports must be integers")
                    out.append(apply_port(base, p))
                return out
        if port is not None:
            return [apply_port(base, port)]
        return [base]

    return []


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def _compile_profile(server_name: str, suffix: str, obj: Mapping[str, Any]) -> ProfileSpec:
    where = f"Profile {_label(server_name, suffix)}"
    if not suffix:
        raise ConfigError(f"{where} suffix must be non-empty")
    for key in obj:
        if key not in PROFILE_KEYS:
            log.warning("%s: ignoring unknown key %r", where, key)
    return ProfileSpec(
        suffix=suffix,
        defaults=_get_object(obj, "defaults", where),
        overrides=_get_object(obj, "overrides", where),
        deny=_compile_deny(obj, where),
        system_message=_get_text(obj, "system_message", where) or None,
        developer_message=_get_text(obj, "developer_message", where) or None,
    )


def compile_server(name: str, obj: Mapping[str, Any]) -> ServerSpec:
    """Compile one top-level table into a ServerSpec."""
    where = f"Server {_label(name)}"
    if not isinstance(obj, dict):
        raise ConfigError(f"Section {_label(name)} must be a table/object")

    endpoints = build_endpoints(name, obj)
    if not endpoints:
        raise ConfigError(f"{where} must define at least one endpoint")

    api_key = _get_text(obj, "api_key", where)
    auth_type = AUTH_BEARER if api_key else AUTH_NONE

    allowed = _get_string_list(obj, "models", where)

    profiles: Dict[str, ProfileSpec] = {}
    for key, val in obj.items():
        if key in RESERVED_SERVER_KEYS:
            continue
        if not isinstance(val, dict):
            log.warning("%s: ignoring unknown key %r", where, key)
            continue
        profiles[key] = _compile_profile(name, key, val)

    return ServerSpec(
        name=name,
        endpoints=tuple(endpoints),
        auth_type=auth_type,
        api_key=api_key if auth_type == AUTH_BEARER else None,
        allowed_models=tuple(allowed) if allowed is not None else None,
        defaults=_get_object(obj, "defaults", where),
        overrides=_get_object(obj, "overrides", where),
        deny=_compile_deny(obj, where),
        profiles=MappingProxyType(profiles),
        hide_base_models=_get_bool(obj, "hide_base_models", where, False),
    )


def compile_config(root: Any) -> RuntimeConfig:
    """
    Compile a raw config tree into a RuntimeConfig.

    Every failure raises ConfigError; nothing partially compiled is returned.
    """
    if not isinstance(root, dict) or not root:
        raise ConfigError("Empty configuration")

    servers: Dict[str, ServerSpec] = {}
    for name, obj in root.items():
        servers[name] = compile_server(name, obj)
    return RuntimeConfig(servers=MappingProxyType(servers))


def read_config_tree(path: str | Path) -> Dict[str, Any]:
    """Parse a TOML or YAML routing config file into a plain dict."""
    resolved = Path(path)
    try:
        if resolved.suffix.lower() in (".yaml", ".yml"):
            with resolved.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle) or {}
        else:
            with resolved.open("rb") as handle:
                payload = tomllib.load(handle)
    except OSError as e:
        raise ConfigError(f"Failed to read configuration {str(resolved)!r}: {e}") from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Invalid configuration syntax in {str(resolved)!r}: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigError(f"Expected a table/object at the top of {str(resolved)!r}")
    return payload


def load_runtime_config(path: str | Path) -> RuntimeConfig:
    """Read and compile the routing configuration file."""
    runtime = compile_config(read_config_tree(path))
    for server in runtime.servers.values():
        log.info(
            "Server %s endpoints=%s auth=%s key=%s allow=%s profiles=%s hide_base_models=%s",
            server.name,
            list(server.endpoints),
            server.auth_type,
            mask_secret(server.api_key) or "-",
            "all" if server.allowed_models is None else list(server.allowed_models),
            sorted(server.profiles),
            server.hide_base_models,
        )
    log.info("Configuration loaded successfully: servers=%d", len(runtime.servers))
    return runtime
