"""Per-request orchestration: pick the backend and rewrite the body."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from routing import RouteFailure, RouteResolver, RouteTarget
from transform import transform_body

log = logging.getLogger("llm_gateway")


class DispatchError(Exception):
    """A request that cannot be routed; maps onto an OpenAI-style error."""

    def __init__(
        self,
        status_code: int,
        message: str,
        error_type: str = "invalid_request_error",
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.code = code

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type, "code": self.code}}


@dataclass(frozen=True)
class ProxyTarget:
    """Everything the transport needs to forward one request."""

    method: str
    url: str
    api_key: Optional[str]
    is_streaming: bool
    body: Optional[bytes]
    requested_model: str
    route: RouteTarget


def is_prefixed(path: str, prefix: str) -> bool:
    """True when ``path`` lies under the versioned API prefix."""
    return path == prefix or path.startswith(prefix + "/")


def extract_bearer(headers: Mapping[str, str]) -> Optional[str]:
    value = (headers.get("authorization") or "").strip()
    if not value:
        return None
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest.strip()
    return value or None


def is_endpoint_compatible(path: str, endpoint: str, prefix: str) -> bool:
    """Unprefixed requests must not go to endpoints that already carry the prefix."""
    return is_prefixed(path, prefix) or not endpoint.endswith(prefix)


def build_final_path(path: str, endpoint: str, prefix: str) -> str:
    """Drop one copy of the prefix when the endpoint already ends with it."""
    if endpoint.endswith(prefix) and is_prefixed(path, prefix):
        return path[len(prefix):]
    return path


def determine_streaming(body: Any) -> bool:
    """Stream unless the body explicitly says ``"stream": false``."""
    if isinstance(body, dict) and body.get("stream") is False:
        return False
    return True


def _parse_json(raw: bytes) -> Any:
    return json.loads(raw.decode("utf-8"))


def _dump_json(body: Any) -> bytes:
    return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class ProxyDispatcher:
    """Resolve, validate and rewrite inbound requests into ProxyTargets."""

    def __init__(
        self,
        resolver: RouteResolver,
        *,
        api_prefix: str = "/v1",
        debug_request: bool = False,
    ) -> None:
        self._resolver = resolver
        self._prefix = api_prefix
        self._debug_request = debug_request

    def _extract_model(self, path: str, body: bytes, headers: Mapping[str, str]) -> tuple[str, Any]:
        """Return the requested model id and the parsed body (None if not JSON)."""
        if is_prefixed(path, self._prefix):
            try:
                parsed = _parse_json(body)
            except (UnicodeDecodeError, ValueError):
                log.error("Invalid JSON in request body path=%s", path)
                raise DispatchError(400, "Invalid JSON body")
            if not isinstance(parsed, dict):
                raise DispatchError(400, "Invalid JSON body: expected object")
            model = parsed.get("model")
            if not isinstance(model, str) or not model.strip():
                raise DispatchError(400, "Missing 'model' field in request body", code="model_not_found")
            return model.strip(), parsed

        # llama.cpp-style clients pass the model name as the API key.
        model = extract_bearer(headers)
        if not model:
            raise DispatchError(400, "Missing model name in Authorization header", code="model_not_found")
        parsed = None
        if body:
            try:
                parsed = _parse_json(body)
            except (UnicodeDecodeError, ValueError):
                parsed = None
        return model, parsed

    async def route(
        self,
        method: str,
        path: str,
        body: bytes,
        headers: Mapping[str, str],
        query: str = "",
    ) -> ProxyTarget:
        """Turn an inbound request into a ProxyTarget or raise DispatchError."""
        model, parsed = self._extract_model(path, body, headers)

        result = await self._resolver.resolve(model)
        if isinstance(result, RouteFailure):
            raise DispatchError(400, result.message, code=result.reason)
        route = result

        if not is_endpoint_compatible(path, route.endpoint, self._prefix):
            log.warning("Model %r endpoint mismatch path=%s endpoint=%s", model, path, route.endpoint)
            raise DispatchError(
                400,
                f"Model '{model}' is not reachable through path '{path}'",
                code="endpoint_mismatch",
            )

        out_body: Optional[bytes] = body or None
        if isinstance(parsed, dict):
            transform_body(
                parsed,
                model=route.base_model,
                deny=route.deny,
                defaults=route.defaults,
                overrides=route.overrides,
                system_text=route.system_message,
                developer_text=route.developer_message,
            )
            out_body = _dump_json(parsed)
            if self._debug_request:
                log.info("Sending JSON:\n%s\n---", json.dumps(parsed, ensure_ascii=False, indent=2))

        is_streaming = determine_streaming(parsed)
        final_path = build_final_path(path, route.endpoint, self._prefix)
        url = route.endpoint + final_path
        if query:
            url = f"{url}?{query}"

        log.info(
            "Routing model=%s -> server=%s endpoint=%s base_model=%s virtual=%s stream=%s",
            model,
            route.server_name,
            route.endpoint,
            route.base_model,
            route.is_virtual,
            is_streaming,
        )
        return ProxyTarget(
            method=method,
            url=url,
            api_key=route.api_key,
            is_streaming=is_streaming,
            body=out_body,
            requested_model=model,
            route=route,
        )
