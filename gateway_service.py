"""
LLM gateway (OpenAI-compatible) -> several configured backend servers.

Requests under the API prefix are routed by the body's "model" field; any
other path is routed by the model name passed as the Bearer token. Bodies
are rewritten per server and per profile before forwarding:

  model rewrite -> deny -> defaults -> overrides -> system/developer upsert

Virtual models "<base>-<suffix>" come from profile tables in the routing
config; backends only ever see the base name.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import AppConfig, load_config
from dispatcher import DispatchError, ProxyDispatcher, ProxyTarget
from logger import setup_logging
from models import ModelRegistry
from routing import RouteResolver
from runtime_config import ConfigError, RuntimeConfig, load_runtime_config
from upstream import MODELS_ENDPOINT, UpstreamClient
from utils import dump_config, load_env_files

log = logging.getLogger("llm_gateway")

STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class Gateway:
    """Wires the routing components together and owns their lifecycle."""

    def __init__(
        self,
        config: AppConfig,
        runtime: RuntimeConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.client = httpx.AsyncClient(transport=transport)
        self.upstream = UpstreamClient(config)
        self.registry = ModelRegistry(
            runtime,
            functools.partial(self.upstream.fetch_model_ids, self.client),
            ttl_s=config.model_refresh_ttl_s,
            timeout_s=config.model_request_timeout_s,
            clock=clock,
        )
        self.resolver = RouteResolver(runtime, self.registry)
        self.dispatcher = ProxyDispatcher(
            self.resolver,
            api_prefix=config.api_prefix,
            debug_request=config.debug_request,
        )
        self._refresh_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        """Warm the registry and schedule the periodic refresh."""
        await self.registry.refresh()
        if self.config.model_refresh_interval_s > 0:
            self._refresh_task = asyncio.create_task(
                self.registry.run_periodic(self.config.model_refresh_interval_s),
                name="llm_gateway.periodic_refresh",
            )

    async def aclose(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        await self.client.aclose()


def _error_response(status_code: int, message: str, error_type: str, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "code": code}},
    )


def _content_length_error(request: Request, max_bytes: int) -> Optional[DispatchError]:
    """Basic request size guard based on Content-Length."""
    cl = request.headers.get("content-length")
    if not cl:
        return None
    try:
        n = int(cl)
    except ValueError:
        return DispatchError(400, f"Invalid Content-Length header: {cl!r}")
    if n < 0:
        return DispatchError(400, "Invalid Content-Length: must be non-negative")
    if n > max_bytes:
        return DispatchError(413, f"Request too large: {n} bytes (max {max_bytes})")
    return None


async def relay_stream(resp: httpx.Response, model: str) -> AsyncIterator[bytes]:
    """
    Relay backend bytes chunk by chunk.

    Closing the generator (client went away) closes the backend response too.
    """
    n_bytes = 0
    try:
        async for chunk in resp.aiter_bytes():
            n_bytes += len(chunk)
            yield chunk
    except httpx.HTTPError as e:
        log.warning("Upstream stream broke model=%s after %d bytes: %s", model, n_bytes, e)
    finally:
        await resp.aclose()
        log.info("Stream finished model=%s bytes=%d", model, n_bytes)


async def forward(gateway: Gateway, target: ProxyTarget) -> Response:
    """Send a resolved request to its backend and relay the answer."""
    try:
        resp = await gateway.upstream.send(
            gateway.client,
            method=target.method,
            url=target.url,
            api_key=target.api_key,
            body=target.body,
            stream=target.is_streaming,
        )
    except httpx.HTTPError as e:
        log.error("Upstream transport error model=%s url=%s: %s", target.requested_model, target.url, e)
        return _error_response(502, f"Upstream request failed: {type(e).__name__}", "server_error")

    if not target.is_streaming:
        return Response(content=resp.content, status_code=resp.status_code, media_type="application/json")

    if resp.status_code >= 400:
        # Backend refused before streaming; hand its error body back as JSON.
        try:
            content = await resp.aread()
        finally:
            await resp.aclose()
        return Response(content=content, status_code=resp.status_code, media_type="application/json")

    # Runs even if the body iterator is never started.
    cleanup = BackgroundTasks()
    cleanup.add_task(resp.aclose)
    return StreamingResponse(
        relay_stream(resp, target.requested_model),
        status_code=resp.status_code,
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
        background=cleanup,
    )


def create_app(gateway: Gateway) -> FastAPI:
    """Build the FastAPI application around a Gateway."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await gateway.start()
        yield
        await gateway.aclose()

    app = FastAPI(title="llm-gateway", version="1.0.0", lifespan=lifespan)
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled error path=%s", request.url.path)
        return _error_response(500, "Internal Server Error", "server_error")

    @app.get("/healthz")
    async def healthz() -> Dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    async def list_models() -> Dict[str, Any]:
        """Aggregated model listing across all servers."""
        return {"object": "list", "data": await gateway.registry.list_models()}

    app.add_api_route(MODELS_ENDPOINT, list_models, methods=["GET"])
    app.add_api_route(f"{gateway.config.api_prefix}{MODELS_ENDPOINT}", list_models, methods=["GET"])

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, full_path: str) -> Response:
        """Route any other request to a backend chosen by model name."""
        err = _content_length_error(request, gateway.config.max_request_bytes)
        if err is not None:
            return _error_response(err.status_code, err.message, err.error_type, err.code)

        body = await request.body()
        if len(body) > gateway.config.max_request_bytes:
            return _error_response(
                413,
                f"Request too large: {len(body)} bytes (max {gateway.config.max_request_bytes})",
                "invalid_request_error",
            )

        client_ip = request.client.host if request.client else "unknown"
        log.info("Incoming %s %s from=%s", request.method, request.url.path, client_ip)

        try:
            target = await gateway.dispatcher.route(
                request.method,
                request.url.path,
                body,
                request.headers,
                request.url.query,
            )
        except DispatchError as e:
            return _error_response(e.status_code, e.message, e.error_type, e.code)

        return await forward(gateway, target)

    return app


def main() -> None:
    """Entry point: load settings and routing config, then serve."""
    import uvicorn

    load_env_files()
    config = load_config()
    logger = setup_logging(config.log_path)
    try:
        config.validate()
    except ValueError as e:
        logger.error("Invalid settings: %s", e)
        sys.exit(1)
    dump_config(config)

    try:
        runtime = load_runtime_config(config.config_path)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    app = create_app(Gateway(config, runtime))
    uvicorn.run(app, host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
