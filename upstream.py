"""Upstream backend communication: model listing and request forwarding."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from config import AppConfig
from runtime_config import ServerSpec

log = logging.getLogger("llm_gateway")

MODELS_ENDPOINT = "/models"


class UpstreamError(Exception):
    """A backend answered, but not with something usable."""


def parse_model_ids(payload: Any) -> List[str]:
    """Extract sorted model ids from an OpenAI-style /models payload."""
    if not isinstance(payload, dict):
        raise UpstreamError("models payload is not a JSON object")
    items = payload.get("data")
    if not isinstance(items, list):
        return []
    ids = []
    for it in items:
        if isinstance(it, dict) and it.get("id") is not None:
            ids.append(str(it["id"]))
    ids.sort()
    return ids


class UpstreamClient:
    """Handle communication with the configured backend servers."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def get_headers(self, api_key: Optional[str], stream: bool = False) -> Dict[str, str]:
        """
        Headers sent to a backend.

        Only the server's own key is ever used for Authorization; nothing is
        copied from the inbound request.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "User-Agent": self._config.user_agent,
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def discovery_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._config.model_request_timeout_s,
            connect=self._config.model_connect_timeout_s,
        )

    def forward_timeout(self, stream: bool) -> httpx.Timeout:
        # Streams get no read timeout so long pauses between chunks survive.
        return httpx.Timeout(
            self._config.request_timeout_s,
            connect=self._config.connect_timeout_s,
            read=None if stream else self._config.request_timeout_s,
        )

    async def fetch_model_ids(self, client: httpx.AsyncClient, server: ServerSpec) -> List[str]:
        """Fetch the model ids a server reports, using its first pool endpoint."""
        url = f"{server.representative_endpoint}{MODELS_ENDPOINT}"
        headers = self.get_headers(server.bearer_key)
        headers.pop("Content-Type", None)

        t0 = time.time()
        r = await client.get(url, headers=headers, timeout=self.discovery_timeout())
        dt = (time.time() - t0) * 1000

        if r.status_code != 200:
            log.error(
                "Upstream /models failed server=%s status=%s ms=%.1f body=%s",
                server.name,
                r.status_code,
                dt,
                r.text[:500],
            )
            raise UpstreamError(f"Upstream /models error: {r.status_code} {r.text[:2000]}")

        try:
            payload = r.json()
        except ValueError as e:
            raise UpstreamError(f"Upstream /models returned invalid JSON: {e}") from e
        return parse_model_ids(payload)

    async def send(
        self,
        client: httpx.AsyncClient,
        *,
        method: str,
        url: str,
        api_key: Optional[str],
        body: Optional[bytes],
        stream: bool,
    ) -> httpx.Response:
        """
        Forward a request to a backend.

        For streaming requests the response body is left unread so it can be
        relayed chunk by chunk; the caller must close the response.
        """
        headers = self.get_headers(api_key, stream)
        if not body:
            headers.pop("Content-Type", None)

        t0 = time.time()
        req = client.build_request(
            method,
            url,
            headers=headers,
            content=body or None,
            timeout=self.forward_timeout(stream),
        )
        resp = await client.send(req, stream=stream)

        dt = (time.time() - t0) * 1000
        log.info("Upstream %s %s status=%s stream=%s ms=%.1f", method, url, resp.status_code, stream, dt)

        if resp.status_code >= 400:
            log.warning(
                "Upstream error url=%s status=%s content-type=%s",
                url,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp
