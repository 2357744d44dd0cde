"""HTTP agent client -- streams agent output over server-sent events.

POSTs the event context to ``{agent_url}/stream`` and reads ``data:``
lines, each a JSON object shaped like an AgentStreamEvent:

  {"type": "token", "value": "..."}
  {"type": "final", "message": "...", "latency_ms": 812, "token_usage": {...}, "effects": [...]}
  {"type": "error", "message": "...", "retryable": true}
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from chorus.agent.protocol import AgentContext, AgentStreamEvent
from chorus.config import Settings

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504, 529}


def _parse_stream_event(data: dict[str, Any]) -> AgentStreamEvent | None:
    """Map one SSE payload to an AgentStreamEvent. Unknown types are ignored."""
    kind = data.get("type")
    if kind == "token":
        return AgentStreamEvent(type="token", value=str(data.get("value", "")))
    if kind == "final":
        return AgentStreamEvent(
            type="final",
            message=str(data.get("message", "")),
            latency_ms=data.get("latency_ms"),
            token_usage=data.get("token_usage"),
            effects=list(data.get("effects") or []),
        )
    if kind == "error":
        return AgentStreamEvent(
            type="error",
            message=str(data.get("message", "agent error")),
            retryable=bool(data.get("retryable", False)),
        )
    return None


class HttpAgent:
    """Agent backed by a remote HTTP endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http_client
        self._owns_client = http_client is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.agent_api_key:
            headers["authorization"] = f"Bearer {settings.agent_api_key}"

        self._http = httpx.AsyncClient(
            base_url=settings.agent_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=settings.agent_timeout_connect,
                read=settings.agent_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        logger.info("Agent client initialized (%s)", settings.agent_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    async def stream(self, context: AgentContext) -> AsyncGenerator[AgentStreamEvent, None]:
        """Yield stream events; stops after the first final or error."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        async with self._http.stream("POST", "/stream", json=context.to_dict()) as response:
            if response.status_code != 200:
                error_body = await response.aread()
                yield AgentStreamEvent(
                    type="error",
                    message=f"Agent HTTP {response.status_code}: {error_body.decode()[:500]}",
                    retryable=response.status_code in _RETRYABLE_STATUS,
                )
                return

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed agent stream line: %s", line[:200])
                    continue
                event = _parse_stream_event(data)
                if event is None:
                    continue
                yield event
                if event.type in ("final", "error"):
                    return
