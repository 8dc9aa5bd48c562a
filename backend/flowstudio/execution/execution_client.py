"""
Execution Service clients.

``ExecutionService`` is the boundary to the remote runtime that actually
runs workflows. ``HttpExecutionService`` talks to it over HTTP:

    POST /api/workflows/{workflowId}/execute          → {"executionId": ...}
    POST /api/workflows/executions/{id}/pause
    POST /api/workflows/executions/{id}/resume
    POST /api/workflows/executions/{id}/cancel
    GET  /api/workflows/executions/{id}/stream        Server-Sent Events
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from logging import getLogger
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from flowstudio.config import StudioConfig, get_studio_config
from flowstudio.errors import CommandError, StreamError

logger = getLogger(__name__)

SSE_DATA_PREFIX = "data:"


class ExecutionService(ABC):
    """Commands and event stream of a remote execution runtime."""

    @abstractmethod
    async def start(self, workflow_id: str) -> str:
        """Start a run and return its execution id."""

    @abstractmethod
    async def pause(self, execution_id: str) -> None:
        ...

    @abstractmethod
    async def resume(self, execution_id: str) -> None:
        ...

    @abstractmethod
    async def cancel(self, execution_id: str) -> None:
        ...

    @abstractmethod
    def stream(self, execution_id: str) -> AsyncIterator[Any]:
        """Yield raw events (JSON text or dicts) in delivery order.

        Raises:
            StreamError: When the transport fails.
        """

    async def aclose(self) -> None:
        pass


class HttpExecutionService(ExecutionService):

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        config: Optional[StudioConfig] = None,
    ):
        config = config or get_studio_config()
        self.base_url = (base_url or config.execution_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else config.request_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
        )

    # ── Commands ──

    async def start(self, workflow_id: str) -> str:
        payload = await self._post(f"/api/workflows/{workflow_id}/execute", "start")
        execution_id = payload.get("executionId")
        if not execution_id:
            raise CommandError("Execution service did not return an executionId", payload=payload)
        logger.info(f"Started execution {execution_id} for workflow {workflow_id}")
        return str(execution_id)

    async def pause(self, execution_id: str) -> None:
        await self._post(f"/api/workflows/executions/{execution_id}/pause", "pause")

    async def resume(self, execution_id: str) -> None:
        await self._post(f"/api/workflows/executions/{execution_id}/resume", "resume")

    async def cancel(self, execution_id: str) -> None:
        await self._post(f"/api/workflows/executions/{execution_id}/cancel", "cancel")

    async def _post(self, path: str, action: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(path)
        except httpx.HTTPError as e:
            raise CommandError(f"Failed to {action} execution: {e}") from e

        payload = _json_payload(response)
        if response.is_error:
            message = payload.get("error") or payload.get("message") or f"HTTP {response.status_code}"
            logger.warning(f"{action} rejected ({response.status_code}): {message}")
            raise CommandError(
                f"Failed to {action} execution: {message}",
                status_code=response.status_code,
                payload=payload,
            )
        return payload

    # ── Event stream ──

    async def stream(self, execution_id: str) -> AsyncIterator[str]:
        path = f"/api/workflows/executions/{execution_id}/stream"
        try:
            async with self._client.stream(
                "GET",
                path,
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.timeout, read=None),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise StreamError(f"Execution stream rejected with HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.startswith(SSE_DATA_PREFIX):
                        continue
                    data = line[len(SSE_DATA_PREFIX):].strip()
                    if data:
                        yield data
        except httpx.HTTPError as e:
            raise StreamError(f"Execution stream failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _json_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}
