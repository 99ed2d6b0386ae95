"""Worker dispatch transport.

The engine hands each fired Worker node to a ``WorkerDispatcher``. Dispatch is
fire-and-forget: the worker reports back later through the callback URL in the
request, never through the dispatch return value.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from stitch.core.workers import WorkerRegistry

logger = logging.getLogger(__name__)


class WorkerDispatchError(Exception):
    """The worker could not be reached or rejected the request."""

    pass


class WorkerRequest(BaseModel):
    """Payload posted to a worker. Serialised with camelCase keys on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    node_id: str = Field(alias="nodeId")
    worker_type: str | None = Field(default=None, alias="workerType")
    config: dict[str, Any] = Field(default_factory=dict)
    input: Any = None
    callback_url: str = Field(alias="callbackUrl")

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WorkerDispatcher(Protocol):
    """Protocol for sending work to external workers."""

    async def dispatch(self, request: WorkerRequest) -> None:
        """Send the request. Raise WorkerDispatchError if it was not accepted."""
        ...


class WebhookDispatcher:
    """POSTs worker requests as JSON over HTTP.

    The URL is the node's ``config.webhook_url`` or, failing that, the
    ``endpoint`` of the worker type's registry definition.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry = registry
        self.timeout = timeout
        self._transport = transport

    def resolve_url(self, request: WorkerRequest) -> str:
        url = request.config.get("webhook_url")
        if url:
            return url
        if request.worker_type:
            definition = self.registry.get(request.worker_type)
            if definition is not None and definition.endpoint:
                return definition.endpoint
        raise WorkerDispatchError(
            f"No webhook_url or registry endpoint for worker node '{request.node_id}'"
            + (f" (type {request.worker_type})" if request.worker_type else "")
        )

    async def dispatch(self, request: WorkerRequest) -> None:
        url = self.resolve_url(request)
        logger.info(f"Dispatching {request.node_id} of run {request.run_id} to {url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=request.payload())
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise WorkerDispatchError(
                f"Worker at {url} timed out after {self.timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            raise WorkerDispatchError(
                f"Worker at {url} returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise WorkerDispatchError(f"Worker at {url} unreachable: {e}") from e
