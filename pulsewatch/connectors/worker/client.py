"""Pulsewatch — HTTP Worker Client.

Invokes assessment workers through an HTTP endpoint (a function URL or an
invoke gateway) that accepts the job and answers before running it.
No retry: an invocation that fails is settled by the pulse timeout.
"""

from typing import Any, Dict, Optional

import httpx

from pulsewatch.config import settings
from pulsewatch.connectors.worker.base import (
    WorkerAcknowledgementTimeout,
    WorkerInvocationError,
    WorkerInvoker,
)
from pulsewatch.core.logging import get_logger

logger = get_logger("worker.client")


class HttpWorkerInvoker(WorkerInvoker):
    """Async HTTP client for the worker invoke endpoint."""

    def __init__(
        self,
        invoke_url: str | None = None,
        auth_token: str | None = None,
        timeout: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.invoke_url = invoke_url or settings.worker_invoke_url
        self.auth_token = auth_token or settings.worker_auth_token
        self.timeout = timeout or settings.worker_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.auth_token:
                headers["Authorization"] = f"Bearer {self.auth_token}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=headers, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def invoke(
        self, payload: Dict[str, Any], invoke_url: Optional[str] = None
    ) -> None:
        endpoint = invoke_url or self.invoke_url
        if not endpoint:
            raise WorkerInvocationError("Worker invoke URL is not configured")

        client = await self._get_client()
        try:
            resp = await client.post(endpoint, json=payload)
        except (httpx.ReadTimeout, httpx.WriteTimeout) as e:
            # The request left this process; the worker may have started
            raise WorkerAcknowledgementTimeout(
                f"No acknowledgement within {self.timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise WorkerInvocationError(f"Invocation failed: {e}") from e

        if resp.status_code >= 300:
            body = (
                resp.json()
                if resp.headers.get("content-type", "").startswith("application/json")
                else {}
            )
            if not isinstance(body, dict):
                body = {}
            message = body.get("message") or body.get("error") or resp.text[:200]
            raise WorkerInvocationError(
                f"Worker endpoint refused invocation: {message}", resp.status_code
            )
