"""
Workflow engine client.

The executor only talks to the engine through the EngineClient protocol so
tests can inject an in-memory fake. HttpEngineClient implements it over the
n8n public REST API.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from workflow_deployer.config.settings import EngineSettings, RetrySettings
from workflow_deployer.core.errors import (
    EngineError,
    EngineNotFoundError,
    EngineRequestError,
    ReservedFieldRejected,
    TransientEngineError,
)
from workflow_deployer.core.models import DeployedWorkflowRecord

logger = logging.getLogger(__name__)

# Fragments of 400 responses caused by engine-owned fields in the payload.
_RESERVED_FIELD_MARKERS = (
    "read-only",
    "readonly",
    "must not have additional properties",
    "additional properties",
)


class EngineClient(Protocol):
    """Operations the executor and planner need from a workflow engine."""

    async def list_workflows(self) -> list[DeployedWorkflowRecord]: ...

    async def create_workflow(self, payload: dict[str, Any]) -> DeployedWorkflowRecord: ...

    async def update_workflow(self, workflow_id: str, payload: dict[str, Any]) -> DeployedWorkflowRecord: ...

    async def activate_workflow(self, workflow_id: str) -> DeployedWorkflowRecord: ...

    async def deactivate_workflow(self, workflow_id: str) -> DeployedWorkflowRecord: ...

    async def list_node_types(self) -> Optional[set[str]]: ...

    async def ping(self) -> bool: ...


def compute_backoff(attempt: int, retry: RetrySettings, rng: Callable[[], float] = random.random) -> float:
    """
    Exponential backoff delay for a zero-based retry attempt.

    Jitter spreads the delay by +/-20%.
    """
    delay = min(retry.initial_delay * (retry.exponential_base ** attempt), retry.max_delay)
    if retry.jitter:
        delay += delay * 0.2 * (rng() * 2 - 1)
    return max(delay, 0.0)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or fallback)
    if isinstance(body, str) and body:
        return body
    return fallback


def classify_response_error(response: httpx.Response) -> EngineError:
    """Map a non-2xx engine response onto the error taxonomy."""
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text

    status = response.status_code
    message = f"HTTP {status}: {_error_message(body, response.reason_phrase)}"

    if status >= 500:
        return TransientEngineError(message, status_code=status, body=body)
    if status == 404:
        return EngineNotFoundError(message, status_code=status, body=body)
    if status == 400 and any(m in message.lower() for m in _RESERVED_FIELD_MARKERS):
        return ReservedFieldRejected(message, status_code=status, body=body)
    return EngineRequestError(message, status_code=status, body=body)


class HttpEngineClient:
    """
    n8n public API client with timeouts and bounded retries.

    Only transient failures (connection errors, timeouts, 5xx) are retried;
    4xx responses are raised on the first attempt.
    """

    def __init__(
        self,
        engine: EngineSettings,
        retry: Optional[RetrySettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.retry = retry or RetrySettings()
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(engine.timeout, connect=engine.connect_timeout),
        )

    async def __aenter__(self) -> "HttpEngineClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.engine.api_key:
            headers["X-N8N-API-KEY"] = self.engine.api_key
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        last_error: Optional[EngineError] = None

        for attempt in range(self.retry.max_retries + 1):
            try:
                response = await self._client.request(
                    method, url, json=json, params=params, headers=self._headers
                )
            except httpx.TransportError as e:
                last_error = TransientEngineError(f"{type(e).__name__}: {e}")
            else:
                if response.is_success:
                    if not response.content:
                        return {}
                    return response.json()
                last_error = classify_response_error(response)

            if not last_error.retryable or attempt >= self.retry.max_retries:
                raise last_error

            delay = compute_backoff(attempt, self.retry)
            logger.warning(
                f"Engine request failed, retrying ({attempt + 1}/{self.retry.max_retries}) "
                f"in {delay:.2f}s: {method} {url}: {last_error}"
            )
            await self._sleep(delay)

        # Loop always returns or raises; kept for type checkers
        raise last_error or TransientEngineError("Max retries exceeded")

    def _url(self, path: str) -> str:
        return f"{self.engine.base_api_url}{path}"

    async def list_workflows(self) -> list[DeployedWorkflowRecord]:
        """List every workflow, following cursor pagination."""
        records: list[DeployedWorkflowRecord] = []
        cursor: Optional[str] = None

        while True:
            params: dict[str, Any] = {"limit": self.engine.page_size}
            if cursor:
                params["cursor"] = cursor
            data = await self._request("GET", self._url("/workflows"), params=params)
            for item in data.get("data", []):
                records.append(DeployedWorkflowRecord.model_validate(item))
            cursor = data.get("nextCursor")
            if not cursor:
                break

        logger.debug(f"Engine reports {len(records)} existing workflows")
        return records

    async def create_workflow(self, payload: dict[str, Any]) -> DeployedWorkflowRecord:
        data = await self._request("POST", self._url("/workflows"), json=payload)
        return DeployedWorkflowRecord.model_validate(data)

    async def update_workflow(self, workflow_id: str, payload: dict[str, Any]) -> DeployedWorkflowRecord:
        data = await self._request("PUT", self._url(f"/workflows/{workflow_id}"), json=payload)
        return DeployedWorkflowRecord.model_validate(data)

    async def activate_workflow(self, workflow_id: str) -> DeployedWorkflowRecord:
        data = await self._request("POST", self._url(f"/workflows/{workflow_id}/activate"))
        return DeployedWorkflowRecord.model_validate(data)

    async def deactivate_workflow(self, workflow_id: str) -> DeployedWorkflowRecord:
        data = await self._request("POST", self._url(f"/workflows/{workflow_id}/deactivate"))
        return DeployedWorkflowRecord.model_validate(data)

    async def list_node_types(self) -> Optional[set[str]]:
        """
        Node types installed on the engine, or None when the catalog is not exposed.
        """
        url = f"{self.engine.api_url.rstrip('/')}/types/nodes.json"
        try:
            data = await self._request("GET", url)
        except EngineRequestError as e:
            logger.warning(f"Engine node catalog unavailable: {e}")
            return None

        items = data if isinstance(data, list) else data.get("data", [])
        return {item["name"] for item in items if isinstance(item, dict) and item.get("name")}

    async def ping(self) -> bool:
        """Cheap reachability check used by the health endpoint."""
        try:
            await self._request("GET", self._url("/workflows"), params={"limit": 1})
        except EngineError as e:
            logger.warning(f"Engine health check failed: {e}")
            return False
        return True
