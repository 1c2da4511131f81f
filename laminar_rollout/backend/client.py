"""HTTP client for the Laminar backend endpoints used by a dev session."""

from enum import StrEnum
from typing import Any, Self

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from laminar_rollout.exceptions import BackendError
from laminar_rollout.logging import get_rollout_logger
from laminar_rollout.settings import resolve_base_http_url

logger = get_rollout_logger(__name__)

DEFAULT_TIMEOUT = 30.0

TRACE_SPANS_QUERY = """
SELECT name, input, output, attributes, path
FROM spans
WHERE trace_id = {traceId:UUID}
  AND path IN {paths:String[]}
ORDER BY start_time ASC
"""


class SessionStatus(StrEnum):
    """Rollout session status reported to the backend."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    STOPPED = "STOPPED"


class HistoricalSpan(BaseModel):
    """A span row from a recorded trace. Fields are raw: JSON columns may still be strings."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = ""
    input: Any = None
    output: Any = None
    attributes: Any = None
    path: str


def auth_headers(project_api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {project_api_key}",
        "Content-Type": "application/json",
    }


def raise_for_backend_status(response: httpx.Response) -> None:
    """Raise BackendError as ``"<status> <body>"`` for any non-2xx response."""
    if response.is_success:
        return
    raise BackendError(f"{response.status_code} {response.text}")


class RolloutBackendClient:
    """Async client for trace queries and rollout session bookkeeping.

    Example:
        >>> async with RolloutBackendClient("https://api.lmnr.ai", api_key) as backend:
        ...     spans = await backend.fetch_trace_spans(trace_id, ["agent.llm"])
    """

    def __init__(
        self,
        base_url: str,
        project_api_key: str,
        *,
        http_port: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_http_url = resolve_base_http_url(base_url, http_port)
        self._client = httpx.AsyncClient(
            base_url=self.base_http_url,
            headers=auth_headers(project_api_key),
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {url} failed: {e}") from e
        raise_for_backend_status(response)
        return response

    async def query_sql(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a SQL query against the project's trace store and return its rows."""
        response = await self._request(
            "POST", "/v1/sql/query", json={"query": query, "parameters": parameters or {}}
        )
        try:
            return list(response.json()["data"])
        except (ValueError, KeyError, TypeError) as e:
            raise BackendError(f"Unexpected SQL response: {response.text[:200]}") from e

    async def fetch_trace_spans(self, trace_id: str, paths: list[str]) -> list[HistoricalSpan]:
        """Fetch spans of ``trace_id`` whose path is in ``paths``, oldest first."""
        rows = await self.query_sql(TRACE_SPANS_QUERY, {"traceId": trace_id, "paths": paths})
        try:
            return [HistoricalSpan.model_validate(row) for row in rows]
        except ValidationError as e:
            raise BackendError(f"Unexpected span row: {e}") from e

    async def set_session_status(self, session_id: str, status: SessionStatus) -> None:
        await self._request("PATCH", f"/v1/rollouts/{session_id}/status", json={"status": status.value})
        logger.debug("Session %s status set to %s", session_id, status)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/v1/rollouts/{session_id}")
        logger.debug("Session %s deleted", session_id)
