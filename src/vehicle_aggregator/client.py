"""GraphQL client for the upstream transit API."""

import time
from collections.abc import Mapping
from typing import Any

import httpx

from vehicle_aggregator.metrics import (
    record_upstream_error,
    record_upstream_request,
    record_upstream_success,
)


class UpstreamQueryError(Exception):
    """Base class for failures of a single upstream query."""


class TransportError(UpstreamQueryError):
    """Upstream could not be reached or answered with an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @property
    def error_type(self) -> str:
        """Short label for metrics (e.g. "http_502", "transport")."""
        if self.status_code is not None:
            return f"http_{self.status_code}"
        return "transport"


class UpstreamError(UpstreamQueryError):
    """Upstream answered with a GraphQL error payload."""

    def __init__(self, errors: list[Any]) -> None:
        self.errors = errors
        messages = [
            str(error.get("message", error)) if isinstance(error, dict) else str(error)
            for error in errors
        ]
        super().__init__("; ".join(messages) or "GraphQL error")


def _operation_name(query: str) -> str:
    """Extract the operation name from a query document, for labelling."""
    tokens = query.split()
    for keyword, name in zip(tokens, tokens[1:], strict=False):
        if keyword == "query":
            return name.split("(", 1)[0]
    return "anonymous"


class GraphQLClient:
    """Executes GraphQL queries against the transit backend.

    Transport options (headers, proxy) live on the underlying httpx client;
    each call here only carries the query, its variables and a timeout.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the client.

        Args:
            http_client: Shared async HTTP client.
            endpoint: GraphQL endpoint URL.
            timeout_seconds: Upper bound for a single query.
        """
        self._http_client = http_client
        self._endpoint = endpoint
        self._timeout_seconds = timeout_seconds

    async def execute(
        self,
        query: str,
        variables: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a single query (no retries).

        Args:
            query: GraphQL query document.
            variables: Values for the query's variables.

        Returns:
            The response's ``data`` object.

        Raises:
            TransportError: On network failure, timeout, non-2xx status or a
                response body that is not a JSON object.
            UpstreamError: When the response carries GraphQL errors or no data.
        """
        operation = _operation_name(query)
        record_upstream_request(operation)
        started = time.perf_counter()

        try:
            data = await self._post(query, variables)
        except UpstreamQueryError as e:
            error_type = e.error_type if isinstance(e, TransportError) else "graphql"
            record_upstream_error(operation, error_type)
            raise

        record_upstream_success(operation, time.perf_counter() - started)
        return data

    async def _post(
        self,
        query: str,
        variables: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                self._endpoint,
                json={"query": query, "variables": dict(variables or {})},
                timeout=self._timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out after {self._timeout_seconds}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise TransportError(
                f"Unexpected status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError("Response body is not valid JSON") from e

        if not isinstance(body, dict):
            raise TransportError("Response body is not a JSON object")

        errors = body.get("errors")
        if errors:
            raise UpstreamError(errors if isinstance(errors, list) else [errors])

        data = body.get("data")
        if not isinstance(data, dict):
            raise UpstreamError(["Response has no data"])

        return data


def create_http_client(
    headers: Mapping[str, str] | None = None,
    proxy: str | None = None,
    max_connections: int = 100,
) -> httpx.AsyncClient:
    """Create an async HTTP client with connection pooling.

    Args:
        headers: Extra headers sent with every upstream request.
        proxy: Optional outbound proxy URL.
        max_connections: Maximum number of concurrent connections.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(1, max_connections // 2),
    )

    return httpx.AsyncClient(
        headers={"Accept": "application/json", **dict(headers or {})},
        proxy=proxy,
        limits=limits,
        follow_redirects=True,
    )
