"""HTTP calls routed through a circuit breaker."""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from asdf_gateway.app.services.circuit_breaker.breaker import CircuitBreaker


class HttpCircuit:
    """Breaker-protected JSON HTTP client for one dependency.

    Non-2xx responses raise ``httpx.HTTPStatusError`` inside the breaker and
    therefore count as failures.

    Can share an external ``httpx.AsyncClient`` for connection pooling, or
    create a short-lived client per request.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = "",
    ):
        self.breaker = breaker
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return self.breaker.name

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        # Request timeout is enforced by the breaker
        client = httpx.AsyncClient(timeout=None)
        try:
            yield client
        finally:
            await client.aclose()

    async def _request(self, url: str, method: str, **kwargs: Any) -> Any:
        async with self._client_context() as client:
            resp = await client.request(method, f"{self.base_url}{url}", **kwargs)
            resp.raise_for_status()
            return resp.json()

    async def fetch(self, url: str, method: str = "GET", **kwargs: Any) -> Any:
        """Send a request through the breaker and return the decoded JSON body.

        Raises:
            CircuitOpenError: If the circuit is open and has no fallback
            httpx.HTTPStatusError: If the response status is not 2xx
        """
        return await self.breaker.execute(self._request, url, method.upper(), **kwargs)
