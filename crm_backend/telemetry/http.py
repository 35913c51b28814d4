"""
Instrumented HTTP client.

Wraps an ``httpx.AsyncClient`` so that every request made through it is
timed and recorded as a ``network`` telemetry event. Callers opt in by using
this wrapper; nothing global is patched.

Responses and exceptions are returned/raised unchanged.
"""

import time
from typing import Any

import httpx

from crm_backend.telemetry.client import TelemetryClient


class InstrumentedHTTPClient:
    """
    HTTP client that reports each request to a TelemetryClient.

    Usage:
        async with InstrumentedHTTPClient(telemetry, base_url=api_url) as http:
            response = await http.get("/api/students")
    """

    def __init__(
        self,
        telemetry: TelemetryClient,
        client: httpx.AsyncClient | None = None,
        network_type: str = "fetch",
        **client_kwargs: Any,
    ):
        self.telemetry = telemetry
        self.network_type = network_type
        self._client = client or httpx.AsyncClient(**client_kwargs)
        self._owns_client = client is None

    async def request(self, method: str, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        start_time = time.perf_counter()
        try:
            response = await self._client.request(method, url, **kwargs)
        except Exception as e:
            self.telemetry.track_network(
                self.network_type,
                url=str(url),
                method=method.upper(),
                duration=(time.perf_counter() - start_time) * 1000,
                error=str(e) or type(e).__name__,
                success=False,
            )
            raise

        self.telemetry.track_network(
            self.network_type,
            url=str(url),
            method=method.upper(),
            duration=(time.perf_counter() - start_time) * 1000,
            status=response.status_code,
            success=response.is_success,
        )
        return response

    async def get(self, url, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
