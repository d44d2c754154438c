"""Pooled httpx transport shared by the upstream API client."""

from typing import Any, Dict, Optional

import httpx


class AsyncHTTPClient:
    """
    Thin owner of one httpx.AsyncClient.

    The gateway opens it once at startup and closes it on shutdown; every
    upstream call in between reuses the same connection pool, base URL and
    auth headers. Tests swap in a MockTransport or ASGITransport.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 25.0,
        write_timeout: float = 5.0,
        pool_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: Prefix for relative request paths
            headers: Headers sent with every request
            connect_timeout: Connection timeout in seconds
            read_timeout: Read timeout in seconds
            write_timeout: Write timeout in seconds
            pool_timeout: Pool timeout in seconds
            transport: Optional transport override (tests, ASGI apps)
        """
        self.base_url = base_url
        self.headers = dict(headers or {})
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.pool_timeout = pool_timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def open(self) -> None:
        """Create the underlying client. No-op when already open."""
        if self._client:
            return

        timeout = httpx.Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
            pool=self.pool_timeout
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=self.transport
        )

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        """Enter async context manager."""
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        await self.aclose()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Perform a request.

        Args:
            method: HTTP method
            url: URL or path relative to base_url
            **kwargs: Additional arguments for httpx

        Returns:
            HTTP response
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' or call open().")

        return await self._client.request(method, url, **kwargs)

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> httpx.Response:
        return await self.request("GET", url, params=params, **kwargs)

    async def post(
        self,
        url: str,
        json: Optional[Any] = None,
        **kwargs
    ) -> httpx.Response:
        return await self.request("POST", url, json=json, **kwargs)
