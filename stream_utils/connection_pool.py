import threading
import logging
from typing import Dict, Any, Optional
import httpx

from stream_utils.config import HTTP_POOL_CONFIG

logger = logging.getLogger(__name__)

class ConnectionPoolManager:
    """Shared async HTTP client for all upstream calls"""

    def __init__(self,
                 max_connections: int = HTTP_POOL_CONFIG["max_connections"],
                 max_keepalive_connections: int = HTTP_POOL_CONFIG["max_keepalive_connections"],
                 timeout: float = HTTP_POOL_CONFIG["timeout"],
                 transport: Optional[httpx.AsyncBaseTransport] = None):

        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self.timeout = timeout
        self.transport = transport  # injectable for tests (httpx.MockTransport)

        self._http_client: Optional[httpx.AsyncClient] = None

        # Pool statistics
        self.stats = {
            'connections_created': 0,
            'connection_errors': 0,
            'requests_made': 0,
            'streams_opened': 0
        }

        # Thread safety
        self._lock = threading.Lock()

    async def get_async_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client with connection pooling"""
        if self._http_client is None or self._http_client.is_closed:
            with self._lock:
                if self._http_client is None or self._http_client.is_closed:
                    self._http_client = httpx.AsyncClient(
                        timeout=httpx.Timeout(self.timeout),
                        limits=httpx.Limits(
                            max_connections=self.max_connections,
                            max_keepalive_connections=self.max_keepalive_connections
                        ),
                        follow_redirects=True,
                        transport=self.transport
                    )
                    self.stats['connections_created'] += 1
                    logger.info("✅ Created new async HTTP client")

        return self._http_client

    async def open_stream(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request and return once the headers arrive; the body is left unread.

        Single attempt: a transport failure propagates as httpx.TransportError.
        The caller owns the response and must `aclose()` it.
        """
        client = await self.get_async_client()
        request = client.build_request(method, url, **kwargs)
        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError:
            self.stats['connection_errors'] += 1
            raise
        self.stats['requests_made'] += 1
        self.stats['streams_opened'] += 1
        return response

    async def send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Non-streamed request; the body is fully read"""
        client = await self.get_async_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError:
            self.stats['connection_errors'] += 1
            raise
        self.stats['requests_made'] += 1
        return response

    async def close_all(self):
        """Close the shared client"""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            logger.info("Closed async HTTP client")

    def get_pool_stats(self) -> Dict[str, Any]:
        """Get connection pool statistics"""
        return {
            'stats': self.stats.copy(),
            'config': {
                'max_connections': self.max_connections,
                'max_keepalive_connections': self.max_keepalive_connections,
                'timeout': self.timeout
            },
            'status': {
                'async_client_active': self._http_client is not None and not self._http_client.is_closed
            }
        }
