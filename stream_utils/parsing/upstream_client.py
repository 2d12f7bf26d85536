# stream_utils/parsing/upstream_client.py
"""
Upstream calls for the relay, over the shared connection pool.

Every failure that happens before the first byte reaches the consumer is
mapped into the error taxonomy here, so endpoints can answer with the error
envelope before any response framing is committed.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from stream_utils.config import UPSTREAM_API_KEY
from stream_utils.connection_pool import ConnectionPoolManager
from stream_utils.metrics import metrics
from stream_utils.parsing.errors import UpstreamHTTPError, UpstreamUnavailable

logger = logging.getLogger(__name__)


class UpstreamClient:
    """Opens upstream requests and checks their status"""

    def __init__(self, pool: ConnectionPoolManager, api_key: Optional[str] = UPSTREAM_API_KEY):
        self.pool = pool
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def open_stream(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        """
        POST and return the streaming response once its status is known good.

        Returns:
            httpx.Response with the body unread; the caller must aclose() it

        Raises:
            UpstreamUnavailable: transport failure
            UpstreamHTTPError: non-2xx status (the error body is read first)
        """
        try:
            response = await self.pool.open_stream("POST", url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            metrics.increment("upstream_errors")
            logger.error(f"❌ Upstream unreachable at {url}: {e}")
            raise UpstreamUnavailable(str(e) or e.__class__.__name__, url=url) from e

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError as e:
                body = ""
                logger.warning(f"⚠️ Could not read error body from {url}: {e}")
            finally:
                await response.aclose()
            metrics.increment("upstream_errors")
            logger.error(f"❌ Upstream {url} returned {response.status_code}")
            raise UpstreamHTTPError(response.status_code, body, url=url)

        return response

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Any:
        """
        POST and return the decoded JSON body (non-streaming relay).

        Raises:
            UpstreamUnavailable: transport failure or a body that is not JSON
            UpstreamHTTPError: non-2xx status
        """
        try:
            response = await self.pool.send("POST", url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            metrics.increment("upstream_errors")
            logger.error(f"❌ Upstream unreachable at {url}: {e}")
            raise UpstreamUnavailable(str(e) or e.__class__.__name__, url=url) from e

        if not response.is_success:
            metrics.increment("upstream_errors")
            logger.error(f"❌ Upstream {url} returned {response.status_code}")
            raise UpstreamHTTPError(response.status_code, response.text, url=url)

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            metrics.increment("upstream_errors")
            raise UpstreamUnavailable(f"Upstream returned invalid JSON: {e}", url=url) from e
