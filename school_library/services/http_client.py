import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class HTTPClient:
    """Pooled HTTP client for one upstream service.

    Requests are not retried: a transport failure surfaces to the caller as
    ``httpx.RequestError``.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        # Connection limits for a single backend
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=50,
            keepalive_expiry=30.0
        )

        timeout_config = httpx.Timeout(
            timeout=timeout,
            connect=min(5.0, timeout),
        )

        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers or {},
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.error("%s %s timed out", method, url)
            raise
        except httpx.RequestError as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise
        logger.debug("%s %s -> %s", method, url, response.status_code)
        return response

    def close(self) -> None:
        self._client.close()
