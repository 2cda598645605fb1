"""
Instrumented HTTP client wrapper for the rendering backend.

Wraps httpx with structured logging for every outbound request
to the /sdapi/v1 service and its liveness probe.
"""

import uuid
from typing import Any, Optional
import httpx

from imagine.logging_utils import get_logger, timer


class LoggedHTTPClient:
    """
    HTTP client that logs all requests and responses.

    Wraps httpx.AsyncClient with automatic logging of:
    - Request method, URL, body
    - Response status, body on failure, duration
    - Errors and exceptions
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        **client_kwargs
    ):
        """
        Args:
            service: Service name for logging (e.g., "sdapi")
            base_url: Base URL for the service
            timeout: Request timeout configuration
            **client_kwargs: Additional arguments for httpx.AsyncClient
        """
        self.service = service
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout

        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(**self._client_kwargs)
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.__aexit__(exc_type, exc_val, exc_tb)
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        **kwargs
    ) -> httpx.Response:
        """
        Make an HTTP request with logging.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: URL to request
            **kwargs: Additional arguments for httpx.request

        Returns:
            httpx.Response object
        """
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        timeout = kwargs.get("timeout")
        if isinstance(timeout, httpx.Timeout):
            timeout_value = timeout.read or timeout.connect
        else:
            timeout_value = timeout

        request_body = _loggable_body(kwargs.get("json") or kwargs.get("content"))

        with timer() as t:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                self._log_failure(method, url, request_id, timeout_value, request_body, t, f"Timeout: {e}")
                raise
            except httpx.ConnectError as e:
                self._log_failure(method, url, request_id, timeout_value, request_body, t, f"Connection error: {e}")
                raise
            except Exception as e:
                self._log_failure(method, url, request_id, timeout_value, request_body, t, str(e))
                raise

            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
                timeout=timeout_value,
                request_body=request_body,
                status_code=response.status_code,
                response_body=response.text if response.status_code >= 400 else None,
                duration_ms=t.stop(),
            )
            return response

    def _log_failure(self, method, url, request_id, timeout_value, request_body, t, error: str):
        self.logger.http_out(
            service=self.service,
            method=method,
            url=str(url),
            request_id=request_id,
            timeout=timeout_value,
            request_body=request_body,
            duration_ms=t.stop(),
            error=error,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)


def _loggable_body(body: Any) -> Any:
    """Drop base64 image payloads so request logs stay readable."""
    if not isinstance(body, dict):
        return body
    trimmed = {}
    for key, value in body.items():
        if key in ("init_images", "images", "image") and value:
            count = len(value) if isinstance(value, list) else 1
            trimmed[key] = f"<{count} image(s)>"
        else:
            trimmed[key] = value
    return trimmed


def sdapi_client(
    base_url: str,
    timeout: Optional[httpx.Timeout] = None,
    **client_kwargs
) -> LoggedHTTPClient:
    """Create a logged HTTP client for the /sdapi/v1 backend.

    Generation calls block for the whole render, so the read timeout is long.
    """
    return LoggedHTTPClient(
        service="sdapi",
        base_url=base_url,
        timeout=timeout or httpx.Timeout(connect=10.0, read=600.0, write=60.0, pool=10.0),
        **client_kwargs
    )
