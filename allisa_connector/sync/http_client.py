"""Base HTTP client with retry logic shared by the WiseTime and Allisa clients."""

import logging
from typing import Optional

import requests

from .. import __version__
from .retry import RetryConfig, retry_with_backoff, RetryExhausted

__all__ = [
    "BaseApiClient",
    "ApiClientError",
    "ApiAuthError",
    "ApiTransientError",
    "ApiResponseError",
]

logger = logging.getLogger(__name__)


class ApiClientError(Exception):
    """HTTP client error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ApiAuthError(ApiClientError):
    """Authentication error (401/403)."""

    pass


class ApiTransientError(ApiClientError):
    """Transient/retryable error: network, timeout, 429 or 5xx."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code)


class ApiResponseError(ApiClientError):
    """Response body could not be decoded."""

    pass


def _parse_retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form is not worth parsing here
        return None


class BaseApiClient:
    """Base HTTP client with retry logic.

    Handles:
    - Session management
    - Authentication headers (via _auth_header)
    - Per-request timeouts
    - Retry with exponential backoff
    - Error handling and classification

    Subclasses translate ApiClientError into the connector's error taxonomy.
    """

    DEFAULT_RETRY_CONFIG = RetryConfig()

    USER_AGENT = f"WiseTime-Allisa-Connector/{__version__}"
    SERVICE_NAME = "API"
    HEALTH_ENDPOINT = "health"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize base API client.

        Args:
            base_url: API base URL
            timeout: Request timeout in seconds
            retry_config: Configuration for retry with exponential backoff
            session: Optional requests session (for dependency injection/testing)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._session = session or requests.Session()
        self._owns_session = session is None  # Track if we created the session

    def _auth_header(self) -> Optional[str]:
        """Value of the Authorization header, if any."""
        return None

    def _get_headers(self) -> dict:
        """Get request headers with authentication."""
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        auth = self._auth_header()
        if auth:
            headers["Authorization"] = auth
        return headers

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            return response.json().get("message", "") or ""
        except (ValueError, AttributeError):
            return response.text[:200] if response.text else ""

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        form: Optional[dict] = None,
        headers: Optional[dict] = None,
        retry: bool = True,
    ) -> dict:
        """Make a request to the API.

        Args:
            method: HTTP method
            endpoint: API endpoint (relative to base_url)
            params: Query string parameters
            data: JSON request body
            form: Multipart form fields
            headers: Extra request headers
            retry: Whether to retry on transient failures

        Returns:
            Response data as dict

        Raises:
            ApiAuthError: For 401/403 responses (not retried)
            ApiTransientError: For network errors, 429 and 5xx
            ApiResponseError: For bodies that are not valid JSON
            ApiClientError: For other 4xx errors
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        request_headers = self._get_headers()
        if headers:
            request_headers.update(headers)
        kwargs: dict = {"timeout": self.timeout, "headers": request_headers}

        if params:
            kwargs["params"] = params
        if data is not None:
            kwargs["json"] = data
        if form is not None:
            # (None, value) tuples make requests send multipart/form-data fields
            kwargs["files"] = {name: (None, value) for name, value in form.items()}

        def do_request() -> dict:
            try:
                response = self._session.request(method, url, **kwargs)
            except requests.exceptions.ConnectionError:
                raise ApiTransientError(f"Cannot connect to {self.SERVICE_NAME}")
            except requests.exceptions.Timeout:
                raise ApiTransientError("Request timed out")

            status = response.status_code
            if status in (401, 403):
                raise ApiAuthError(
                    f"{self.SERVICE_NAME} rejected credentials ({status})", status
                )
            if status == 429 or status >= 500:
                raise ApiTransientError(
                    f"{self.SERVICE_NAME} error ({status})",
                    status,
                    retry_after=_parse_retry_after(response),
                )
            if status >= 400:
                detail = self._error_detail(response)
                raise ApiClientError(
                    f"{self.SERVICE_NAME} error ({status}): {detail or response.reason}",
                    status,
                )

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ApiResponseError(
                    f"Invalid JSON from {self.SERVICE_NAME}: {e}", status
                ) from e

        if not retry:
            return do_request()

        try:
            return retry_with_backoff(
                do_request,
                config=self.retry_config,
                retryable_exceptions=(ApiTransientError,),
            )
        except RetryExhausted as e:
            last = e.last_error
            raise ApiTransientError(
                f"{last} (after {e.attempts} attempts)",
                getattr(last, "status_code", None),
            ) from last

    def is_reachable(self) -> bool:
        """Check if the API is reachable."""
        try:
            self._request("GET", self.HEALTH_ENDPOINT, retry=False)
            return True
        except ApiClientError as e:
            logger.debug(f"{self.SERVICE_NAME} not reachable: {e}")
            return False

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass

    def __enter__(self) -> "BaseApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
