"""WiseTime API client - reads posted time and upserts tags."""

import logging
from typing import Optional

import requests

from ..config import DEFAULT_WISETIME_API_URL
from ..errors import SourceDataError, SourceUnavailable
from .http_client import (
    ApiAuthError,
    ApiClientError,
    ApiResponseError,
    ApiTransientError,
    BaseApiClient,
)
from .retry import RetryConfig

__all__ = ["WiseTimeClient"]

logger = logging.getLogger(__name__)


class WiseTimeClient(BaseApiClient):
    """Client for the WiseTime connect API (bearer token auth)."""

    SERVICE_NAME = "WiseTime"

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_WISETIME_API_URL,
        timeout: float = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(api_url, timeout=timeout, retry_config=retry_config, session=session)
        self.api_key = api_key

    def _auth_header(self) -> Optional[str]:
        return f"Bearer {self.api_key}" if self.api_key else None

    def fetch_posted_time(self, since: int, limit: int) -> list[dict]:
        """Fetch raw time groups with sequence strictly greater than `since`.

        Raises:
            SourceUnavailable: Transport, auth or server failure
            SourceDataError: Response is not the expected shape
        """
        try:
            response = self._request(
                "GET", "postedtime/fetch", params={"since": since, "limit": limit}
            )
        except ApiAuthError as e:
            raise SourceUnavailable(f"WiseTime authentication failed: {e}") from e
        except ApiResponseError as e:
            raise SourceDataError(str(e)) from e
        except ApiTransientError as e:
            raise SourceUnavailable(str(e)) from e
        except ApiClientError as e:
            raise SourceUnavailable(f"WiseTime request failed: {e}") from e

        groups = response.get("timeGroups") if isinstance(response, dict) else None
        if not isinstance(groups, list):
            raise SourceDataError("WiseTime response has no timeGroups list")
        return groups

    def upsert_tags(self, tags: list[dict]) -> None:
        """Create or update a batch of tags.

        Raises:
            ApiClientError: On any failure (tag sync is retried next run)
        """
        if not tags:
            return
        self._request("POST", "tag/upsert/batch", data={"tags": tags})
        logger.debug(f"Upserted {len(tags)} tags")
