"""Allisa API client - case lookup and time registration."""

import logging
from typing import Optional
from urllib.parse import quote

import requests

from ..config import DEFAULT_POST_FIELD_MAPPING, parse_field_mapping
from ..errors import TargetPermanent, TargetRetryable
from .http_client import (
    ApiAuthError,
    ApiClientError,
    ApiResponseError,
    ApiTransientError,
    BaseApiClient,
)
from .models import AllisaCase, MappedRecord
from .retry import RetryConfig

__all__ = ["AllisaClient"]

logger = logging.getLogger(__name__)


class AllisaClient(BaseApiClient):
    """Client for an Allisa instance (`apikey` auth)."""

    SERVICE_NAME = "Allisa"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        case_type: str,
        post_type: str,
        field_mapping: Optional[dict[str, str]] = None,
        timeout: float = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize Allisa client.

        Args:
            base_url: Allisa instance URL (e.g. https://firm.allisa.example/)
            api_key: Allisa API key
            case_type: Allisa list type holding the cases
            post_type: Allisa type that time registrations are posted to
            field_mapping: Form field names, see parse_field_mapping
            timeout: Request timeout in seconds
            retry_config: Retry policy for read requests
            session: Optional requests session
        """
        super().__init__(base_url, timeout=timeout, retry_config=retry_config, session=session)
        self.api_key = api_key
        self.case_type = case_type
        self.post_type = post_type
        self.field_mapping = field_mapping or parse_field_mapping(DEFAULT_POST_FIELD_MAPPING)

    def _auth_header(self) -> Optional[str]:
        return f"apikey {self.api_key}" if self.api_key else None

    def _call(
        self,
        method: str,
        endpoint: str,
        retry: bool = False,
        **kwargs,
    ) -> dict:
        """Make a request and translate failures into Target* errors."""
        try:
            return self._request(method, endpoint, retry=retry, **kwargs)
        except ApiAuthError as e:
            logger.error(f"Allisa rejected the configured API key: {e}")
            raise TargetRetryable(str(e)) from e
        except ApiTransientError as e:
            raise TargetRetryable(str(e), retry_after=e.retry_after) from e
        except ApiResponseError as e:
            raise TargetPermanent(
                f"There was an unexpected error when trying to connect to Allisa: {e}"
            ) from e
        except ApiClientError as e:
            raise TargetPermanent(f"Error reported by Allisa: {e}") from e

    @staticmethod
    def _rows(response: dict) -> list[dict]:
        result = response.get("result") or {}
        return result.get("data") or []

    def list_cases(self, page: int, rows_per_page: int) -> list[AllisaCase]:
        """List cases of the configured type ordered by case id."""
        response = self._call(
            "GET",
            f"api/list/type/{quote(self.case_type, safe='')}"
            f"/rowsPerPage/{rows_per_page}/page/{page}/orderrow/caseId",
            retry=True,
        )
        return [AllisaCase.from_dict(row) for row in self._rows(response)]

    def get_new_cases(self, last_case_id: int, page: int, batch_size: int) -> list[AllisaCase]:
        """Cases on `page` whose id is greater than `last_case_id`."""
        return [
            case for case in self.list_cases(page, batch_size)
            if case.case_id > last_case_id
        ]

    def find_case(self, tag_name: str) -> Optional[AllisaCase]:
        """Look up the case whose reference matches a tag name (case-insensitive)."""
        response = self._call(
            "GET",
            f"api/list/type/{quote(self.case_type, safe='')}/search/{quote(tag_name, safe='')}",
        )
        for row in self._rows(response):
            case = AllisaCase.from_dict(row)
            if case.case_reference.lower() == tag_name.lower():
                return case
        return None

    def post_time(self, case_id: int, record: MappedRecord, idempotency_key: str) -> dict:
        """Create one time registration on a case.

        Raises:
            TargetRetryable: Rate limited, server or network failure
            TargetPermanent: Allisa rejected the registration
        """
        response = self._call(
            "POST",
            f"api/{quote(self.post_type, safe='')}",
            form=record.to_form(case_id, self.field_mapping),
            headers={"Idempotency-Key": idempotency_key},
        )
        code = response.get("code") if isinstance(response, dict) else None
        if isinstance(code, int) and code >= 400:
            raise TargetPermanent(
                f"Error reported by Allisa ({code}): {response.get('message', '')}"
            )
        return response

    def can_connect(self) -> bool:
        """Check that Allisa answers a one-row case listing with code 200."""
        try:
            response = self._call(
                "GET",
                f"api/list/type/{quote(self.case_type, safe='')}"
                "/rowsPerPage/1/page/1/orderrow/caseId",
            )
        except (TargetRetryable, TargetPermanent) as e:
            logger.error(f"Error while trying to connect to Allisa: {e}")
            return False
        return response.get("code") == 200

    def is_reachable(self) -> bool:
        return self.can_connect()
