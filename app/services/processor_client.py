"""Payment processor REST API client.

Used from event handlers when a webhook payload lacks data needed locally,
for example the owner and email of a customer seen for the first time.
"""

import logging
import time
from urllib.parse import quote

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class ProcessorAPIError(Exception):
    """Raised when the processor API cannot be reached or refuses a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProcessorClient:
    """HTTP client for the processor's REST API.

    Every request carries the configured timeout and is retried a bounded
    number of times on transport errors and retryable status codes.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    def _request(self, method: str, path: str, params: dict | None = None) -> dict:
        if not self.api_key:
            raise ProcessorAPIError("Processor API key is not configured")
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error: ProcessorAPIError | None = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
            try:
                with httpx.Client(
                    timeout=self.timeout, headers=headers, transport=self.transport
                ) as client:
                    response = client.request(method, url, params=params)
                    response.raise_for_status()
                    return response.json()
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                logger.error(f"Processor API error: {status_code} - {e.response.text}")
                last_error = ProcessorAPIError(f"API error: {status_code}", status_code)
                if status_code not in RETRYABLE_STATUS_CODES:
                    raise last_error from e
            except httpx.RequestError as e:
                logger.error(f"Processor request error: {e}")
                last_error = ProcessorAPIError(f"Request error: {e}")

        assert last_error is not None
        raise last_error

    def retrieve_customer(self, external_id: str) -> dict:
        """Fetch a customer object by its processor id."""
        return self._request("GET", f"/customers/{quote(external_id, safe='')}")


def get_processor_client() -> ProcessorClient:
    return ProcessorClient(
        settings.stripe_api_base,
        settings.stripe_secret_key,
        timeout=settings.stripe_api_timeout_seconds,
        max_retries=settings.stripe_api_max_retries,
    )
