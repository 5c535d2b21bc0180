from __future__ import annotations

import logging
import time
from typing import Any, List, Mapping, Optional

import httpx

from .json_path import resolve_array, resolve_object
from .models import ApiConfig

LOGGER = logging.getLogger("json_persister.api")

RETRYABLE_STATUSES = frozenset({408, 429})


class ApiClientError(Exception):
    """Base exception for document API client errors."""


class ResourceNotFoundError(ApiClientError):
    """Raised when a requested resource does not exist."""


class DocumentApiClient:
    """HTTP client with retry and backoff logic that fetches JSON documents."""

    def __init__(
        self, config: ApiConfig, transport: Optional[httpx.BaseTransport] = None
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._headers = {"Accept": "application/json"}
        if config.api_key:
            self._headers["Authorization"] = f"ApiKey {config.api_key}"

    def __enter__(self) -> "DocumentApiClient":
        self._client = httpx.Client(timeout=self._config.timeout, transport=self._transport)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def get_document(self, path: str, object_path: str = "") -> Mapping[str, Any]:
        payload = self.get_json(path)
        if not isinstance(payload, Mapping):
            raise ApiClientError(f"{path} returned unexpected payload")
        return resolve_object(payload, object_path)

    def get_documents(self, path: str, array_path: str = "") -> List[Any]:
        """Fetch ``path`` and return the array at ``array_path``.

        Without ``array_path`` the response body itself must be an array.
        """
        payload = self.get_json(path)
        if not array_path:
            if not isinstance(payload, list):
                raise ApiClientError(f"{path} did not return an array")
            return payload
        if not isinstance(payload, Mapping):
            raise ApiClientError(f"{path} returned unexpected payload")
        return resolve_array(payload, array_path)

    def get_json(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """GET ``path`` and decode the JSON body.

        Transport errors and 408/429/5xx responses are retried up to
        ``max_retries`` times. A 404 raises :class:`ResourceNotFoundError` and
        any other failing status raises :class:`ApiClientError` at once.
        """
        if self._client is None:
            raise RuntimeError("HTTP client is not ready")

        url = f"{self._config.url.rstrip('/')}/{path.lstrip('/')}"
        max_attempts = max(1, self._config.max_retries + 1)

        for attempt in range(1, max_attempts + 1):
            LOGGER.debug("Requesting %s (attempt %s/%s)", url, attempt, max_attempts)
            try:
                response = self._client.get(url, headers=self._headers, params=dict(params or {}))
            except httpx.RequestError as exc:
                reason = f"network error: {exc}"
            else:
                if response.is_success:
                    return response.json()
                self._raise_unless_retryable(url, response)
                reason = f"HTTP {response.status_code}"

            if attempt == max_attempts:
                break
            delay = self._backoff_delay(attempt)
            LOGGER.warning(
                "%s for %s (attempt %s/%s). Retrying in %.1fs",
                reason,
                url,
                attempt,
                max_attempts,
                delay,
            )
            time.sleep(delay)

        raise ApiClientError(f"Failed to fetch {url} after {max_attempts} attempts")

    @staticmethod
    def _raise_unless_retryable(url: str, response: httpx.Response) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUSES or status >= 500:
            return
        preview = response.text[:500]
        if status == 404:
            LOGGER.warning("Resource not found at %s (preview: %s)", url, preview)
            raise ResourceNotFoundError(f"{url} returned 404")
        LOGGER.error("HTTP %s for %s; response preview: %s", status, url, preview)
        raise ApiClientError(f"{url} returned HTTP {status}")

    def _backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt``: doubles each time, capped by ``backoff_max``."""
        delay = max(self._config.backoff_factor, 0.0) * 2 ** (attempt - 1)
        if self._config.backoff_max and self._config.backoff_max > 0:
            delay = min(delay, self._config.backoff_max)
        return delay
