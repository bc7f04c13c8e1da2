"""OpenPhone public API client.

Async ``httpx`` client for the subset of the OpenPhone v1 API the sync engine
needs: calls, conversations, contacts, and workspace phone numbers.

The client:
- authenticates with the workspace API key
- spaces requests to respect the per-minute quota and waits out the window
  when ``x-ratelimit-remaining`` runs low
- retries 429/5xx responses and transport errors with exponential backoff
- raises :class:`OpenPhoneError` subclasses for everything else
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

OPENPHONE_API_BASE_URL = "https://api.openphone.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_REQUESTS_PER_MINUTE = 60
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
MAX_PAGE_SIZE = 100

# Wait for the reset window once the provider reports this many calls left.
_RATE_LIMIT_LOW_WATERMARK = 5
_RATE_LIMIT_RESET_BUFFER_SECONDS = 1.0

SleepFn = Callable[[float], Awaitable[None]]


class OpenPhoneError(RuntimeError):
    """Base OpenPhone API error."""


class OpenPhoneTransportError(OpenPhoneError):
    """Raised when the API could not be reached (timeout, DNS, reset...)."""


class OpenPhoneRequestError(OpenPhoneError):
    """Raised when the API answers with a non-2xx status."""

    def __init__(self, *, status_code: int, message: str, code: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code
        label = f"{code}: " if code else ""
        super().__init__(f"OpenPhone API request failed ({status_code}): {label}{message}")


class ProviderPage(BaseModel):
    """One page of a cursor-paginated list endpoint."""

    model_config = ConfigDict(extra="forbid")

    data: list[dict[str, Any]] = Field(default_factory=list)
    next_page_token: str | None = None

    @field_validator("next_page_token")
    @classmethod
    def _normalize_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class TelephonyProvider(abc.ABC):
    """Provider contract consumed by the sync engine."""

    @abc.abstractmethod
    async def list_calls(
        self,
        *,
        phone_number_id: str,
        participants: list[str],
        created_after: datetime,
        created_before: datetime,
        max_results: int,
        page_token: str | None = None,
    ) -> ProviderPage:
        """Fetch one page of calls between a workspace number and participants."""
        ...

    @abc.abstractmethod
    async def list_conversations(
        self,
        *,
        phone_numbers: list[str],
        updated_after: datetime,
        updated_before: datetime,
        max_results: int,
        page_token: str | None = None,
        exclude_inactive: bool = True,
    ) -> ProviderPage:
        """Fetch one page of conversations for up to 50 workspace numbers."""
        ...

    @abc.abstractmethod
    async def get_call(self, call_id: str) -> dict[str, Any]:
        """Fetch a single call by id."""
        ...

    @abc.abstractmethod
    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        """Fetch a single contact by id."""
        ...

    @abc.abstractmethod
    async def search_contacts(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        """Search workspace contacts (name or phone)."""
        ...

    @abc.abstractmethod
    async def list_phone_numbers(self) -> list[dict[str, Any]]:
        """List the workspace's own phone numbers."""
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        """Release provider resources."""
        ...


class _RateLimiter:
    """Client-side request spacing plus header-driven back-off."""

    def __init__(
        self,
        requests_per_minute: int,
        *,
        sleep: SleepFn,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_request_at: float | None = None
        self._remaining: int | None = None
        self._reset_at: float | None = None

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if (
                self._remaining is not None
                and self._remaining <= _RATE_LIMIT_LOW_WATERMARK
                and self._reset_at is not None
                and now < self._reset_at
            ):
                wait = self._reset_at - now + _RATE_LIMIT_RESET_BUFFER_SECONDS
                logger.info("OpenPhone rate limit nearly exhausted; waiting %.1fs", wait)
                await self._sleep(wait)
                self._remaining = None
                self._reset_at = None
                now = self._clock()

            if self._last_request_at is not None:
                wait = self._min_interval - (now - self._last_request_at)
                if wait > 0:
                    await self._sleep(wait)
                    now = self._clock()
            self._last_request_at = now

    def observe(self, headers: httpx.Headers) -> None:
        remaining = _int_header(headers, "x-ratelimit-remaining")
        if remaining is None:
            return
        self._remaining = remaining
        reset = _int_header(headers, "x-ratelimit-reset")
        self._reset_at = self._clock() + _seconds_until_reset(reset) if reset is not None else None


def _int_header(headers: httpx.Headers, name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return None


def _seconds_until_reset(reset: int) -> float:
    # The header has been observed as epoch ms, epoch seconds, and a delta.
    now = time.time()
    if reset > 10**12:
        return max(reset / 1000.0 - now, 0.0)
    if reset > 10**9:
        return max(reset - now, 0.0)
    return float(max(reset, 0))


def format_timestamp(value: datetime) -> str:
    """Render *value* as the ``...Z`` UTC ISO string the API expects."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class OpenPhoneClient(TelephonyProvider):
    """``TelephonyProvider`` backed by the OpenPhone REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = OPENPHONE_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        api_key = api_key.strip()
        if not api_key:
            raise ValueError("api_key must be a non-empty string")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/") + "/v1"
        self._retry_attempts = max(0, int(retry_attempts))
        self._retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._sleep = sleep
        self._rate_limiter = _RateLimiter(requests_per_minute, sleep=sleep)
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds, connect=10.0))
        )

    async def list_calls(
        self,
        *,
        phone_number_id: str,
        participants: list[str],
        created_after: datetime,
        created_before: datetime,
        max_results: int,
        page_token: str | None = None,
    ) -> ProviderPage:
        params: dict[str, Any] = {
            "phoneNumberId": phone_number_id,
            "participants": participants,
            "createdAfter": format_timestamp(created_after),
            "createdBefore": format_timestamp(created_before),
            "maxResults": _page_size(max_results),
        }
        if page_token is not None:
            params["pageToken"] = page_token
        return _parse_page(await self._request("GET", "/calls", params=params))

    async def list_conversations(
        self,
        *,
        phone_numbers: list[str],
        updated_after: datetime,
        updated_before: datetime,
        max_results: int,
        page_token: str | None = None,
        exclude_inactive: bool = True,
    ) -> ProviderPage:
        params: dict[str, Any] = {
            "phoneNumbers": phone_numbers,
            "updatedAfter": format_timestamp(updated_after),
            "updatedBefore": format_timestamp(updated_before),
            "maxResults": _page_size(max_results),
            "excludeInactive": "true" if exclude_inactive else "false",
        }
        if page_token is not None:
            params["pageToken"] = page_token
        return _parse_page(await self._request("GET", "/conversations", params=params))

    async def get_call(self, call_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/calls/{quote(call_id, safe='')}")
        return _unwrap_object(payload)

    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/contacts/{quote(contact_id, safe='')}")
        return _unwrap_object(payload)

    async def search_contacts(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        payload = await self._request(
            "GET",
            "/contacts",
            params={"search": query, "maxResults": _page_size(limit)},
        )
        return _parse_page(payload).data

    async def list_phone_numbers(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/phone-numbers")
        return _parse_page(payload).data

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

        attempt = 0
        while True:
            await self._rate_limiter.acquire()
            try:
                response = await self._http_client.request(
                    method, url, params=params, headers=headers
                )
            except httpx.HTTPError as exc:
                if attempt < self._retry_attempts:
                    await self._backoff(attempt, reason=type(exc).__name__, path=path)
                    attempt += 1
                    continue
                raise OpenPhoneTransportError(f"OpenPhone request to {path} failed: {exc}") from exc

            self._rate_limiter.observe(response.headers)

            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < self._retry_attempts:
                await self._backoff(attempt, reason=str(response.status_code), path=path)
                attempt += 1
                continue
            break

        if response.status_code < 200 or response.status_code >= 300:
            message, code = _safe_error_details(response)
            raise OpenPhoneRequestError(
                status_code=response.status_code,
                message=message,
                code=code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise OpenPhoneRequestError(
                status_code=response.status_code,
                message="Invalid JSON payload from OpenPhone API",
            ) from exc

        if not isinstance(payload, dict):
            raise OpenPhoneRequestError(
                status_code=response.status_code,
                message="OpenPhone API payload must be a JSON object",
            )
        return payload

    async def _backoff(self, attempt: int, *, reason: str, path: str) -> None:
        delay = self._retry_delay_seconds * (2**attempt)
        logger.warning(
            "OpenPhone request to %s failed (%s); retrying in %.1fs (attempt %d/%d)",
            path,
            reason,
            delay,
            attempt + 1,
            self._retry_attempts,
        )
        await self._sleep(delay)


def _page_size(value: int) -> int:
    return max(1, min(MAX_PAGE_SIZE, int(value)))


def _parse_page(payload: dict[str, Any]) -> ProviderPage:
    raw_items = payload.get("data")
    items: list[dict[str, Any]] = []
    if isinstance(raw_items, list):
        items = [item for item in raw_items if isinstance(item, dict)]
    token = payload.get("nextPageToken")
    return ProviderPage(data=items, next_page_token=token if isinstance(token, str) else None)


def _unwrap_object(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def _safe_error_details(response: httpx.Response) -> tuple[str, str | None]:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        code = payload.get("code") if isinstance(payload.get("code"), str) else None
        for key in ("message", "title", "error"):
            message = payload.get(key)
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200], code

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200], None
    return "unknown error", None
