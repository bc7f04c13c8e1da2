"""Tests for the OpenPhone httpx client.

All HTTP traffic goes through ``httpx.MockTransport``; ``asyncio.sleep`` is
replaced by a recorder so retries and rate limiting run instantly.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import httpx
import pytest

from commsync.openphone.client import (
    OpenPhoneClient,
    OpenPhoneRequestError,
    OpenPhoneTransportError,
    ProviderPage,
    _RateLimiter,
    format_timestamp,
)

pytestmark = pytest.mark.unit

API_KEY = "test-api-key"


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(handler, *, sleep: _SleepRecorder | None = None, **kwargs) -> OpenPhoneClient:
    return OpenPhoneClient(
        api_key=API_KEY,
        base_url="https://api.test",
        requests_per_minute=0,
        retry_delay_seconds=0.5,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep or _SleepRecorder(),
        **kwargs,
    )


class TestConstruction:
    @pytest.mark.parametrize("api_key", ["", "   "])
    def test_requires_api_key(self, api_key: str) -> None:
        with pytest.raises(ValueError, match="api_key"):
            OpenPhoneClient(api_key=api_key)

    def test_format_timestamp(self) -> None:
        assert format_timestamp(datetime(2024, 3, 1, 10, 0, tzinfo=UTC)) == "2024-03-01T10:00:00Z"
        assert format_timestamp(datetime(2024, 3, 1, 10, 0)) == "2024-03-01T10:00:00Z"
        eastern = timezone(timedelta(hours=-5))
        assert format_timestamp(datetime(2024, 3, 1, 5, 0, tzinfo=eastern)) == "2024-03-01T10:00:00Z"

    def test_blank_page_token_is_none(self) -> None:
        assert ProviderPage(next_page_token="  ").next_page_token is None


class TestRequests:
    async def test_list_calls_query(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"data": [{"id": "c-1"}, "junk"], "nextPageToken": "tok-2"}
            )

        client = _client(handler)
        page = await client.list_calls(
            phone_number_id="PN1",
            participants=["+15551234567"],
            created_after=datetime(2024, 3, 1, tzinfo=UTC),
            created_before=datetime(2024, 3, 2, tzinfo=UTC),
            max_results=250,
            page_token="tok-1",
        )

        assert page.data == [{"id": "c-1"}]
        assert page.next_page_token == "tok-2"
        request = seen[0]
        assert request.url.path == "/v1/calls"
        assert request.headers["authorization"] == f"Bearer {API_KEY}"
        params = request.url.params
        assert params["phoneNumberId"] == "PN1"
        assert params.get_list("participants") == ["+15551234567"]
        assert params["createdAfter"] == "2024-03-01T00:00:00Z"
        assert params["maxResults"] == "100"
        assert params["pageToken"] == "tok-1"

    async def test_list_conversations_query(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        client = _client(handler)
        page = await client.list_conversations(
            phone_numbers=["PN1", "PN2"],
            updated_after=datetime(2024, 3, 1, tzinfo=UTC),
            updated_before=datetime(2024, 3, 2, tzinfo=UTC),
            max_results=50,
        )

        assert page == ProviderPage()
        params = seen[0].url.params
        assert seen[0].url.path == "/v1/conversations"
        assert params.get_list("phoneNumbers") == ["PN1", "PN2"]
        assert params["excludeInactive"] == "true"
        assert "pageToken" not in params

    async def test_get_call_unwraps_data(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/calls/c-42"
            return httpx.Response(200, json={"data": {"id": "c-42", "status": "completed"}})

        client = _client(handler)
        assert await client.get_call("c-42") == {"id": "c-42", "status": "completed"}

    async def test_path_identifiers_are_escaped(self) -> None:
        paths: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.raw_path)
            return httpx.Response(200, json={"data": {"id": "x"}})

        client = _client(handler)
        await client.get_call("c/42?x=1")
        await client.get_contact("../phone-numbers")

        assert paths == [b"/v1/calls/c%2F42%3Fx%3D1", b"/v1/contacts/..%2Fphone-numbers"]

    async def test_search_contacts_and_phone_numbers(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/contacts":
                assert request.url.params["search"] == "+15551234567"
                assert request.url.params["maxResults"] == "10"
                return httpx.Response(200, json={"data": [{"id": "ct-1"}]})
            return httpx.Response(200, json={"data": [{"id": "PN1", "number": "+15550000001"}]})

        client = _client(handler)
        assert await client.search_contacts("+15551234567") == [{"id": "ct-1"}]
        assert await client.list_phone_numbers() == [{"id": "PN1", "number": "+15550000001"}]


class TestErrors:
    async def test_client_error_is_not_retried(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(404, json={"message": "Call not   found", "code": "0404"})

        client = _client(handler)
        with pytest.raises(OpenPhoneRequestError) as exc_info:
            await client.get_call("missing")

        assert attempts == 1
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "0404"
        assert exc_info.value.message == "Call not found"

    async def test_retries_server_errors_with_backoff(self) -> None:
        responses = [httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"data": []})]
        sleep = _SleepRecorder()

        client = _client(lambda request: responses.pop(0), sleep=sleep)
        assert await client.list_phone_numbers() == []
        assert sleep.delays == [0.5, 1.0]

    async def test_gives_up_after_retry_budget(self) -> None:
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(500, text="upstream exploded")

        client = _client(handler, retry_attempts=2)
        with pytest.raises(OpenPhoneRequestError) as exc_info:
            await client.list_phone_numbers()

        assert attempts == 3
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "upstream exploded"

    async def test_transport_errors_become_openphone_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sleep = _SleepRecorder()
        client = _client(handler, sleep=sleep, retry_attempts=1)
        with pytest.raises(OpenPhoneTransportError):
            await client.list_phone_numbers()
        assert sleep.delays == [0.5]

    async def test_non_object_payload(self) -> None:
        client = _client(lambda request: httpx.Response(200, json=["not", "an", "object"]))
        with pytest.raises(OpenPhoneRequestError, match="JSON object"):
            await client.list_phone_numbers()

    async def test_invalid_json(self) -> None:
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(OpenPhoneRequestError, match="Invalid JSON"):
            await client.list_phone_numbers()


class TestRateLimiter:
    async def test_spaces_requests(self) -> None:
        sleep = _SleepRecorder()
        now = [100.0]
        limiter = _RateLimiter(60, sleep=sleep, clock=lambda: now[0])

        await limiter.acquire()
        now[0] += 0.25
        await limiter.acquire()

        assert sleep.delays == [pytest.approx(0.75)]

    async def test_waits_for_reset_when_quota_low(self) -> None:
        sleep = _SleepRecorder()
        now = [100.0]
        limiter = _RateLimiter(0, sleep=sleep, clock=lambda: now[0])

        limiter.observe(httpx.Headers({"x-ratelimit-remaining": "2", "x-ratelimit-reset": "10"}))
        await limiter.acquire()

        assert sleep.delays == [pytest.approx(11.0)]

    @pytest.mark.parametrize("value", ["inf", "1e400", "soon"])
    async def test_unusable_headers_are_ignored(self, value: str) -> None:
        sleep = _SleepRecorder()
        limiter = _RateLimiter(0, sleep=sleep, clock=lambda: 100.0)

        limiter.observe(httpx.Headers({"x-ratelimit-remaining": "1", "x-ratelimit-reset": value}))
        limiter.observe(httpx.Headers({"x-ratelimit-remaining": value}))
        await limiter.acquire()

        assert sleep.delays == []

    async def test_plenty_of_quota_does_not_wait(self) -> None:
        sleep = _SleepRecorder()
        limiter = _RateLimiter(0, sleep=sleep, clock=lambda: 100.0)

        limiter.observe(httpx.Headers({"x-ratelimit-remaining": "50", "x-ratelimit-reset": "10"}))
        await limiter.acquire()

        assert sleep.delays == []

    async def test_client_observes_rate_limit_headers(self) -> None:
        sleep = _SleepRecorder()
        responses = [
            httpx.Response(
                200,
                json={"data": []},
                headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "3"},
            ),
            httpx.Response(200, json={"data": []}),
        ]
        client = _client(lambda request: responses.pop(0), sleep=sleep)

        await client.list_phone_numbers()
        await client.list_phone_numbers()

        assert len(sleep.delays) == 1
        assert sleep.delays[0] > 3.0
