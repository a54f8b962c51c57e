"""
Unit tests for the registry client retry and availability behaviour
"""

import httpx
import pytest
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from ingestion.extractors.registry_client import (
    PackageFound,
    PackageNotFound,
    RegistryAvailability,
    RegistryClient,
    parse_retry_after,
)
from core.exceptions import (
    NonRetryableError,
    RateLimitError,
    RegistryResponseError,
    RegistryUnavailableError,
    RetryableError,
)


def search_payload(*items):
    return {"totalHits": len(items), "data": list(items)}


def make_client(handler, max_retries=1, availability=None):
    transport = httpx.MockTransport(handler)
    return RegistryClient(
        search_url="https://search.test/query",
        max_retries=max_retries,
        retry_delay=0,
        timeout=1.0,
        availability=availability or RegistryAvailability(cooldown_seconds=600),
        client=httpx.AsyncClient(transport=transport),
    )


class TestRegistryClient:
    """Test registry lookups"""

    @pytest.mark.asyncio
    async def test_found_returns_count_and_canonical_casing(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(
                200,
                json=search_payload(
                    {"id": "Sentry", "totalDownloads": 12345, "iconUrl": "https://icons.test/sentry.png"}
                ),
            )

        async with make_client(handler) as registry:
            result = await registry.get_package("sentry")

        assert result == PackageFound("Sentry", 12345, "https://icons.test/sentry.png")
        assert seen[0].url.params["q"] == "packageid:sentry"
        assert seen[0].url.params["take"] == "1"

    @pytest.mark.asyncio
    async def test_other_id_in_results_is_not_found(self):
        def handler(request):
            return httpx.Response(200, json=search_payload({"id": "Sentry.AspNetCore", "totalDownloads": 10}))

        async with make_client(handler) as registry:
            result = await registry.get_package("Sentry")

        assert isinstance(result, PackageNotFound)
        assert result.package_id == "Sentry"

    @pytest.mark.asyncio
    async def test_empty_results_and_404_are_not_found(self):
        responses = iter([httpx.Response(200, json=search_payload()), httpx.Response(404)])

        def handler(request):
            return next(responses)

        async with make_client(handler) as registry:
            assert isinstance(await registry.get_package("gone"), PackageNotFound)
            assert isinstance(await registry.get_package("gone"), PackageNotFound)

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(200, json=search_payload({"id": "Serilog", "totalDownloads": 7})),
        ])

        def handler(request):
            return next(responses)

        async with make_client(handler, max_retries=1) as registry:
            result = await registry.get_package("Serilog")

        assert result == PackageFound("Serilog", 7, None)
        assert registry.availability.is_available

    @pytest.mark.asyncio
    async def test_exhausted_retries_mark_registry_unavailable(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        async with make_client(handler, max_retries=1) as registry:
            with pytest.raises(RegistryUnavailableError) as exc_info:
                await registry.get_package("Serilog")

            assert isinstance(exc_info.value, RetryableError)
            assert len(calls) == 2
            assert not registry.availability.is_available

            # Fails fast while cooling down
            with pytest.raises(RegistryUnavailableError):
                await registry.get_package("Serilog")
            assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeouts_mark_registry_unavailable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with make_client(handler, max_retries=0) as registry:
            with pytest.raises(RegistryUnavailableError):
                await registry.get_package("Serilog")
            assert not registry.availability.is_available

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        responses = iter([
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json=search_payload({"id": "Polly", "totalDownloads": 3})),
        ])

        def handler(request):
            return next(responses)

        async with make_client(handler) as registry:
            result = await registry.get_package("Polly")

        assert result == PackageFound("Polly", 3, None)

    @pytest.mark.asyncio
    async def test_rate_limit_after_all_retries(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "0"})

        async with make_client(handler, max_retries=1) as registry:
            with pytest.raises(RateLimitError) as exc_info:
                await registry.get_package("Polly")

        assert exc_info.value.retry_after == 0

    @pytest.mark.asyncio
    async def test_rate_limit_with_http_date_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})

        async with make_client(handler, max_retries=0) as registry:
            with pytest.raises(RateLimitError) as exc_info:
                await registry.get_package("Polly")

        assert exc_info.value.retry_after == 0

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        async with make_client(handler, max_retries=3) as registry:
            with pytest.raises(RegistryResponseError) as exc_info:
                await registry.get_package("Polly")

        assert isinstance(exc_info.value, NonRetryableError)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_missing_download_count_is_a_response_error(self):
        def handler(request):
            return httpx.Response(200, json=search_payload({"id": "Polly"}))

        async with make_client(handler) as registry:
            with pytest.raises(RegistryResponseError):
                await registry.get_package("Polly")

    @pytest.mark.asyncio
    async def test_invalid_json_is_a_response_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        async with make_client(handler) as registry:
            with pytest.raises(RegistryResponseError):
                await registry.get_package("Polly")


@pytest.mark.parametrize("header,expected", [
    (None, 2.0),
    ("", 2.0),
    ("7", 7.0),
    (" 12 ", 12.0),
    ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0),
    ("soon", 2.0),
])
def test_parse_retry_after(header, expected):
    assert parse_retry_after(header, 2.0) == expected


def test_parse_retry_after_future_date():
    retry_at = datetime.now(timezone.utc) + timedelta(seconds=120)

    wait = parse_retry_after(format_datetime(retry_at, usegmt=True), 2.0)

    assert 100 < wait <= 120


def test_availability_recovers_after_cooldown():
    availability = RegistryAvailability(cooldown_seconds=0)
    availability.mark_unavailable()
    assert availability.is_available
    assert availability.unavailable_until is None


def test_availability_blocks_during_cooldown():
    availability = RegistryAvailability(cooldown_seconds=600)
    availability.mark_unavailable()
    assert not availability.is_available
    availability.mark_available()
    assert availability.is_available
