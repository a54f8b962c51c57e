"""
Package registry client with retry logic and an availability breaker.

Looks up one package at a time against the registry search endpoint and
returns an explicit result:

- ``PackageFound`` with the total download count and icon
- ``PackageNotFound`` when the registry no longer knows the package

Transient failures (timeouts, connection errors, 5xx, 429) are retried with
exponential backoff. Once retries are exhausted the registry is marked
unavailable for a cooldown period and every call fails fast with
``RegistryUnavailableError`` until it passes.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Union

import httpx

from core.config import settings
from core.exceptions import (
    RateLimitError,
    RegistryResponseError,
    RegistryUnavailableError,
)
from core.tracing import Tracer, default_tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageFound:
    package_id: str
    download_count: int
    icon_url: Optional[str] = None


@dataclass(frozen=True)
class PackageNotFound:
    package_id: str


RegistryLookup = Union[PackageFound, PackageNotFound]


def parse_retry_after(value: Optional[str], default: float) -> float:
    """
    Seconds to wait from a Retry-After header, given either as seconds or
    as an HTTP date. Dates in the past mean no wait; anything unreadable
    falls back to ``default``.
    """
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unreadable Retry-After header: {value!r}")
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


class RegistryAvailability:
    """
    Tracks whether the registry is reachable.

    Marked unavailable after a lookup exhausts its retries; becomes
    available again after ``cooldown_seconds`` or on the next success.
    """

    def __init__(self, cooldown_seconds: Optional[int] = None):
        self.cooldown = timedelta(
            seconds=cooldown_seconds if cooldown_seconds is not None
            else settings.REGISTRY_UNAVAILABLE_COOLDOWN_SECONDS
        )
        self.unavailable_until: Optional[datetime] = None

    @property
    def is_available(self) -> bool:
        if self.unavailable_until is None:
            return True
        if datetime.now(timezone.utc) >= self.unavailable_until:
            logger.info("Registry cooldown expired, allowing requests again")
            self.unavailable_until = None
            return True
        return False

    def mark_unavailable(self) -> None:
        self.unavailable_until = datetime.now(timezone.utc) + self.cooldown
        logger.warning(
            f"Registry marked unavailable until {self.unavailable_until.isoformat()}"
        )

    def mark_available(self) -> None:
        if self.unavailable_until is not None:
            logger.info("Registry marked available")
        self.unavailable_until = None


class RegistryClient:
    """
    Download-count lookups against the package registry search API.

    Attributes:
        search_url: Registry search endpoint
        max_retries: Retries after the first attempt (default from settings)
        retry_delay: Initial retry delay in seconds, doubled per attempt
        timeout: Per-request timeout in seconds

    Usage:
        async with RegistryClient() as registry:
            result = await registry.get_package("Sentry")
            if isinstance(result, PackageFound):
                ...
    """

    def __init__(
        self,
        search_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        availability: Optional[RegistryAvailability] = None,
        client: Optional[httpx.AsyncClient] = None,
        tracer: Optional[Tracer] = None
    ):
        self.search_url = search_url or settings.REGISTRY_SEARCH_URL
        self.max_retries = settings.REGISTRY_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.REGISTRY_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.timeout = timeout or settings.REGISTRY_TIMEOUT_SECONDS
        self.availability = availability or RegistryAvailability()
        self.tracer = tracer or default_tracer
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": "package-trends-worker"}
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_package(self, package_id: str) -> RegistryLookup:
        """
        Look up the current download count of one package.

        Args:
            package_id: Package id in any casing

        Returns:
            PackageFound or PackageNotFound

        Raises:
            RegistryUnavailableError: Registry unreachable or cooling down
            RateLimitError: Still rate limited after all retries
            RegistryResponseError: Unparseable response
        """
        if not self.availability.is_available:
            raise RegistryUnavailableError(
                "Registry is marked unavailable",
                context={
                    "package_id": package_id,
                    "unavailable_until": self.availability.unavailable_until.isoformat()
                }
            )

        params = {
            "q": f"packageid:{package_id}",
            "prerelease": "true",
            "semVerLevel": "2.0.0",
            "take": 1,
        }

        with self.tracer.span("registry.lookup", package_id=package_id) as span:
            response = await self._get_with_retry(params, package_id)
            if response is None:
                span.set_data("result", "not_found")
                return PackageNotFound(package_id)

            result = self._parse(response, package_id)
            span.set_data("result", "found" if isinstance(result, PackageFound) else "not_found")
            return result

    def _parse(self, response: httpx.Response, package_id: str) -> RegistryLookup:
        try:
            payload: Dict[str, Any] = response.json()
        except ValueError as e:
            raise RegistryResponseError(
                "Failed to parse registry response",
                context={"package_id": package_id, "response_body": response.text[:500]},
                original_exception=e
            )

        wanted = package_id.lower()
        for item in payload.get("data") or []:
            if str(item.get("id", "")).lower() != wanted:
                continue

            count = item.get("totalDownloads")
            if not isinstance(count, int) or count < 0:
                raise RegistryResponseError(
                    "Registry returned no usable download count",
                    context={"package_id": package_id, "total_downloads": count}
                )
            return PackageFound(
                package_id=item["id"],
                download_count=count,
                icon_url=item.get("iconUrl") or None,
            )

        return PackageNotFound(package_id)

    async def _get_with_retry(self, params: Dict[str, Any], package_id: str) -> Optional[httpx.Response]:
        """
        Issue the search request, retrying transient failures.

        Returns:
            The successful response, or None when the registry answered 404
        """
        client = self._get_client()
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            delay = self.retry_delay * (2 ** attempt)

            try:
                response = await client.get(self.search_url, params=params, timeout=self.timeout)
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                if not last_attempt:
                    logger.warning(
                        f"Registry request for {package_id} failed ({type(e).__name__}). "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self.availability.mark_unavailable()
                raise RegistryUnavailableError(
                    f"Registry unreachable after {attempts} attempts",
                    context={
                        "package_id": package_id,
                        "url": self.search_url,
                        "timeout": self.timeout,
                        "retry_count": attempt + 1
                    },
                    original_exception=e
                )

            if response.status_code == 404:
                self.availability.mark_available()
                return None

            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"), delay)
                if not last_attempt:
                    logger.warning(f"Registry rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                raise RateLimitError(
                    f"Registry rate limit exceeded for {package_id}",
                    context={"package_id": package_id, "status_code": 429, "retry_count": attempt + 1},
                    retry_after=retry_after
                )

            if response.status_code >= 500:
                if not last_attempt:
                    logger.warning(
                        f"Registry server error {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self.availability.mark_unavailable()
                raise RegistryUnavailableError(
                    f"Registry server error after {attempts} attempts",
                    context={
                        "package_id": package_id,
                        "status_code": response.status_code,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if response.status_code >= 400:
                raise RegistryResponseError(
                    f"Registry rejected lookup with HTTP {response.status_code}",
                    context={"package_id": package_id, "status_code": response.status_code}
                )

            self.availability.mark_available()
            return response

        raise RegistryUnavailableError("Max retries exceeded", context={"package_id": package_id})
