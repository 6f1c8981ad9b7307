"""Page fetcher for link metadata and full-content extraction.

Only downloads HTML. Parsing lives in content_extractor.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)


class FetchErrorType(str, Enum):
    """Classification of fetch errors for retry strategy."""

    TIMEOUT = "timeout"  # Retriable
    CONNECTION_ERROR = "connection_error"  # Retriable
    HTTP_5XX = "http_5xx"  # Retriable (server error)
    HTTP_4XX = "http_4xx"  # Not retriable (404, 403, etc.)
    INVALID_URL = "invalid_url"  # Not retriable
    TOO_LARGE = "too_large"  # Not retriable
    NOT_HTML = "not_html"  # Not retriable


# Error types that can be retried
RETRIABLE_ERRORS = {FetchErrorType.TIMEOUT, FetchErrorType.HTTP_5XX, FetchErrorType.CONNECTION_ERROR}


@dataclass
class FetchResult:
    """Result of a page fetch."""

    success: bool
    html: str | None = None
    final_url: str | None = None
    error_type: FetchErrorType | None = None
    error_message: str | None = None
    http_status: int | None = None

    @property
    def retriable(self) -> bool:
        """Whether this error can be retried."""
        return self.error_type in RETRIABLE_ERRORS if self.error_type else False


# Maximum page size to accept (10MB)
MAX_CONTENT_SIZE = 10 * 1024 * 1024

# Metadata refresh only needs the <head>; full extraction gets longer
METADATA_TIMEOUT = 15.0
EXTRACTION_TIMEOUT = 30.0

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


def normalize_url(url: str) -> str:
    """Trim and prefix ``https://`` when no scheme is given."""
    url = (url or "").strip()
    if url and "://" not in url:
        url = f"https://{url}"
    return url


class ContentFetcher:
    """Downloads pages over httpx with error classification.

    One client is reused across fetches; call ``close()`` when done.
    """

    def __init__(self, user_agent: str = "Mozilla/5.0 (compatible; LinkVault/1.0)") -> None:
        self._user_agent = user_agent
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(EXTRACTION_TIMEOUT),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10),
                headers={
                    "User-Agent": self._user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, timeout: float = EXTRACTION_TIMEOUT) -> FetchResult:
        """Fetch a page's HTML.

        Args:
            url: The URL to fetch. ``https://`` is assumed when no scheme is given.
            timeout: Whole-request timeout in seconds.

        Returns:
            FetchResult with the HTML or error information. Never raises for
            network or HTTP errors.
        """
        url = normalize_url(url)
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.INVALID_URL,
                error_message=f"Invalid URL: {url!r}",
            )

        try:
            client = await self._get_client()
            response = await client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.TIMEOUT,
                error_message=f"Request timed out after {timeout}s",
            )
        except httpx.InvalidURL as e:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.INVALID_URL,
                error_message=f"Invalid URL: {e}",
            )
        except httpx.TransportError as e:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.CONNECTION_ERROR,
                error_message=f"Connection error: {e}",
            )

        status = response.status_code
        if status >= 500:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.HTTP_5XX,
                error_message=f"Server error: {status}",
                http_status=status,
            )

        if status >= 400:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.HTTP_4XX,
                error_message=f"Client error: {status}",
                http_status=status,
            )

        content_length = response.headers.get("content-length")
        if (content_length and content_length.isdigit() and int(content_length) > MAX_CONTENT_SIZE) or len(
            response.content
        ) > MAX_CONTENT_SIZE:
            return FetchResult(
                success=False,
                error_type=FetchErrorType.TOO_LARGE,
                error_message=f"Content too large: {content_length or len(response.content)} bytes",
                http_status=status,
            )

        content_type = response.headers.get("content-type", "").lower()
        if content_type and not any(t in content_type for t in HTML_CONTENT_TYPES):
            return FetchResult(
                success=False,
                error_type=FetchErrorType.NOT_HTML,
                error_message=f"Not an HTML page: {content_type}",
                http_status=status,
            )

        logger.debug(f"Fetched {url} ({len(response.content)} bytes)")
        return FetchResult(
            success=True,
            html=response.text,
            final_url=str(response.url),
            http_status=status,
        )

