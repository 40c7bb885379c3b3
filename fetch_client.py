#!/usr/bin/env python3
"""
HTTP fetching with per-attempt timeouts, bounded retries and exponential backoff.

Hosts known to block automated access are tunnelled through a CORS-style relay
by passing the target URL as a query parameter. The client never mutates
shared state beyond its own aiohttp session.
"""

import json
from asyncio import wait_for, TimeoutError
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote, urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError, FetchTimeoutError, HTTPStatusError, NotAFeedError
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("fetch")

FEED_ACCEPT = "application/rss+xml, application/xml, text/xml, */*"
PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


def looks_like_xml(body: bytes) -> bool:
    """Cheap sanity check that a response body could be an XML document."""
    if not body:
        return False
    return b"<" in body and bool(body.strip())


class FetchClient:
    """Async HTTP client with retry/backoff and optional relay tunnelling.

    The client can own its ``ClientSession`` (when none is passed in) and is
    then usable as an async context manager, or it can borrow one shared
    session created by the caller.
    """

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        relay_url: Optional[str] = None,
        relay_hosts: Optional[Iterable[str]] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.session = session
        self._owns_session = session is None
        self.timeout = config.HTTP_TIMEOUT if timeout is None else timeout
        self.retries = config.MAX_RETRIES if retries is None else retries
        self.retry_delay = config.RETRY_DELAY_BASE if retry_delay is None else retry_delay
        self.max_delay = config.MAX_RETRY_DELAY if max_delay is None else max_delay
        self.relay_url = config.CORS_RELAY_URL if relay_url is None else relay_url
        hosts = config.RELAY_HOSTS if relay_hosts is None else relay_hosts
        self.relay_hosts = tuple(h.lower() for h in hosts)
        self.user_agent = user_agent or config.USER_AGENT

    async def __aenter__(self) -> "FetchClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    def needs_relay(self, url: str) -> bool:
        """True when the URL's host matches one of the relay host substrings."""
        if not self.relay_url or not self.relay_hosts:
            return False
        hostname = (urlparse(url).hostname or "").lower()
        return any(host in hostname for host in self.relay_hosts)

    def relay_wrap(self, url: str) -> str:
        return f"{self.relay_url}{quote(url, safe='')}"

    def _prepare(self, url: str, headers: Optional[Dict[str, str]]) -> tuple[str, Dict[str, str]]:
        merged = {"User-Agent": self.user_agent}
        merged.update(headers or {})
        if self.needs_relay(url):
            # The relay rejects forwarded browser user agents
            merged = {k: v for k, v in merged.items() if k.lower() != "user-agent"}
            logger.debug(f"Routing {url} through relay")
            return self.relay_wrap(url), merged
        return url, merged

    async def _attempt(self, method: str, url: str, headers: Dict[str, str], json_body: Any) -> bytes:
        if self.session is None:
            await self.open()
        async with self.session.request(method, url, headers=headers, json=json_body) as response:
            if not 200 <= response.status < 300:
                raise HTTPStatusError(response.status, url=url, reason=response.reason or "")
            return await response.read()

    @trace_span(
        "fetch.request",
        tracer_name="fetch",
        attr_from_args=lambda self, url, **kw: {"http.url": url, "http.method": kw.get("method", "GET")},
        attr_from_result=lambda body: {"http.response_bytes": len(body)},
    )
    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
    ) -> bytes:
        """Perform a request with retries and return the response body.

        Args:
            url: Target URL (relayed automatically for blocked hosts)
            method: HTTP method
            timeout: Per-attempt timeout in seconds
            retries: Number of retries after the first attempt
            retry_delay: Base delay for exponential backoff between attempts
            headers: Extra request headers
            json_body: Optional JSON payload

        Returns:
            The raw response body.

        Raises:
            FetchError: after ``retries + 1`` failed attempts; the last failure
                is propagated (HTTPStatusError, FetchTimeoutError or FetchError).
        """
        timeout = self.timeout if timeout is None else timeout
        retries = self.retries if retries is None else retries
        retry_helper = RetryHelper(
            max_retries=retries,
            base_delay=self.retry_delay if retry_delay is None else retry_delay,
            max_delay=self.max_delay,
        )
        target, request_headers = self._prepare(url, headers)
        total_attempts = retries + 1
        last_error: Optional[FetchError] = None

        for attempt in range(total_attempts):
            try:
                return await wait_for(self._attempt(method, target, request_headers, json_body), timeout=timeout)
            except TimeoutError:
                last_error = FetchTimeoutError(f"Timed out after {timeout}s", url=url)
            except HTTPStatusError as e:
                e.url = url
                last_error = e
            except ClientError as e:
                last_error = FetchError(f"{e.__class__.__name__}: {e}", url=url)
                last_error.__cause__ = e

            if attempt < retries:
                logger.warning(
                    f"Retry {attempt + 1}/{retries} for {url} due to error: {last_error.message}"
                )
                await retry_helper.sleep_for_attempt(attempt)

        last_error.attempts = total_attempts
        logger.error(f"Failed to fetch {url} after {total_attempts} attempts: {last_error.message}")
        raise last_error

    async def fetch(self, url: str, **kwargs) -> bytes:
        return await self.request(url, **kwargs)

    async def fetch_text(self, url: str, encoding: str = "utf-8", **kwargs) -> str:
        body = await self.request(url, **kwargs)
        return body.decode(encoding, errors="replace")

    async def fetch_json(self, url: str, **kwargs) -> Any:
        body = await self.request(url, **kwargs)
        try:
            return json.loads(body.decode("utf-8", errors="replace"))
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}", url=url) from e

    @trace_span("fetch.feed", tracer_name="fetch", attr_from_args=lambda self, url, **kw: {"feed.url": url})
    async def fetch_feed(self, url: str, **kwargs) -> bytes:
        """Fetch a feed document and reject bodies that cannot be XML."""
        headers = {"Accept": FEED_ACCEPT}
        headers.update(kwargs.pop("headers", None) or {})
        body = await self.request(url, headers=headers, **kwargs)
        if not looks_like_xml(body):
            raise NotAFeedError(f"Response from {url} is not XML", details={"url": url, "size": len(body)})
        return body

    async def fetch_page(self, url: str, timeout: Optional[float] = None) -> str:
        """Fetch an article page with browser-like headers, single attempt."""
        return await self.fetch_text(
            url,
            timeout=config.PAGE_FETCH_TIMEOUT if timeout is None else timeout,
            retries=0,
            headers={"User-Agent": config.BROWSER_USER_AGENT, "Accept": PAGE_ACCEPT},
        )

    async def probe(self, url: str, timeout: float) -> bool:
        """Send a single HEAD request; True on any 2xx answer."""
        if self.session is None:
            await self.open()
        try:
            async with self.session.head(
                url,
                timeout=ClientTimeout(total=timeout),
                headers={"User-Agent": self.user_agent},
                allow_redirects=True,
            ) as response:
                return 200 <= response.status < 300
        except (ClientError, TimeoutError) as e:
            logger.debug(f"Probe of {url} failed: {e}")
            return False
