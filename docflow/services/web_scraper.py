"""Website and API job runners over httpx.

`WebsiteJobRunner` fetches ``source.url`` and follows the ``next_page``
selector for up to ``options.max_pages`` pages. Each page is checked against
robots.txt for ``options.user_agent``, paced by ``options.rate_limit`` and
bounded by ``options.timeout_ms``; the remaining ``source.selectors`` are CSS
selectors whose matches are collected as text (``selector@attr`` reads an
attribute instead). `ApiJobRunner` fetches JSON from ``source.url``. Both
report request metrics and progress through the `ExecutionContext` and store
what they collected with `ResultRepository.write_scrape_result`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from docflow.errors import (
    AuthenticationError,
    AuthorizationError,
    NetworkError,
    NotFoundError,
    OperationTimeoutError,
    RateLimitError,
    ValidationError,
)
from docflow.models.job import AuthConfig, AuthType, Job, JobOptions, RateLimit, SourceType
from docflow.services.interfaces import MetricsClient
from docflow.services.job_runner import ExecutionContext, JobRunner
from docflow.services.metrics import NullMetrics
from docflow.services.result_repository import ResultRepository
from docflow.services.robots import RobotsCache
from docflow.utils.logging_utils import structured_log

_LOG = logging.getLogger("docflow.web_scraper")

NEXT_PAGE_SELECTOR = "next_page"


class RateLimiter:
    """Sliding-window limiter: at most ``requests`` acquisitions per ``period_seconds``."""

    def __init__(
        self,
        limit: RateLimit,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.limit = limit
        self._clock = clock
        self._sleep = sleep
        self._stamps: Deque[float] = deque()

    async def acquire(self) -> float:
        """Reserve the next free slot, wait for it and return the seconds waited."""
        now = self._clock()
        horizon = now - self.limit.period_seconds
        while self._stamps and self._stamps[0] <= horizon:
            self._stamps.popleft()
        if len(self._stamps) < self.limit.requests:
            self._stamps.append(now)
            return 0.0
        # the slot is booked before sleeping so concurrent callers queue behind it
        delay = self._stamps.popleft() + self.limit.period_seconds - now
        self._stamps.append(now + delay)
        await self._sleep(delay)
        return delay


def _client_auth(auth: AuthConfig) -> tuple[httpx.Auth | None, Dict[str, str]]:
    creds = auth.credentials
    if auth.type is AuthType.NONE:
        return None, {}
    if auth.type is AuthType.BASIC:
        if not creds.get("username"):
            raise AuthenticationError("basic auth needs a username", auth_type=auth.type.value)
        return httpx.BasicAuth(creds["username"], creds.get("password", "")), {}
    token = creds.get("token") or creds.get("access_token")
    if not token:
        raise AuthenticationError(f"{auth.type.value} auth needs a token", auth_type=auth.type.value)
    return None, {"Authorization": f"Bearer {token}"}


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    url = str(response.request.url)
    if status == 401:
        raise AuthenticationError(f"{url} rejected the credentials", status=status)
    if status == 403:
        raise AuthorizationError(f"{url} refused access", status=status)
    if status in (404, 410):
        raise NotFoundError(f"{url} returned {status}", status=status)
    if status == 429:
        raise RateLimitError(f"{url} is rate limiting requests", status=status)
    if status >= 500:
        raise NetworkError(f"{url} returned {status}", status=status)
    raise ValidationError(
        f"{url} returned {status}", field="source.url", constraint=f"http_{status}", value=url
    )


def _split_selector(expression: str) -> tuple[str, str | None]:
    css, _, attr = expression.strip().partition("@")
    return css.strip(), (attr.strip() or None)


def extract_fields(html: str, selectors: Dict[str, str]) -> Dict[str, List[str]]:
    """Collect the text (or attribute) of every element each selector matches."""
    soup = BeautifulSoup(html, "html.parser")
    fields: Dict[str, List[str]] = {}
    for name, expression in selectors.items():
        if name == NEXT_PAGE_SELECTOR:
            continue
        css, attr = _split_selector(expression)
        values = []
        for element in soup.select(css):
            value = element.get(attr) if attr else element.get_text(strip=True)
            if value:
                values.append(str(value).strip())
        fields[name] = values
    return fields


def next_page_url(html: str, base_url: str, selector: str | None) -> str | None:
    if not selector:
        return None
    css, attr = _split_selector(selector)
    element = BeautifulSoup(html, "html.parser").select_one(css)
    if element is None:
        return None
    href = element.get(attr or "href")
    return urljoin(base_url, str(href)) if href else None


def _require_url(job: Job) -> str:
    url = job.config.source.url
    if not url or urlparse(url).scheme not in ("http", "https"):
        raise ValidationError(
            "source.url must be an http(s) URL", field="source.url", constraint="http_url", value=url
        )
    return url


class _HttpJobRunner(JobRunner):
    source_type: SourceType

    def __init__(
        self,
        results: ResultRepository,
        *,
        metrics: MetricsClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._results = results
        self._metrics = metrics or NullMetrics()
        self._transport = transport
        self._sleep = sleep

    def _client(self, options: JobOptions, auth: AuthConfig) -> httpx.AsyncClient:
        client_auth, headers = _client_auth(auth)
        return httpx.AsyncClient(
            headers={"User-Agent": options.user_agent, **headers},
            auth=client_auth,
            timeout=options.timeout_ms / 1000.0,
            follow_redirects=True,
            transport=self._transport,
        )

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        context: ExecutionContext,
        limiter: RateLimiter | None,
    ) -> httpx.Response:
        if limiter is not None:
            waited = await limiter.acquire()
            if waited:
                self._metrics.observe_latency("rate_limit_wait", waited, stage="scrape")
        started = time.perf_counter()
        try:
            response = await context.bounded(client.get, url)
        except httpx.TimeoutException as exc:
            context.record_request((time.perf_counter() - started) * 1000, ok=False)
            raise OperationTimeoutError(f"GET {url} timed out", url=url) from exc
        except httpx.TransportError as exc:
            context.record_request((time.perf_counter() - started) * 1000, ok=False)
            raise NetworkError(f"GET {url} failed: {type(exc).__name__}", url=url) from exc
        except OperationTimeoutError:
            context.record_request((time.perf_counter() - started) * 1000, ok=False)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        ok = response.status_code < 400
        context.record_request(elapsed_ms, bytes_received=len(response.content), ok=ok)
        self._metrics.observe_latency("http_request", elapsed_ms / 1000.0, stage="scrape")
        self._metrics.increment(f"http_{response.status_code // 100}xx", stage="scrape")
        _raise_for_status(response)
        return response

    async def _store(self, job: Job, url: str, pages: List[Dict[str, Any]], items: int) -> None:
        ref = await self._results.write_scrape_result(
            {
                "job_id": job.job_id,
                "source_type": self.source_type.value,
                "source_url": url,
                "pages": pages,
                "item_count": items,
            }
        )
        structured_log(
            _LOG,
            logging.INFO,
            "scrape_stored",
            job_id=job.job_id,
            source=self.source_type.value,
            progress=len(pages),
            bytes=ref.size_bytes,
        )


class WebsiteJobRunner(_HttpJobRunner):
    source_type = SourceType.WEBSITE

    def __init__(
        self,
        results: ResultRepository,
        *,
        robots: RobotsCache | None = None,
        metrics: MetricsClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(results, metrics=metrics, transport=transport, sleep=sleep)
        self._robots = robots or RobotsCache()

    async def run(self, job: Job, context: ExecutionContext) -> None:
        source = job.config.source
        options = job.config.options
        start_url = _require_url(job)
        selectors = {k: v for k, v in source.selectors.items() if k != NEXT_PAGE_SELECTOR}
        if not selectors:
            raise ValidationError(
                "website jobs need at least one selector", field="source.selectors", constraint="non_empty"
            )
        limiter = RateLimiter(options.rate_limit, sleep=self._sleep) if options.rate_limit else None
        # pages beyond the first have no known total
        total = 1 if options.max_pages == 1 else None

        pages: List[Dict[str, Any]] = []
        items = 0
        seen: set[str] = set()
        url: str | None = start_url
        async with self._client(options, source.auth) as client:
            while url is not None and len(pages) < options.max_pages and url not in seen:
                context.check_cancelled("FETCH")
                seen.add(url)
                if options.respect_robots and not await self._robots.allowed(client, url, options.user_agent):
                    self._metrics.increment("robots_disallowed", stage="scrape")
                    raise ValidationError(
                        f"robots.txt disallows {url}", field="source.url", constraint="robots_txt", value=url
                    )
                response = await self._get(client, url, context, limiter)
                html = response.text
                fields = extract_fields(html, selectors)
                found = sum(len(values) for values in fields.values())
                items += found
                pages.append({"url": url, "fields": fields})
                context.record_items(scraped=found)
                context.report_progress(len(pages), total)
                await context.checkpoint()
                url = next_page_url(html, str(response.url), source.selectors.get(NEXT_PAGE_SELECTOR))

        if items == 0:
            raise ValidationError(
                "no selector matched any element", field="source.selectors", constraint="matched"
            )
        context.check_cancelled("PERSIST")
        await self._store(job, start_url, pages, items)


class ApiJobRunner(_HttpJobRunner):
    """Fetch a JSON document; a top-level list counts as one item per element."""

    source_type = SourceType.API

    async def run(self, job: Job, context: ExecutionContext) -> None:
        source = job.config.source
        options = job.config.options
        url = _require_url(job)
        limiter = RateLimiter(options.rate_limit, sleep=self._sleep) if options.rate_limit else None
        context.check_cancelled("FETCH")
        async with self._client(options, source.auth) as client:
            response = await self._get(client, url, context, limiter)
        try:
            body = response.json()
        except ValueError as exc:
            raise ValidationError(
                f"{url} did not return JSON", field="source.url", constraint="json", value=url
            ) from exc
        items = len(body) if isinstance(body, list) else 1
        context.record_items(scraped=items)
        context.report_progress(1, 1)
        await context.checkpoint()
        context.check_cancelled("PERSIST")
        await self._store(job, url, [{"url": url, "body": body}], items)


__all__ = [
    "ApiJobRunner",
    "RateLimiter",
    "WebsiteJobRunner",
    "extract_fields",
    "next_page_url",
]
