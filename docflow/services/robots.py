"""robots.txt lookups for website jobs."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser

import httpx

from docflow.utils.logging_utils import structured_log
from docflow.utils.ttl_cache import TTLCache

LOG = logging.getLogger("docflow.robots")


class RobotsCache:
    """Fetch robots.txt once per origin and answer ``can_fetch`` checks.

    A missing or unreachable robots.txt allows everything, matching common
    crawler behaviour. Parsed files expire after ``ttl_seconds``.
    """

    def __init__(self, *, ttl_seconds: float = 3600.0, max_entries: int = 512) -> None:
        self._parsers: TTLCache[str, RobotFileParser] = TTLCache(
            ttl_seconds=ttl_seconds, max_entries=max_entries
        )
        self._lock = asyncio.Lock()

    async def allowed(self, client: httpx.AsyncClient, url: str, user_agent: str) -> bool:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        async with self._lock:
            parser = self._parsers.get(origin)
            if parser is None:
                parser = await self._load(client, origin)
                self._parsers.set(origin, parser)
        return parser.can_fetch(user_agent, url)

    async def _load(self, client: httpx.AsyncClient, origin: str) -> RobotFileParser:
        parser = RobotFileParser()
        robots_url = urljoin(origin, "/robots.txt")
        try:
            response = await client.get(robots_url)
        except httpx.HTTPError as exc:
            structured_log(
                LOG, logging.INFO, "robots_unavailable", source=origin, error_type=type(exc).__name__
            )
            parser.parse([])
            return parser
        if response.status_code >= 400:
            parser.parse([])
        else:
            parser.parse(response.text.splitlines())
        return parser


__all__ = ["RobotsCache"]
