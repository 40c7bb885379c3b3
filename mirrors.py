#!/usr/bin/env python3
"""
Resolution of ``rsshub://`` indirection URLs to a live mirror instance.

Candidate instances are probed in order with a HEAD request; the first one
answering 2xx is used for the rest of the resolver's lifetime (one refresh
batch). When every probe fails the configured default instance is used.
"""

import re
from asyncio import Lock
from typing import Iterable, NamedTuple, Optional

from config import config, get_logger
from errors import MirrorResolutionError

logger = get_logger("mirrors")

SCHEME = "rsshub://"
VALID_PATH = re.compile(r"^[a-zA-Z0-9/_-]+$")

PLATFORM_DESCRIPTIONS = {
    "techcrunch": "TechCrunch tech news",
    "github": "GitHub repository activity",
    "twitter": "Twitter user timeline",
    "weibo": "Weibo user timeline",
    "bilibili": "Bilibili uploader activity",
    "zhihu": "Zhihu column/user activity",
    "juejin": "Juejin user articles",
    "v2ex": "V2EX forum",
    "sspai": "Sspai articles",
    "coolapk": "Coolapk app market",
}


class RouteInfo(NamedTuple):
    platform: str
    route: str
    description: str


def is_indirection_url(url: str) -> bool:
    return bool(url) and url.startswith(SCHEME)


def _path_of(url: str) -> str:
    if not is_indirection_url(url):
        raise MirrorResolutionError(f"URL must start with {SCHEME}: {url}")
    return url[len(SCHEME):]


def validate_path(url: str) -> bool:
    """True when the URL uses the scheme and its path has only safe characters."""
    if not is_indirection_url(url):
        return False
    path = url[len(SCHEME):]
    return bool(path) and bool(VALID_PATH.match(path))


def convert(url: str, instance: str) -> str:
    """Rewrite an indirection URL against a concrete mirror instance."""
    path = _path_of(url)
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{instance.rstrip('/')}{path}"


def describe(url: str) -> RouteInfo:
    path = _path_of(url)
    segments = path.split("/")
    platform = segments[0] or "unknown"
    route = "/".join(segments[1:])
    description = PLATFORM_DESCRIPTIONS.get(platform, f"{platform} feed")
    return RouteInfo(platform, route, description)


class MirrorResolver:
    """Select a healthy mirror instance and rewrite indirection URLs.

    Args:
        fetch_client: Client providing ``probe(url, timeout)``
        instances: Candidate base URLs, probed in order
        default: Instance used when every probe fails
        probe_timeout: Seconds allowed for each HEAD probe
    """

    def __init__(self, fetch_client, instances: Optional[Iterable[str]] = None,
                 default: Optional[str] = None, probe_timeout: Optional[float] = None) -> None:
        self.fetch_client = fetch_client
        self.instances = tuple(instances if instances is not None else config.MIRROR_INSTANCES)
        self.default = default or config.MIRROR_DEFAULT
        self.probe_timeout = probe_timeout or config.MIRROR_PROBE_TIMEOUT
        self._selected: Optional[str] = None
        self._lock = Lock()

    async def select_instance(self) -> str:
        # Concurrent refreshes wait for the first probe round instead of repeating it
        async with self._lock:
            if self._selected:
                return self._selected
            self._selected = await self._probe_instances()
            return self._selected

    async def _probe_instances(self) -> str:
        for instance in self.instances:
            if await self.fetch_client.probe(f"{instance.rstrip('/')}/", self.probe_timeout):
                logger.info(f"Using mirror instance {instance}")
                return instance
            logger.warning(f"Mirror instance {instance} is not available")
        logger.warning(f"No mirror instance available, using default {self.default}")
        return self.default

    async def resolve(self, url: str) -> str:
        """Return a fetchable URL; non-indirection URLs pass through unchanged."""
        if not is_indirection_url(url):
            return url
        if not validate_path(url):
            raise MirrorResolutionError(f"Invalid indirection path: {url}")
        return convert(url, await self.select_instance())
