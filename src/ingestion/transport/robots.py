"""robots.txt checks, cached per origin."""

from __future__ import annotations

import logging
import threading
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

logger = logging.getLogger(__name__)


class RobotsChecker:
    """
    Answers "may this user agent fetch this URL?".

    robots.txt is fetched through the owning handler's HTTP client. A missing
    file (4xx) allows everything; an unreachable one is treated the same way
    and logged.
    """

    def __init__(self, http_client, user_agent: str = "*") -> None:
        self.http_client = http_client
        self.user_agent = user_agent
        self._parsers: dict[str, RobotFileParser] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _origin(url: str) -> str:
        parts = urlsplit(url)
        return f"{parts.scheme}://{parts.netloc}"

    def _load(self, origin: str) -> RobotFileParser:
        parser = RobotFileParser(f"{origin}/robots.txt")
        try:
            response = self.http_client.get(f"{origin}/robots.txt")
        except Exception as e:
            logger.warning(f"robots.txt unreachable for {origin}, allowing: {e}")
            parser.parse([])
            return parser

        if response.status_code in (401, 403):
            parser.disallow_all = True
        elif response.ok:
            parser.parse(response.text.splitlines())
        else:
            parser.parse([])
        return parser

    def allowed(self, url: str) -> bool:
        origin = self._origin(url)
        with self._lock:
            parser = self._parsers.get(origin)
        if parser is None:
            parser = self._load(origin)
            with self._lock:
                self._parsers.setdefault(origin, parser)
        return parser.can_fetch(self.user_agent, url)

    def clear(self) -> None:
        with self._lock:
            self._parsers.clear()
