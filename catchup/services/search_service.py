"""
Serper search client used to discover recent articles for a topic.
"""

import logging
import os
from typing import Any, Dict, Optional

import aiohttp


class SearchServiceError(Exception):
    """Raised when the search provider call fails or returns an unusable payload"""
    pass


class SerperSearchService:
    """
    Thin async client for the Serper Google-search API.

    Returns the decoded JSON payload; shape validation is left to the caller.
    """

    BASE_URL = "https://google.serper.dev/search"
    MAX_RESULTS = 10  # provider cap per request

    def __init__(self, api_key: Optional[str] = None, timeout_seconds: float = 30.0):
        self.api_key = api_key or os.getenv("SERPER_API_KEY")
        if not self.api_key:
            raise ValueError("Serper API key required. Set SERPER_API_KEY or pass api_key parameter.")

        self.session: Optional[aiohttp.ClientSession] = None
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.logger = logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self.session

    async def close_session(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close_session()
        return False

    async def search(self, query: str, num: int) -> Dict[str, Any]:
        """Run one news search restricted to the last 24 hours."""
        payload = {
            "q": query,
            "num": min(num, self.MAX_RESULTS),
            "gl": "us",
            "hl": "en",
            "tbs": "qdr:d",
        }
        session = await self._get_session()
        try:
            async with session.post(self.BASE_URL, json=payload) as response:
                if response.status != 200:
                    raise SearchServiceError(f"Serper API error: {response.status} {response.reason}")
                return await response.json()
        except aiohttp.ClientError as exc:
            raise SearchServiceError(f"Serper request failed: {exc}") from exc

    async def test_connection(self) -> bool:
        await self.search("news", 1)
        return True
