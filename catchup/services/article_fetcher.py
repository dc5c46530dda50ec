"""
Topic article fetching on top of the search provider.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from catchup.models.content import CandidateArticle
from catchup.services.deduplication_service import extract_domain, normalize_title, normalize_url
from catchup.services.search_service import SearchServiceError, SerperSearchService
from catchup.utils.date_parser import DateParser


class ArticleFetcher:
    """
    Turns one topic into a list of candidate articles.

    A failing provider never aborts the caller: errors are logged and the
    topic simply yields no candidates.
    """

    QUERY_TEMPLATE = "latest news about {topic} in the last 24 hours"

    def __init__(self, search: SerperSearchService, provider_cap: int = SerperSearchService.MAX_RESULTS):
        self.search = search
        self.provider_cap = provider_cap
        self.logger = logging.getLogger(__name__)

    async def fetch_topic_articles(
        self,
        topic_name: str,
        topic_id: str,
        max_results: int = 10,
        now: Optional[datetime] = None,
    ) -> List[CandidateArticle]:
        self.logger.info(f"Fetching articles for topic: {topic_name}")
        try:
            query = self.QUERY_TEMPLATE.format(topic=topic_name)
            payload = await self.search.search(query, min(max_results * 2, self.provider_cap))
            results = self._validate_response(payload)
            now = now or datetime.now(timezone.utc)
            articles = [self._process_result(r, topic_id, now) for r in results]
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Failed to fetch articles for topic {topic_name}: {e}")
            return []

        articles = articles[:max_results]
        self.logger.info(f"Found {len(articles)} articles for topic: {topic_name}")
        return articles

    @staticmethod
    def _validate_response(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict) or not isinstance(payload.get("organic"), list):
            raise SearchServiceError(f"Invalid response from search provider: {str(payload)[:200]}")
        results: List[Dict[str, Any]] = []
        for item in payload["organic"]:
            if not isinstance(item, dict):
                raise SearchServiceError(f"Invalid search result: {item!r}")
            for key in ("title", "link", "snippet"):
                if not isinstance(item.get(key), str):
                    raise SearchServiceError(f"Search result missing {key!r}: {item!r}")
            if item.get("date") is not None and not isinstance(item["date"], str):
                raise SearchServiceError(f"Search result has non-text date: {item!r}")
            results.append(item)
        return results

    def _process_result(self, result: Dict[str, Any], topic_id: str, now: datetime) -> CandidateArticle:
        domain = extract_domain(result["link"])
        return CandidateArticle(
            title=result["title"],
            topic_id=topic_id,
            normalized_title=normalize_title(result["title"]),
            snippet=result["snippet"],
            url=result["link"],
            normalized_url=normalize_url(result["link"]),
            domain=domain,
            source=domain,
            published_date=self._parse_date(result.get("date"), now),
        )

    def _parse_date(self, date_string: Optional[str], now: datetime) -> datetime:
        if not date_string:
            return now
        parsed = DateParser.parse(date_string, now=now)
        if DateParser.is_relative_time(date_string):
            self.logger.debug(f"Parsed relative time: {date_string!r} -> {parsed.isoformat()}")
        return parsed
