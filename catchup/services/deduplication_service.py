import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from catchup.models.content import Article, CandidateArticle

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def normalize_title(title: str) -> str:
    """Lowercase and strip everything except ASCII letters, digits and whitespace."""
    return _NON_ALNUM.sub("", (title or "").lower())


def normalize_url(url: str) -> str:
    return (url or "").lower()


def extract_domain(url: str) -> str:
    """Hostname without a leading ``www.``; ``unknown`` when the URL has none."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return "unknown"
    if not host:
        return "unknown"
    if host.startswith("www."):
        host = host[4:]
    return host


@dataclass
class DedupResult:
    known: List[Article] = field(default_factory=list)
    new: List[Article] = field(default_factory=list)
    # Every resolved article once, in candidate order
    ordered: List[Article] = field(default_factory=list)


class DeduplicationService:
    """
    Splits freshly fetched candidates into articles we already store and
    articles that need an identity.

    A candidate is a duplicate of a stored article when both belong to the
    same topic and either the normalized URL or the normalized title match.
    Keys are always recomputed from the raw title/URL on both sides.
    """

    def __init__(
        self,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.id_factory = id_factory
        self.clock = clock
        self.stats: Dict[str, int] = {
            "total_processed": 0,
            "url_filtered": 0,
            "title_filtered": 0,
            "current_run_filtered": 0,
            "new_articles": 0,
        }
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def keys_for(title: str, url: str) -> Tuple[str, str]:
        return normalize_title(title), normalize_url(url)

    def partition(self, candidates: List[CandidateArticle], existing: List[Article]) -> DedupResult:
        self.reset_statistics()
        by_url: Dict[Tuple[str, str], Article] = {}
        by_title: Dict[Tuple[str, str], Article] = {}
        for article in existing:
            title_key, url_key = self.keys_for(article.title, article.url)
            by_url.setdefault((article.topic_id, url_key), article)
            if title_key.strip():
                by_title.setdefault((article.topic_id, title_key), article)

        result = DedupResult()
        seen_ids = set()
        created_at = self.clock()

        for candidate in candidates:
            self.stats["total_processed"] += 1
            title_key, url_key = self.keys_for(candidate.title, candidate.url)
            url_slot = (candidate.topic_id, url_key)
            title_slot = (candidate.topic_id, title_key)

            # Titles with no ASCII letters or digits normalize to "" and only match by URL
            has_title_key = bool(title_key.strip())
            match: Optional[Article] = by_url.get(url_slot)
            if match is None and has_title_key:
                match = by_title.get(title_slot)
            if match is not None:
                if match.id in seen_ids:
                    # An earlier candidate in this run already resolved to it
                    self.stats["current_run_filtered"] += 1
                    continue
                if url_slot in by_url:
                    self.stats["url_filtered"] += 1
                else:
                    self.stats["title_filtered"] += 1
                seen_ids.add(match.id)
                result.known.append(match)
                result.ordered.append(match)
                continue

            article = Article.from_candidate(candidate, self.id_factory(), created_at)
            seen_ids.add(article.id)
            by_url[url_slot] = article
            if has_title_key:
                by_title[title_slot] = article
            result.new.append(article)
            result.ordered.append(article)
            self.stats["new_articles"] += 1

        self.logger.info(
            f"Dedup: {len(candidates)} candidates -> {len(result.known)} known, {len(result.new)} new"
        )
        return result

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)

    def reset_statistics(self) -> None:
        for k in list(self.stats.keys()):
            self.stats[k] = 0
