"""
Content models for the digest engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import List, Optional


class DeliverySchedule(str, Enum):
    """How often a subscriber receives a digest."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"


@dataclass
class Topic:
    """A followed topic (shared between subscribers)."""

    id: str
    name: str
    created_at: Optional[datetime] = None


@dataclass
class SubscriberTopic:
    """Association row linking a subscriber to one topic."""

    subscriber_id: str
    topic_id: str
    name: str
    created_at: Optional[datetime] = None


@dataclass
class Subscriber:
    """A digest recipient together with the topics they follow."""

    id: str
    email: str
    name: str
    plan: Plan = Plan.FREE
    delivery_schedule: DeliverySchedule = DeliverySchedule.DAILY
    last_sent: Optional[datetime] = None
    preferred_send_time: Optional[time] = None
    is_admin: bool = False
    created_at: Optional[datetime] = None
    topics: List[Topic] = field(default_factory=list)

    @property
    def topic_ids(self) -> List[str]:
        return [t.id for t in self.topics]


@dataclass
class CandidateArticle:
    """An article returned by the search provider, before dedup/persistence."""

    title: str
    topic_id: str
    normalized_title: str
    snippet: str
    url: str
    normalized_url: str
    domain: str
    source: str
    published_date: datetime


@dataclass
class Article:
    """A stored article (a candidate that was assigned an identity)."""

    id: str
    topic_id: str
    title: str
    normalized_title: str
    snippet: str
    url: str
    normalized_url: str
    domain: str
    source: str
    published_date: datetime
    created_at: datetime

    @classmethod
    def from_candidate(cls, candidate: CandidateArticle, article_id: str, created_at: datetime) -> "Article":
        return cls(
            id=article_id,
            topic_id=candidate.topic_id,
            title=candidate.title,
            normalized_title=candidate.normalized_title,
            snippet=candidate.snippet,
            url=candidate.url,
            normalized_url=candidate.normalized_url,
            domain=candidate.domain,
            source=candidate.source,
            published_date=candidate.published_date,
            created_at=created_at,
        )


@dataclass
class DeliveryLog:
    """Append-only audit record of one send attempt."""

    subscriber_id: str
    sent_date: datetime
    articles_sent: List[str]
    success: bool
    id: Optional[str] = None
