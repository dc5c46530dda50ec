"""
One digest cycle: select due subscribers, fetch and dedup topic articles,
then render and send each subscriber's digest.

    load subscribers -> select due -> [budget] -> fetch -> dedup/store
        -> assign -> [budget] -> send -> summary

The summary is always produced, including on early exit and on failure.
Provider errors (search, email) only affect the topic or subscriber they
belong to; storage errors end the run.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from datetime import time as dt_time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from catchup.models.content import Article, CandidateArticle, DeliveryLog, Subscriber, Topic
from catchup.pipeline.batch_runner import BatchExecutionError, process_in_batches
from catchup.pipeline.digest_compiler import DigestCompiler
from catchup.services.article_fetcher import ArticleFetcher
from catchup.services.deduplication_service import DeduplicationService
from catchup.services.email_service import EmailService
from catchup.services.schedule_service import ScheduleService
from catchup.services.storage_service import StorageError, StorageService
from catchup.utils.date_parser import DateParser
from catchup.utils.logging_config import PerformanceTracker, log_pipeline_metrics

EMAIL_RESULTS_PREVIEW = 10


@dataclass
class OrchestratorConfig:
    """Batching, budget and content limits for one run"""
    max_execution_seconds: float = 8 * 60  # platform hard limit is 10 minutes
    article_fetch_batch_size: int = 5
    article_fetch_delay_seconds: float = 0.0
    email_send_batch_size: int = 10
    email_send_delay_seconds: float = 1.0
    article_store_batch_size: int = 50
    fetch_max_results: int = 10
    articles_per_topic: int = 3
    max_article_age_hours: int = 24
    dry_run: bool = False


@dataclass
class DeliveryResult:
    subscriber_id: str
    email: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    articles_sent: int = 0


@dataclass
class RunSummary:
    """Outcome of one digest cycle"""
    success: bool = True
    message: str = ""
    error: Optional[str] = None
    stopped_early: bool = False
    forced: bool = False
    dry_run: bool = False

    total_subscribers: int = 0
    due_subscribers: int = 0
    topics_fetched: int = 0
    articles_fetched: int = 0
    new_articles: int = 0
    successful: int = 0
    failed: int = 0

    # Stage timings (ms)
    fetch_time: float = 0.0
    dedup_time: float = 0.0
    send_time: float = 0.0
    execution_time: float = 0.0

    schedule_info: List[Dict[str, Any]] = field(default_factory=list)
    email_results: List[DeliveryResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["email_results"] = data["email_results"][:EMAIL_RESULTS_PREVIEW]
        return _jsonable(data)


@dataclass
class TopicFetchPreview:
    topic: Topic
    candidates: List[CandidateArticle]
    new_articles: List[Article]


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.strftime("%H:%M")
    if isinstance(value, Enum):
        return value.value
    return value


class DigestOrchestrator:
    """
    Runs digest cycles against injected collaborators.

    Concurrent runs are not safe and must be serialized by the caller.
    """

    def __init__(
        self,
        storage: StorageService,
        fetcher: ArticleFetcher,
        email: Optional[EmailService],
        compiler: Optional[DigestCompiler] = None,
        schedule: Optional[ScheduleService] = None,
        deduplication: Optional[DeduplicationService] = None,
        config: Optional[OrchestratorConfig] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.fetcher = fetcher
        self.email = email
        self.compiler = compiler or DigestCompiler()
        self.schedule = schedule or ScheduleService()
        self.deduplication = deduplication or DeduplicationService(clock=now)
        self.config = config or OrchestratorConfig()
        self.now = now
        self.monotonic = monotonic
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    async def run_digest_cycle(self, force: bool = False) -> RunSummary:
        """
        Execute one complete digest cycle.

        With ``force`` the schedule is ignored and every subscriber with at
        least one topic receives a digest.
        """
        start = self.monotonic()
        summary = RunSummary(forced=force, dry_run=self.config.dry_run)
        self.logger.info("Starting scheduled digest job...")

        try:
            await self._execute(summary, start, force)
        except Exception as exc:  # noqa: BLE001
            summary.success = False
            summary.error = self._describe_failure(exc)
            summary.message = "Digest run failed"
            self.logger.error(f"Digest run failed: {summary.error}", exc_info=True)
        finally:
            summary.execution_time = (self.monotonic() - start) * 1000

        self.logger.info(
            f"Digest job completed: {summary.successful} successful, {summary.failed} failed, "
            f"{summary.execution_time:.0f}ms"
        )
        return summary

    async def _execute(self, summary: RunSummary, start: float, force: bool) -> None:
        subscribers = await self.storage.get_subscribers_with_topics()
        summary.total_subscribers = len(subscribers)
        self.logger.info(f"Found {len(subscribers)} total subscribers")

        now = self.now()
        if force:
            due = [s for s in subscribers if s.topics]
        else:
            due = self.schedule.get_due_subscribers(subscribers, now)
        summary.due_subscribers = len(due)
        self.logger.info(f"{len(due)} subscribers are due for digest")

        if not due:
            summary.message = "No subscribers due for digest"
            return

        summary.schedule_info = [self._schedule_entry(s, now) for s in due]

        if self._over_budget(start):
            self._stop_early(summary)
            return

        with PerformanceTracker("fetch", self.logger) as tracker:
            candidates = await self._fetch_phase(due, summary)
        summary.fetch_time = tracker.duration_ms
        log_pipeline_metrics(
            self.logger, "fetch", summary.topics_fetched, summary.articles_fetched, tracker.duration_ms
        )

        with PerformanceTracker("dedup", self.logger) as tracker:
            articles = await self._dedup_phase(candidates, summary)
        summary.dedup_time = tracker.duration_ms
        log_pipeline_metrics(
            self.logger, "dedup", len(candidates), summary.new_articles, tracker.duration_ms,
            **self.deduplication.get_statistics(),
        )

        assignments = self._assign_articles(due, articles)

        if self._over_budget(start):
            self._stop_early(summary)
            return

        with PerformanceTracker("send", self.logger) as tracker:
            await self._send_phase(due, assignments, summary)
        summary.send_time = tracker.duration_ms
        log_pipeline_metrics(
            self.logger, "send", len(due), summary.successful, tracker.duration_ms, failed=summary.failed
        )

        summary.message = f"Sent {summary.successful} digests ({summary.failed} failed)"

    def _over_budget(self, start: float) -> bool:
        return self.monotonic() - start > self.config.max_execution_seconds

    def _stop_early(self, summary: RunSummary) -> None:
        self.logger.warning("Approaching execution time limit, stopping early")
        summary.stopped_early = True
        summary.message = "Stopped early due to time constraints"

    def _schedule_entry(self, subscriber: Subscriber, now: datetime) -> Dict[str, Any]:
        is_due = self.schedule.is_subscriber_due(subscriber, now)
        is_right_time = self.schedule.is_right_time_to_send(subscriber, now)
        return {
            "id": subscriber.id,
            "email": subscriber.email,
            "name": subscriber.name,
            "delivery_schedule": subscriber.delivery_schedule,
            "last_sent": subscriber.last_sent,
            "preferred_send_time": subscriber.preferred_send_time,
            "topics_count": len(subscriber.topics),
            "is_due": is_due,
            "is_right_time": is_right_time,
            "should_send": is_due and is_right_time,
            "next_run_time": self.schedule.get_next_run_time(subscriber, now),
            "default_preferred_time": self.schedule.get_preferred_send_time(subscriber),
        }

    # Fetch

    async def _fetch_phase(self, due: List[Subscriber], summary: RunSummary) -> List[CandidateArticle]:
        unique_topics: Dict[str, str] = {}
        for subscriber in due:
            for topic in subscriber.topics:
                unique_topics.setdefault(topic.id, topic.name)
        summary.topics_fetched = len(unique_topics)

        async def fetch(entry) -> List[CandidateArticle]:
            topic_id, topic_name = entry
            articles = await self.fetcher.fetch_topic_articles(
                topic_name, topic_id, self.config.fetch_max_results, now=self.now()
            )
            return self._select_recent(articles)

        per_topic = await process_in_batches(
            list(unique_topics.items()),
            self.config.article_fetch_batch_size,
            fetch,
            self.config.article_fetch_delay_seconds,
            sleep=self.sleep,
        )
        candidates = [a for topic_articles in per_topic for a in topic_articles]
        summary.articles_fetched = len(candidates)
        return candidates

    def _select_recent(self, articles: List[CandidateArticle]) -> List[CandidateArticle]:
        """Articles at most ``max_article_age_hours`` old, newest first, capped per topic."""
        now = self.now()
        recent = [
            a for a in articles
            if DateParser.time_diff_from_now(a.published_date, now).hours <= self.config.max_article_age_hours
        ]
        recent.sort(key=lambda a: a.published_date, reverse=True)
        return recent[:self.config.articles_per_topic]

    # Dedup

    async def _dedup_phase(self, candidates: List[CandidateArticle], summary: RunSummary) -> List[Article]:
        if not candidates:
            self.deduplication.reset_statistics()
            return []

        existing = await self.storage.get_articles_by_title_or_url(
            [c.title for c in candidates],
            [c.normalized_url for c in candidates],
        )
        result = self.deduplication.partition(candidates, existing)
        summary.new_articles = len(result.new)

        await self._store_articles(result.new)
        return result.ordered

    async def _store_articles(self, articles: List[Article]) -> None:
        if not articles:
            return
        size = self.config.article_store_batch_size
        chunks = [articles[i:i + size] for i in range(0, len(articles), size)]
        # One insert at a time; local writes need no delay
        await process_in_batches(chunks, 1, self.storage.add_articles, sleep=self.sleep)

    # Assign

    @staticmethod
    def _assign_articles(due: List[Subscriber], articles: List[Article]) -> Dict[str, List[Article]]:
        subscribers_by_topic: Dict[str, List[str]] = {}
        for subscriber in due:
            for topic_id in dict.fromkeys(subscriber.topic_ids):
                subscribers_by_topic.setdefault(topic_id, []).append(subscriber.id)

        assignments: Dict[str, List[Article]] = {s.id: [] for s in due}
        assigned_ids: Dict[str, set] = {s.id: set() for s in due}
        for article in articles:
            for subscriber_id in subscribers_by_topic.get(article.topic_id, []):
                if article.id in assigned_ids[subscriber_id]:
                    continue
                assigned_ids[subscriber_id].add(article.id)
                assignments[subscriber_id].append(article)
        return assignments

    # Send

    async def _send_phase(
        self, due: List[Subscriber], assignments: Dict[str, List[Article]], summary: RunSummary
    ) -> None:
        async def deliver(subscriber: Subscriber) -> DeliveryResult:
            return await self._deliver(subscriber, assignments.get(subscriber.id, []))

        try:
            results = await process_in_batches(
                due,
                self.config.email_send_batch_size,
                deliver,
                self.config.email_send_delay_seconds,
                sleep=self.sleep,
            )
        except BatchExecutionError as err:
            self._record_results(summary, [r for r in err.results if r is not None])
            raise
        self._record_results(summary, results)

    @staticmethod
    def _record_results(summary: RunSummary, results: List[DeliveryResult]) -> None:
        summary.email_results = results
        summary.successful = sum(1 for r in results if r.success)
        summary.failed = len(results) - summary.successful

    async def _deliver(self, subscriber: Subscriber, articles: List[Article]) -> DeliveryResult:
        """
        Render and send one digest.

        Transport and render failures become a failed result plus a failed
        delivery log; ``last_sent`` only moves forward after a successful
        send, so a failed subscriber stays due.
        """
        now = self.now()
        try:
            rendered = self.compiler.render(subscriber.topics, articles, now=now)
            subject = self.compiler.subject_line(now)
            if self.config.dry_run:
                self.logger.info(f"Dry run: skipping send to {subscriber.email}")
                return DeliveryResult(subscriber.id, subscriber.email, True, articles_sent=len(articles))
            message_id = await self.email.send_email(subscriber.email, subject, rendered.html, rendered.text)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(f"Failed to send digest to {subscriber.email}: {exc}")
            await self._log_failed_delivery(subscriber)
            return DeliveryResult(subscriber.id, subscriber.email, False, error=str(exc))

        sent_at = self.now()
        await self.storage.update_subscriber(subscriber.id, last_sent=sent_at)
        await self.storage.log_delivery(
            DeliveryLog(
                subscriber_id=subscriber.id,
                sent_date=sent_at,
                articles_sent=[a.id for a in articles],
                success=True,
            )
        )
        self.logger.info(f"Successfully sent digest to {subscriber.email}")
        return DeliveryResult(
            subscriber.id, subscriber.email, True, message_id=message_id, articles_sent=len(articles)
        )

    async def _log_failed_delivery(self, subscriber: Subscriber) -> None:
        try:
            await self.storage.log_delivery(
                DeliveryLog(subscriber_id=subscriber.id, sent_date=self.now(), articles_sent=[], success=False)
            )
        except StorageError as exc:
            self.logger.error(f"Failed to log delivery for {subscriber.email}: {exc}")

    @staticmethod
    def _describe_failure(exc: Exception) -> str:
        if isinstance(exc, BatchExecutionError):
            return str(exc.errors[0][1])
        return str(exc) or exc.__class__.__name__

    # Single topic

    async def fetch_topic_preview(self, topic_id: str, max_results: int = 10) -> Optional[TopicFetchPreview]:
        """Fetch one stored topic now and store whatever is new; ``None`` if the topic is unknown."""
        topic = await self.storage.get_topic(topic_id)
        if topic is None:
            return None

        candidates = await self.fetcher.fetch_topic_articles(topic.name, topic.id, max_results)
        if not candidates:
            self.logger.info(f"No new articles found for topic {topic.name}")
            return TopicFetchPreview(topic=topic, candidates=[], new_articles=[])

        existing = await self.storage.get_articles_by_title_or_url(
            [c.title for c in candidates], [c.normalized_url for c in candidates]
        )
        result = self.deduplication.partition(candidates, existing)
        await self._store_articles(result.new)
        self.logger.info(f"Fetched and stored {len(result.new)} articles for topic {topic.name}")
        return TopicFetchPreview(topic=topic, candidates=candidates, new_articles=result.new)
