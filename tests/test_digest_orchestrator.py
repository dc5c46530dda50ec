import asyncio
import json
from datetime import datetime, timedelta, timezone

from catchup.models.content import CandidateArticle, DeliverySchedule
from catchup.pipeline.digest_orchestrator import DigestOrchestrator, OrchestratorConfig
from catchup.services.deduplication_service import extract_domain, normalize_title, normalize_url
from catchup.services.email_service import EmailServiceError
from catchup.services.storage_service import StorageError, StorageService

# Inside the default 17:00 send window
NOW = datetime(2025, 1, 28, 17, 0, tzinfo=timezone.utc)


def _candidate(topic_id, title, hours_old):
    url = f"https://www.news.com/{topic_id}/{title.replace(' ', '-').lower()}"
    return CandidateArticle(
        title=title,
        topic_id=topic_id,
        normalized_title=normalize_title(title),
        snippet=f"About {title}",
        url=url,
        normalized_url=normalize_url(url),
        domain=extract_domain(url),
        source=extract_domain(url),
        published_date=NOW - timedelta(hours=hours_old),
    )


class FakeFetcher:
    def __init__(self, by_topic_name):
        self.by_topic_name = by_topic_name
        self.calls = []

    async def fetch_topic_articles(self, topic_name, topic_id, max_results=10, now=None):
        self.calls.append(topic_name)
        return [_candidate(topic_id, title, age) for title, age in self.by_topic_name.get(topic_name, [])]


class FakeEmail:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    async def send_email(self, to, subject, html, text):
        if to in self.failing:
            raise EmailServiceError(f"SMTP send failed: mailbox unavailable for {to}")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return f"<{len(self.sent)}@usecatchup.xyz>"


class FailingStorage:
    async def get_subscribers_with_topics(self):
        raise StorageError("Query failed: database is locked")


async def _no_sleep(seconds):
    return None


def _orchestrator(storage, fetcher, email, monotonic=None, **config):
    return DigestOrchestrator(
        storage=storage,
        fetcher=fetcher,
        email=email,
        config=OrchestratorConfig(**config),
        now=lambda: NOW,
        monotonic=monotonic or (lambda: 0.0),
        sleep=_no_sleep,
    )


async def _seed(storage, subscribers):
    """``subscribers``: list of (email, [topic names])"""
    await storage.initialize_db()
    topics = {}
    created = []
    for email, names in subscribers:
        ids = []
        for name in names:
            if name not in topics:
                topics[name] = await storage.create_topic(name)
            ids.append(topics[name].id)
        created.append(await storage.create_subscriber(email, email.split("@")[0], topic_ids=ids))
    return topics, created


DEFAULT_FEED = {
    "AI": [("Model release", 2), ("Chip shortage", 5), ("Robot hands", 1), ("Stale story", 30)],
    "Space": [("Rocket launch", 3)],
}


def test_end_to_end_daily_digest(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)
    email = FakeEmail()

    async def scenario():
        topics, (sub,) = await _seed(storage, [("s@example.com", ["AI", "Space"])])
        summary = await _orchestrator(storage, fetcher, email).run_digest_cycle()
        return topics, sub, summary

    topics, sub, summary = asyncio.run(scenario())

    assert summary.success
    assert summary.due_subscribers == 1
    assert summary.articles_fetched == 4
    assert summary.new_articles == 4
    assert summary.successful == 1
    assert summary.failed == 0
    assert not summary.stopped_early

    sent = email.sent[0]
    assert sent["to"] == "s@example.com"
    assert sent["subject"] == "catchup on your topics (01/27 - 01/28)"
    assert "📢 AI" in sent["html"]
    assert "📢 Space" in sent["html"]
    assert "Stale story" not in sent["html"]
    # Newest first within a topic
    assert sent["html"].index("Robot hands") < sent["html"].index("Model release") < sent["html"].index("Chip shortage")

    async def check():
        stored_sub = await storage.get_subscriber(sub.id)
        logs = await storage.get_delivery_logs(sub.id)
        articles = await storage.get_all_articles()
        return stored_sub, logs, articles

    stored_sub, logs, articles = asyncio.run(check())
    assert stored_sub.last_sent == NOW
    assert len(logs) == 1
    assert logs[0].success
    assert sorted(logs[0].articles_sent) == sorted(a.id for a in articles)
    assert len(articles) == 4


def test_second_run_reuses_stored_articles(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)
    email = FakeEmail()

    async def scenario():
        await _seed(storage, [("s@example.com", ["AI", "Space"])])
        orchestrator = _orchestrator(storage, fetcher, email)
        first = await orchestrator.run_digest_cycle()
        second = await orchestrator.run_digest_cycle(force=True)
        return first, second, await storage.get_all_articles(), await storage.get_delivery_logs()

    first, second, articles, logs = asyncio.run(scenario())

    assert first.new_articles == 4
    assert second.new_articles == 0
    assert second.successful == 1
    assert len(articles) == 4
    assert sorted(logs[0].articles_sent) == sorted(logs[1].articles_sent)


def test_shared_topic_goes_to_every_follower(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)
    email = FakeEmail()

    async def scenario():
        await _seed(storage, [("a@example.com", ["AI"]), ("b@example.com", ["AI", "Space"])])
        return await _orchestrator(storage, fetcher, email).run_digest_cycle()

    summary = asyncio.run(scenario())

    assert summary.successful == 2
    # One search per distinct topic
    assert sorted(fetcher.calls) == ["AI", "Space"]
    by_recipient = {m["to"]: m["html"] for m in email.sent}
    assert "Rocket launch" not in by_recipient["a@example.com"]
    assert "Model release" in by_recipient["a@example.com"]
    assert "Rocket launch" in by_recipient["b@example.com"]


def test_failed_send_keeps_subscriber_due(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    email = FakeEmail(failing={"bad@example.com"})

    async def scenario():
        _, subs = await _seed(storage, [("good@example.com", ["AI"]), ("bad@example.com", ["AI"])])
        summary = await _orchestrator(storage, FakeFetcher(DEFAULT_FEED), email).run_digest_cycle()
        bad = await storage.get_subscriber_by_email("bad@example.com")
        good = await storage.get_subscriber_by_email("good@example.com")
        return summary, bad, good, await storage.get_delivery_logs(bad.id)

    summary, bad, good, bad_logs = asyncio.run(scenario())

    assert summary.success
    assert summary.successful == 1
    assert summary.failed == 1
    failed = [r for r in summary.email_results if not r.success]
    assert failed[0].email == "bad@example.com"
    assert "mailbox unavailable" in failed[0].error
    assert bad.last_sent is None
    assert good.last_sent == NOW
    assert len(bad_logs) == 1
    assert bad_logs[0].success is False
    assert bad_logs[0].articles_sent == []


def test_nobody_due(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)

    async def scenario():
        _, (sub,) = await _seed(storage, [("s@example.com", ["AI"])])
        await storage.update_subscriber(sub.id, last_sent=NOW - timedelta(hours=2))
        return await _orchestrator(storage, fetcher, FakeEmail()).run_digest_cycle()

    summary = asyncio.run(scenario())

    assert summary.success
    assert summary.message == "No subscribers due for digest"
    assert summary.due_subscribers == 0
    assert fetcher.calls == []


def test_subscriber_without_topics_is_skipped_even_when_forced(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    email = FakeEmail()

    async def scenario():
        await _seed(storage, [("empty@example.com", [])])
        return await _orchestrator(storage, FakeFetcher({}), email).run_digest_cycle(force=True)

    summary = asyncio.run(scenario())

    assert summary.due_subscribers == 0
    assert email.sent == []


def test_empty_fetch_sends_caught_up_digest(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    email = FakeEmail()

    async def scenario():
        await _seed(storage, [("s@example.com", ["AI"])])
        return await _orchestrator(storage, FakeFetcher({}), email).run_digest_cycle()

    summary = asyncio.run(scenario())

    assert summary.successful == 1
    assert "all caught up" in email.sent[0]["html"]


def test_budget_exceeded_stops_before_fetch(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)
    email = FakeEmail()
    ticks = iter([0.0])

    async def scenario():
        await _seed(storage, [("s@example.com", ["AI"])])
        orchestrator = _orchestrator(
            storage, fetcher, email, monotonic=lambda: next(ticks, 600.0), max_execution_seconds=480
        )
        return await orchestrator.run_digest_cycle()

    summary = asyncio.run(scenario())

    assert summary.success
    assert summary.stopped_early
    assert summary.due_subscribers == 1
    assert fetcher.calls == []
    assert email.sent == []
    assert summary.execution_time == 600000.0


def test_storage_failure_fails_the_run():
    summary = asyncio.run(_orchestrator(FailingStorage(), FakeFetcher({}), FakeEmail()).run_digest_cycle())

    assert not summary.success
    assert summary.error == "Query failed: database is locked"
    assert summary.successful == 0


def test_dry_run_renders_without_sending_or_recording(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    email = FakeEmail()

    async def scenario():
        _, (sub,) = await _seed(storage, [("s@example.com", ["AI"])])
        summary = await _orchestrator(storage, FakeFetcher(DEFAULT_FEED), email, dry_run=True).run_digest_cycle()
        return summary, await storage.get_subscriber(sub.id), await storage.get_delivery_logs()

    summary, sub, logs = asyncio.run(scenario())

    assert summary.successful == 1
    assert summary.dry_run
    assert email.sent == []
    assert sub.last_sent is None
    assert logs == []


def test_summary_is_json_ready_and_previews_results(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    email = FakeEmail()

    async def scenario():
        await _seed(storage, [(f"user{i}@example.com", ["AI"]) for i in range(12)])
        return await _orchestrator(
            storage, FakeFetcher(DEFAULT_FEED), email, email_send_batch_size=5
        ).run_digest_cycle()

    summary = asyncio.run(scenario())
    data = summary.to_dict()

    assert summary.successful == 12
    assert len(data["email_results"]) == 10
    assert data["schedule_info"][0]["delivery_schedule"] == DeliverySchedule.DAILY.value
    assert data["schedule_info"][0]["should_send"] is True
    json.dumps(data)


def test_fetch_topic_preview(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)

    async def scenario():
        topics, _ = await _seed(storage, [("s@example.com", ["AI"])])
        orchestrator = _orchestrator(storage, fetcher, FakeEmail())
        missing = await orchestrator.fetch_topic_preview("no-such-topic", 10)
        preview = await orchestrator.fetch_topic_preview(topics["AI"].id, 10)
        again = await orchestrator.fetch_topic_preview(topics["AI"].id, 10)
        return missing, preview, again, await storage.get_all_articles()

    missing, preview, again, articles = asyncio.run(scenario())

    assert missing is None
    assert preview.topic.name == "AI"
    assert len(preview.candidates) == 4
    assert len(preview.new_articles) == 4
    assert again.new_articles == []
    assert len(articles) == 4


def test_budget_exceeded_after_fetch_stops_before_send(tmp_path):
    storage = StorageService(str(tmp_path / "catchup.db"))
    fetcher = FakeFetcher(DEFAULT_FEED)
    email = FakeEmail()
    # Run start and the pre-fetch check stay in budget; the pre-send check does not
    ticks = iter([0.0, 0.0])

    async def scenario():
        await _seed(storage, [("s@example.com", ["AI"])])
        orchestrator = _orchestrator(
            storage, fetcher, email, monotonic=lambda: next(ticks, 600.0), max_execution_seconds=480
        )
        summary = await orchestrator.run_digest_cycle()
        return summary, await storage.get_subscriber_by_email("s@example.com")

    summary, subscriber = asyncio.run(scenario())

    assert summary.success
    assert summary.stopped_early
    assert fetcher.calls == ["AI"]
    assert summary.new_articles == 3
    assert email.sent == []
    assert summary.successful == 0
    assert subscriber.last_sent is None


class AuditFailingStorage(StorageService):
    async def log_delivery(self, log):
        if not log.success:
            raise StorageError("Insert failed: disk I/O error")
        return await super().log_delivery(log)


def test_failed_audit_log_does_not_abort_the_batch(tmp_path):
    storage = AuditFailingStorage(str(tmp_path / "catchup.db"))
    email = FakeEmail(failing={"bad@example.com"})

    async def scenario():
        await _seed(storage, [("bad@example.com", ["AI"]), ("good@example.com", ["AI"])])
        summary = await _orchestrator(storage, FakeFetcher(DEFAULT_FEED), email).run_digest_cycle()
        good = await storage.get_subscriber_by_email("good@example.com")
        return summary, good

    summary, good = asyncio.run(scenario())

    assert summary.success
    assert summary.successful == 1
    assert summary.failed == 1
    assert [m["to"] for m in email.sent] == ["good@example.com"]
    assert good.last_sent == NOW


def test_phase_metrics_carry_tracked_durations(tmp_path, caplog):
    caplog.set_level("INFO", logger="catchup.pipeline.digest_orchestrator")
    storage = StorageService(str(tmp_path / "catchup.db"))

    async def scenario():
        await _seed(storage, [("s@example.com", ["AI", "Space"])])
        return await _orchestrator(storage, FakeFetcher(DEFAULT_FEED), FakeEmail()).run_digest_cycle()

    summary = asyncio.run(scenario())

    metrics = {r.metrics["stage"]: r.metrics for r in caplog.records if hasattr(r, "metrics")}
    assert metrics["fetch"]["in"] == 2
    assert metrics["fetch"]["out"] == summary.articles_fetched
    assert metrics["fetch"]["duration_ms"] == round(summary.fetch_time, 1)
    assert metrics["dedup"]["duration_ms"] == round(summary.dedup_time, 1)
    assert metrics["send"]["out"] == 1
    assert metrics["send"]["duration_ms"] == round(summary.send_time, 1)
