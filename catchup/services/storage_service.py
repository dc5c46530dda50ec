from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite
from dateutil.parser import isoparse

from catchup.models.content import (
    Article,
    DeliveryLog,
    DeliverySchedule,
    Plan,
    Subscriber,
    SubscriberTopic,
    Topic,
)

# Stay well below SQLite's host-parameter limit in IN (...) lookups
_IN_CHUNK = 300

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS subscribers (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        plan TEXT NOT NULL DEFAULT 'free',
        delivery_schedule TEXT NOT NULL DEFAULT 'daily',
        last_sent TEXT,
        preferred_send_time TEXT,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS topics (
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE NOT NULL,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriber_topics (
        subscriber_id TEXT NOT NULL REFERENCES subscribers(id) ON DELETE CASCADE,
        topic_id TEXT NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (subscriber_id, topic_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS articles (
        id TEXT PRIMARY KEY,
        topic_id TEXT NOT NULL,
        title TEXT NOT NULL,
        normalized_title TEXT NOT NULL,
        snippet TEXT,
        url TEXT NOT NULL,
        normalized_url TEXT NOT NULL,
        domain TEXT,
        source TEXT,
        published_date TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS delivery_logs (
        id TEXT PRIMARY KEY,
        subscriber_id TEXT NOT NULL,
        sent_date TEXT NOT NULL,
        articles_sent_json TEXT NOT NULL,
        success INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_articles_title ON articles(title);",
    "CREATE INDEX IF NOT EXISTS idx_articles_normalized_url ON articles(normalized_url);",
    "CREATE INDEX IF NOT EXISTS idx_articles_normalized_title ON articles(normalized_title);",
    "CREATE INDEX IF NOT EXISTS idx_delivery_logs_subscriber ON delivery_logs(subscriber_id, sent_date);",
]

SUBSCRIBER_FIELDS = {
    "email", "name", "plan", "delivery_schedule", "last_sent",
    "preferred_send_time", "is_admin",
}
TOPIC_FIELDS = {"name"}
ARTICLE_FIELDS = {
    "topic_id", "title", "normalized_title", "snippet", "url", "normalized_url",
    "domain", "source", "published_date",
}


class StorageError(Exception):
    """Raised when the record store cannot complete an operation."""
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# Row <-> record field mapping

def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, (DeliverySchedule, Plan)):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_time(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    hour, _, minute = value.partition(":")
    return time(int(hour), int(minute or 0))


def _subscriber_from_row(row: aiosqlite.Row) -> Subscriber:
    return Subscriber(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        plan=Plan(row["plan"]),
        delivery_schedule=DeliverySchedule(row["delivery_schedule"]),
        last_sent=_parse_dt(row["last_sent"]),
        preferred_send_time=_parse_time(row["preferred_send_time"]),
        is_admin=bool(row["is_admin"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _topic_from_row(row: aiosqlite.Row) -> Topic:
    return Topic(id=row["id"], name=row["name"], created_at=_parse_dt(row["created_at"]))


def _article_from_row(row: aiosqlite.Row) -> Article:
    return Article(
        id=row["id"],
        topic_id=row["topic_id"],
        title=row["title"],
        normalized_title=row["normalized_title"],
        snippet=row["snippet"] or "",
        url=row["url"],
        normalized_url=row["normalized_url"],
        domain=row["domain"] or "",
        source=row["source"] or "",
        published_date=_parse_dt(row["published_date"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _delivery_log_from_row(row: aiosqlite.Row) -> DeliveryLog:
    return DeliveryLog(
        id=row["id"],
        subscriber_id=row["subscriber_id"],
        sent_date=_parse_dt(row["sent_date"]),
        articles_sent=json.loads(row["articles_sent_json"] or "[]"),
        success=bool(row["success"]),
    )


def _article_params(article: Article) -> tuple:
    return (
        article.id,
        article.topic_id,
        article.title,
        article.normalized_title,
        article.snippet,
        article.url,
        article.normalized_url,
        article.domain,
        article.source,
        _to_db(article.published_date),
        _to_db(article.created_at),
    )


def _chunks(values: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


class StorageService:
    """
    SQLite record store for subscribers, topics, subscriber/topic links,
    articles and delivery logs.

    Not-found lookups return ``None``; every other database failure is
    raised as :class:`StorageError`.
    """

    def __init__(self, db_path: str = "data/catchup.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        # Call await initialize_db() after constructing.

    async def initialize_db(self) -> None:
        """Create tables and indexes."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                for statement in SCHEMA:
                    await db.execute(statement)
                await db.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to initialize database: {exc}") from exc

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(sql, tuple(params))
                return list(await cur.fetchall())
        except sqlite3.Error as exc:
            raise StorageError(f"Query failed: {exc}") from exc

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA foreign_keys = ON")
                cur = await db.execute(sql, tuple(params))
                await db.commit()
                return cur.rowcount
        except sqlite3.Error as exc:
            raise StorageError(f"Write failed: {exc}") from exc

    async def _executemany(self, sql: str, rows: List[tuple]) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany(sql, rows)
                await db.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Batch write failed: {exc}") from exc

    async def _update(self, table: str, record_id: str, data: Dict[str, Any], allowed: set) -> int:
        unknown = set(data) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} fields: {sorted(unknown)}")
        if not data:
            return 0
        assignments = ", ".join(f"{key} = ?" for key in data)
        params = [_to_db(v) for v in data.values()] + [record_id]
        return await self._execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)

    # Subscribers

    async def create_subscriber(
        self,
        email: str,
        name: str,
        plan: Plan = Plan.FREE,
        delivery_schedule: DeliverySchedule = DeliverySchedule.DAILY,
        preferred_send_time: Optional[time] = None,
        is_admin: bool = False,
        topic_ids: Optional[List[str]] = None,
    ) -> Subscriber:
        subscriber = Subscriber(
            id=_new_id(),
            email=email,
            name=name,
            plan=Plan(plan),
            delivery_schedule=DeliverySchedule(delivery_schedule),
            preferred_send_time=preferred_send_time,
            is_admin=is_admin,
            created_at=_now(),
        )
        await self._execute(
            """
            INSERT INTO subscribers (
                id, email, name, plan, delivery_schedule, last_sent,
                preferred_send_time, is_admin, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscriber.id,
                subscriber.email,
                subscriber.name,
                _to_db(subscriber.plan),
                _to_db(subscriber.delivery_schedule),
                None,
                _to_db(subscriber.preferred_send_time),
                _to_db(subscriber.is_admin),
                _to_db(subscriber.created_at),
            ),
        )
        for topic_id in topic_ids or []:
            await self.add_subscriber_to_topic(subscriber.id, topic_id)
        self.logger.info(f"Created subscriber {subscriber.email} ({subscriber.id})")
        return subscriber

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        row = await self._fetchone("SELECT * FROM subscribers WHERE id = ?", (subscriber_id,))
        return _subscriber_from_row(row) if row else None

    async def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        row = await self._fetchone("SELECT * FROM subscribers WHERE email = ?", (email,))
        return _subscriber_from_row(row) if row else None

    async def get_all_subscribers(self) -> List[Subscriber]:
        rows = await self._fetchall("SELECT * FROM subscribers ORDER BY created_at DESC")
        return [_subscriber_from_row(r) for r in rows]

    async def update_subscriber(self, subscriber_id: str, **data: Any) -> Optional[Subscriber]:
        await self._update("subscribers", subscriber_id, data, SUBSCRIBER_FIELDS)
        return await self.get_subscriber(subscriber_id)

    async def delete_subscriber(self, subscriber_id: str) -> bool:
        return await self._execute("DELETE FROM subscribers WHERE id = ?", (subscriber_id,)) > 0

    async def get_subscribers_with_topics(self) -> List[Subscriber]:
        """All subscribers, newest first, each carrying the topics they follow."""
        subscribers = await self.get_all_subscribers()
        rows = await self._fetchall(
            """
            SELECT st.subscriber_id, t.id, t.name, t.created_at
            FROM subscriber_topics st
            JOIN topics t ON t.id = st.topic_id
            ORDER BY st.created_at ASC, st.rowid ASC
            """
        )
        topics_by_subscriber: Dict[str, List[Topic]] = {}
        for row in rows:
            topics_by_subscriber.setdefault(row["subscriber_id"], []).append(_topic_from_row(row))
        for subscriber in subscribers:
            subscriber.topics = topics_by_subscriber.get(subscriber.id, [])
        return subscribers

    # Topics

    async def create_topic(self, name: str) -> Topic:
        topic = Topic(id=_new_id(), name=name, created_at=_now())
        await self._execute(
            "INSERT INTO topics (id, name, created_at) VALUES (?, ?, ?)",
            (topic.id, topic.name, _to_db(topic.created_at)),
        )
        return topic

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        row = await self._fetchone("SELECT * FROM topics WHERE id = ?", (topic_id,))
        return _topic_from_row(row) if row else None

    async def get_topic_by_name(self, name: str) -> Optional[Topic]:
        row = await self._fetchone("SELECT * FROM topics WHERE name = ?", (name,))
        return _topic_from_row(row) if row else None

    async def get_all_topics(self) -> List[Topic]:
        rows = await self._fetchall("SELECT * FROM topics ORDER BY created_at DESC")
        return [_topic_from_row(r) for r in rows]

    async def update_topic(self, topic_id: str, **data: Any) -> Optional[Topic]:
        await self._update("topics", topic_id, data, TOPIC_FIELDS)
        if "name" in data:
            await self._execute(
                "UPDATE subscriber_topics SET name = ? WHERE topic_id = ?", (data["name"], topic_id)
            )
        return await self.get_topic(topic_id)

    async def delete_topic(self, topic_id: str) -> bool:
        return await self._execute("DELETE FROM topics WHERE id = ?", (topic_id,)) > 0

    # Subscriber <-> topic links

    async def add_subscriber_to_topic(self, subscriber_id: str, topic_id: str) -> SubscriberTopic:
        topic = await self.get_topic(topic_id)
        if topic is None:
            raise StorageError(f"Topic {topic_id} does not exist")
        link = SubscriberTopic(
            subscriber_id=subscriber_id, topic_id=topic_id, name=topic.name, created_at=_now()
        )
        await self._execute(
            """
            INSERT OR IGNORE INTO subscriber_topics (subscriber_id, topic_id, name, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (link.subscriber_id, link.topic_id, link.name, _to_db(link.created_at)),
        )
        return link

    async def remove_subscriber_from_topic(self, subscriber_id: str, topic_id: str) -> bool:
        deleted = await self._execute(
            "DELETE FROM subscriber_topics WHERE subscriber_id = ? AND topic_id = ?",
            (subscriber_id, topic_id),
        )
        return deleted > 0

    async def get_all_subscriber_topics(self) -> List[SubscriberTopic]:
        rows = await self._fetchall("SELECT * FROM subscriber_topics ORDER BY created_at ASC")
        return [
            SubscriberTopic(
                subscriber_id=r["subscriber_id"],
                topic_id=r["topic_id"],
                name=r["name"],
                created_at=_parse_dt(r["created_at"]),
            )
            for r in rows
        ]

    # Articles

    async def add_article(self, article: Article) -> Article:
        await self.add_articles([article])
        return article

    async def add_articles(self, articles: List[Article]) -> List[Article]:
        if not articles:
            return []
        await self._executemany(
            """
            INSERT INTO articles (
                id, topic_id, title, normalized_title, snippet, url, normalized_url,
                domain, source, published_date, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [_article_params(a) for a in articles],
        )
        self.logger.debug(f"Stored {len(articles)} articles")
        return articles

    async def get_article(self, article_id: str) -> Optional[Article]:
        row = await self._fetchone("SELECT * FROM articles WHERE id = ?", (article_id,))
        return _article_from_row(row) if row else None

    async def get_articles_by_title_or_url(
        self, titles: List[str], normalized_urls: List[str]
    ) -> List[Article]:
        """Stored articles whose title or normalized URL is in the given sets, newest first."""
        found: Dict[str, Article] = {}
        for column, values in (("title", titles), ("normalized_url", normalized_urls)):
            unique = list(dict.fromkeys(v for v in values if v))
            for chunk in _chunks(unique, _IN_CHUNK):
                placeholders = ", ".join("?" for _ in chunk)
                rows = await self._fetchall(
                    f"SELECT * FROM articles WHERE {column} IN ({placeholders})", chunk
                )
                for row in rows:
                    found.setdefault(row["id"], _article_from_row(row))
        return sorted(found.values(), key=lambda a: a.published_date, reverse=True)

    async def get_all_articles(self) -> List[Article]:
        rows = await self._fetchall("SELECT * FROM articles ORDER BY published_date DESC")
        return [_article_from_row(r) for r in rows]

    async def update_article(self, article_id: str, **data: Any) -> Optional[Article]:
        await self._update("articles", article_id, data, ARTICLE_FIELDS)
        return await self.get_article(article_id)

    async def delete_article(self, article_id: str) -> bool:
        return await self._execute("DELETE FROM articles WHERE id = ?", (article_id,)) > 0

    # Delivery logs

    async def log_delivery(self, log: DeliveryLog) -> DeliveryLog:
        log.id = log.id or _new_id()
        await self._execute(
            """
            INSERT INTO delivery_logs (id, subscriber_id, sent_date, articles_sent_json, success)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                log.id,
                log.subscriber_id,
                _to_db(log.sent_date),
                json.dumps(log.articles_sent),
                _to_db(log.success),
            ),
        )
        return log

    async def get_delivery_logs(self, subscriber_id: Optional[str] = None) -> List[DeliveryLog]:
        if subscriber_id:
            rows = await self._fetchall(
                "SELECT * FROM delivery_logs WHERE subscriber_id = ? ORDER BY sent_date ASC",
                (subscriber_id,),
            )
        else:
            rows = await self._fetchall("SELECT * FROM delivery_logs ORDER BY sent_date ASC")
        return [_delivery_log_from_row(r) for r in rows]

    async def health_check(self) -> bool:
        await self._fetchone("SELECT 1")
        return True
