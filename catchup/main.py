#!/usr/bin/env python3
import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# Load environment variables from .env file
from dotenv import load_dotenv

from catchup.pipeline.digest_compiler import DigestCompiler
from catchup.pipeline.digest_orchestrator import DigestOrchestrator, OrchestratorConfig, RunSummary
from catchup.services.article_fetcher import ArticleFetcher
from catchup.services.deduplication_service import DeduplicationService
from catchup.services.email_service import EmailConfig, EmailService, EmailServiceError
from catchup.services.schedule_service import ScheduleService
from catchup.services.search_service import SerperSearchService
from catchup.services.storage_service import StorageError, StorageService
from catchup.utils.logging_config import setup_logging


@dataclass
class PipelineConfig:
    """Pipeline configuration"""
    serper_api_key: str

    # Email settings
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender_email: str = "noreply@usecatchup.xyz"
    reply_to: Optional[str] = None
    smtp_use_tls: bool = True

    # Paths
    database_path: str = "data/catchup.db"
    template_dir: Optional[str] = None
    log_dir: str = "logs"
    log_level: str = "INFO"
    log_format: str = "text"  # text or json
    display_timezone: str = "UTC"

    # Run budget and batching
    max_execution_minutes: int = 8  # platform hard cap is 10
    article_fetch_batch_size: int = 5
    email_send_batch_size: int = 10
    email_send_delay_seconds: float = 1.0
    article_store_batch_size: int = 50
    articles_per_topic: int = 3
    fetch_max_results: int = 10

    # Features
    dry_run: bool = False
    inline_css: bool = False


class PipelineError(Exception):
    """Custom exception for pipeline failures"""
    pass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def load_config() -> PipelineConfig:
    """Load configuration from environment"""
    return PipelineConfig(
        serper_api_key=os.getenv("SERPER_API_KEY", ""),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        sender_email=os.getenv("SENDER_EMAIL", "noreply@usecatchup.xyz"),
        reply_to=os.getenv("REPLY_TO_EMAIL"),
        smtp_use_tls=_env_flag("SMTP_USE_TLS", "true"),
        database_path=os.getenv("DATABASE_PATH", "data/catchup.db"),
        template_dir=os.getenv("TEMPLATE_DIR"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "text").lower(),
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "UTC"),
        max_execution_minutes=int(os.getenv("MAX_EXECUTION_MINUTES", "8")),
        article_fetch_batch_size=int(os.getenv("ARTICLE_FETCH_BATCH_SIZE", "5")),
        email_send_batch_size=int(os.getenv("EMAIL_SEND_BATCH_SIZE", "10")),
        email_send_delay_seconds=float(os.getenv("EMAIL_SEND_DELAY_SECONDS", "1.0")),
        article_store_batch_size=int(os.getenv("ARTICLE_STORE_BATCH_SIZE", "50")),
        articles_per_topic=int(os.getenv("ARTICLES_PER_TOPIC", "3")),
        fetch_max_results=int(os.getenv("FETCH_MAX_RESULTS", "10")),
        dry_run=_env_flag("DRY_RUN"),
        inline_css=_env_flag("INLINE_CSS"),
    )


class DigestApp:
    """
    Wires the configured services into a :class:`DigestOrchestrator`.

    Services are built lazily so ``--init-db`` and ``--health`` do not
    require search credentials.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.storage = StorageService(db_path=config.database_path)
        self._search: Optional[SerperSearchService] = None
        self._email: Optional[EmailService] = None

    async def init_db(self) -> None:
        Path(self.config.database_path).parent.mkdir(parents=True, exist_ok=True)
        await self.storage.initialize_db()

    def email_service(self) -> EmailService:
        if self._email is None:
            cfg = self.config
            if not cfg.smtp_user or not cfg.smtp_password:
                raise PipelineError("Missing SMTP credentials")
            self._email = EmailService(EmailConfig(
                smtp_host=cfg.smtp_host,
                smtp_port=cfg.smtp_port,
                smtp_user=cfg.smtp_user,
                smtp_password=cfg.smtp_password,
                from_email=cfg.sender_email,
                reply_to=cfg.reply_to,
                use_tls=cfg.smtp_use_tls,
            ))
        return self._email

    def search_service(self) -> SerperSearchService:
        if self._search is None:
            if not self.config.serper_api_key:
                raise PipelineError("Missing SERPER_API_KEY")
            self._search = SerperSearchService(api_key=self.config.serper_api_key)
        return self._search

    def build_orchestrator(self) -> DigestOrchestrator:
        cfg = self.config
        # A dry run renders but never talks to SMTP
        email = None if cfg.dry_run else self.email_service()
        return DigestOrchestrator(
            storage=self.storage,
            fetcher=ArticleFetcher(self.search_service()),
            email=email,
            compiler=DigestCompiler(
                template_dir=cfg.template_dir,
                display_timezone=cfg.display_timezone,
                inline_css=cfg.inline_css,
            ),
            schedule=ScheduleService(),
            deduplication=DeduplicationService(),
            config=OrchestratorConfig(
                max_execution_seconds=cfg.max_execution_minutes * 60,
                article_fetch_batch_size=cfg.article_fetch_batch_size,
                email_send_batch_size=cfg.email_send_batch_size,
                email_send_delay_seconds=cfg.email_send_delay_seconds,
                article_store_batch_size=cfg.article_store_batch_size,
                fetch_max_results=cfg.fetch_max_results,
                articles_per_topic=cfg.articles_per_topic,
                dry_run=cfg.dry_run,
            ),
        )

    async def run_once(self, force: bool = False) -> RunSummary:
        orchestrator = self.build_orchestrator()
        try:
            return await orchestrator.run_digest_cycle(force=force)
        finally:
            await self.close()

    async def fetch_topic(self, topic_id: str) -> Optional[Dict[str, Any]]:
        orchestrator = self.build_orchestrator()
        try:
            preview = await orchestrator.fetch_topic_preview(topic_id, self.config.fetch_max_results)
        finally:
            await self.close()
        if preview is None:
            return None
        return {
            "topic": preview.topic.name,
            "fetched": len(preview.candidates),
            "stored": len(preview.new_articles),
            "articles": [
                {"title": c.title, "url": c.url, "source": c.source, "published_date": c.published_date.isoformat()}
                for c in preview.candidates
            ],
        }

    async def health_check(self) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        try:
            results["database"] = await self.storage.health_check()
        except StorageError as e:
            self.logger.error(f"Database health check failed: {e}")
            results["database"] = False
        try:
            results["email"] = await self.email_service().test_connection()
        except (EmailServiceError, PipelineError, ValueError) as e:
            self.logger.error(f"Email health check failed: {e}")
            results["email"] = False
        return results

    async def close(self) -> None:
        if self._search is not None:
            await self._search.close_session()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catchup", description="catchup digest engine")
    parser.add_argument('--once', action='store_true', help='Run one digest cycle now (default)')
    parser.add_argument('--force', action='store_true', help='Send to every subscriber with topics, ignoring schedules')
    parser.add_argument('--dry-run', action='store_true', help='Render digests without sending or recording')
    parser.add_argument('--fetch-topic', metavar='TOPIC_ID', help='Fetch and store articles for a single topic')
    parser.add_argument('--health', action='store_true', help='Health check only')
    parser.add_argument('--init-db', action='store_true', help='Create database tables and exit')
    return parser


async def main(argv: Optional[list] = None) -> int:
    """Main entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)

    load_dotenv()
    config = load_config()
    if args.dry_run:
        config.dry_run = True

    setup_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        enable_structured_logging=config.log_format == "json",
    )
    logger = logging.getLogger(__name__)
    app = DigestApp(config)

    try:
        await app.init_db()

        if args.init_db:
            print(json.dumps({"initialized": config.database_path}))
            return 0

        if args.health:
            health = await app.health_check()
            print(json.dumps(health, indent=2))
            return 0 if all(health.values()) else 1

        if args.fetch_topic:
            result = await app.fetch_topic(args.fetch_topic)
            if result is None:
                print(json.dumps({"error": f"Topic not found: {args.fetch_topic}"}))
                return 1
            print(json.dumps(result, indent=2, ensure_ascii=False))
            return 0

        summary = await app.run_once(force=args.force)
        print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
        return 0 if summary.success else 1
    except (PipelineError, StorageError, ValueError) as e:
        logger.error(f"Fatal error: {e}")
        print(json.dumps({"success": False, "error": str(e), "config": _redacted(config)}))
        return 1


def _redacted(config: PipelineConfig) -> Dict[str, Any]:
    data = asdict(config)
    for key in ("serper_api_key", "smtp_password"):
        if data.get(key):
            data[key] = "***"
    return data


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
