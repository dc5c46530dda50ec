import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import premailer
from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from catchup.models.content import Article, Topic
from catchup.utils.date_parser import DateParser

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"


@dataclass
class RenderedDigest:
    """HTML and plain-text bodies of one subscriber's digest"""
    html: str
    text: str
    section_count: int
    total_items: int


class CompilationError(Exception):
    """Custom exception for compilation failures"""
    pass


class DigestCompiler:
    """
    Renders a subscriber's matched articles into the digest email.

    Articles are grouped under their topic in the order the topics are
    given; article order within a topic is preserved. Topics without
    articles are left out, and an empty digest renders the "all caught up"
    placeholder instead of topic sections.
    """

    def __init__(
        self,
        template_dir: Optional[str] = None,
        brand: str = "catchup",
        display_timezone: str = "UTC",
        inline_css: bool = False,
    ) -> None:
        self.template_dir = str(template_dir or DEFAULT_TEMPLATE_DIR)
        self.brand = brand
        self.display_timezone = ZoneInfo(display_timezone)
        self.inline_css = inline_css

        try:
            self.env = Environment(
                loader=FileSystemLoader(self.template_dir),
                autoescape=select_autoescape(enabled_extensions=("html.j2",), default=False),
                trim_blocks=True,
                lstrip_blocks=True,
            )
        except Exception as e:  # noqa: BLE001
            raise CompilationError(f"Failed to initialize Jinja2 environment: {e}") from e

        self.logger = logging.getLogger(__name__)

    def date_range(self, now: Optional[datetime] = None) -> str:
        """The 24 hours ending at ``now`` as ``MM/DD - MM/DD``."""
        end = (now or datetime.now(timezone.utc)).astimezone(self.display_timezone)
        start = end - timedelta(hours=24)
        return f"{start:%m/%d} - {end:%m/%d}"

    def subject_line(self, now: Optional[datetime] = None) -> str:
        return f"{self.brand} on your topics ({self.date_range(now)})"

    def render(self, topics: List[Topic], articles: List[Article], now: Optional[datetime] = None) -> RenderedDigest:
        # "Xh ago" is computed against a single instant per render
        now = now or datetime.now(timezone.utc)
        sections = self._build_sections(topics, articles, now)
        data: Dict[str, Any] = {
            "brand": self.brand,
            "date_range": self.date_range(now),
            "sections": sections,
        }

        html = self._render_template("digest.html.j2", data)
        if self.inline_css:
            html = self._inline_css(html)
        text = self._render_template("digest_plain.j2", data)

        total_items = sum(len(s["items"]) for s in sections)
        self.logger.debug(f"Rendered digest: {len(sections)} sections, {total_items} articles")
        return RenderedDigest(html=html, text=text, section_count=len(sections), total_items=total_items)

    def _build_sections(self, topics: List[Topic], articles: List[Article], now: datetime) -> List[Dict[str, Any]]:
        by_topic: Dict[str, List[Article]] = {t.id: [] for t in topics}
        for article in articles:
            if article.topic_id in by_topic:
                by_topic[article.topic_id].append(article)

        sections: List[Dict[str, Any]] = []
        for topic in topics:
            topic_articles = by_topic.get(topic.id) or []
            if not topic_articles:
                continue
            sections.append({
                "name": topic.name,
                "items": [self._article_context(a, now) for a in topic_articles],
            })
            # Same topic listed twice renders once
            by_topic[topic.id] = []
        return sections

    @staticmethod
    def _article_context(article: Article, now: datetime) -> Dict[str, Any]:
        hours_ago = 0
        if article.published_date:
            hours_ago = max(0, DateParser.time_diff_from_now(article.published_date, now).hours)
        return {
            "title": article.title,
            "url": article.url,
            "source": article.source,
            "snippet": article.snippet or "",
            "hours_ago": hours_ago,
        }

    def _render_template(self, name: str, data: Dict[str, Any]) -> str:
        try:
            return self.env.get_template(name).render(data)
        except TemplateError as e:  # noqa: BLE001
            self.logger.error("Template rendering failed for %s: %s", name, e, exc_info=True)
            raise CompilationError(f"Template error in {name}: {e}") from e

    def _inline_css(self, html: str) -> str:
        """Inline CSS for email client compatibility."""
        try:
            return premailer.transform(
                html,
                keep_style_tags=True,  # media queries
                strip_important=False,
                cssutils_logging_level=logging.ERROR,
            )
        except Exception as e:  # noqa: BLE001
            self.logger.error("CSS inlining failed: %s", e, exc_info=True)
            raise CompilationError(f"CSS inlining error: {e}") from e
