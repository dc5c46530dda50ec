"""
Delivery scheduling: decides which subscribers are due for a digest.

All times are UTC. The send-window check compares hour-of-day only, with a
one hour tolerance either side of the preferred send time.
"""

import calendar
import logging
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from catchup.models.content import DeliverySchedule, Subscriber

DEFAULT_SEND_TIME = time(17, 0)
SEND_WINDOW_HOURS = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ScheduleService:

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def cadence_threshold_hours(schedule: DeliverySchedule, now: Optional[datetime] = None) -> Optional[int]:
        """
        Minimum hours between two sends for a cadence.

        Monthly uses the number of days in the *current* calendar month.
        """
        now = now or _utcnow()
        if schedule == DeliverySchedule.DAILY:
            return 24
        if schedule == DeliverySchedule.WEEKLY:
            return 168
        if schedule == DeliverySchedule.MONTHLY:
            days_in_month = calendar.monthrange(now.year, now.month)[1]
            return days_in_month * 24
        return None

    def is_subscriber_due(self, subscriber: Subscriber, now: Optional[datetime] = None) -> bool:
        if not subscriber.topics:
            return False

        if subscriber.last_sent is None:
            return True

        now = _as_utc(now) if now else _utcnow()
        hours_since_last_sent = (now - _as_utc(subscriber.last_sent)).total_seconds() / 3600

        threshold = self.cadence_threshold_hours(subscriber.delivery_schedule, now)
        if threshold is None:
            self.logger.warning(
                f"Unknown delivery schedule {subscriber.delivery_schedule!r} for subscriber {subscriber.id}"
            )
            return False
        return hours_since_last_sent >= threshold

    @staticmethod
    def get_preferred_send_time(subscriber: Subscriber) -> time:
        return subscriber.preferred_send_time or DEFAULT_SEND_TIME

    def is_right_time_to_send(self, subscriber: Subscriber, now: Optional[datetime] = None) -> bool:
        now = _as_utc(now) if now else _utcnow()
        preferred = self.get_preferred_send_time(subscriber)
        return abs(now.hour - preferred.hour) <= SEND_WINDOW_HOURS

    def get_due_subscribers(self, subscribers: List[Subscriber], now: Optional[datetime] = None) -> List[Subscriber]:
        now = _as_utc(now) if now else _utcnow()
        return [
            s for s in subscribers
            if self.is_subscriber_due(s, now) and self.is_right_time_to_send(s, now)
        ]

    def get_next_run_time(self, subscriber: Subscriber, now: Optional[datetime] = None) -> datetime:
        """Informational: last send (or now) plus one cadence unit, at the preferred time."""
        now = _as_utc(now) if now else _utcnow()
        next_run = _as_utc(subscriber.last_sent) if subscriber.last_sent else now

        if subscriber.delivery_schedule == DeliverySchedule.DAILY:
            next_run += timedelta(days=1)
        elif subscriber.delivery_schedule == DeliverySchedule.WEEKLY:
            next_run += timedelta(days=7)
        elif subscriber.delivery_schedule == DeliverySchedule.MONTHLY:
            next_run += relativedelta(months=1)

        preferred = self.get_preferred_send_time(subscriber)
        return next_run.replace(hour=preferred.hour, minute=preferred.minute, second=0, microsecond=0)
