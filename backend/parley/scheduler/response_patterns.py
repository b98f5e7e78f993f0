"""Per-contact response velocity, recomputed after every reply."""

import logging
import statistics
from collections import Counter
from datetime import datetime

from sqlmodel import Session, select

from parley.models.contacts import ContactEmailPattern
from parley.models.types import utcnow
from parley.scheduler.time_utils import to_local

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
TYPICAL_COUNT = 3


def classify_deviation(latency_hours: float, prior_average: float | None) -> str:
    """How the newest reply compares with the contact's average before it."""
    if not prior_average or prior_average <= 0:
        return "normal"
    ratio = latency_hours / prior_average
    if ratio > 2.0:
        return "much_slower"
    if ratio > 1.3:
        return "slower"
    if ratio < 0.7:
        return "faster"
    return "normal"


def get_pattern(session: Session, contact_email: str) -> ContactEmailPattern | None:
    return session.exec(
        select(ContactEmailPattern).where(ContactEmailPattern.contact_email == contact_email.lower())
    ).first()


def record_response(
    session: Session,
    contact_email: str,
    *,
    sent_at: datetime,
    replied_at: datetime,
    timezone: str = "UTC",
    contact_id: str | None = None,
    new_thread: bool = False,
) -> ContactEmailPattern:
    """Add one reply latency and recompute the profile. The caller commits."""
    email = contact_email.lower()
    pattern = get_pattern(session, email)
    if pattern is None:
        pattern = ContactEmailPattern(contact_email=email, contact_id=contact_id)
        session.add(pattern)

    latency = max(0.0, (replied_at - sent_at).total_seconds() / 3600)
    prior_average = pattern.avg_response_hours
    local = to_local(replied_at, timezone)

    # Reassign JSON lists so the change is tracked
    latencies = [*(pattern.latencies_hours or []), round(latency, 3)][-HISTORY_LIMIT:]
    reply_hours = [*(pattern.reply_hours or []), local.hour][-HISTORY_LIMIT:]
    reply_weekdays = [*(pattern.reply_weekdays or []), local.weekday()][-HISTORY_LIMIT:]

    pattern.latencies_hours = latencies
    pattern.reply_hours = reply_hours
    pattern.reply_weekdays = reply_weekdays
    pattern.response_count += 1
    if new_thread:
        pattern.thread_count += 1
    pattern.avg_response_hours = round(statistics.fmean(latencies), 3)
    pattern.median_response_hours = round(statistics.median(latencies), 3)
    pattern.fastest_response_hours = min(latencies)
    pattern.slowest_response_hours = max(latencies)
    pattern.typical_response_hours = [hour for hour, _ in Counter(reply_hours).most_common(TYPICAL_COUNT)]
    pattern.typical_response_days = [day for day, _ in Counter(reply_weekdays).most_common(TYPICAL_COUNT)]
    pattern.deviation = classify_deviation(latency, prior_average)
    pattern.last_response_at = replied_at
    pattern.updated_at = utcnow()
    if contact_id and not pattern.contact_id:
        pattern.contact_id = contact_id

    session.flush()
    logger.info(
        "Contact response pattern updated",
        extra={
            "response_count": pattern.response_count,
            "latency_hours": round(latency, 2),
            "deviation": pattern.deviation,
        },
    )
    return pattern
