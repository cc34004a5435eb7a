"""
Institution analytics, donation reports and admin dashboard figures.

The metric functions take plain row objects (ORM instances or anything with
the same attributes) so they can be computed over any query result.
"""

from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
import math

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    Profile, Institution, Investor, Donation,
    DONATION_STATUSES, VERIFICATION_STATUSES
)

TREND_MONTHS = 6
REPORT_RANGES = ("month", "quarter", "year")

DONOR_TYPE_LABELS = {
    "individual": "Individual Investor",
    "corporate": "Corporate Investor",
    "foundation": "Foundation",
    "ngo": "NGO",
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_key(moment: datetime) -> str:
    return f"{moment.year}-{moment.month:02d}"


def recent_months(now: datetime, count: int = TREND_MONTHS) -> List[Tuple[int, int]]:
    """The last `count` calendar months, oldest first, ending with `now`'s month."""
    return [shift_month(now.year, now.month, -offset) for offset in range(count - 1, -1, -1)]


def institution_metrics(conversations: Iterable, messages: Iterable, now: Optional[datetime] = None) -> dict:
    """Engagement figures for one institution's conversations and their messages."""
    now = now or datetime.utcnow()
    conversations = list(conversations)
    messages = list(messages)

    total_conversations = len(conversations)
    active_investors = len({c.investor_id for c in conversations if c.investor_id})
    total_messages = len(messages)
    unread_messages = sum(1 for m in messages if not m.read)
    avg_messages = total_messages / total_conversations if total_conversations else 0.0

    keys = [f"{year}-{month:02d}" for year, month in recent_months(now)]
    conversation_buckets = dict.fromkeys(keys, 0)
    donor_buckets: Dict[str, set] = {key: set() for key in keys}
    message_buckets = dict.fromkeys(keys, 0)

    for conversation in conversations:
        key = month_key(conversation.created_at)
        if key in conversation_buckets:
            conversation_buckets[key] += 1
            if conversation.investor_id:
                donor_buckets[key].add(conversation.investor_id)
    for message in messages:
        key = month_key(message.created_at)
        if key in message_buckets:
            message_buckets[key] += 1

    engagement = round_half_up(
        active_investors * 5 + avg_messages * 10 + total_conversations * 2 - unread_messages
    )

    return {
        "total_conversations": total_conversations,
        "active_investors": active_investors,
        "total_messages": total_messages,
        "unread_messages": unread_messages,
        "avg_messages_per_conversation": round(avg_messages, 1),
        "engagement_score": max(0, min(100, engagement)),
        "unread_ratio": round_half_up(unread_messages / total_messages * 100) if total_messages else 0,
        "trend": [{"month": k, "count": v} for k, v in conversation_buckets.items()],
        "donor_trend": [{"month": k, "count": len(v)} for k, v in donor_buckets.items()],
        "messages_per_month": [{"month": k, "count": v} for k, v in message_buckets.items()],
    }


def report_range_start(range_name: str, now: Optional[datetime] = None) -> datetime:
    """First instant covered by a report range."""
    now = now or datetime.utcnow()
    if range_name == "quarter":
        year, month = shift_month(now.year, now.month, -3)
        return datetime(year, month, 1)
    if range_name == "year":
        return datetime(now.year, 1, 1)
    return datetime(now.year, now.month, 1)


def donor_breakdown(partner_types: Iterable[str]) -> List[dict]:
    """Share of conversation partners per investor type."""
    counts = Counter(DONOR_TYPE_LABELS.get(t, "Other") for t in partner_types)
    total = sum(counts.values()) or 1
    return [
        {"type": label, "count": count, "percentage": round(count / total * 100, 1)}
        for label, count in counts.most_common()
    ]


def institution_report(donations: Iterable, conversations: Iterable, partner_types: Iterable[str],
                       now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()
    donations = list(donations)
    conversations = list(conversations)

    total_donations = len(donations)
    total_amount = sum(d.amount or 0 for d in donations)

    monthly = []
    for year, month in recent_months(now):
        in_month = [d for d in donations if d.created_at.year == year and d.created_at.month == month]
        monthly.append({
            "month": datetime(year, month, 1).strftime("%b %Y"),
            "donations": len(in_month),
            "amount": round(sum(d.amount or 0 for d in in_month), 2),
        })

    return {
        "total_donations": total_donations,
        "total_amount": round(total_amount, 2),
        "average_donation": round(total_amount / total_donations, 2) if total_donations else 0.0,
        "active_donors": len({d.investor_id for d in donations}),
        "conversion_rate": round(total_donations / len(conversations) * 100, 2) if conversations else 0.0,
        "monthly_trend": monthly,
        "donor_analytics": donor_breakdown(partner_types),
    }


def donation_stats(donations: Iterable) -> dict:
    donations = list(donations)
    return {
        "total": len(donations),
        "pending": sum(1 for d in donations if d.status == "pending"),
        "completed": sum(1 for d in donations if d.status == "completed"),
        "total_amount": round(sum(d.amount or 0 for d in donations), 2),
    }


def _status_counts(db: Session, entity) -> dict:
    rows = (
        db.query(Profile.verification_status, func.count(entity.id))
        .join(entity, entity.user_id == Profile.id)
        .group_by(Profile.verification_status)
        .all()
    )
    counts = dict.fromkeys(VERIFICATION_STATUSES, 0)
    counts.update({status: count for status, count in rows})
    counts["total"] = sum(counts[s] for s in VERIFICATION_STATUSES)
    return counts


def dashboard_stats(db: Session) -> dict:
    """Verification queue sizes and donation totals for the admin dashboard."""
    donation_rows = db.query(Donation.status, func.count(Donation.id)).group_by(Donation.status).all()
    donations = dict.fromkeys(DONATION_STATUSES, 0)
    donations.update({status: count for status, count in donation_rows})
    donations["total"] = sum(donations[s] for s in DONATION_STATUSES)

    completed_amount = db.query(func.sum(Donation.amount)).filter(Donation.status == "completed").scalar() or 0

    return {
        "institutions": _status_counts(db, Institution),
        "investors": _status_counts(db, Investor),
        "donations": donations,
        "completed_amount": round(float(completed_amount), 2),
    }
