"""Shared helpers for the bidding service tests"""
from datetime import datetime, timedelta, timezone

from bidding_service import database, enrollments


def in_tx(db, operation, *args, **kwargs):
    with database.transaction(db):
        return operation(db, *args, **kwargs)


def window(status="open", now=None):
    """opens_at/closes_at/event_date that put an opportunity in ``status`` right now"""
    now = now or datetime.now(timezone.utc)
    hour = timedelta(hours=1)
    day = timedelta(days=1)
    if status == "upcoming":
        return now + hour, now + 2 * hour, now + day
    if status == "open":
        return now - hour, now + hour, now + day
    if status == "closed":
        return now - 2 * hour, now - hour, now + day
    return now - 3 * day, now - 2 * day, now - day


def get_enrollment(db, student_id, class_id):
    db.expire_all()
    return enrollments.get_enrollment(db, student_id, class_id)
