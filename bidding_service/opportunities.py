# bidding_service/opportunities.py
"""Opportunity registry: time-boxed, capacity-bound slots and their lifecycle."""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from bidding_service import errors, models

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "opens_at", "closes_at", "event_date", "capacity")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def status_at(opportunity: models.Opportunity, now: Optional[datetime] = None) -> str:
    """Derive upcoming/open/closed/completed from the opportunity's dates."""
    now = as_utc(now or utcnow())
    if now < as_utc(opportunity.opens_at):
        return "upcoming"
    if now < as_utc(opportunity.closes_at):
        return "open"
    if now < as_utc(opportunity.event_date):
        return "closed"
    return "completed"


def get_opportunity(db: Session, opportunity_id: int, lock: bool = False) -> models.Opportunity:
    q = db.query(models.Opportunity).filter(models.Opportunity.id == opportunity_id)
    if lock:
        q = q.with_for_update()
    opportunity = q.one_or_none()
    if opportunity is None:
        raise errors.NotFound("Opportunity", opportunity_id)
    return opportunity


def bid_count(db: Session, opportunity_id: int, bid_status: Optional[str] = None) -> int:
    q = db.query(func.count(models.Bid.id)).filter(models.Bid.opportunity_id == opportunity_id)
    if bid_status is not None:
        q = q.filter(models.Bid.bid_status == bid_status)
    return q.scalar()


def _validate_window(opens_at: datetime, closes_at: datetime, event_date: datetime, capacity: int) -> None:
    if as_utc(closes_at) <= as_utc(opens_at):
        raise errors.ValidationFailed(
            "Bidding must close after it opens",
            details={"opens_at": opens_at.isoformat(), "closes_at": closes_at.isoformat()},
        )
    if as_utc(event_date) < as_utc(closes_at):
        raise errors.ValidationFailed(
            "Event date must not precede the bidding close",
            details={"closes_at": closes_at.isoformat(), "event_date": event_date.isoformat()},
        )
    if capacity is not None and capacity <= 0:
        raise errors.ValidationFailed("Capacity must be positive", details={"capacity": capacity})


def create_class(db: Session, name: str, default_capacity: int = models.DEFAULT_CAPACITY) -> models.SchoolClass:
    if default_capacity <= 0:
        raise errors.ValidationFailed("Capacity must be positive", details={"capacity": default_capacity})
    school_class = models.SchoolClass(name=name, default_capacity=default_capacity)
    db.add(school_class)
    db.flush()
    logger.info("Created class id=%s name=%r", school_class.id, name)
    return school_class


def get_class(db: Session, class_id: int, lock: bool = False) -> models.SchoolClass:
    q = db.query(models.SchoolClass).filter(models.SchoolClass.id == class_id)
    if lock:
        q = q.with_for_update()
    school_class = q.one_or_none()
    if school_class is None:
        raise errors.NotFound("Class", class_id)
    return school_class


def list_classes(db: Session) -> List[models.SchoolClass]:
    return db.query(models.SchoolClass).order_by(models.SchoolClass.id).all()


def update_class(
    db: Session,
    class_id: int,
    name: Optional[str] = None,
    default_capacity: Optional[int] = None,
) -> models.SchoolClass:
    """Rename a class or change the capacity new opportunities start with."""
    school_class = get_class(db, class_id, lock=True)
    if default_capacity is not None:
        if default_capacity <= 0:
            raise errors.ValidationFailed("Capacity must be positive", details={"capacity": default_capacity})
        school_class.default_capacity = default_capacity
    if name is not None:
        school_class.name = name
    db.flush()
    logger.info(
        "Updated class id=%s name=%r default_capacity=%s",
        class_id, school_class.name, school_class.default_capacity,
    )
    return school_class


def create_opportunity(
    db: Session,
    class_id: int,
    title: str,
    opens_at: datetime,
    closes_at: datetime,
    event_date: datetime,
    capacity: Optional[int] = None,
    description: Optional[str] = None,
) -> models.Opportunity:
    # locked so a concurrent delete_class cannot leave this row orphaned
    school_class = get_class(db, class_id, lock=True)
    if capacity is None:
        capacity = school_class.default_capacity
    _validate_window(opens_at, closes_at, event_date, capacity)

    opportunity = models.Opportunity(
        class_id=class_id,
        title=title,
        description=description,
        opens_at=as_utc(opens_at),
        closes_at=as_utc(closes_at),
        event_date=as_utc(event_date),
        capacity=capacity,
    )
    db.add(opportunity)
    db.flush()
    logger.info("Created opportunity id=%s class=%s capacity=%s", opportunity.id, class_id, capacity)
    return opportunity


def update_opportunity(db: Session, opportunity_id: int, **changes) -> models.Opportunity:
    opportunity = get_opportunity(db, opportunity_id, lock=True)
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise errors.ValidationFailed("Unknown opportunity fields", details={"fields": sorted(unknown)})

    opens_at = changes.get("opens_at") or opportunity.opens_at
    closes_at = changes.get("closes_at") or opportunity.closes_at
    event_date = changes.get("event_date") or opportunity.event_date
    _validate_window(opens_at, closes_at, event_date, changes.get("capacity"))

    for field, value in changes.items():
        if value is None and field != "description":
            continue
        if isinstance(value, datetime):
            value = as_utc(value)
        setattr(opportunity, field, value)
    db.flush()
    logger.info("Updated opportunity id=%s fields=%s", opportunity_id, sorted(changes))
    return opportunity


def class_opportunity_ids(db: Session, class_id: int, lock: bool = False) -> List[int]:
    q = (
        db.query(models.Opportunity.id)
        .filter(models.Opportunity.class_id == class_id)
        .order_by(models.Opportunity.id)
    )
    if lock:
        q = q.with_for_update()
    return [row.id for row in q]


def list_class_opportunities(db: Session, class_id: int) -> List[models.Opportunity]:
    if db.get(models.SchoolClass, class_id) is None:
        raise errors.NotFound("Class", class_id)
    return (
        db.query(models.Opportunity)
        .filter(models.Opportunity.class_id == class_id)
        .order_by(models.Opportunity.event_date, models.Opportunity.id)
        .all()
    )


def list_bids(db: Session, opportunity_id: int) -> List[models.Bid]:
    get_opportunity(db, opportunity_id)
    return (
        db.query(models.Bid)
        .filter(models.Bid.opportunity_id == opportunity_id)
        .order_by(models.Bid.submission_timestamp, models.Bid.id)
        .all()
    )


def describe(db: Session, opportunity: models.Opportunity, now: Optional[datetime] = None) -> dict:
    return {
        "id": opportunity.id,
        "class_id": opportunity.class_id,
        "title": opportunity.title,
        "description": opportunity.description,
        "opens_at": as_utc(opportunity.opens_at),
        "closes_at": as_utc(opportunity.closes_at),
        "event_date": as_utc(opportunity.event_date),
        "capacity": opportunity.capacity,
        "status": status_at(opportunity, now),
        "bid_count": bid_count(db, opportunity.id),
    }


def class_statistics(db: Session, class_id: int) -> dict:
    enrollments = (
        db.query(models.Enrollment.student_id, models.Enrollment.tokens_remaining)
        .filter(models.Enrollment.class_id == class_id)
        .all()
    )
    opportunities = list_class_opportunities(db, class_id)
    bids = (
        db.query(models.Bid.student_id, models.Bid.opportunity_id)
        .join(models.Opportunity, models.Bid.opportunity_id == models.Opportunity.id)
        .filter(models.Opportunity.class_id == class_id)
        .all()
    )
    counts = {}
    for _, opportunity_id in bids:
        counts[opportunity_id] = counts.get(opportunity_id, 0) + 1

    return {
        "class_id": class_id,
        "total_students": len(enrollments),
        "students_with_tokens": sum(1 for _, tokens in enrollments if tokens > 0),
        "students_who_bid": len({student_id for student_id, _ in bids}),
        "total_bids": len(bids),
        "opportunities": [
            {
                "opportunity_id": o.id,
                "title": o.title,
                "event_date": as_utc(o.event_date),
                "capacity": o.capacity,
                "bid_count": counts.get(o.id, 0),
            }
            for o in opportunities
        ],
    }
