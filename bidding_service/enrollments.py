# bidding_service/enrollments.py
"""
Enrollment ledger: the per-(student, class) token balance and bidding result.

Functions here only issue row updates on the caller's session; they never
commit. ``token_status`` is always written in the same statement as
``tokens_remaining`` so the two cannot drift apart.
"""
import logging
from typing import List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session, joinedload

from bidding_service import audit, errors, models, opportunities

logger = logging.getLogger(__name__)


def _status_after(new_balance):
    return case((new_balance <= 0, "used"), else_="unused")


def _enrollment_query(db: Session, student_id: int, class_id: int):
    return db.query(models.Enrollment).filter(
        models.Enrollment.student_id == student_id,
        models.Enrollment.class_id == class_id,
    )


def get_enrollment(db: Session, student_id: int, class_id: int, lock: bool = False) -> Optional[models.Enrollment]:
    q = _enrollment_query(db, student_id, class_id)
    if lock:
        q = q.with_for_update()
    return q.one_or_none()


def require_enrollment(db: Session, student_id: int, class_id: int, lock: bool = False) -> models.Enrollment:
    enrollment = get_enrollment(db, student_id, class_id, lock=lock)
    if enrollment is None:
        raise errors.NotEnrolled(student_id, class_id)
    return enrollment


def debit_token(db: Session, student_id: int, class_id: int) -> None:
    """Take one token, failing with InsufficientTokens if none is left."""
    new_balance = models.Enrollment.tokens_remaining - 1
    updated = (
        _enrollment_query(db, student_id, class_id)
        .filter(models.Enrollment.tokens_remaining > 0)
        .update(
            {
                models.Enrollment.tokens_remaining: new_balance,
                models.Enrollment.token_status: _status_after(new_balance),
                models.Enrollment.updated_at: func.now(),
            },
            synchronize_session="fetch",
        )
    )
    if updated != 1:
        raise errors.InsufficientTokens(student_id, class_id)


def credit_token(db: Session, student_id: int, class_id: int) -> None:
    """Give one token back. Callers are responsible for not crediting twice."""
    new_balance = models.Enrollment.tokens_remaining + 1
    updated = _enrollment_query(db, student_id, class_id).update(
        {
            models.Enrollment.tokens_remaining: new_balance,
            models.Enrollment.token_status: _status_after(new_balance),
            models.Enrollment.updated_at: func.now(),
        },
        synchronize_session="fetch",
    )
    if updated != 1:
        raise errors.NotEnrolled(student_id, class_id)


def restore_single_token(db: Session, student_ids: List[int], class_id: int) -> int:
    """Reset balances to exactly one unused token with a pending result."""
    if not student_ids:
        return 0
    return (
        db.query(models.Enrollment)
        .filter(
            models.Enrollment.class_id == class_id,
            models.Enrollment.student_id.in_(student_ids),
        )
        .update(
            {
                models.Enrollment.tokens_remaining: 1,
                models.Enrollment.token_status: "unused",
                models.Enrollment.bidding_result: "pending",
                models.Enrollment.updated_at: func.now(),
            },
            synchronize_session="fetch",
        )
    )


def set_result(db: Session, student_ids: List[int], class_id: int, result: str) -> int:
    if result not in models.BIDDING_RESULTS:
        raise errors.ValidationFailed(f"Unknown bidding result '{result}'")
    if not student_ids:
        return 0
    return (
        db.query(models.Enrollment)
        .filter(
            models.Enrollment.class_id == class_id,
            models.Enrollment.student_id.in_(student_ids),
        )
        .update(
            {models.Enrollment.bidding_result: result, models.Enrollment.updated_at: func.now()},
            synchronize_session="fetch",
        )
    )


def enroll_student(db: Session, class_id: int, name: str, email: str, student_number: str) -> models.Enrollment:
    opportunities.get_class(db, class_id, lock=True)

    email = email.strip().lower()
    user = db.query(models.User).filter(func.lower(models.User.email) == email).one_or_none()
    if user is None:
        user = models.User(name=name, email=email, student_number=student_number)
        db.add(user)
        db.flush()
    else:
        user.name = name
        user.student_number = student_number

    if get_enrollment(db, user.id, class_id) is not None:
        raise errors.AlreadyEnrolled(user.id, class_id)

    enrollment = models.Enrollment(
        student_id=user.id,
        class_id=class_id,
        tokens_remaining=1,
        token_status="unused",
        bidding_result="pending",
    )
    db.add(enrollment)
    db.flush()
    logger.info("Enrolled student=%s in class=%s", user.id, class_id)
    return enrollment


def topup_token(db: Session, student_id: int, class_id: int) -> models.Enrollment:
    enrollment = require_enrollment(db, student_id, class_id, lock=True)
    credit_token(db, student_id, class_id)
    audit.append(db, student_id, None, 1, "topup", "Token granted by administrator")
    logger.info("Topped up token for student=%s class=%s", student_id, class_id)
    return enrollment


def _bidders_in_class(db: Session, class_id: int) -> set:
    rows = (
        db.query(models.Bid.student_id)
        .join(models.Opportunity, models.Bid.opportunity_id == models.Opportunity.id)
        .filter(models.Opportunity.class_id == class_id)
        .distinct()
    )
    return {row.student_id for row in rows}


def _status_row(enrollment: models.Enrollment, has_bid: bool) -> dict:
    return {
        "student_id": enrollment.student_id,
        "class_id": enrollment.class_id,
        "name": enrollment.student.name,
        "email": enrollment.student.email,
        "student_number": enrollment.student.student_number,
        "tokens_remaining": enrollment.tokens_remaining,
        "token_status": enrollment.token_status,
        "bidding_result": enrollment.bidding_result,
        "has_bid": has_bid,
    }


def class_roster(db: Session, class_id: int) -> List[dict]:
    if db.get(models.SchoolClass, class_id) is None:
        raise errors.NotFound("Class", class_id)
    rows = (
        db.query(models.Enrollment)
        .options(joinedload(models.Enrollment.student))
        .filter(models.Enrollment.class_id == class_id)
        .order_by(models.Enrollment.student_id)
        .all()
    )
    bidders = _bidders_in_class(db, class_id)
    return [_status_row(e, e.student_id in bidders) for e in rows]


def student_status(db: Session, student_id: int, class_id: int) -> dict:
    enrollment = require_enrollment(db, student_id, class_id)
    return _status_row(enrollment, student_id in _bidders_in_class(db, class_id))


def student_enrollments(db: Session, student_id: int) -> List[models.Enrollment]:
    """Every class the student is enrolled in, oldest class first."""
    if db.get(models.User, student_id) is None:
        raise errors.NotFound("Student", student_id)
    return (
        db.query(models.Enrollment)
        .filter(models.Enrollment.student_id == student_id)
        .order_by(models.Enrollment.class_id)
        .all()
    )
