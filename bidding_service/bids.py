# bidding_service/bids.py
"""
Bid ledger: one bid per (student, opportunity), paid for with the student's
class token.

Both operations validate everything before their first write and expect to
run inside ``database.transaction``; a failure after a write rolls back the
bid, the debit and the history entry together.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bidding_service import audit, enrollments, errors, models, opportunities

logger = logging.getLogger(__name__)


def is_duplicate_pair(exc: IntegrityError) -> bool:
    """True when ``exc`` is the one-bid-per-student-and-opportunity constraint firing."""
    diag = getattr(exc.orig, "diag", None)
    if getattr(diag, "constraint_name", None):
        return diag.constraint_name == models.BID_PAIR_CONSTRAINT
    # sqlite names the columns, not the constraint
    return "UNIQUE constraint failed: bids.student_id, bids.opportunity_id" in str(exc.orig)


def _existing_bid(db: Session, student_id: int, opportunity_id: int) -> Optional[models.Bid]:
    return (
        db.query(models.Bid)
        .filter(models.Bid.student_id == student_id, models.Bid.opportunity_id == opportunity_id)
        .one_or_none()
    )


def submit_bid(
    db: Session,
    student_id: int,
    opportunity_id: int,
    enforce_capacity: bool = True,
    now: Optional[datetime] = None,
) -> models.Bid:
    # lock order: opportunity, then enrollment
    opportunity = opportunities.get_opportunity(db, opportunity_id, lock=True)

    status = opportunities.status_at(opportunity, now)
    if status != "open":
        raise errors.OpportunityClosed(opportunity_id, status)

    enrollment = enrollments.require_enrollment(db, student_id, opportunity.class_id, lock=True)
    if _existing_bid(db, student_id, opportunity_id) is not None:
        raise errors.DuplicateBid(student_id, opportunity_id)

    if enrollment.tokens_remaining <= 0:
        raise errors.InsufficientTokens(student_id, opportunity.class_id)

    if enforce_capacity and opportunities.bid_count(db, opportunity_id, "placed") >= opportunity.capacity:
        raise errors.CapacityExceeded(opportunity_id, opportunity.capacity)

    bid = models.Bid(
        student_id=student_id,
        opportunity_id=opportunity_id,
        bid_amount=1,
        is_winner=False,
        bid_status="placed",
    )
    db.add(bid)
    try:
        db.flush()
    except IntegrityError as exc:
        if not is_duplicate_pair(exc):
            raise
        # a simultaneous submit for the same pair committed first
        raise errors.DuplicateBid(student_id, opportunity_id) from exc

    enrollments.debit_token(db, student_id, opportunity.class_id)
    audit.append(db, student_id, opportunity_id, -1, "bid", f"Bid placed on '{opportunity.title}'")
    logger.info("Bid placed id=%s student=%s opportunity=%s", bid.id, student_id, opportunity_id)
    return bid


def withdraw_bid(db: Session, student_id: int, opportunity_id: int) -> None:
    opportunity = opportunities.get_opportunity(db, opportunity_id)
    enrollments.require_enrollment(db, student_id, opportunity.class_id, lock=True)

    bid = _existing_bid(db, student_id, opportunity_id)
    if bid is None:
        raise errors.NotFound("Bid", f"{student_id}:{opportunity_id}")
    if bid.is_winner:
        raise errors.CannotWithdrawWinner(student_id, opportunity_id)

    refundable = bid.bid_amount > 0
    db.delete(bid)
    db.flush()
    enrollments.set_result(db, [student_id], opportunity.class_id, "pending")
    if refundable:
        enrollments.credit_token(db, student_id, opportunity.class_id)
        audit.append(db, student_id, opportunity_id, 1, "refund", f"Bid withdrawn from '{opportunity.title}'")
    else:
        # auto-selected earlier, the token was already handed back
        audit.append(db, student_id, opportunity_id, 0, "reset", f"Bid withdrawn from '{opportunity.title}'")
    logger.info("Bid withdrawn student=%s opportunity=%s", student_id, opportunity_id)
