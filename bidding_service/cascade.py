# bidding_service/cascade.py
"""
Cascade deletion: remove a parent together with its dependents.

Deletes run children first so foreign keys hold at every step. Opportunity
deletion refunds bidders before their bids go away.
"""
import logging
from typing import Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from bidding_service import audit, enrollments, errors, models, opportunities

logger = logging.getLogger(__name__)


def delete_opportunity(db: Session, opportunity_id: int) -> Dict[str, int]:
    opportunity = opportunities.get_opportunity(db, opportunity_id, lock=True)
    bids = (
        db.query(models.Bid)
        .filter(models.Bid.opportunity_id == opportunity_id)
        .order_by(models.Bid.id)
        .with_for_update()
        .all()
    )

    refunded = 0
    for bid in bids:
        enrollments.set_result(db, [bid.student_id], opportunity.class_id, "pending")
        # auto-selected bids were refunded already
        if bid.bid_amount > 0:
            enrollments.credit_token(db, bid.student_id, opportunity.class_id)
            audit.append(
                db, bid.student_id, opportunity_id, 1, "refund",
                f"Token refunded: opportunity '{opportunity.title}' was deleted",
            )
            refunded += 1

    db.query(models.Bid).filter(models.Bid.opportunity_id == opportunity_id).delete(synchronize_session="fetch")
    db.delete(opportunity)
    db.flush()
    logger.info("Deleted opportunity id=%s, refunded %d of %d bids", opportunity_id, refunded, len(bids))
    return {"refunded_count": refunded}


def delete_class(db: Session, class_id: int) -> Dict[str, Dict[str, int]]:
    school_class = opportunities.get_class(db, class_id, lock=True)

    # same row locks submit_bid takes, so no bid lands between the deletes below
    opportunity_ids = opportunities.class_opportunity_ids(db, class_id, lock=True)
    deleted_bids = deleted_history = 0
    if opportunity_ids:
        deleted_bids = (
            db.query(models.Bid)
            .filter(models.Bid.opportunity_id.in_(opportunity_ids))
            .delete(synchronize_session="fetch")
        )
        deleted_history = (
            db.query(models.TokenHistoryEntry)
            .filter(models.TokenHistoryEntry.opportunity_id.in_(opportunity_ids))
            .delete(synchronize_session="fetch")
        )
    deleted_opportunities = (
        db.query(models.Opportunity)
        .filter(models.Opportunity.class_id == class_id)
        .delete(synchronize_session="fetch")
    )
    deleted_enrollments = (
        db.query(models.Enrollment)
        .filter(models.Enrollment.class_id == class_id)
        .delete(synchronize_session="fetch")
    )
    db.delete(school_class)
    db.flush()

    counts = {
        "opportunities": deleted_opportunities,
        "bids": deleted_bids,
        "enrollments": deleted_enrollments,
        "token_history": deleted_history,
    }
    logger.info("Deleted class id=%s %s", class_id, counts)
    return {"deleted_counts": counts}


def remove_student_from_class(db: Session, student_id: int, class_id: int) -> Dict[str, bool]:
    enrollment = enrollments.require_enrollment(db, student_id, class_id, lock=True)

    bid_count = (
        db.query(func.count(models.Bid.id))
        .join(models.Opportunity, models.Bid.opportunity_id == models.Opportunity.id)
        .filter(models.Bid.student_id == student_id, models.Opportunity.class_id == class_id)
        .scalar()
    )
    if bid_count:
        raise errors.HasExistingBid(student_id, class_id, bid_count)

    db.delete(enrollment)
    db.flush()

    remaining = (
        db.query(func.count())
        .select_from(models.Enrollment)
        .filter(models.Enrollment.student_id == student_id)
        .scalar()
    )
    user_deleted = False
    if remaining == 0:
        # no enrollments left means no bids left either
        db.query(models.TokenHistoryEntry).filter(
            models.TokenHistoryEntry.student_id == student_id
        ).delete(synchronize_session="fetch")
        db.query(models.User).filter(models.User.id == student_id).delete(synchronize_session="fetch")
        user_deleted = True
    db.flush()
    logger.info(
        "Removed student=%s from class=%s (user deleted: %s)", student_id, class_id, user_deleted
    )
    return {"user_deleted": user_deleted, "enrollment_deleted": True}
