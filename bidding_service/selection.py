# bidding_service/selection.py
"""
Selection engine: bulk winner/loser assignment for one opportunity.

Each function is a single batch; run it inside ``database.transaction`` so a
failure part-way leaves no partially selected opportunity behind.
"""
import logging
from typing import Dict, Iterable, List

from sqlalchemy.orm import Session

from bidding_service import audit, enrollments, errors, models, opportunities

logger = logging.getLogger(__name__)


def _bids_by_student(db: Session, opportunity_id: int) -> Dict[int, models.Bid]:
    bids = (
        db.query(models.Bid)
        .filter(models.Bid.opportunity_id == opportunity_id)
        .order_by(models.Bid.id)
        .with_for_update()
        .all()
    )
    return {bid.student_id: bid for bid in bids}


def select_winners(
    db: Session,
    opportunity_id: int,
    selected_ids: Iterable[int],
    all_bidder_ids: Iterable[int],
) -> Dict[str, int]:
    opportunity = opportunities.get_opportunity(db, opportunity_id, lock=True)
    winners = sorted(set(selected_ids))
    losers = sorted(set(all_bidder_ids) - set(winners))

    bids = _bids_by_student(db, opportunity_id)
    missing = [student_id for student_id in winners + losers if student_id not in bids]
    if missing:
        raise errors.NotFound("Bid", f"opportunity {opportunity_id}, students {missing}")
    if len(winners) > opportunity.capacity:
        logger.warning(
            "Selecting %d winners for opportunity=%s with capacity %d",
            len(winners), opportunity_id, opportunity.capacity,
        )

    for student_id in winners:
        bid = bids[student_id]
        bid.is_winner = True
        bid.bid_status = "selected"
        audit.append(db, student_id, opportunity_id, 0, "selection", f"Selected for '{opportunity.title}'")
    for student_id in losers:
        bid = bids[student_id]
        bid.is_winner = False
        bid.bid_status = "rejected"
        audit.append(db, student_id, opportunity_id, 0, "selection", f"Not selected for '{opportunity.title}'")
    db.flush()

    enrollments.set_result(db, winners, opportunity.class_id, "won")
    enrollments.set_result(db, losers, opportunity.class_id, "lost")
    logger.info(
        "Selection for opportunity=%s: %d winners, %d losers",
        opportunity_id, len(winners), len(losers),
    )
    return {"updated_winners": len(winners), "updated_losers": len(losers)}


def reset_opportunity_selection(db: Session, opportunity_id: int) -> Dict[str, int]:
    """Put every bid back to placed/pending without touching balances."""
    opportunity = opportunities.get_opportunity(db, opportunity_id, lock=True)
    bids = _bids_by_student(db, opportunity_id)

    for student_id, bid in bids.items():
        bid.is_winner = False
        bid.bid_status = "placed"
        audit.append(db, student_id, opportunity_id, 0, "reset", f"Selection reset for '{opportunity.title}'")
    db.flush()

    enrollments.set_result(db, list(bids), opportunity.class_id, "pending")
    logger.info("Selection reset for opportunity=%s (%d bids)", opportunity_id, len(bids))
    return {"reset_count": len(bids)}


def auto_select_and_refund(db: Session, opportunity_id: int) -> Dict[str, int]:
    """
    Make every bidder a winner and hand their token back.

    Used when an opportunity has room for everyone who bid. Bids already
    refunded by an earlier run (bid_amount 0) are marked again but not
    refunded again.
    """
    opportunity = opportunities.get_opportunity(db, opportunity_id, lock=True)
    bids = _bids_by_student(db, opportunity_id)

    refunded: List[int] = []
    for student_id, bid in bids.items():
        bid.is_winner = True
        bid.bid_status = "auto_selected"
        if bid.bid_amount > 0:
            bid.bid_amount = 0
            refunded.append(student_id)
            audit.append(
                db, student_id, opportunity_id, 1, "refund",
                f"Token refunded for auto-selected opportunity '{opportunity.title}'",
            )
    db.flush()

    enrollments.restore_single_token(db, refunded, opportunity.class_id)
    enrollments.set_result(db, [s for s in bids if s not in refunded], opportunity.class_id, "pending")
    logger.info(
        "Auto-selected %d bidders for opportunity=%s (%d refunded)",
        len(bids), opportunity_id, len(refunded),
    )
    return {"selected_count": len(bids)}
