# bidding_service/audit.py
"""
Token history: the append-only audit trail.

``append`` is the only write path. Rows are never updated afterwards, which
lets an external notifier poll ``list_history(after_id=...)`` as a change feed.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from bidding_service import errors, models


def append(
    db: Session,
    student_id: int,
    opportunity_id: Optional[int],
    amount: int,
    entry_type: str,
    description: str = None,
) -> models.TokenHistoryEntry:
    if entry_type not in models.HISTORY_TYPES:
        raise errors.ValidationFailed(f"Unknown history type '{entry_type}'")
    entry = models.TokenHistoryEntry(
        student_id=student_id,
        opportunity_id=opportunity_id,
        amount=amount,
        type=entry_type,
        description=description,
    )
    db.add(entry)
    return entry


def list_history(
    db: Session,
    student_id: Optional[int] = None,
    class_id: Optional[int] = None,
    after_id: Optional[int] = None,
    limit: int = 100,
) -> List[models.TokenHistoryEntry]:
    q = db.query(models.TokenHistoryEntry)
    if student_id is not None:
        q = q.filter(models.TokenHistoryEntry.student_id == student_id)
    if class_id is not None:
        class_opportunities = db.query(models.Opportunity.id).filter(models.Opportunity.class_id == class_id)
        q = q.filter(models.TokenHistoryEntry.opportunity_id.in_(class_opportunities.scalar_subquery()))
    if after_id is not None:
        q = q.filter(models.TokenHistoryEntry.id > after_id)
    return q.order_by(models.TokenHistoryEntry.id).limit(limit).all()
