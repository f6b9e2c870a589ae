from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from bidding_service.database import Base

TOKEN_STATUSES = ("unused", "used")
BIDDING_RESULTS = ("pending", "won", "lost")
BID_STATUSES = ("placed", "selected", "rejected", "auto_selected")
HISTORY_TYPES = ("bid", "refund", "reset", "topup", "selection")

DEFAULT_CAPACITY = 7
BID_PAIR_CONSTRAINT = "uq_bids_student_opportunity"


def _one_of(column: str, values) -> str:
    return "%s IN (%s)" % (column, ", ".join("'%s'" % v for v in values))


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    student_number = Column(String(64), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class SchoolClass(Base):
    __tablename__ = "classes"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    default_capacity = Column(Integer, default=DEFAULT_CAPACITY, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("default_capacity > 0", name="ck_classes_default_capacity_positive"),
    )


class Enrollment(Base):
    __tablename__ = "student_enrollments"
    student_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    class_id = Column(Integer, ForeignKey("classes.id"), primary_key=True, index=True)
    tokens_remaining = Column(Integer, default=1, nullable=False)
    token_status = Column(String(20), default="unused", nullable=False)
    bidding_result = Column(String(20), default="pending", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    student = relationship("User")

    __table_args__ = (
        CheckConstraint("tokens_remaining >= 0", name="ck_enrollments_tokens_non_negative"),
        CheckConstraint(_one_of("token_status", TOKEN_STATUSES), name="ck_enrollments_token_status"),
        CheckConstraint(_one_of("bidding_result", BIDDING_RESULTS), name="ck_enrollments_bidding_result"),
    )


class Opportunity(Base):
    __tablename__ = "opportunities"
    id = Column(Integer, primary_key=True, index=True)
    class_id = Column(Integer, ForeignKey("classes.id"), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    opens_at = Column(DateTime(timezone=True), nullable=False)
    closes_at = Column(DateTime(timezone=True), nullable=False)
    event_date = Column(DateTime(timezone=True), nullable=False)
    capacity = Column(Integer, default=DEFAULT_CAPACITY, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    bids = relationship("Bid", back_populates="opportunity", order_by="Bid.submission_timestamp")

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_opportunities_capacity_positive"),
        CheckConstraint("closes_at > opens_at", name="ck_opportunities_window"),
    )


class Bid(Base):
    __tablename__ = "bids"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    opportunity_id = Column(Integer, ForeignKey("opportunities.id"), index=True, nullable=False)
    bid_amount = Column(Integer, default=1, nullable=False)
    is_winner = Column(Boolean, default=False, nullable=False)
    bid_status = Column(String(20), default="placed", nullable=False)
    submission_timestamp = Column(DateTime(timezone=True), server_default=func.now())

    student = relationship("User")
    opportunity = relationship("Opportunity", back_populates="bids")

    __table_args__ = (
        # backstop for duplicate submits that slip past row locking
        UniqueConstraint("student_id", "opportunity_id", name=BID_PAIR_CONSTRAINT),
        CheckConstraint("bid_amount >= 0", name="ck_bids_amount_non_negative"),
        CheckConstraint(_one_of("bid_status", BID_STATUSES), name="ck_bids_status"),
    )


class TokenHistoryEntry(Base):
    """Append-only record of a token balance change or result transition."""

    __tablename__ = "token_history"
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # plain reference: history outlives the opportunity it mentions
    opportunity_id = Column(Integer, nullable=True)
    amount = Column(Integer, nullable=False)
    type = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("amount BETWEEN -1 AND 1", name="ck_token_history_amount"),
        CheckConstraint(_one_of("type", HISTORY_TYPES), name="ck_token_history_type"),
        Index("ix_token_history_student", "student_id"),
        Index("ix_token_history_opportunity", "opportunity_id"),
    )
