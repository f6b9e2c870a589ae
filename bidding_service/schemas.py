# bidding_service/schemas.py
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Dict, List, Optional
from datetime import datetime


class ClassCreate(BaseModel):
    name: str = Field(min_length=1)
    default_capacity: int = Field(default=7, gt=0)


class ClassUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    default_capacity: Optional[int] = Field(default=None, gt=0)


class ClassOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    default_capacity: int
    created_at: Optional[datetime] = None


class StudentEnroll(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    student_number: str = Field(min_length=1)


class EnrollmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    student_id: int
    class_id: int
    tokens_remaining: int
    token_status: str
    bidding_result: str


class StudentStatusOut(EnrollmentOut):
    name: str
    email: str
    student_number: str
    has_bid: bool = False


class OpportunityCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    opens_at: datetime
    closes_at: datetime
    event_date: datetime
    capacity: Optional[int] = Field(default=None, gt=0)


class OpportunityUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    opens_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None
    event_date: Optional[datetime] = None
    capacity: Optional[int] = Field(default=None, gt=0)


class OpportunityOut(BaseModel):
    id: int
    class_id: int
    title: str
    description: Optional[str] = None
    opens_at: datetime
    closes_at: datetime
    event_date: datetime
    capacity: int
    status: str
    bid_count: int


class BidCreate(BaseModel):
    student_id: int


class BidOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    opportunity_id: int
    bid_amount: int
    is_winner: bool
    bid_status: str
    submission_timestamp: Optional[datetime] = None


class SubmitBidResult(BaseModel):
    bid_id: int


class SelectionRequest(BaseModel):
    selected_ids: List[int]
    all_bidder_ids: List[int]


class SelectionResult(BaseModel):
    updated_winners: int
    updated_losers: int


class ResetResult(BaseModel):
    reset_count: int


class AutoSelectResult(BaseModel):
    selected_count: int


class DeleteOpportunityResult(BaseModel):
    refunded_count: int


class DeletedCounts(BaseModel):
    opportunities: int
    bids: int
    enrollments: int
    token_history: int


class DeleteClassResult(BaseModel):
    deleted_counts: DeletedCounts


class RemoveStudentResult(BaseModel):
    user_deleted: bool
    enrollment_deleted: bool


class TokenHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    opportunity_id: Optional[int] = None
    amount: int
    type: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class OpportunityStats(BaseModel):
    opportunity_id: int
    title: str
    event_date: datetime
    capacity: int
    bid_count: int


class ClassStatistics(BaseModel):
    class_id: int
    total_students: int
    students_with_tokens: int
    students_who_bid: int
    total_bids: int
    opportunities: List[OpportunityStats]


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict = {}
    retryable: bool = False


class ErrorResponse(BaseModel):
    error: ErrorBody
