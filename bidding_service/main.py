# bidding_service/main.py
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
import os
import logging

from bidding_service import audit, bids, cascade, database, enrollments, errors, opportunities, schemas, selection

# config / env
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://postgres:postgres@db:5432/bidding_db")
DB_ISOLATION_LEVEL = os.getenv("DB_ISOLATION_LEVEL", "READ COMMITTED")
ENFORCE_CAPACITY = os.getenv("ENFORCE_CAPACITY", "true").lower() in ("1", "true", "yes")
TX_RETRY_ATTEMPTS = int(os.getenv("TX_RETRY_ATTEMPTS", "3"))

# logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("bidding-service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Initializing DB...")
    database.init_db(DATABASE_URL, isolation_level=DB_ISOLATION_LEVEL)
    logger.info("Startup complete.")
    yield


# documented body of every BiddingError response
ERROR_RESPONSES = {status: {"model": schemas.ErrorResponse} for status in (403, 404, 409, 500)}

app = FastAPI(title="Bidding Service", lifespan=lifespan, responses=ERROR_RESPONSES)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(errors.BiddingError)
async def bidding_error_handler(request: Request, exc: errors.BiddingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.details)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run(db: Session, operation, *args, **kwargs):
    return database.run_in_transaction(db, operation, *args, attempts=TX_RETRY_ATTEMPTS, **kwargs)


# Root + health endpoints
@app.get("/")
def root():
    return {"service": "Bidding Service", "status": "running", "endpoints": ["/classes", "/opportunities", "/token-history", "/docs"]}

@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


# Classes and enrollment
@app.post("/classes", response_model=schemas.ClassOut, status_code=201)
def create_class(class_in: schemas.ClassCreate, db: Session = Depends(get_db)):
    school_class = run(db, opportunities.create_class, class_in.name, class_in.default_capacity)
    return schemas.ClassOut.model_validate(school_class)

@app.get("/classes", response_model=List[schemas.ClassOut])
def list_classes(db: Session = Depends(get_db)):
    return [schemas.ClassOut.model_validate(c) for c in opportunities.list_classes(db)]

@app.get("/classes/{class_id}", response_model=schemas.ClassOut)
def get_class(class_id: int, db: Session = Depends(get_db)):
    return schemas.ClassOut.model_validate(opportunities.get_class(db, class_id))

@app.patch("/classes/{class_id}", response_model=schemas.ClassOut)
def update_class(class_id: int, changes: schemas.ClassUpdate, db: Session = Depends(get_db)):
    school_class = run(db, opportunities.update_class, class_id, changes.name, changes.default_capacity)
    return schemas.ClassOut.model_validate(school_class)

@app.delete("/classes/{class_id}", response_model=schemas.DeleteClassResult)
def delete_class(class_id: int, db: Session = Depends(get_db)):
    return run(db, cascade.delete_class, class_id)

@app.get("/classes/{class_id}/statistics", response_model=schemas.ClassStatistics)
def class_statistics(class_id: int, db: Session = Depends(get_db)):
    return opportunities.class_statistics(db, class_id)

@app.post("/classes/{class_id}/students", response_model=schemas.EnrollmentOut, status_code=201)
def enroll_student(class_id: int, student_in: schemas.StudentEnroll, db: Session = Depends(get_db)):
    enrollment = run(
        db, enrollments.enroll_student, class_id,
        student_in.name, student_in.email, student_in.student_number,
    )
    return schemas.EnrollmentOut.model_validate(enrollment)

@app.get("/classes/{class_id}/students", response_model=List[schemas.StudentStatusOut])
def list_students(class_id: int, db: Session = Depends(get_db)):
    return enrollments.class_roster(db, class_id)

@app.get("/classes/{class_id}/students/{student_id}", response_model=schemas.StudentStatusOut)
def student_status(class_id: int, student_id: int, db: Session = Depends(get_db)):
    return enrollments.student_status(db, student_id, class_id)

@app.delete("/classes/{class_id}/students/{student_id}", response_model=schemas.RemoveStudentResult)
def remove_student(class_id: int, student_id: int, db: Session = Depends(get_db)):
    return run(db, cascade.remove_student_from_class, student_id, class_id)

@app.post("/classes/{class_id}/students/{student_id}/topup", response_model=schemas.EnrollmentOut)
def topup_token(class_id: int, student_id: int, db: Session = Depends(get_db)):
    enrollment = run(db, enrollments.topup_token, student_id, class_id)
    return schemas.EnrollmentOut.model_validate(enrollment)

@app.get("/students/{student_id}/enrollments", response_model=List[schemas.EnrollmentOut])
def student_enrollments(student_id: int, db: Session = Depends(get_db)):
    return [schemas.EnrollmentOut.model_validate(e) for e in enrollments.student_enrollments(db, student_id)]


# Opportunities
@app.post("/classes/{class_id}/opportunities", response_model=schemas.OpportunityOut, status_code=201)
def create_opportunity(class_id: int, opportunity_in: schemas.OpportunityCreate, db: Session = Depends(get_db)):
    opportunity = run(
        db, opportunities.create_opportunity, class_id,
        opportunity_in.title, opportunity_in.opens_at, opportunity_in.closes_at, opportunity_in.event_date,
        capacity=opportunity_in.capacity, description=opportunity_in.description,
    )
    return opportunities.describe(db, opportunity)

@app.get("/classes/{class_id}/opportunities", response_model=List[schemas.OpportunityOut])
def list_opportunities(class_id: int, db: Session = Depends(get_db)):
    return [opportunities.describe(db, o) for o in opportunities.list_class_opportunities(db, class_id)]

@app.get("/opportunities/{opportunity_id}", response_model=schemas.OpportunityOut)
def get_opportunity(opportunity_id: int, db: Session = Depends(get_db)):
    return opportunities.describe(db, opportunities.get_opportunity(db, opportunity_id))

@app.patch("/opportunities/{opportunity_id}", response_model=schemas.OpportunityOut)
def update_opportunity(opportunity_id: int, changes: schemas.OpportunityUpdate, db: Session = Depends(get_db)):
    opportunity = run(db, opportunities.update_opportunity, opportunity_id, **changes.model_dump(exclude_unset=True))
    return opportunities.describe(db, opportunity)

@app.delete("/opportunities/{opportunity_id}", response_model=schemas.DeleteOpportunityResult)
def delete_opportunity(opportunity_id: int, db: Session = Depends(get_db)):
    return run(db, cascade.delete_opportunity, opportunity_id)


# Bids
@app.get("/opportunities/{opportunity_id}/bids", response_model=List[schemas.BidOut])
def list_bids(opportunity_id: int, db: Session = Depends(get_db)):
    return [schemas.BidOut.model_validate(b) for b in opportunities.list_bids(db, opportunity_id)]

@app.post("/opportunities/{opportunity_id}/bids", response_model=schemas.SubmitBidResult, status_code=201)
def submit_bid(opportunity_id: int, bid_in: schemas.BidCreate, db: Session = Depends(get_db)):
    bid = run(db, bids.submit_bid, bid_in.student_id, opportunity_id, enforce_capacity=ENFORCE_CAPACITY)
    return {"bid_id": bid.id}

@app.delete("/opportunities/{opportunity_id}/bids/{student_id}")
def withdraw_bid(opportunity_id: int, student_id: int, db: Session = Depends(get_db)):
    run(db, bids.withdraw_bid, student_id, opportunity_id)
    return {}


# Selection
@app.post("/opportunities/{opportunity_id}/selection", response_model=schemas.SelectionResult)
def select_winners(opportunity_id: int, selection_in: schemas.SelectionRequest, db: Session = Depends(get_db)):
    return run(db, selection.select_winners, opportunity_id, selection_in.selected_ids, selection_in.all_bidder_ids)

@app.delete("/opportunities/{opportunity_id}/selection", response_model=schemas.ResetResult)
def reset_selection(opportunity_id: int, db: Session = Depends(get_db)):
    return run(db, selection.reset_opportunity_selection, opportunity_id)

@app.post("/opportunities/{opportunity_id}/auto-select", response_model=schemas.AutoSelectResult)
def auto_select(opportunity_id: int, db: Session = Depends(get_db)):
    return run(db, selection.auto_select_and_refund, opportunity_id)


# Audit trail (pollable change feed)
@app.get("/token-history", response_model=List[schemas.TokenHistoryOut])
def token_history(
    student_id: Optional[int] = Query(None),
    class_id: Optional[int] = Query(None),
    after_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    entries = audit.list_history(db, student_id=student_id, class_id=class_id, after_id=after_id, limit=limit)
    return [schemas.TokenHistoryOut.model_validate(e) for e in entries]
