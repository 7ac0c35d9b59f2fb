import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from app.database import get_db
from app.models.user import User
from app.services.auth import get_current_user, require_library_staff, ensure_student_access
from app.services.loan_ledger import LoanLedger
from app.schemas.loan import (
    BorrowRequest, ReturnRequest, LoanReturnRequest, FinePaymentRequest,
    LoanResponse, ReturnResult, PaymentReceipt, OutstandingLoan, LibrarySummary, DashboardStats
)
from app.utils.timezone import get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/library", tags=["Library Loans"])

@router.post("/books/{book_id}/borrow", response_model=LoanResponse, status_code=status.HTTP_201_CREATED)
def borrow_book(
    book_id: int,
    request: BorrowRequest,
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Issue a copy of a book to a student."""
    loan = LoanLedger(db, clock=clock).borrow(request.student_id, book_id, borrow_days=request.borrow_days)
    return LoanResponse(**loan.to_dict())

@router.post("/books/{book_id}/return", response_model=ReturnResult)
def return_book(
    book_id: int,
    request: ReturnRequest,
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Check a book back in and compute the fine owed."""
    return LoanLedger(db, clock=clock).return_book(
        request.student_id, book_id, condition=request.condition, notes=request.notes
    )

@router.post("/loans/{loan_id}/return", response_model=ReturnResult)
def return_loan(
    loan_id: int,
    request: LoanReturnRequest,
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    return LoanLedger(db, clock=clock).return_loan(loan_id, condition=request.condition, notes=request.notes)

@router.get("/loans/outstanding", response_model=List[OutstandingLoan])
def get_outstanding_loans(
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(active|overdue)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """All books currently out, with days overdue and the fine accruing so far."""
    return LoanLedger(db, clock=clock).outstanding(status=status_filter, page=page, limit=limit)

@router.post("/loans/mark-overdue")
def mark_overdue_loans(
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Run the overdue sweep now instead of waiting for the background task."""
    updated = LoanLedger(db, clock=clock).mark_overdue()
    return {"updated": updated}

@router.get("/loans/{loan_id}", response_model=LoanResponse)
def get_loan(
    loan_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get specific loan details."""
    loan = LoanLedger(db).get_loan(loan_id)
    ensure_student_access(current_user, loan.student)
    return LoanResponse(**loan.to_dict())

@router.post("/loans/{loan_id}/renew", response_model=LoanResponse)
def renew_loan(
    loan_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    ledger = LoanLedger(db, clock=clock)
    ensure_student_access(current_user, ledger.get_loan(loan_id).student)
    loan = ledger.renew(loan_id)
    return LoanResponse(**loan.to_dict())

@router.post("/fines/pay", response_model=PaymentReceipt)
def pay_fines(
    request: FinePaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Settle all unpaid fines of a student at once."""
    ledger = LoanLedger(db, clock=clock)
    ensure_student_access(current_user, ledger.get_student(request.student_id))
    return ledger.pay_fines(request.student_id, request.amount, payment_mode=request.payment_method)

@router.get("/students/{student_id}/loans", response_model=List[LoanResponse])
def get_loan_history(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get loan history for a student, newest first."""
    ledger = LoanLedger(db)
    ensure_student_access(current_user, ledger.get_student(student_id))
    return [LoanResponse(**loan.to_dict()) for loan in ledger.history(student_id)]

@router.get("/students/{student_id}/summary", response_model=LibrarySummary)
def get_student_summary(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    ledger = LoanLedger(db, clock=clock)
    ensure_student_access(current_user, ledger.get_student(student_id))
    return ledger.student_summary(student_id)

@router.get("/my-info", response_model=LibrarySummary)
def get_my_library_info(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Books the signed-in student holds and what they owe."""
    ledger = LoanLedger(db, clock=clock)
    student = ledger.get_student_for_user(current_user.user_id)
    return ledger.student_summary(student.student_id)

@router.get("/dashboard", response_model=DashboardStats)
def get_dashboard(
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    return LoanLedger(db, clock=clock).dashboard_stats()
