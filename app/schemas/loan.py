from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime

class BorrowRequest(BaseModel):
    student_id: int
    borrow_days: Optional[int] = Field(None, ge=1, le=90)

class ReturnRequest(BaseModel):
    student_id: int
    condition: str = Field("good", pattern="^(good|damaged|lost)$")
    notes: Optional[str] = None

class LoanReturnRequest(BaseModel):
    condition: str = Field("good", pattern="^(good|damaged|lost)$")
    notes: Optional[str] = None

class FinePaymentRequest(BaseModel):
    student_id: int
    amount: float = Field(..., ge=0)
    payment_method: str = Field("cash", pattern="^(cash|card|upi|online)$")

class LoanResponse(BaseModel):
    id: str
    studentId: str
    bookId: str
    borrowDate: datetime
    dueDate: datetime
    returnDate: Optional[datetime] = None
    status: str
    returnCondition: Optional[str] = None
    renewCount: int = 0
    fineAmount: float
    finePaid: bool
    finePaymentDate: Optional[datetime] = None
    paymentMode: Optional[str] = None
    notes: Optional[str] = None
    book: Optional[dict] = None

class ReturnResult(BaseModel):
    loan_id: int
    return_date: datetime
    condition: str
    days_overdue: int
    fine_amount: float
    replacement_cost: float
    total_due: float
    payment_required: bool

class PaymentReceipt(BaseModel):
    student_id: int
    paid_amount: float
    transaction_count: int
    payment_mode: str
    paid_at: datetime
    receipt_number: str

class OutstandingLoan(BaseModel):
    loan_id: int
    student_id: int
    book_id: int
    book_title: str
    borrow_date: datetime
    due_date: datetime
    status: str
    days_overdue: int
    accrued_fine: float
    daily_fine: float

class LibrarySummary(BaseModel):
    student_id: int
    active_books: List[OutstandingLoan]
    active_book_count: int
    total_unpaid_fines: float
    total_current_fines: float
    total_fines: float
    total_transactions_count: int

class DashboardStats(BaseModel):
    total_titles: int
    total_copies: int
    available_copies: int
    active_loans: int
    overdue_loans: int
    total_fines: float
    collected_fines: float
    pending_fines: float
    noc: Dict[str, int]
