from sqlalchemy import Column, String, Integer, Numeric, Boolean, Text, ForeignKey, CheckConstraint, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, UTCDateTime

OUTSTANDING_STATUSES = ('active', 'overdue')

class Loan(Base):
    __tablename__ = "loan"

    loan_id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("student.student_id", ondelete="CASCADE"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("book.book_id", ondelete="RESTRICT"), nullable=False, index=True)
    borrow_date = Column(UTCDateTime, nullable=False)
    due_date = Column(UTCDateTime, nullable=False, index=True)
    return_date = Column(UTCDateTime, nullable=True)
    status = Column(String(50), default='active', nullable=False, index=True)
    return_condition = Column(String(20), nullable=True)
    renew_count = Column(Integer, default=0, nullable=False)
    fine_amount = Column(Numeric(10, 2), default=0.00, nullable=False)
    fine_paid = Column(Boolean, default=False, nullable=False)
    fine_payment_date = Column(UTCDateTime, nullable=True)
    payment_mode = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    student = relationship("Student", back_populates="loans")
    book = relationship("Book", back_populates="loans")

    __table_args__ = (
        CheckConstraint("status IN ('active', 'overdue', 'returned', 'reserved', 'cancelled')", name="chk_loan_status"),
        CheckConstraint("fine_amount >= 0", name="chk_loan_fine_nonneg"),
        # At most one outstanding loan per (student, book)
        Index(
            "uq_loan_outstanding_student_book",
            "student_id",
            "book_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'overdue')"),
            sqlite_where=text("status IN ('active', 'overdue')"),
        ),
    )

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES

    def to_dict(self):
        return {
            "id": str(self.loan_id),
            "studentId": str(self.student_id),
            "bookId": str(self.book_id),
            "borrowDate": self.borrow_date.isoformat() if self.borrow_date else None,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "returnDate": self.return_date.isoformat() if self.return_date else None,
            "status": self.status,
            "returnCondition": self.return_condition,
            "renewCount": self.renew_count,
            "fineAmount": float(self.fine_amount),
            "finePaid": self.fine_paid,
            "finePaymentDate": self.fine_payment_date.isoformat() if self.fine_payment_date else None,
            "paymentMode": self.payment_mode,
            "notes": self.notes,
            "book": self.book.to_dict() if self.book else None,
        }
