import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4
from sqlalchemy import update, func, or_, and_, case
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from app.config import settings
from app.models.book import Book
from app.models.loan import Loan, OUTSTANDING_STATUSES
from app.models.student import Student
from app.schemas.loan import ReturnResult, PaymentReceipt, OutstandingLoan, LibrarySummary, DashboardStats
from app.services.errors import (
    StudentNotFound, BookNotFound, LoanNotFound, NoUnpaidFines,
    AlreadyBorrowed, ConcurrentUpdate, BookUnavailable, StudentHasOverdue,
    StudentHasUnpaidFine, AmountMismatch, RenewalNotAllowed, Transient,
)
from app.services.fines import calculate_fine, to_money
from app.services.mqtt_service import mqtt_service
from app.utils.timezone import system_clock

logger = logging.getLogger(__name__)


class LoanLedger:
    """Borrow, return, renew and fine settlement for library loans.

    Every write commits or rolls back as a unit. Availability changes go
    through conditional UPDATEs so two borrowers can never both take the
    last copy.
    """

    def __init__(self, db: Session, notifier=None, clock=None):
        self.db = db
        self.notifier = notifier if notifier is not None else mqtt_service
        self.clock = clock or system_clock

    # Lookups

    def get_student(self, student_id: int) -> Student:
        student = self.db.query(Student).filter(Student.student_id == student_id).first()
        if not student:
            raise StudentNotFound("Student not found", student_id=student_id)
        return student

    def get_student_for_user(self, user_id: int) -> Student:
        student = self.db.query(Student).filter(Student.user_id == user_id).first()
        if not student:
            raise StudentNotFound("No student record linked to this account", user_id=user_id)
        return student

    def get_book(self, book_id: int) -> Book:
        book = self.db.query(Book).filter(Book.book_id == book_id).first()
        if not book:
            raise BookNotFound("Book not found", book_id=book_id)
        return book

    def get_loan(self, loan_id: int) -> Loan:
        loan = self.db.query(Loan).filter(Loan.loan_id == loan_id).first()
        if not loan:
            raise LoanNotFound("Loan not found", loan_id=loan_id)
        return loan

    @staticmethod
    def overdue_filter(as_of: datetime):
        # Time-derived: an active loan past due counts even before the sweep flips it
        return or_(Loan.status == 'overdue', and_(Loan.status == 'active', Loan.due_date < as_of))

    def overdue_count(self, student_id: int, as_of: datetime) -> int:
        return self.db.query(func.count(Loan.loan_id)).filter(
            Loan.student_id == student_id,
            self.overdue_filter(as_of)
        ).scalar()

    def outstanding_loans(self, student_id: int) -> List[Loan]:
        return self.db.query(Loan).filter(
            Loan.student_id == student_id,
            Loan.status.in_(OUTSTANDING_STATUSES)
        ).order_by(Loan.due_date.asc(), Loan.loan_id.asc()).all()

    def unpaid_fine_loans(self, student_id: int) -> List[Loan]:
        return self.db.query(Loan).filter(
            Loan.student_id == student_id,
            Loan.fine_amount > 0,
            Loan.fine_paid.is_(False)
        ).order_by(Loan.loan_id.asc()).all()

    def unpaid_fine_total(self, student_id: int) -> Decimal:
        return sum((to_money(loan.fine_amount) for loan in self.unpaid_fine_loans(student_id)), Decimal("0.00"))

    def is_clear(self, student_id: int) -> bool:
        return not self.outstanding_loans(student_id) and self.unpaid_fine_total(student_id) == 0

    def history(self, student_id: int) -> List[Loan]:
        self.get_student(student_id)
        return self.db.query(Loan).filter(
            Loan.student_id == student_id
        ).order_by(Loan.borrow_date.desc(), Loan.loan_id.desc()).all()

    # Operations

    def borrow(self, student_id: int, book_id: int, as_of: Optional[datetime] = None,
               borrow_days: Optional[int] = None) -> Loan:
        """Issue one copy of ``book_id`` to ``student_id``.

        Checks run in order (availability, overdue loans, unpaid fines,
        duplicate loan) and fail before anything is written.
        """
        as_of = as_of or self.clock.now()
        student = self.get_student(student_id)
        book = self.get_book(book_id)

        if book.available_copies <= 0:
            raise BookUnavailable("Book is not available for borrowing", book_id=book_id)

        overdue = self.overdue_count(student_id, as_of)
        if overdue > 0:
            raise StudentHasOverdue(
                "Student has overdue books. Please return them first.",
                overdue_count=overdue
            )

        unpaid = self.unpaid_fine_total(student_id)
        if unpaid > 0:
            raise StudentHasUnpaidFine(
                "Student has unpaid fines. Please clear them first.",
                total_fines=unpaid
            )

        existing = self.db.query(Loan).filter(
            Loan.student_id == student_id,
            Loan.book_id == book_id,
            Loan.status.in_(OUTSTANDING_STATUSES)
        ).first()
        if existing:
            raise AlreadyBorrowed("Student already has this book checked out", loan_id=existing.loan_id)

        days = borrow_days or book.max_borrow_days or settings.default_max_borrow_days
        try:
            taken = self.db.execute(
                update(Book)
                .where(Book.book_id == book_id, Book.available_copies > 0)
                .values(available_copies=Book.available_copies - 1)
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                self.db.rollback()
                raise BookUnavailable("Book is not available for borrowing", book_id=book_id)

            self.db.execute(
                update(Book)
                .where(Book.book_id == book_id, Book.available_copies == 0, Book.status == 'available')
                .values(status='borrowed')
                .execution_options(synchronize_session=False)
            )

            loan = Loan(
                student_id=student_id,
                book_id=book_id,
                borrow_date=as_of,
                due_date=as_of + timedelta(days=days),
                status='active',
                fine_amount=Decimal("0.00"),
                fine_paid=False,
            )
            self.db.add(loan)
            student.total_books_issued_all_semesters = Student.total_books_issued_all_semesters + 1
            student.library_cleared = False
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AlreadyBorrowed("Student already has this book checked out", book_id=book_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Borrow failed for student {student_id}, book {book_id}: {e}", exc_info=True)
            raise Transient("Could not record the loan, please retry")

        self.db.refresh(loan)
        logger.info(f"Loan {loan.loan_id}: student {student_id} borrowed book {book_id}, due {loan.due_date.isoformat()}")
        self.notify_student(student, "book_borrowed", {
            "loanId": loan.loan_id,
            "bookId": book_id,
            "title": book.title,
            "dueDate": loan.due_date.isoformat(),
            "dailyFine": float(book.daily_fine),
            "replacementCost": float(book.replacement_cost),
        })
        return loan

    def return_book(self, student_id: int, book_id: int, as_of: Optional[datetime] = None,
                    condition: str = "good", notes: Optional[str] = None) -> ReturnResult:
        """Close the outstanding loan of ``book_id`` held by ``student_id`` and record its fine."""
        as_of = as_of or self.clock.now()
        loan = self.db.query(Loan).filter(
            Loan.student_id == student_id,
            Loan.book_id == book_id,
            Loan.status.in_(OUTSTANDING_STATUSES)
        ).first()
        if not loan:
            raise LoanNotFound(
                "Active borrowing transaction not found",
                student_id=student_id, book_id=book_id
            )

        book = loan.book
        student = loan.student
        breakdown = calculate_fine(book, loan, as_of, condition)

        try:
            loan.status = 'returned'
            loan.return_date = as_of
            loan.return_condition = condition
            loan.fine_amount = breakdown.total
            loan.notes = notes or f"Book condition: {condition}"

            if condition != 'lost':
                self.db.execute(
                    update(Book)
                    .where(Book.book_id == book_id,
                           Book.available_copies + Book.lost_copies < Book.total_copies)
                    .values(
                        available_copies=Book.available_copies + 1,
                        status=case((Book.status == 'borrowed', 'available'), else_=Book.status),
                    )
                    .execution_options(synchronize_session=False)
                )
                student.total_books_returned_all_semesters = Student.total_books_returned_all_semesters + 1
            else:
                self.db.execute(
                    update(Book)
                    .where(Book.book_id == book_id, Book.lost_copies < Book.total_copies)
                    .values(lost_copies=Book.lost_copies + 1)
                    .execution_options(synchronize_session=False)
                )

            self.db.flush()
            student.library_cleared = self.is_clear(student_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Return failed for loan {loan.loan_id}: {e}", exc_info=True)
            raise Transient("Could not record the return, please retry")

        result = ReturnResult(
            loan_id=loan.loan_id,
            return_date=as_of,
            condition=condition,
            days_overdue=breakdown.days_overdue,
            fine_amount=float(breakdown.late_fine),
            replacement_cost=float(breakdown.replacement_cost),
            total_due=float(breakdown.total),
            payment_required=breakdown.total > 0,
        )
        logger.info(f"Loan {loan.loan_id} returned ({condition}), total due {breakdown.total}")
        self.notify_student(student, "book_returned", result.model_dump(mode="json"))
        return result

    def return_loan(self, loan_id: int, as_of: Optional[datetime] = None,
                    condition: str = "good", notes: Optional[str] = None) -> ReturnResult:
        loan = self.get_loan(loan_id)
        if not loan.is_outstanding:
            raise LoanNotFound("Active borrowing transaction not found", loan_id=loan_id)
        return self.return_book(loan.student_id, loan.book_id, as_of, condition, notes)

    def renew(self, loan_id: int, as_of: Optional[datetime] = None) -> Loan:
        as_of = as_of or self.clock.now()
        loan = self.get_loan(loan_id)
        if loan.status != 'active' or loan.due_date < as_of:
            raise RenewalNotAllowed("Only active loans that are not past due can be renewed", loan_id=loan_id)
        if loan.renew_count >= settings.max_renewals:
            raise RenewalNotAllowed("Renewal limit reached", loan_id=loan_id, max_renewals=settings.max_renewals)
        unpaid = self.unpaid_fine_total(loan.student_id)
        if unpaid > 0:
            raise StudentHasUnpaidFine("Student has unpaid fines. Please clear them first.", total_fines=unpaid)

        loan.due_date = loan.due_date + timedelta(days=loan.book.max_borrow_days)
        loan.renew_count = loan.renew_count + 1
        self.db.commit()
        self.db.refresh(loan)
        logger.info(f"Loan {loan_id} renewed, now due {loan.due_date.isoformat()}")
        return loan

    def mark_overdue(self, as_of: Optional[datetime] = None) -> int:
        """Flip active loans past their due date to overdue. Idempotent."""
        as_of = as_of or self.clock.now()
        try:
            result = self.db.execute(
                update(Loan)
                .where(Loan.status == 'active', Loan.due_date < as_of)
                .values(status='overdue')
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Overdue sweep failed: {e}", exc_info=True)
            raise Transient("Overdue sweep failed")
        if result.rowcount:
            logger.info(f"Marked {result.rowcount} loans overdue")
        return result.rowcount

    def pay_fines(self, student_id: int, amount, as_of: Optional[datetime] = None,
                  payment_mode: str = "cash") -> PaymentReceipt:
        """Settle every unpaid fine of a student in one batch; ``amount`` must match the total."""
        as_of = as_of or self.clock.now()
        student = self.get_student(student_id)
        loans = self.unpaid_fine_loans(student_id)
        if not loans:
            raise NoUnpaidFines("No unpaid fines found", student_id=student_id)

        expected = sum((to_money(loan.fine_amount) for loan in loans), Decimal("0.00"))
        provided = to_money(amount)
        if abs(provided - expected) > to_money(settings.fine_payment_tolerance):
            raise AmountMismatch(
                "Payment amount does not match total outstanding fines",
                expected=expected, provided=provided
            )

        loan_ids = [loan.loan_id for loan in loans]
        try:
            paid = self.db.execute(
                update(Loan)
                .where(Loan.loan_id.in_(loan_ids), Loan.fine_paid.is_(False))
                .values(fine_paid=True, fine_payment_date=as_of, payment_mode=payment_mode)
                .execution_options(synchronize_session=False)
            )
            if paid.rowcount != len(loan_ids):
                self.db.rollback()
                raise ConcurrentUpdate("Fines changed during payment, please retry", expected=expected)
            student.library_cleared = not self.outstanding_loans(student_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Fine payment failed for student {student_id}: {e}", exc_info=True)
            raise Transient("Could not record the payment, please retry")

        receipt = PaymentReceipt(
            student_id=student_id,
            paid_amount=float(provided),
            transaction_count=len(loan_ids),
            payment_mode=payment_mode,
            paid_at=as_of,
            receipt_number=f"FINE-{as_of.strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6].upper()}",
        )
        logger.info(f"Student {student_id} paid {provided} across {len(loan_ids)} loans ({receipt.receipt_number})")
        self.notify_student(student, "fines_paid", receipt.model_dump(mode="json"))
        return receipt

    # Reporting

    def _describe(self, loan: Loan, as_of: datetime) -> OutstandingLoan:
        breakdown = calculate_fine(loan.book, loan, as_of)
        return OutstandingLoan(
            loan_id=loan.loan_id,
            student_id=loan.student_id,
            book_id=loan.book_id,
            book_title=loan.book.title,
            borrow_date=loan.borrow_date,
            due_date=loan.due_date,
            status='overdue' if breakdown.days_overdue > 0 else loan.status,
            days_overdue=breakdown.days_overdue,
            accrued_fine=float(breakdown.late_fine),
            daily_fine=float(loan.book.daily_fine),
        )

    def accrued_fine_total(self, loans: List[Loan], as_of: datetime) -> Decimal:
        return sum((calculate_fine(loan.book, loan, as_of).late_fine for loan in loans), Decimal("0.00"))

    def outstanding(self, as_of: Optional[datetime] = None, status: Optional[str] = None,
                    page: int = 1, limit: int = 50) -> List[OutstandingLoan]:
        """Outstanding loans across all students, earliest due first."""
        as_of = as_of or self.clock.now()
        query = self.db.query(Loan).filter(Loan.status.in_(OUTSTANDING_STATUSES))
        if status == 'overdue':
            query = query.filter(self.overdue_filter(as_of))
        elif status == 'active':
            query = query.filter(Loan.status == 'active', Loan.due_date >= as_of)
        loans = query.order_by(Loan.due_date.asc()).offset((page - 1) * limit).limit(limit).all()
        return [self._describe(loan, as_of) for loan in loans]

    def student_summary(self, student_id: int, as_of: Optional[datetime] = None) -> LibrarySummary:
        as_of = as_of or self.clock.now()
        self.get_student(student_id)
        outstanding = self.outstanding_loans(student_id)
        unpaid = self.unpaid_fine_total(student_id)
        accrued = self.accrued_fine_total(outstanding, as_of)
        total_count = self.db.query(func.count(Loan.loan_id)).filter(Loan.student_id == student_id).scalar()
        return LibrarySummary(
            student_id=student_id,
            active_books=[self._describe(loan, as_of) for loan in outstanding],
            active_book_count=len(outstanding),
            total_unpaid_fines=float(unpaid),
            total_current_fines=float(accrued),
            total_fines=float(unpaid + accrued),
            total_transactions_count=total_count,
        )

    def dashboard_stats(self, as_of: Optional[datetime] = None) -> DashboardStats:
        as_of = as_of or self.clock.now()
        titles, copies, available = self.db.query(
            func.count(Book.book_id),
            func.coalesce(func.sum(Book.total_copies), 0),
            func.coalesce(func.sum(Book.available_copies), 0),
        ).one()
        active = self.db.query(func.count(Loan.loan_id)).filter(Loan.status.in_(OUTSTANDING_STATUSES)).scalar()
        overdue = self.db.query(func.count(Loan.loan_id)).filter(self.overdue_filter(as_of)).scalar()
        fined = self.db.query(Loan.fine_amount, Loan.fine_paid).filter(Loan.fine_amount > 0).all()
        collected = sum((to_money(amount) for amount, is_paid in fined if is_paid), Decimal("0.00"))
        pending = sum((to_money(amount) for amount, is_paid in fined if not is_paid), Decimal("0.00"))
        noc = dict(
            self.db.query(Student.library_noc_status, func.count(Student.student_id))
            .group_by(Student.library_noc_status).all()
        )
        return DashboardStats(
            total_titles=titles,
            total_copies=int(copies),
            available_copies=int(available),
            active_loans=active,
            overdue_loans=overdue,
            total_fines=float(collected + pending),
            collected_fines=float(collected),
            pending_fines=float(pending),
            noc=noc,
        )

    def notify_student(self, student: Student, kind: str, payload: dict):
        if not student.user_id:
            logger.debug(f"Student {student.student_id} has no linked user, skipping '{kind}' notification")
            return
        try:
            self.notifier.notify(student.user_id, kind, payload)
        except Exception as e:
            logger.warning(f"Notification '{kind}' for student {student.student_id} failed: {e}", exc_info=True)
