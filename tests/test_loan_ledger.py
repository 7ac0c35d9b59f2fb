"""
Unit tests for LoanLedger: borrow, return, renew, overdue sweep and fine payment
"""
import threading
from datetime import timedelta
from decimal import Decimal
import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from app.database import Base, build_engine
from app.models import Book, Loan, Student
from app.services.errors import (
    AlreadyBorrowed, AmountMismatch, BookNotFound, BookUnavailable, ConcurrentUpdate, LoanNotFound,
    NoUnpaidFines, RenewalNotAllowed, StudentHasOverdue, StudentHasUnpaidFine, StudentNotFound,
)
from app.services.loan_ledger import LoanLedger


@pytest.fixture
def ledger(db, notifier, clock):
    return LoanLedger(db, notifier=notifier, clock=clock)


def outstanding_on(db, book):
    return db.query(Loan).filter(Loan.book_id == book.book_id, Loan.status.in_(['active', 'overdue'])).count()


class TestBorrow:
    def test_borrow_issues_copy(self, db, ledger, notifier, clock, make_student, make_book):
        student = make_student()
        book = make_book(total=2, max_borrow_days=14)

        loan = ledger.borrow(student.student_id, book.book_id)

        db.refresh(book)
        db.refresh(student)
        assert loan.status == 'active'
        assert loan.due_date == clock.now() + timedelta(days=14)
        assert book.available_copies == 1
        assert student.total_books_issued_all_semesters == 1
        assert student.library_cleared is False
        assert notifier.sent[0][0] == student.user_id
        assert notifier.kinds() == ["book_borrowed"]

    def test_borrow_days_override(self, ledger, clock, make_student, make_book):
        loan = ledger.borrow(make_student().student_id, make_book().book_id, borrow_days=3)
        assert loan.due_date == clock.now() + timedelta(days=3)

    def test_last_copy_goes_to_first_borrower(self, db, ledger, make_student, make_book):
        """Test a second borrower of a single-copy book is refused"""
        book = make_book(total=1)
        x, y = make_student(), make_student()

        ledger.borrow(x.student_id, book.book_id)
        db.refresh(book)
        assert book.available_copies == 0
        assert book.status == 'borrowed'

        with pytest.raises(BookUnavailable):
            ledger.borrow(y.student_id, book.book_id)
        db.refresh(book)
        assert book.available_copies == 0
        assert outstanding_on(db, book) == 1

    def test_same_book_twice_is_conflict(self, ledger, make_student, make_book):
        student = make_student()
        book = make_book(total=3)
        ledger.borrow(student.student_id, book.book_id)

        with pytest.raises(AlreadyBorrowed):
            ledger.borrow(student.student_id, book.book_id)

    def test_overdue_student_cannot_borrow(self, ledger, clock, make_student, make_book):
        student = make_student()
        ledger.borrow(student.student_id, make_book(max_borrow_days=14).book_id)
        clock.advance(days=15)

        with pytest.raises(StudentHasOverdue) as exc_info:
            ledger.borrow(student.student_id, make_book().book_id)
        assert exc_info.value.details["overdue_count"] == 1

    def test_unpaid_fine_blocks_borrow(self, ledger, clock, make_student, make_book):
        student = make_student()
        book = make_book(max_borrow_days=14)
        ledger.borrow(student.student_id, book.book_id)
        clock.advance(days=16)
        ledger.return_book(student.student_id, book.book_id)

        with pytest.raises(StudentHasUnpaidFine) as exc_info:
            ledger.borrow(student.student_id, make_book().book_id)
        assert exc_info.value.details["total_fines"] == Decimal("20.00")

    def test_unknown_student_and_book(self, ledger, make_student, make_book):
        with pytest.raises(StudentNotFound):
            ledger.borrow(999, make_book().book_id)
        with pytest.raises(BookNotFound):
            ledger.borrow(make_student().student_id, 999)

    def test_notification_failure_does_not_undo_borrow(self, db, failing_notifier, clock, make_student, make_book):
        ledger = LoanLedger(db, notifier=failing_notifier, clock=clock)
        book = make_book()
        loan = ledger.borrow(make_student().student_id, book.book_id)
        assert loan.loan_id is not None
        assert outstanding_on(db, book) == 1

    def test_database_rejects_second_outstanding_loan(self, db, clock, make_student, make_book):
        student = make_student()
        book = make_book(total=2)
        for _ in range(2):
            db.add(Loan(student_id=student.student_id, book_id=book.book_id, borrow_date=clock.now(),
                        due_date=clock.now() + timedelta(days=1), status='active'))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()


class TestReturn:
    def test_return_five_days_late(self, db, ledger, clock, make_student, make_book):
        """Test a good-condition return five days after the due date"""
        student = make_student()
        book = make_book(total=1, daily_fine=10, max_borrow_days=14)
        loan = ledger.borrow(student.student_id, book.book_id)
        clock.advance(days=19)

        result = ledger.return_book(student.student_id, book.book_id)

        db.refresh(book)
        db.refresh(loan)
        db.refresh(student)
        assert result.days_overdue == 5
        assert result.fine_amount == 50.0
        assert result.total_due == 50.0
        assert result.payment_required is True
        assert loan.status == 'returned'
        assert loan.fine_amount == Decimal("50.00")
        assert book.available_copies == 1
        assert book.status == 'available'
        assert student.total_books_returned_all_semesters == 1

    def test_on_time_return_clears_student(self, db, ledger, make_student, make_book):
        student = make_student()
        book = make_book()
        ledger.borrow(student.student_id, book.book_id)
        result = ledger.return_book(student.student_id, book.book_id)

        db.refresh(student)
        assert result.total_due == 0.0
        assert result.payment_required is False
        assert student.library_cleared is True

    def test_lost_copy_is_tracked_not_restocked(self, db, ledger, clock, make_student, make_book):
        student = make_student()
        book = make_book(total=2, replacement_cost=600, max_borrow_days=14)
        ledger.borrow(student.student_id, book.book_id)
        clock.advance(days=16)

        result = ledger.return_book(student.student_id, book.book_id, condition="lost")

        db.refresh(book)
        db.refresh(student)
        assert result.replacement_cost == 600.0
        assert result.total_due == 620.0
        assert book.available_copies == 1
        assert book.lost_copies == 1
        assert book.total_copies == 2
        assert student.total_books_returned_all_semesters == 0

    def test_damaged_copy_returns_to_shelf_with_charge(self, db, ledger, make_student, make_book):
        student = make_student()
        book = make_book(replacement_cost=400)
        ledger.borrow(student.student_id, book.book_id)
        result = ledger.return_book(student.student_id, book.book_id, condition="damaged")

        db.refresh(book)
        assert result.total_due == 400.0
        assert book.available_copies == 1

    def test_availability_is_conserved(self, db, ledger, make_student, make_book):
        book = make_book(total=3)
        students = [make_student() for _ in range(3)]

        def check():
            db.refresh(book)
            assert book.available_copies + outstanding_on(db, book) + book.lost_copies == book.total_copies

        for s in students:
            ledger.borrow(s.student_id, book.book_id)
            check()
        ledger.return_book(students[0].student_id, book.book_id)
        check()
        ledger.return_book(students[1].student_id, book.book_id, condition="lost")
        check()
        ledger.borrow(students[0].student_id, book.book_id)
        check()
        db.refresh(book)
        assert book.available_copies == 0

    def test_return_without_loan(self, ledger, make_student, make_book):
        with pytest.raises(LoanNotFound):
            ledger.return_book(make_student().student_id, make_book().book_id)

    def test_return_by_loan_id(self, ledger, make_student, make_book):
        loan = ledger.borrow(make_student().student_id, make_book().book_id)
        assert ledger.return_loan(loan.loan_id).loan_id == loan.loan_id
        with pytest.raises(LoanNotFound):
            ledger.return_loan(loan.loan_id)


class TestRenewAndOverdue:
    def test_renew_extends_due_date(self, ledger, make_student, make_book):
        loan = ledger.borrow(make_student().student_id, make_book(max_borrow_days=14).book_id)
        due = loan.due_date
        renewed = ledger.renew(loan.loan_id)
        assert renewed.due_date == due + timedelta(days=14)
        assert renewed.renew_count == 1

    def test_renew_limit(self, ledger, make_student, make_book):
        loan = ledger.borrow(make_student().student_id, make_book().book_id)
        ledger.renew(loan.loan_id)
        ledger.renew(loan.loan_id)
        with pytest.raises(RenewalNotAllowed):
            ledger.renew(loan.loan_id)

    def test_past_due_loan_cannot_be_renewed(self, ledger, clock, make_student, make_book):
        loan = ledger.borrow(make_student().student_id, make_book(max_borrow_days=14).book_id)
        clock.advance(days=15)
        with pytest.raises(RenewalNotAllowed):
            ledger.renew(loan.loan_id)

    def test_mark_overdue_is_idempotent(self, db, ledger, clock, make_student, make_book):
        loan = ledger.borrow(make_student().student_id, make_book(max_borrow_days=14).book_id)
        assert ledger.mark_overdue() == 0
        clock.advance(days=15)
        assert ledger.mark_overdue() == 1
        assert ledger.mark_overdue() == 0
        db.refresh(loan)
        assert loan.status == 'overdue'

    def test_outstanding_listing_reports_accruing_fine(self, ledger, clock, make_student, make_book):
        ledger.borrow(make_student().student_id, make_book(daily_fine=5, max_borrow_days=14).book_id)
        ledger.borrow(make_student().student_id, make_book(max_borrow_days=30).book_id)
        clock.advance(days=17)

        overdue = ledger.outstanding(status='overdue')
        assert len(overdue) == 1
        assert overdue[0].days_overdue == 3
        assert overdue[0].accrued_fine == 15.0
        assert len(ledger.outstanding()) == 2


class TestPayFines:
    @pytest.fixture
    def fined_student(self, ledger, clock, make_student, make_book):
        student = make_student()
        book = make_book(max_borrow_days=14)
        ledger.borrow(student.student_id, book.book_id)
        clock.advance(days=16)
        ledger.return_book(student.student_id, book.book_id)
        return student

    def test_amount_must_match(self, ledger, fined_student):
        with pytest.raises(AmountMismatch) as exc_info:
            ledger.pay_fines(fined_student.student_id, 15)
        assert exc_info.value.details["expected"] == Decimal("20.00")

    def test_pay_settles_all_fines(self, db, ledger, notifier, fined_student):
        receipt = ledger.pay_fines(fined_student.student_id, 20, payment_mode="upi")

        db.refresh(fined_student)
        assert receipt.paid_amount == 20.0
        assert receipt.transaction_count == 1
        assert receipt.payment_mode == "upi"
        assert receipt.receipt_number.startswith("FINE-")
        assert ledger.unpaid_fine_total(fined_student.student_id) == Decimal("0.00")
        assert fined_student.library_cleared is True
        assert notifier.kinds()[-1] == "fines_paid"

        with pytest.raises(NoUnpaidFines):
            ledger.pay_fines(fined_student.student_id, 20)

    def test_tolerance_of_one_cent(self, ledger, fined_student):
        assert ledger.pay_fines(fined_student.student_id, 19.99).transaction_count == 1

    def test_summary_lists_unpaid_fines(self, ledger, fined_student):
        summary = ledger.student_summary(fined_student.student_id)
        assert summary.total_unpaid_fines == 20.0
        assert summary.active_book_count == 0
        assert summary.total_transactions_count == 1


class TestGuardedWrites:
    def test_decrement_refuses_stale_availability(self, db, ledger, make_student, make_book):
        """Test the conditional decrement holds when the availability check saw a stale copy count"""
        book = make_book(total=1)
        x, y = make_student(), make_student()
        ledger.borrow(x.student_id, book.book_id)

        stale = ledger.get_book(book.book_id)
        stale.available_copies = 1  # unflushed; the row still says 0
        with pytest.raises(BookUnavailable):
            ledger.borrow(y.student_id, book.book_id)

        db.refresh(book)
        assert book.available_copies == 0
        assert outstanding_on(db, book) == 1

    def test_payment_is_all_or_nothing(self, db, ledger, clock, make_student, make_book, monkeypatch):
        """Test a fine settled elsewhere mid-payment leaves every other fine unpaid"""
        student = make_student()
        books = [make_book(max_borrow_days=14), make_book(max_borrow_days=14)]
        for book in books:
            ledger.borrow(student.student_id, book.book_id)
        clock.advance(days=16)
        for book in books:
            ledger.return_book(student.student_id, book.book_id)

        seen = ledger.unpaid_fine_loans(student.student_id)
        db.execute(update(Loan).where(Loan.loan_id == seen[0].loan_id).values(fine_paid=True))
        db.commit()
        monkeypatch.setattr(ledger, "unpaid_fine_loans", lambda student_id: seen)

        with pytest.raises(ConcurrentUpdate):
            ledger.pay_fines(student.student_id, 40)

        db.expire_all()
        assert db.query(Loan).filter(Loan.loan_id == seen[1].loan_id).one().fine_paid is False


@pytest.fixture
def file_sessions(tmp_path):
    """Session factory over a file database so threads use separate connections"""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


def run_together(callers, work):
    """Run ``work(n)`` on ``callers`` threads released at once; returns (results, errors)."""
    barrier = threading.Barrier(callers)
    results, errors = [], []

    def caller(n):
        try:
            barrier.wait()
            results.append(work(n))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=caller, args=(n,)) for n in range(callers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestConcurrency:
    def test_concurrent_borrowers_of_last_copy(self, file_sessions, notifier, clock):
        """Test N students racing for a single-copy book yield exactly one loan"""
        callers = 8
        setup = file_sessions()
        book = Book(title="Signals and Systems", author="Oppenheim", department="ECE",
                    total_copies=1, available_copies=1, lost_copies=0, status='available',
                    price=500, replacement_cost=750, daily_fine=10, max_borrow_days=14)
        students = [
            Student(university_reg_number=f"RACE{n:03d}", name=f"Racer {n}", email=f"racer{n}@college.edu",
                    current_semester=3)
            for n in range(callers)
        ]
        setup.add_all([book, *students])
        setup.commit()
        book_id = book.book_id
        student_ids = [s.student_id for s in students]
        setup.close()

        def borrow(n):
            session = file_sessions()
            try:
                return LoanLedger(session, notifier=notifier, clock=clock).borrow(student_ids[n], book_id).loan_id
            finally:
                session.close()

        results, errors = run_together(callers, borrow)

        check = file_sessions()
        try:
            assert len(results) == 1
            assert len(errors) == callers - 1
            assert all(isinstance(e, BookUnavailable) for e in errors)
            assert check.query(Loan).count() == 1
            assert check.get(Book, book_id).available_copies == 0
        finally:
            check.close()

    def test_concurrent_payments_settle_once(self, file_sessions, notifier, clock):
        """Test two simultaneous payments of the same fines produce one receipt"""
        setup = file_sessions()
        student = Student(university_reg_number="PAY001", name="Payer", email="payer@college.edu",
                          current_semester=3)
        books = [
            Book(title=f"Fined {n}", author="A. Author", department="CSE", total_copies=1,
                 available_copies=1, lost_copies=0, status='available', price=500,
                 replacement_cost=750, daily_fine=10, max_borrow_days=14)
            for n in range(3)
        ]
        setup.add_all([student, *books])
        setup.flush()
        for book in books:
            setup.add(Loan(student_id=student.student_id, book_id=book.book_id, borrow_date=clock.now(),
                           due_date=clock.now(), return_date=clock.now(), status='returned',
                           fine_amount=Decimal("20.00"), fine_paid=False))
        setup.commit()
        student_id = student.student_id
        setup.close()

        def pay(n):
            session = file_sessions()
            try:
                return LoanLedger(session, notifier=notifier, clock=clock).pay_fines(student_id, 60)
            finally:
                session.close()

        results, errors = run_together(2, pay)

        check = file_sessions()
        try:
            assert len(results) == 1
            assert results[0].transaction_count == 3
            assert len(errors) == 1
            assert isinstance(errors[0], (NoUnpaidFines, ConcurrentUpdate))
            assert check.query(Loan).filter(Loan.fine_paid.is_(False)).count() == 0
        finally:
            check.close()
