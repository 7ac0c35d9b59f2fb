"""
Unit tests for NOC eligibility, decisions and the registration gate
"""
import pytest
from app.services.errors import (
    InvalidTransition, NOCAlreadyIssued, NotEligible, RegistrationBlocked, StudentNotFound,
)
from app.services.loan_ledger import LoanLedger
from app.services.noc_service import NOCService


@pytest.fixture
def ledger(db, notifier, clock):
    return LoanLedger(db, notifier=notifier, clock=clock)


@pytest.fixture
def noc(db, ledger, clock):
    return NOCService(db, ledger=ledger, clock=clock)


class TestEligibility:
    def test_clean_student_is_eligible(self, noc, make_student):
        student = make_student(semester=4, issued=10, returned=10)
        report = noc.check_eligibility(student.student_id)

        assert report.can_get_noc is True
        assert report.pending_loan_count == 0
        assert report.pending_fine_total == 0.0
        assert report.clearance.target_semester == 5
        assert report.clearance.meets_requirement is True

    def test_outstanding_loan_blocks(self, noc, ledger, make_student, make_book):
        student = make_student()
        ledger.borrow(student.student_id, make_book(replacement_cost=900).book_id)

        report = noc.check_eligibility(student.student_id)
        assert report.can_get_noc is False
        assert report.pending_loan_count == 1
        assert report.lost_book_replacement_total == 900.0
        options = {o.type: o for o in report.clearance_options}
        assert options["return_books_pay_fines"].pending_books_count == 1
        assert options["pay_full_cost"].amount == 900.0

    def test_unpaid_fine_blocks(self, noc, ledger, clock, make_student, make_book):
        student = make_student()
        book = make_book(max_borrow_days=14)
        ledger.borrow(student.student_id, book.book_id)
        clock.advance(days=17)
        ledger.return_book(student.student_id, book.book_id)

        report = noc.check_eligibility(student.student_id)
        assert report.can_get_noc is False
        assert report.pending_fine_total == 30.0

    def test_accrued_fine_is_informational(self, noc, ledger, clock, make_student, make_book):
        student = make_student()
        ledger.borrow(student.student_id, make_book(max_borrow_days=14).book_id)
        clock.advance(days=18)

        report = noc.check_eligibility(student.student_id)
        assert report.accrued_fine_total == 40.0
        assert report.pending_fine_total == 0.0

    def test_repeated_checks_are_identical(self, noc, ledger, make_student, make_book):
        student = make_student(semester=4, issued=5, returned=3)
        ledger.borrow(student.student_id, make_book().book_id)

        first = noc.check_eligibility(student.student_id)
        second = noc.check_eligibility(student.student_id)
        assert first == second

    def test_unknown_student(self, noc):
        with pytest.raises(StudentNotFound):
            noc.check_eligibility(404)


class TestDecisions:
    def test_issue_approves_and_notifies(self, db, noc, notifier, make_student, make_user):
        librarian = make_user(role='librarian')
        student = make_student()

        noc.issue(student.student_id, librarian.user_id)

        db.refresh(student)
        assert student.library_noc_status == 'approved'
        assert student.library_noc_issued_by == librarian.user_id
        assert student.library_cleared is True
        assert "noc_issued" in notifier.kinds()

    def test_issue_twice_is_conflict(self, noc, make_student, make_user):
        librarian = make_user(role='librarian')
        student = make_student()
        noc.issue(student.student_id, librarian.user_id)
        with pytest.raises(NOCAlreadyIssued):
            noc.issue(student.student_id, librarian.user_id)

    def test_issue_refused_with_dues(self, noc, ledger, make_student, make_book, make_user):
        student = make_student()
        ledger.borrow(student.student_id, make_book().book_id)
        with pytest.raises(NotEligible) as exc_info:
            noc.issue(student.student_id, make_user(role='librarian').user_id)
        assert exc_info.value.details["pending_loan_count"] == 1

    def test_issue_refused_below_return_quota(self, db, noc, make_student, make_user):
        """Test a student short of the 80% return quota for semester 5 stays pending"""
        student = make_student(semester=4, issued=20, returned=14)
        with pytest.raises(NotEligible) as exc_info:
            noc.issue(student.student_id, make_user(role='librarian').user_id)

        assert exc_info.value.details["shortfall"] == 2
        assert exc_info.value.details["required_returns"] == 16
        db.refresh(student)
        assert student.library_noc_status == 'pending'
        assert student.library_cleared is False

    def test_issue_for_ungated_semester_ignores_quota(self, noc, make_student, make_user):
        student = make_student(semester=2, issued=10, returned=0)
        noc.issue(student.student_id, make_user(role='librarian').user_id, target_semester=3)
        assert noc.status(student.student_id).noc_status == 'approved'

    def test_reject_then_reopen(self, db, noc, make_student, make_user):
        librarian = make_user(role='librarian')
        student = make_student()

        noc.reject(student.student_id, librarian.user_id, "Library card not surrendered")
        status = noc.status(student.student_id)
        assert status.noc_status == 'rejected'
        assert status.note == "Library card not surrendered"

        with pytest.raises(InvalidTransition):
            noc.issue(student.student_id, librarian.user_id)

        noc.reopen(student.student_id)
        assert noc.status(student.student_id).noc_status == 'pending'
        noc.issue(student.student_id, librarian.user_id)
        assert noc.status(student.student_id).noc_status == 'approved'

    def test_reopen_requires_rejection(self, noc, make_student):
        with pytest.raises(InvalidTransition):
            noc.reopen(make_student().student_id)


class TestRegistrationGate:
    def test_shortfall_blocks_registration(self, noc, make_student):
        """Test the 20 issued / 14 returned student cannot enter semester 5"""
        student = make_student(semester=4, issued=20, returned=14)
        with pytest.raises(RegistrationBlocked) as exc_info:
            noc.gate_registration(student.student_id)
        assert exc_info.value.details["shortfall"] == 2
        assert "2 more books" in exc_info.value.message

    def test_quota_met_passes(self, noc, make_student):
        student = make_student(semester=4, issued=20, returned=16)
        report = noc.gate_registration(student.student_id)
        assert report.clearance.meets_requirement is True

    def test_ungated_semester_passes(self, noc, make_student):
        student = make_student(semester=2, issued=10, returned=0)
        assert noc.gate_registration(student.student_id, target_semester=3).clearance.requires_clearance is False
