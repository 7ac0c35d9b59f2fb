import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session
from app.models.student import Student
from app.schemas.noc import EligibilityReport, ClearanceOption, NOCStatusResponse
from app.services.clearance import ClearanceEvaluator, clearance_evaluator
from app.services.errors import NotEligible, NOCAlreadyIssued, InvalidTransition, RegistrationBlocked
from app.services.fines import to_money
from app.services.loan_ledger import LoanLedger
from app.utils.timezone import system_clock

logger = logging.getLogger(__name__)


class NOCService:
    """Library No-Objection Certificate decisions.

    A student's NOC moves ``pending -> approved`` (only while nothing is owed)
    or ``pending -> rejected``; a rejection can be reopened back to pending.
    """

    def __init__(self, db: Session, ledger: Optional[LoanLedger] = None,
                 evaluator: Optional[ClearanceEvaluator] = None, notifier=None, clock=None):
        self.db = db
        self.clock = clock or system_clock
        self.ledger = ledger or LoanLedger(db, notifier=notifier, clock=self.clock)
        self.evaluator = evaluator or clearance_evaluator

    def check_eligibility(self, student_id: int, target_semester: Optional[int] = None,
                          as_of: Optional[datetime] = None) -> EligibilityReport:
        """Read-only report of what the student owes and how they can clear it."""
        as_of = as_of or self.clock.now()
        student = self.ledger.get_student(student_id)
        target = target_semester or student.current_semester + 1

        outstanding = self.ledger.outstanding_loans(student_id)
        pending_fines = self.ledger.unpaid_fine_total(student_id)
        accrued = self.ledger.accrued_fine_total(outstanding, as_of)
        replacement = sum((to_money(loan.book.replacement_cost) for loan in outstanding), Decimal("0.00"))

        clearance = self.evaluator.evaluate(
            student.current_semester,
            target,
            student.total_books_issued_all_semesters,
            student.total_books_returned_all_semesters,
        )

        return EligibilityReport(
            student_id=student_id,
            can_get_noc=len(outstanding) == 0 and pending_fines == 0,
            pending_loan_count=len(outstanding),
            pending_fine_total=float(pending_fines),
            accrued_fine_total=float(accrued),
            lost_book_replacement_total=float(replacement),
            noc_status=student.library_noc_status,
            clearance=clearance,
            clearance_options=[
                ClearanceOption(
                    type="return_books_pay_fines",
                    description="Return all books and pay pending fines",
                    amount=float(pending_fines),
                    pending_books_count=len(outstanding),
                ),
                ClearanceOption(
                    type="pay_full_cost",
                    description="Pay full cost of unreturned books + fines",
                    amount=float(pending_fines + replacement),
                ),
            ],
        )

    def issue(self, student_id: int, issuer_id: int, as_of: Optional[datetime] = None,
              target_semester: Optional[int] = None) -> Student:
        """Approve the NOC when nothing is owed and the return quota for ``target_semester`` is met."""
        as_of = as_of or self.clock.now()
        student = self.ledger.get_student(student_id)
        if student.library_noc_status == 'approved':
            raise NOCAlreadyIssued("Library NOC already issued", student_id=student_id)
        if student.library_noc_status == 'rejected':
            raise InvalidTransition("NOC was rejected; reopen it before issuing", student_id=student_id)

        report = self.check_eligibility(student_id, target_semester, as_of)
        if not report.can_get_noc:
            raise NotEligible(
                f"You have {report.pending_loan_count} pending books and "
                f"{report.pending_fine_total:.2f} in unpaid fines. Please clear your library dues to get NOC.",
                pending_loan_count=report.pending_loan_count,
                pending_fine_total=report.pending_fine_total,
                lost_book_replacement_total=report.lost_book_replacement_total,
            )
        clearance = report.clearance
        if clearance.requires_clearance and not clearance.meets_requirement:
            raise NotEligible(
                f"You need to return {clearance.shortfall} more books to meet the "
                f"{clearance.required_percentage}% requirement before the NOC can be issued",
                shortfall=clearance.shortfall,
                required_returns=clearance.required_returns,
                target_semester=clearance.target_semester,
            )

        student.library_noc_status = 'approved'
        student.library_noc_date = as_of
        student.library_noc_issued_by = issuer_id
        student.library_noc_note = None
        student.library_cleared = True
        self.db.commit()
        self.db.refresh(student)
        logger.info(f"Library NOC issued to student {student_id} by user {issuer_id}")
        self.ledger.notify_student(student, "noc_issued", {"studentId": student_id, "issuedAt": as_of.isoformat()})
        return student

    def reject(self, student_id: int, rejected_by: int, reason: Optional[str] = None,
               as_of: Optional[datetime] = None) -> Student:
        as_of = as_of or self.clock.now()
        student = self.ledger.get_student(student_id)
        if student.library_noc_status != 'pending':
            raise InvalidTransition(
                f"Cannot reject a NOC that is {student.library_noc_status}", student_id=student_id
            )
        student.library_noc_status = 'rejected'
        student.library_noc_date = as_of
        student.library_noc_issued_by = rejected_by
        student.library_noc_note = reason
        self.db.commit()
        self.db.refresh(student)
        logger.info(f"Library NOC rejected for student {student_id} by user {rejected_by}")
        self.ledger.notify_student(student, "noc_rejected", {"studentId": student_id, "reason": reason})
        return student

    def reopen(self, student_id: int) -> Student:
        student = self.ledger.get_student(student_id)
        if student.library_noc_status != 'rejected':
            raise InvalidTransition("Only a rejected NOC can be reopened", student_id=student_id)
        student.library_noc_status = 'pending'
        student.library_noc_date = None
        student.library_noc_issued_by = None
        student.library_noc_note = None
        self.db.commit()
        self.db.refresh(student)
        logger.info(f"Library NOC reopened for student {student_id}")
        return student

    def status(self, student_id: int) -> NOCStatusResponse:
        student = self.ledger.get_student(student_id)
        return NOCStatusResponse(
            student_id=student.student_id,
            noc_status=student.library_noc_status,
            library_cleared=student.library_cleared,
            noc_date=student.library_noc_date.isoformat() if student.library_noc_date else None,
            issued_by=str(student.library_noc_issued_by) if student.library_noc_issued_by else None,
            note=student.library_noc_note,
        )

    def gate_registration(self, student_id: int, target_semester: Optional[int] = None,
                          as_of: Optional[datetime] = None) -> EligibilityReport:
        """Registration check for the next semester; raises when the return quota is not met."""
        report = self.check_eligibility(student_id, target_semester, as_of)
        clearance = report.clearance
        if clearance.requires_clearance and not clearance.meets_requirement:
            logger.info(
                f"Registration for semester {clearance.target_semester} blocked for student {student_id}: "
                f"shortfall {clearance.shortfall}"
            )
            raise RegistrationBlocked(
                f"You need to return {clearance.shortfall} more books to meet the "
                f"{clearance.required_percentage}% requirement",
                shortfall=clearance.shortfall,
                required_returns=clearance.required_returns,
                target_semester=clearance.target_semester,
            )
        return report
