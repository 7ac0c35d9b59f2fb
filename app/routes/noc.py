import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from app.database import get_db
from app.models.user import User
from app.services.auth import get_current_user, require_library_staff, ensure_student_access
from app.services.loan_ledger import LoanLedger
from app.services.noc_service import NOCService
from app.schemas.noc import EligibilityReport, NOCDecisionRequest, NOCStatusResponse, RegistrationGateRequest
from app.utils.timezone import get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/library/noc", tags=["Library NOC"])
registration_router = APIRouter(prefix="/api/registration", tags=["Registration"])

@router.get("/students/{student_id}/eligibility", response_model=EligibilityReport)
def check_noc_eligibility(
    student_id: int,
    target_semester: Optional[int] = Query(None, ge=1, le=8),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """What the student still owes the library and how to clear it."""
    service = NOCService(db, clock=clock)
    ensure_student_access(current_user, service.ledger.get_student(student_id))
    return service.check_eligibility(student_id, target_semester)

@router.get("/students/{student_id}", response_model=NOCStatusResponse)
def get_noc_status(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NOCService(db)
    ensure_student_access(current_user, service.ledger.get_student(student_id))
    return service.status(student_id)

@router.post("/students/{student_id}/issue", response_model=NOCStatusResponse)
def issue_noc(
    student_id: int,
    target_semester: Optional[int] = Query(None, ge=1, le=8),
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Approve the library NOC; refused while dues are outstanding or the return quota is short."""
    service = NOCService(db, clock=clock)
    service.issue(student_id, current_user.user_id, target_semester=target_semester)
    return service.status(student_id)

@router.post("/students/{student_id}/reject", response_model=NOCStatusResponse)
def reject_noc(
    student_id: int,
    request: NOCDecisionRequest,
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    service = NOCService(db, clock=clock)
    service.reject(student_id, current_user.user_id, request.reason)
    return service.status(student_id)

@router.post("/students/{student_id}/reopen", response_model=NOCStatusResponse)
def reopen_noc(
    student_id: int,
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db)
):
    service = NOCService(db)
    service.reopen(student_id)
    return service.status(student_id)

@registration_router.post("/library-gate", response_model=EligibilityReport)
def check_registration_gate(
    request: RegistrationGateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock)
):
    """Library clearance check run before registering for the next semester."""
    ledger = LoanLedger(db, clock=clock)
    ensure_student_access(current_user, ledger.get_student(request.student_id))
    return NOCService(db, ledger=ledger, clock=clock).gate_registration(request.student_id, request.target_semester)
