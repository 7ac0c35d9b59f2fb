from pydantic import BaseModel, Field
from typing import Optional, List

class ClearanceResult(BaseModel):
    current_semester: int
    target_semester: int
    requires_clearance: bool
    total_issued: int
    total_returned: int
    required_returns: int
    shortfall: int
    meets_requirement: bool
    clearance_percentage: float
    required_percentage: int

class ClearanceOption(BaseModel):
    type: str
    description: str
    amount: float
    pending_books_count: Optional[int] = None

class EligibilityReport(BaseModel):
    student_id: int
    can_get_noc: bool
    pending_loan_count: int
    pending_fine_total: float
    accrued_fine_total: float
    lost_book_replacement_total: float
    noc_status: str
    clearance: ClearanceResult
    clearance_options: List[ClearanceOption]

class NOCDecisionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class RegistrationGateRequest(BaseModel):
    student_id: int
    target_semester: Optional[int] = Field(None, ge=1, le=8)

class NOCStatusResponse(BaseModel):
    student_id: int
    noc_status: str
    library_cleared: bool
    noc_date: Optional[str] = None
    issued_by: Optional[str] = None
    note: Optional[str] = None
