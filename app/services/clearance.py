from typing import Iterable, Optional
from app.config import settings
from app.schemas.noc import ClearanceResult


class ClearanceEvaluator:
    """Semester-progression book-return quota.

    Only transitions into a gated semester (5th and 7th by default) are
    checked; there the student must have returned at least
    ``threshold_percent`` of every book ever issued to them.
    """

    def __init__(
        self,
        threshold_percent: Optional[int] = None,
        gated_semesters: Optional[Iterable[int]] = None,
    ):
        self.threshold_percent = threshold_percent if threshold_percent is not None else settings.clearance_threshold_percent
        self.gated_semesters = frozenset(gated_semesters if gated_semesters is not None else settings.clearance_gated_semesters)

    def required_returns(self, total_issued: int) -> int:
        # ceil(total_issued * pct / 100) in integer arithmetic
        return -(-total_issued * self.threshold_percent // 100)

    def evaluate(self, current_semester: int, target_semester: int, total_issued: int, total_returned: int) -> ClearanceResult:
        total_issued = total_issued or 0
        total_returned = total_returned or 0
        requires_clearance = target_semester in self.gated_semesters
        required = self.required_returns(total_issued)
        meets = (not requires_clearance) or total_returned >= required
        shortfall = max(0, required - total_returned) if requires_clearance else 0
        if total_issued > 0:
            percentage = round(total_returned / total_issued * 100, 2)
        else:
            percentage = 100.0

        return ClearanceResult(
            current_semester=current_semester,
            target_semester=target_semester,
            requires_clearance=requires_clearance,
            total_issued=total_issued,
            total_returned=total_returned,
            required_returns=required,
            shortfall=shortfall,
            meets_requirement=meets,
            clearance_percentage=percentage,
            required_percentage=self.threshold_percent,
        )


clearance_evaluator = ClearanceEvaluator()
