"""Domain errors raised by the library and messaging services.

Routes never build HTTP errors for business rules themselves; they let these
propagate and ``app.main`` renders them as ``{"detail", "code", **details}``.
"""
from decimal import Decimal
from typing import Any, Dict


class LibraryError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        for key, value in self.details.items():
            payload[key] = float(value) if isinstance(value, Decimal) else value
        return payload


class NotFound(LibraryError):
    status_code = 404
    code = "not_found"


class Conflict(LibraryError):
    status_code = 409
    code = "conflict"


class PreconditionFailed(LibraryError):
    status_code = 400
    code = "precondition_failed"


class Unauthorized(LibraryError):
    status_code = 403
    code = "unauthorized"


class Transient(LibraryError):
    status_code = 503
    code = "transient"


# NotFound
class StudentNotFound(NotFound):
    code = "student_not_found"

class BookNotFound(NotFound):
    code = "book_not_found"

class LoanNotFound(NotFound):
    code = "loan_not_found"

class NoUnpaidFines(NotFound):
    code = "no_unpaid_fines"

class ConversationNotFound(NotFound):
    code = "conversation_not_found"

class UserNotFound(NotFound):
    code = "user_not_found"


# Conflict
class AlreadyBorrowed(Conflict):
    code = "already_borrowed"

class NOCAlreadyIssued(Conflict):
    code = "noc_already_issued"

class ConcurrentUpdate(Conflict):
    code = "concurrent_update"


# PreconditionFailed
class BookUnavailable(PreconditionFailed):
    code = "book_unavailable"

class StudentHasOverdue(PreconditionFailed):
    code = "student_has_overdue"

class StudentHasUnpaidFine(PreconditionFailed):
    code = "student_has_unpaid_fine"

class AmountMismatch(PreconditionFailed):
    code = "amount_mismatch"

class NotEligible(PreconditionFailed):
    code = "not_eligible"

class RegistrationBlocked(PreconditionFailed):
    code = "registration_blocked"

class RenewalNotAllowed(PreconditionFailed):
    code = "renewal_not_allowed"

class InvalidTransition(PreconditionFailed):
    code = "invalid_transition"

class InvalidConversation(PreconditionFailed):
    code = "invalid_conversation"

class InvalidMessage(PreconditionFailed):
    code = "invalid_message"


# Unauthorized
class NotParticipant(Unauthorized):
    code = "not_participant"

class Forbidden(Unauthorized):
    code = "forbidden"
