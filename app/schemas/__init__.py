from .auth import UserCreate, StaffCreate, UserLogin, UserResponse, Token
from .book import BookBase, BookCreate, BookResponse
from .loan import (
    BorrowRequest, ReturnRequest, LoanReturnRequest, FinePaymentRequest,
    LoanResponse, ReturnResult, PaymentReceipt, OutstandingLoan,
    LibrarySummary, DashboardStats
)
from .noc import (
    ClearanceResult, ClearanceOption, EligibilityReport,
    NOCDecisionRequest, RegistrationGateRequest, NOCStatusResponse
)
from .messaging import (
    ConversationCreate, GroupConversationCreate, LastMessage,
    ConversationResponse, MessageResponse, OnlineUsersResponse, UserSearchResult,
    MessageCreate, MarkReadRequest
)

__all__ = [
    "UserCreate", "StaffCreate", "UserLogin", "UserResponse", "Token",
    "BookBase", "BookCreate", "BookResponse",
    "BorrowRequest", "ReturnRequest", "LoanReturnRequest", "FinePaymentRequest",
    "LoanResponse", "ReturnResult", "PaymentReceipt", "OutstandingLoan",
    "LibrarySummary", "DashboardStats",
    "ClearanceResult", "ClearanceOption", "EligibilityReport",
    "NOCDecisionRequest", "RegistrationGateRequest", "NOCStatusResponse",
    "ConversationCreate", "GroupConversationCreate", "LastMessage",
    "ConversationResponse", "MessageResponse", "OnlineUsersResponse", "UserSearchResult",
    "MessageCreate", "MarkReadRequest",
]
