from .user import User
from .student import Student
from .book import Book
from .loan import Loan
from .conversation import Conversation, ConversationParticipant, Message, MessageRead

__all__ = [
    "User",
    "Student",
    "Book",
    "Loan",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageRead",
]
