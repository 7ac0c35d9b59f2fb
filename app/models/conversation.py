from sqlalchemy import Column, String, Integer, Text, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, UTCDateTime


def pair_key_for(a: int, b: int) -> str:
    """Order-independent key for a two-party conversation."""
    low, high = sorted((int(a), int(b)))
    return f"{low}:{high}"


class Conversation(Base):
    __tablename__ = "conversation"

    conversation_id = Column(Integer, primary_key=True, autoincrement=True)
    # Set for two-party conversations only; NULL for groups
    pair_key = Column(String(50), unique=True, nullable=True)
    last_message_content = Column(Text, nullable=True)
    last_message_sender_id = Column(Integer, ForeignKey("user.user_id", ondelete="SET NULL"), nullable=True)
    last_message_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), index=True)

    # Relationships
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.message_id",
    )

    @property
    def participant_ids(self):
        return {p.user_id for p in self.participants}

    @property
    def is_group(self) -> bool:
        return self.pair_key is None

    def to_dict(self):
        return {
            "id": str(self.conversation_id),
            "participants": sorted(str(uid) for uid in self.participant_ids),
            "isGroup": self.is_group,
            "lastMessage": {
                "content": self.last_message_content,
                "sender": str(self.last_message_sender_id) if self.last_message_sender_id else None,
                "timestamp": self.last_message_at.isoformat(),
            } if self.last_message_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class ConversationParticipant(Base):
    __tablename__ = "conversation_participant"

    conversation_id = Column(
        Integer, ForeignKey("conversation.conversation_id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(Integer, ForeignKey("user.user_id", ondelete="CASCADE"), primary_key=True, index=True)
    joined_at = Column(UTCDateTime, server_default=func.now())

    conversation = relationship("Conversation", back_populates="participants")


class Message(Base):
    __tablename__ = "message"

    message_id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("conversation.conversation_id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id = Column(Integer, ForeignKey("user.user_id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, index=True)

    conversation = relationship("Conversation", back_populates="messages")
    reads = relationship("MessageRead", back_populates="message", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("length(content) > 0", name="chk_message_content"),
    )

    @property
    def read_by(self):
        return {r.user_id for r in self.reads}

    def to_dict(self):
        return {
            "id": str(self.message_id),
            "conversationId": str(self.conversation_id),
            "sender": str(self.sender_id),
            "content": self.content,
            "readBy": sorted(str(uid) for uid in self.read_by),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class MessageRead(Base):
    __tablename__ = "message_read"

    message_id = Column(Integer, ForeignKey("message.message_id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("user.user_id", ondelete="CASCADE"), primary_key=True)
    read_at = Column(UTCDateTime, server_default=func.now())

    message = relationship("Message", back_populates="reads")
