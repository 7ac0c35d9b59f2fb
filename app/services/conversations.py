import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from sqlalchemy import update, func, or_, exists, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.models.conversation import (
    Conversation, ConversationParticipant, Message, MessageRead, pair_key_for
)
from app.models.user import User
from app.services.errors import ConversationNotFound, NotParticipant, InvalidConversation, UserNotFound

logger = logging.getLogger(__name__)


class ConversationRegistry:
    """Two-party and group conversations plus their last-message pointer."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, conversation_id: int) -> Conversation:
        conversation = self.db.query(Conversation).filter(
            Conversation.conversation_id == conversation_id
        ).first()
        if not conversation:
            raise ConversationNotFound("Conversation not found", conversation_id=conversation_id)
        return conversation

    def get_for_participant(self, conversation_id: int, identity: int) -> Conversation:
        """Conversation as seen by ``identity``; outsiders get NotFound, not a hint it exists."""
        conversation = self.get(conversation_id)
        if identity not in conversation.participant_ids:
            raise ConversationNotFound("Conversation not found", conversation_id=conversation_id)
        return conversation

    def require_participant(self, conversation_id: int, identity: int) -> Conversation:
        conversation = self.get(conversation_id)
        if identity not in conversation.participant_ids:
            raise NotParticipant("Not authorized", conversation_id=conversation_id)
        return conversation

    def is_participant(self, conversation_id: int, identity: int) -> bool:
        return self.db.query(
            exists().where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == identity,
            )
        ).scalar()

    def find_between(self, a: int, b: int) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(Conversation.pair_key == pair_key_for(a, b)).first()

    def _require_users(self, user_ids: Iterable[int]):
        wanted = set(user_ids)
        found = {uid for (uid,) in self.db.query(User.user_id).filter(User.user_id.in_(wanted)).all()}
        missing = wanted - found
        if missing:
            raise UserNotFound("User not found", user_ids=sorted(missing))

    def find_or_create(self, a: int, b: int) -> Tuple[Conversation, bool]:
        """Return the conversation between ``a`` and ``b``, creating it on first contact.

        The unique ``pair_key`` decides races: the loser of a concurrent
        insert rolls back and picks up the winner's row.
        """
        if a == b:
            raise InvalidConversation("Cannot create conversation with yourself")

        existing = self.find_between(a, b)
        if existing:
            return existing, False

        self._require_users((a, b))
        conversation = Conversation(
            pair_key=pair_key_for(a, b),
            participants=[ConversationParticipant(user_id=a), ConversationParticipant(user_id=b)],
        )
        try:
            self.db.add(conversation)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_between(a, b)
            if existing is None:
                raise
            logger.info(f"Conversation between {a} and {b} created concurrently, reusing {existing.conversation_id}")
            return existing, False

        self.db.refresh(conversation)
        logger.info(f"Conversation {conversation.conversation_id} created between {a} and {b}")
        return conversation, True

    def create_group(self, creator_id: int, participant_ids: Iterable[int]) -> Conversation:
        members = {creator_id, *participant_ids}
        if len(members) < 3:
            raise InvalidConversation("A group conversation needs at least three participants")
        self._require_users(members)
        conversation = Conversation(
            pair_key=None,
            participants=[ConversationParticipant(user_id=uid) for uid in sorted(members)],
        )
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        logger.info(f"Group conversation {conversation.conversation_id} created by {creator_id} with {len(members)} members")
        return conversation

    def record_last_message(self, conversation_id: int, content: str, sender_id: int,
                            timestamp: datetime, commit: bool = True) -> bool:
        """Overwrite the last-message pointer unless a newer message already set it."""
        result = self.db.execute(
            update(Conversation)
            .where(
                Conversation.conversation_id == conversation_id,
                or_(Conversation.last_message_at.is_(None), Conversation.last_message_at <= timestamp),
            )
            .values(
                last_message_content=content,
                last_message_sender_id=sender_id,
                last_message_at=timestamp,
                updated_at=timestamp,
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return result.rowcount == 1

    def remove_participant(self, conversation_id: int, identity: int) -> bool:
        """Drop ``identity``; a conversation left with fewer than two members is deleted with its messages.

        Returns True when the conversation was deleted.
        """
        conversation = self.get_for_participant(conversation_id, identity)
        if len(conversation.participants) - 1 < 2:
            self.db.delete(conversation)
            self.db.commit()
            logger.info(f"Conversation {conversation_id} deleted after {identity} left")
            return True

        membership = next(p for p in conversation.participants if p.user_id == identity)
        conversation.participants.remove(membership)
        self.db.commit()
        logger.info(f"User {identity} left conversation {conversation_id}")
        return False

    def unread_count(self, conversation_id: int, identity: int) -> int:
        return self.db.query(func.count(Message.message_id)).filter(
            Message.conversation_id == conversation_id,
            Message.sender_id != identity,
            ~exists().where(MessageRead.message_id == Message.message_id, MessageRead.user_id == identity),
        ).scalar()

    def list_for(self, identity: int) -> List[Tuple[Conversation, int]]:
        """Conversations of ``identity`` with unread counts, most recently active first."""
        conversations = self.db.query(Conversation).join(ConversationParticipant).filter(
            ConversationParticipant.user_id == identity
        ).order_by(
            case((Conversation.last_message_at.is_(None), 1), else_=0),
            Conversation.last_message_at.desc(),
            Conversation.conversation_id.desc(),
        ).all()
        return [(c, self.unread_count(c.conversation_id, identity)) for c in conversations]
