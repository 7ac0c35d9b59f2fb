import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from app.config import settings
from app.models.conversation import Conversation, Message, MessageRead
from app.services.conversations import ConversationRegistry
from app.services.errors import InvalidMessage, Transient
from app.services.mqtt_service import mqtt_service
from app.services.presence import PresenceTracker, presence_tracker
from app.utils.timezone import system_clock

logger = logging.getLogger(__name__)

# Outbound event names
MESSAGE_NEW = "message:new"
MESSAGE_READ = "message:read"
TYPING_USER = "typing:user"


class MessageRouter:
    """Persists chat messages and fans them out to the conversation's room.

    ``transport`` is anything with an async ``emit_to_room(room_id, event,
    payload, exclude=None)``; the websocket gateway in production, a recorder
    in tests. Rooms are keyed by conversation id. Database work runs in a
    worker thread through ``asyncio.to_thread``; emits run on the event loop.
    """

    def __init__(self, db: Session, transport, registry: Optional[ConversationRegistry] = None,
                 presence: Optional[PresenceTracker] = None, notifier=None, clock=None):
        self.db = db
        self.transport = transport
        self.registry = registry or ConversationRegistry(db)
        self.presence = presence if presence is not None else presence_tracker
        self.notifier = notifier if notifier is not None else mqtt_service
        self.clock = clock or system_clock

    def _clean_content(self, content) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidMessage("Message content is required")
        content = content.strip()
        if len(content) > settings.message_max_length:
            raise InvalidMessage(
                f"Message exceeds {settings.message_max_length} characters",
                max_length=settings.message_max_length,
            )
        return content

    def _persist(self, conversation: Conversation, sender_id: int, content: str) -> Message:
        now = self.clock.now()
        message = Message(
            conversation_id=conversation.conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=now,
        )
        message.reads.append(MessageRead(user_id=sender_id, read_at=now))
        try:
            self.db.add(message)
            self.db.flush()
            self.registry.record_last_message(conversation.conversation_id, content, sender_id, now, commit=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist message in conversation {conversation.conversation_id}: {e}", exc_info=True)
            raise Transient("Message could not be saved, please retry")
        self.db.refresh(message)
        return message

    def _store(self, sender_id: int, conversation_id: int, content) -> Tuple[Message, Dict[str, Any], Set[int]]:
        content = self._clean_content(content)
        conversation = self.registry.require_participant(conversation_id, sender_id)
        message = self._persist(conversation, sender_id, content)
        return message, message.to_dict(), conversation.participant_ids

    async def send(self, sender_id: int, conversation_id: int, content: str) -> Message:
        # The store step commits in a worker thread and finishes even if this
        # coroutine is cancelled, so nothing is broadcast before it is durable.
        message, payload, participant_ids = await asyncio.to_thread(
            self._store, sender_id, conversation_id, content
        )
        logger.info(f"Message {message.message_id} sent by {sender_id} in conversation {conversation_id}")

        await self.transport.emit_to_room(
            conversation_id,
            MESSAGE_NEW,
            {"message": payload, "conversationId": str(conversation_id)},
        )
        self._notify_offline(conversation_id, participant_ids, payload)
        return message

    def _notify_offline(self, conversation_id: int, participant_ids: Set[int], payload: Dict[str, Any]):
        sender_id = int(payload["sender"])
        for user_id in participant_ids - {sender_id}:
            if self.presence.is_online(user_id):
                continue
            try:
                self.notifier.notify(user_id, "message_new", {
                    "conversationId": str(conversation_id),
                    "messageId": payload["id"],
                    "sender": payload["sender"],
                    "preview": payload["content"][:100],
                })
            except Exception as e:
                logger.warning(f"Offline notification for user {user_id} failed: {e}", exc_info=True)

    def _apply_reads(self, identity: int, ids: set) -> Dict[int, List[int]]:
        now = self.clock.now()
        newly_read: Dict[int, List[int]] = defaultdict(list)
        messages = self.db.query(Message).filter(Message.message_id.in_(ids)).order_by(Message.message_id).all()
        allowed = {}
        for message in messages:
            if message.conversation_id not in allowed:
                allowed[message.conversation_id] = self.registry.is_participant(message.conversation_id, identity)
            if not allowed[message.conversation_id] or identity in message.read_by:
                continue
            message.reads.append(MessageRead(user_id=identity, read_at=now))
            newly_read[message.conversation_id].append(message.message_id)
        self.db.commit()
        return newly_read

    def _record_reads(self, identity: int, ids: set) -> Dict[int, List[int]]:
        try:
            return self._apply_reads(identity, ids)
        except IntegrityError:
            # A concurrent mark_read for the same reader won the insert
            self.db.rollback()
            return self._apply_reads(identity, ids)

    async def mark_read(self, identity: int, message_ids: Iterable) -> Dict[int, List[int]]:
        """Add ``identity`` to the readers of each message; already-read ids are no-ops.

        Messages outside the caller's conversations are ignored. Returns the
        newly read message ids grouped by conversation.
        """
        ids = {int(m) for m in message_ids}
        if not ids:
            return {}
        newly_read = await asyncio.to_thread(self._record_reads, identity, ids)

        for conversation_id, read_ids in newly_read.items():
            await self.transport.emit_to_room(
                conversation_id,
                MESSAGE_READ,
                {
                    "conversationId": str(conversation_id),
                    "messageIds": [str(m) for m in read_ids],
                    "userId": str(identity),
                },
                exclude=identity,
            )
        return dict(newly_read)

    async def typing(self, identity: int, conversation_id: int, is_typing: bool):
        await asyncio.to_thread(self.registry.require_participant, conversation_id, identity)
        await self.transport.emit_to_room(
            conversation_id,
            TYPING_USER,
            {"conversationId": str(conversation_id), "userId": str(identity), "isTyping": bool(is_typing)},
            exclude=identity,
        )

    def history(self, conversation_id: int, identity: int, limit: Optional[int] = None,
                before: Optional[int] = None) -> List[Message]:
        """Messages in creation order; ``before`` pages backwards from a message id."""
        self.registry.get_for_participant(conversation_id, identity)
        limit = min(limit or settings.message_history_limit, settings.message_history_limit)
        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if before is not None:
            query = query.filter(Message.message_id < before)
        page = query.order_by(Message.message_id.desc()).limit(limit).all()
        return list(reversed(page))
