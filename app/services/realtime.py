"""
Messaging WebSocket gateway

Connects authenticated websockets to the messaging core:
- Presence (user:online / user:offline)
- Conversation rooms (conversation:join / conversation:leave)
- Messages, read receipts and typing indicators via MessageRouter

Frames in both directions are JSON ``{"event": <name>, "data": {...}}``.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional, Set
from app.database import SessionLocal
from app.services.auth import authenticate_token
from app.services.conversations import ConversationRegistry
from app.services.errors import InvalidMessage, LibraryError
from app.services.message_router import MessageRouter
from app.services.mqtt_service import mqtt_service
from app.services.presence import PresenceTracker, presence_tracker
from app.utils.timezone import system_clock

logger = logging.getLogger(__name__)

# Close code sent to a socket replaced by a newer connection of the same user
REPLACED_CLOSE_CODE = 4000


class RealtimeGateway:
    """
    Owns room membership and frame delivery for the messaging websocket.

    Rooms map conversation id -> identities currently joined. Room state is
    lock-guarded because REST handlers running in worker threads leave rooms
    too. Database work for socket events runs in worker threads; the event
    loop only does delivery.
    """

    def __init__(self, presence: Optional[PresenceTracker] = None,
                 session_factory: Optional[Callable] = None, notifier=None, clock=None):
        self.presence = presence if presence is not None else presence_tracker
        self.session_factory = session_factory or SessionLocal
        self.notifier = notifier if notifier is not None else mqtt_service
        self.clock = clock or system_clock
        self._rooms_lock = threading.Lock()
        self._rooms: Dict[int, Set[int]] = {}
        self._handlers = {
            "conversation:join": self._on_join,
            "conversation:leave": self._on_leave,
            "message:send": self._on_send,
            "message:read": self._on_read,
            "typing:start": self._on_typing_start,
            "typing:stop": self._on_typing_stop,
            "ping": self._on_ping,
        }

    # ==================== Connection lifecycle ====================

    def identify(self, token: Optional[str]) -> Optional[int]:
        """User id for a websocket token, or None. Blocking; call it off the event loop."""
        db = self.session_factory()
        try:
            user = authenticate_token(db, token)
            return user.user_id if user else None
        finally:
            db.close()

    async def on_connect(self, identity: int, handle):
        previous = self.presence.connect(identity, handle)
        if previous is not None and previous is not handle:
            try:
                await previous.close(code=REPLACED_CLOSE_CODE)
            except Exception as e:
                logger.debug(f"Closing replaced socket for user {identity} failed: {e}")

        logger.info(f"WebSocket connected: user {identity}")
        await self.broadcast("user:online", {"userId": str(identity)}, exclude=identity)
        await self.emit_to_identity(identity, "connected", {
            "userId": str(identity),
            "onlineUsers": sorted(str(uid) for uid in self.presence.list_online()),
        })

    async def on_disconnect(self, identity: int, handle=None) -> bool:
        """Forget ``identity`` if ``handle`` is still its live socket.

        A socket that was already replaced by a newer connection is ignored,
        so its late close does not take the new one offline.
        """
        if handle is not None and self.presence.handle_for(identity) is not handle:
            return False
        if self.presence.disconnect(identity) is None:
            return False

        self.leave_all_rooms(identity)
        logger.info(f"WebSocket disconnected: user {identity}")
        await self.broadcast("user:offline", {"userId": str(identity)}, exclude=identity)
        return True

    async def on_client_event(self, identity: int, event: Optional[str], payload: Any):
        handler = self._handlers.get(event)
        if handler is None:
            await self.emit_to_identity(identity, "error", {
                "event": event, "detail": f"Unknown event '{event}'", "code": "unknown_event"
            })
            return

        db = self.session_factory()
        try:
            await handler(identity, payload if isinstance(payload, dict) else {}, db)
        except LibraryError as e:
            await self.emit_to_identity(identity, "error", {"event": event, **e.to_dict()})
        except (KeyError, TypeError, ValueError) as e:
            logger.info(f"Malformed '{event}' payload from user {identity}: {e}")
            await self.emit_to_identity(identity, "error", {
                "event": event, "detail": "Invalid payload", "code": "invalid_payload"
            })
        finally:
            await asyncio.to_thread(db.close)

    # ==================== Rooms ====================

    def join_room(self, room_id: int, identity: int):
        with self._rooms_lock:
            self._rooms.setdefault(room_id, set()).add(identity)

    def leave_room(self, room_id: int, identity: int):
        with self._rooms_lock:
            members = self._rooms.get(room_id)
            if members is None:
                return
            members.discard(identity)
            if not members:
                del self._rooms[room_id]

    def leave_all_rooms(self, identity: int):
        with self._rooms_lock:
            for room_id in list(self._rooms):
                members = self._rooms[room_id]
                members.discard(identity)
                if not members:
                    del self._rooms[room_id]

    def room_members(self, room_id: int) -> Set[int]:
        with self._rooms_lock:
            return set(self._rooms.get(room_id, ()))

    def reset(self):
        with self._rooms_lock:
            self._rooms.clear()
        self.presence.clear()

    # ==================== Delivery ====================

    async def _send(self, identity: int, handle, event: str, payload: Dict[str, Any]) -> bool:
        try:
            await handle.send_json({"event": event, "data": payload})
            return True
        except Exception as e:
            logger.error(f"Error sending '{event}' to user {identity}: {e}")
            await self.on_disconnect(identity, handle)
            return False

    async def emit_to_identity(self, identity: int, event: str, payload: Dict[str, Any]) -> bool:
        handle = self.presence.handle_for(identity)
        if handle is None:
            return False
        return await self._send(identity, handle, event, payload)

    async def emit_to_room(self, room_id: int, event: str, payload: Dict[str, Any],
                           exclude: Optional[int] = None):
        for identity in sorted(self.room_members(room_id)):
            if exclude is not None and identity == exclude:
                continue
            await self.emit_to_identity(identity, event, payload)

    async def broadcast(self, event: str, payload: Dict[str, Any], exclude: Optional[int] = None):
        for identity in sorted(self.presence.list_online()):
            if exclude is not None and identity == exclude:
                continue
            await self.emit_to_identity(identity, event, payload)

    # ==================== Client events ====================

    def _router(self, db) -> MessageRouter:
        return MessageRouter(db, transport=self, presence=self.presence,
                             notifier=self.notifier, clock=self.clock)

    async def _on_join(self, identity: int, data: dict, db):
        conversation_id = int(data["conversationId"])
        await asyncio.to_thread(ConversationRegistry(db).require_participant, conversation_id, identity)
        self.join_room(conversation_id, identity)
        logger.info(f"User {identity} joined conversation room {conversation_id}")
        await self.emit_to_identity(identity, "conversation:joined", {"conversationId": str(conversation_id)})

    async def _on_leave(self, identity: int, data: dict, db):
        conversation_id = int(data["conversationId"])
        self.leave_room(conversation_id, identity)
        await self.emit_to_identity(identity, "conversation:left", {"conversationId": str(conversation_id)})

    async def _on_send(self, identity: int, data: dict, db):
        await self._router(db).send(identity, int(data["conversationId"]), data.get("content"))

    async def _on_read(self, identity: int, data: dict, db):
        message_ids = data["messageIds"]
        if not isinstance(message_ids, list):
            raise InvalidMessage("messageIds must be a list of message ids")
        await self._router(db).mark_read(identity, message_ids)

    async def _on_typing_start(self, identity: int, data: dict, db):
        await self._router(db).typing(identity, int(data["conversationId"]), True)

    async def _on_typing_stop(self, identity: int, data: dict, db):
        await self._router(db).typing(identity, int(data["conversationId"]), False)

    async def _on_ping(self, identity: int, data: dict, db):
        await self.emit_to_identity(identity, "pong", {"timestamp": self.clock.now().isoformat()})


realtime_gateway = RealtimeGateway()
