import json
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from habitchat.core.config import get_settings
from habitchat.core.exceptions import ForbiddenError, InvalidArgumentError, NotFoundError
from habitchat.db.models import Conversation, Friendship, Message
from habitchat.services import friendship_states as states
from habitchat.services.auth_service import as_utc, public_profile
from habitchat.services.conversation_service import (
    PRIVATE,
    conversation_service,
    parse_pair_key,
)

logger = structlog.get_logger(__name__)

TEXT = "text"
SYSTEM = "system"
MESSAGE_TYPES = (TEXT, "image", "file", "voice", "video", SYSTEM)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _load_json(raw: str | None, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("message_json_column_invalid", raw=raw[:80])
        return default


def validate_content(content: str | None, message_type: str, media_url: str | None = None) -> str:
    if message_type not in MESSAGE_TYPES:
        raise InvalidArgumentError(f"Unknown message type: {message_type}")
    text = (content or "").strip()
    if message_type in (TEXT, SYSTEM) and not text:
        raise InvalidArgumentError("Message content cannot be empty")
    if message_type not in (TEXT, SYSTEM) and not text and not media_url:
        raise InvalidArgumentError("Media messages need a media_url or a caption")
    if len(text) > get_settings().max_message_length:
        raise InvalidArgumentError("Message is too long")
    return text


class MessageService:
    def _lock_conversation(self, db: Session, conversation_id: str) -> Conversation:
        # FOR UPDATE is a no-op on SQLite, which serializes writers anyway.
        conversation = db.scalar(
            select(Conversation)
            .where(Conversation.conversation_id == conversation_id)
            .with_for_update()
        )
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    def _ensure_not_blocked(self, db: Session, conversation: Conversation) -> None:
        if conversation.type != PRIVATE:
            return
        pair = parse_pair_key(conversation.private_pair_key)
        if pair is None:
            return
        blocked = db.scalar(
            select(Friendship.id).where(
                Friendship.user_low_id == pair[0],
                Friendship.user_high_id == pair[1],
                Friendship.status == states.BLOCKED,
            )
        )
        if blocked:
            raise ForbiddenError("Messaging is blocked between these users")

    def get_by_external_id(self, db: Session, message_id: str) -> Message:
        message = db.scalar(select(Message).where(Message.message_id == message_id))
        if not message:
            raise NotFoundError("Message not found")
        return message

    def send_message(
        self,
        db: Session,
        conversation_id: str,
        sender_id: int,
        content: str | None,
        message_type: str = TEXT,
        *,
        reply_to_id: str | None = None,
        media_url: str | None = None,
        media_metadata: dict | None = None,
        mentions: list[int] | None = None,
    ) -> Message:
        text = validate_content(content, message_type, media_url)

        conversation = self._lock_conversation(db, conversation_id)
        participant = conversation_service.get_participant(db, conversation.id, sender_id)
        if not participant:
            raise ForbiddenError("You are not a participant of this conversation")
        if not conversation.is_active:
            raise ForbiddenError("Conversation is no longer active")
        self._ensure_not_blocked(db, conversation)

        reply_to_pk = None
        if reply_to_id:
            reply_to = db.scalar(select(Message).where(Message.message_id == reply_to_id))
            if not reply_to or reply_to.conversation_id != conversation.id:
                raise InvalidArgumentError("Reply target is not in this conversation")
            reply_to_pk = reply_to.id

        sent_at = _utc_now()
        if conversation.last_message_at and as_utc(conversation.last_message_at) > sent_at:
            sent_at = as_utc(conversation.last_message_at)

        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=text,
            message_type=message_type,
            media_url=media_url,
            media_metadata=json.dumps(media_metadata) if media_metadata else None,
            reply_to_id=reply_to_pk,
            mentions=json.dumps(mentions or []),
            reactions="[]",
            sent_at=sent_at,
        )
        db.add(message)
        conversation.last_message_at = sent_at
        # The sender has seen everything up to their own message.
        participant.last_read_at = sent_at
        db.commit()
        db.refresh(message)
        logger.info(
            "message_sent",
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
            sender_id=sender_id,
            message_type=message_type,
        )
        return message

    def list_messages(
        self,
        db: Session,
        conversation_id: str,
        user_id: int,
        page: int = 1,
        size: int | None = None,
    ) -> dict:
        settings = get_settings()
        page = max(1, page)
        size = size or settings.message_page_size_default
        size = max(1, min(size, settings.message_page_size_max))

        conversation = conversation_service.get_by_external_id(db, conversation_id)
        if not conversation_service.get_participant(db, conversation.id, user_id):
            raise ForbiddenError("You are not a participant of this conversation")

        total = db.scalar(
            select(func.count(Message.id)).where(Message.conversation_id == conversation.id)
        ) or 0
        messages = db.scalars(
            select(Message)
            .where(Message.conversation_id == conversation.id)
            .order_by(Message.sent_at.desc(), Message.id.desc())
            .offset((page - 1) * size)
            .limit(size)
        ).all()
        return {
            "conversation_id": conversation.conversation_id,
            "messages": [self.serialize_message(message) for message in messages],
            "page": page,
            "size": size,
            "total": int(total),
            "has_more": page * size < total,
        }

    def _require_own_message(self, db: Session, message_id: str, user_id: int) -> Message:
        message = self.get_by_external_id(db, message_id)
        if message.sender_id != user_id:
            raise ForbiddenError("Only the sender can change this message")
        if message.is_deleted:
            raise InvalidArgumentError("Message has been deleted")
        return message

    def edit_message(self, db: Session, message_id: str, user_id: int, content: str) -> Message:
        message = self._require_own_message(db, message_id, user_id)
        if message.message_type != TEXT:
            raise InvalidArgumentError("Only text messages can be edited")
        message.content = validate_content(content, TEXT)
        message.is_edited = True
        message.edited_at = _utc_now()
        db.commit()
        db.refresh(message)
        logger.info("message_edited", message_id=message.message_id, user_id=user_id)
        return message

    def delete_message(self, db: Session, message_id: str, user_id: int) -> Message:
        message = self._require_own_message(db, message_id, user_id)
        message.is_deleted = True
        message.deleted_at = _utc_now()
        db.commit()
        db.refresh(message)
        logger.info("message_deleted", message_id=message.message_id, user_id=user_id)
        return message

    def mark_messages_read(
        self,
        db: Session,
        conversation_id: str,
        user_id: int,
        message_ids: list[str] | None = None,
    ) -> list[str]:
        """Flag messages from other senders as read and advance the read marker.

        With no ids, every unread message from others is marked. Returns the
        external ids that changed.
        """
        conversation, participant = conversation_service.require_participant(
            db, conversation_id, user_id
        )
        stmt = select(Message).where(
            Message.conversation_id == conversation.id,
            Message.is_read.is_(False),
            or_(Message.sender_id.is_(None), Message.sender_id != user_id),
        )
        if message_ids:
            stmt = stmt.where(Message.message_id.in_(message_ids))
        messages = db.scalars(stmt).all()

        now = _utc_now()
        latest = participant.last_read_at and as_utc(participant.last_read_at)
        for message in messages:
            message.is_read = True
            message.read_at = now
            sent_at = as_utc(message.sent_at)
            if latest is None or sent_at > latest:
                latest = sent_at
        if message_ids:
            participant.last_read_at = latest
        else:
            read_at = now
            if conversation.last_message_at and as_utc(conversation.last_message_at) > read_at:
                read_at = as_utc(conversation.last_message_at)
            participant.last_read_at = read_at
        db.commit()
        return [message.message_id for message in messages]

    def mark_delivered(self, db: Session, message_id: str) -> Message | None:
        message = db.scalar(select(Message).where(Message.message_id == message_id))
        if not message or message.is_delivered:
            return None
        message.is_delivered = True
        message.delivered_at = _utc_now()
        db.commit()
        return message

    def serialize_message(self, message: Message) -> dict:
        deleted = bool(message.is_deleted)
        sender = public_profile(message.sender) if message.sender else None
        return {
            "message_id": message.message_id,
            "conversation_id": message.conversation.conversation_id,
            "sender_id": message.sender_id,
            "sender": sender,
            "content": "" if deleted else message.content,
            "message_type": message.message_type,
            "media_url": None if deleted else message.media_url,
            "media_metadata": None if deleted else _load_json(message.media_metadata, None),
            "reply_to_id": message.reply_to.message_id if message.reply_to else None,
            "reactions": _load_json(message.reactions, []),
            "mentions": _load_json(message.mentions, []),
            "is_edited": bool(message.is_edited),
            "edited_at": as_utc(message.edited_at) if message.edited_at else None,
            "is_deleted": deleted,
            "deleted_at": as_utc(message.deleted_at) if message.deleted_at else None,
            "is_read": bool(message.is_read),
            "read_at": as_utc(message.read_at) if message.read_at else None,
            "is_delivered": bool(message.is_delivered),
            "delivered_at": as_utc(message.delivered_at) if message.delivered_at else None,
            "sent_at": as_utc(message.sent_at),
        }


message_service = MessageService()
