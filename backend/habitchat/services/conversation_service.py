from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from habitchat.core.exceptions import ForbiddenError, InvalidArgumentError, NotFoundError
from habitchat.db.models import Conversation, ConversationParticipant, Message, User
from habitchat.db.session import commit_or_raise
from habitchat.services.auth_service import as_utc, is_recently_online, public_profile

logger = structlog.get_logger(__name__)

PRIVATE = "private"
GROUP = "group"
AI = "ai"
CONVERSATION_TYPES = (PRIVATE, GROUP, AI)

OWNER = "owner"
ADMIN = "admin"
MEMBER = "member"
PARTICIPANT_ROLES = (OWNER, ADMIN, MEMBER)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def private_pair_key(user_a_id: int, user_b_id: int) -> str:
    low, high = sorted((user_a_id, user_b_id))
    return f"{low}:{high}"


def parse_pair_key(pair_key: str | None) -> tuple[int, int] | None:
    if not pair_key:
        return None
    low, _, high = pair_key.partition(":")
    if not low.isdigit() or not high.isdigit():
        return None
    return int(low), int(high)


def room_name(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


class ConversationService:
    def get_by_external_id(self, db: Session, conversation_id: str) -> Conversation:
        conversation = db.scalar(
            select(Conversation).where(Conversation.conversation_id == conversation_id)
        )
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    def get_participant(
        self,
        db: Session,
        conversation_pk: int,
        user_id: int,
        *,
        include_left: bool = False,
    ) -> ConversationParticipant | None:
        stmt = select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_pk,
            ConversationParticipant.user_id == user_id,
        )
        if not include_left:
            stmt = stmt.where(ConversationParticipant.left_at.is_(None))
        return db.scalar(stmt)

    def require_participant(
        self,
        db: Session,
        conversation_id: str,
        user_id: int,
    ) -> tuple[Conversation, ConversationParticipant]:
        conversation = self.get_by_external_id(db, conversation_id)
        participant = self.get_participant(db, conversation.id, user_id)
        if not participant:
            raise ForbiddenError("You are not a participant of this conversation")
        return conversation, participant

    def is_participant(self, db: Session, conversation_id: str, user_id: int) -> bool:
        conversation = db.scalar(
            select(Conversation).where(Conversation.conversation_id == conversation_id)
        )
        if not conversation:
            return False
        return self.get_participant(db, conversation.id, user_id) is not None

    def find_private_between(self, db: Session, user_a_id: int, user_b_id: int) -> Conversation | None:
        return db.scalar(
            select(Conversation).where(
                Conversation.type == PRIVATE,
                Conversation.private_pair_key == private_pair_key(user_a_id, user_b_id),
            )
        )

    def ensure_participant(
        self,
        db: Session,
        conversation: Conversation,
        user_id: int,
        role: str = MEMBER,
    ) -> ConversationParticipant:
        if role not in PARTICIPANT_ROLES:
            raise InvalidArgumentError(f"Unknown participant role: {role}")
        participant = self.get_participant(db, conversation.id, user_id, include_left=True)
        if participant:
            participant.left_at = None
            return participant
        participant = ConversationParticipant(
            conversation_id=conversation.id,
            user_id=user_id,
            role=role,
            joined_at=_utc_now(),
        )
        db.add(participant)
        return participant

    def get_or_create_private(
        self,
        db: Session,
        user_a_id: int,
        user_b_id: int,
        *,
        created_by: int,
        reactivate: bool = False,
    ) -> Conversation:
        """Return the pair's private conversation, creating it if needed.

        Flushes but does not commit, so callers can fold it into a larger
        transaction such as accepting a friend request. An inactive
        conversation stays inactive unless `reactivate` is set, which only
        the friend-request accept path does.
        """
        if user_a_id == user_b_id:
            raise InvalidArgumentError("A private conversation needs two different users")

        conversation = self.find_private_between(db, user_a_id, user_b_id)
        if conversation is None:
            conversation = Conversation(
                type=PRIVATE,
                private_pair_key=private_pair_key(user_a_id, user_b_id),
                created_by=created_by,
                is_active=True,
            )
            db.add(conversation)
            db.flush()
            logger.info(
                "private_conversation_created",
                conversation_id=conversation.conversation_id,
                users=[user_a_id, user_b_id],
            )
        elif reactivate:
            conversation.is_active = True

        self.ensure_participant(db, conversation, user_a_id)
        self.ensure_participant(db, conversation, user_b_id)
        db.flush()
        return conversation

    def create_conversation(
        self,
        db: Session,
        creator: User,
        conversation_type: str,
        participant_ids: list[int],
        *,
        name: str | None = None,
        description: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation:
        if conversation_type not in CONVERSATION_TYPES:
            raise InvalidArgumentError(f"Unknown conversation type: {conversation_type}")

        member_ids = {user_id for user_id in participant_ids if user_id != creator.id}
        if conversation_type == PRIVATE and len(member_ids) != 1:
            raise InvalidArgumentError("A private conversation needs exactly two participants")
        if conversation_type == GROUP and not member_ids:
            raise InvalidArgumentError("A group conversation needs at least one other participant")
        if conversation_type == AI and member_ids:
            raise InvalidArgumentError("An AI conversation has no other participants")

        if member_ids:
            found = set(
                db.scalars(
                    select(User.id).where(User.id.in_(member_ids), User.is_active.is_(True))
                ).all()
            )
            missing = member_ids - found
            if missing:
                raise NotFoundError("Participant not found", details={"user_ids": sorted(missing)})

        if conversation_type == PRIVATE:
            (other_id,) = member_ids
            conversation = self.get_or_create_private(db, creator.id, other_id, created_by=creator.id)
            commit_or_raise(db, "Private conversation already exists")
            return conversation

        conversation = Conversation(
            type=conversation_type,
            name=name,
            description=description,
            avatar_url=avatar_url,
            created_by=creator.id,
            is_active=True,
        )
        db.add(conversation)
        db.flush()
        self.ensure_participant(db, conversation, creator.id, role=OWNER)
        for user_id in sorted(member_ids):
            self.ensure_participant(db, conversation, user_id)
        commit_or_raise(db, "Conversation participant already exists")
        logger.info(
            "conversation_created",
            conversation_id=conversation.conversation_id,
            type=conversation_type,
            participant_count=len(member_ids) + 1,
        )
        return conversation

    def deactivate(self, db: Session, conversation_pk: int | None) -> None:
        if conversation_pk is None:
            return
        conversation = db.get(Conversation, conversation_pk)
        if conversation:
            conversation.is_active = False

    def leave_conversation(self, db: Session, conversation_id: str, user_id: int) -> None:
        conversation, participant = self.require_participant(db, conversation_id, user_id)
        if conversation.type == PRIVATE:
            raise InvalidArgumentError("Private conversations cannot be left")
        participant.left_at = _utc_now()
        db.commit()

    def conversation_ids_for_user(self, db: Session, user_id: int) -> list[str]:
        return list(
            db.scalars(
                select(Conversation.conversation_id)
                .join(
                    ConversationParticipant,
                    ConversationParticipant.conversation_id == Conversation.id,
                )
                .where(
                    ConversationParticipant.user_id == user_id,
                    ConversationParticipant.left_at.is_(None),
                )
            ).all()
        )

    def participant_user_ids(self, db: Session, conversation_pk: int) -> list[int]:
        return list(
            db.scalars(
                select(ConversationParticipant.user_id).where(
                    ConversationParticipant.conversation_id == conversation_pk,
                    ConversationParticipant.left_at.is_(None),
                )
            ).all()
        )

    def unread_count(
        self,
        db: Session,
        conversation_pk: int,
        user_id: int,
        last_read_at: datetime | None,
    ) -> int:
        # Always recomputed from last_read_at; there is no stored counter.
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_pk,
            Message.is_deleted.is_(False),
            or_(Message.sender_id.is_(None), Message.sender_id != user_id),
        )
        if last_read_at is not None:
            stmt = stmt.where(Message.sent_at > last_read_at)
        return int(db.scalar(stmt) or 0)

    def mark_as_read(self, db: Session, conversation_id: str, user_id: int) -> ConversationParticipant:
        conversation, participant = self.require_participant(db, conversation_id, user_id)
        read_at = _utc_now()
        if conversation.last_message_at and as_utc(conversation.last_message_at) > read_at:
            read_at = as_utc(conversation.last_message_at)
        participant.last_read_at = read_at
        db.commit()
        return participant

    def list_conversations(self, db: Session, user_id: int) -> list[dict]:
        rows = db.execute(
            select(Conversation, ConversationParticipant)
            .join(
                ConversationParticipant,
                ConversationParticipant.conversation_id == Conversation.id,
            )
            .where(
                ConversationParticipant.user_id == user_id,
                ConversationParticipant.left_at.is_(None),
            )
        ).all()

        items = [self._serialize_for_user(db, conversation, participant) for conversation, participant in rows]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        items.sort(
            key=lambda item: (
                item["is_pinned"],
                item["last_message_at"] or item["created_at"] or epoch,
            ),
            reverse=True,
        )
        return items

    def _last_message(self, db: Session, conversation_pk: int) -> Message | None:
        return db.scalar(
            select(Message)
            .where(Message.conversation_id == conversation_pk)
            .order_by(Message.sent_at.desc(), Message.id.desc())
            .limit(1)
        )

    def _serialize_for_user(
        self,
        db: Session,
        conversation: Conversation,
        participant: ConversationParticipant,
    ) -> dict:
        other_user = None
        display_name = conversation.name
        avatar_url = conversation.avatar_url
        if conversation.type == PRIVATE:
            other_user = db.scalar(
                select(User)
                .join(ConversationParticipant, ConversationParticipant.user_id == User.id)
                .where(
                    ConversationParticipant.conversation_id == conversation.id,
                    ConversationParticipant.user_id != participant.user_id,
                )
                .limit(1)
            )
            if other_user:
                display_name = other_user.nickname or other_user.username
                avatar_url = other_user.avatar_url

        last_message = self._last_message(db, conversation.id)
        preview = None
        if last_message:
            preview = {
                "message_id": last_message.message_id,
                "content": "" if last_message.is_deleted else last_message.content,
                "message_type": last_message.message_type,
                "sent_at": as_utc(last_message.sent_at),
                "sender_id": last_message.sender_id,
                "is_deleted": last_message.is_deleted,
            }

        other_profile = None
        if other_user:
            other_profile = {**public_profile(other_user), "is_online": is_recently_online(other_user)}

        return {
            "conversation_id": conversation.conversation_id,
            "type": conversation.type,
            "name": display_name or ("Group chat" if conversation.type == GROUP else None),
            "description": conversation.description,
            "avatar_url": avatar_url,
            "is_active": conversation.is_active,
            "role": participant.role,
            "is_muted": participant.is_muted,
            "is_pinned": participant.is_pinned,
            "unread_count": self.unread_count(
                db, conversation.id, participant.user_id, participant.last_read_at
            ),
            "last_read_at": as_utc(participant.last_read_at) if participant.last_read_at else None,
            "last_message_at": as_utc(conversation.last_message_at)
            if conversation.last_message_at
            else None,
            "last_message": preview,
            "other_user": other_profile,
            "created_at": as_utc(conversation.created_at),
        }

    def serialize(self, db: Session, conversation: Conversation, user_id: int) -> dict:
        participant = self.get_participant(db, conversation.id, user_id, include_left=True)
        if participant is None:
            raise ForbiddenError("You are not a participant of this conversation")
        return self._serialize_for_user(db, conversation, participant)


conversation_service = ConversationService()
