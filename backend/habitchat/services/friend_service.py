from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from habitchat.core.config import get_settings
from habitchat.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from habitchat.db.models import FriendNotification, Friendship, User
from habitchat.db.session import commit_or_raise
from habitchat.services import friendship_states as states
from habitchat.services.auth_service import as_utc, get_user_by_uid, is_recently_online, public_profile
from habitchat.services.conversation_service import conversation_service
from habitchat.services.presence_service import PresenceRegistry

logger = structlog.get_logger(__name__)

NOTIFY_REQUEST = "request"
NOTIFY_ACCEPTED = "accepted"
NOTIFY_DECLINED = "declined"
NOTIFY_BLOCKED = "blocked"

ACCEPT = "accept"
DECLINE = "decline"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _online(user: User, presence: PresenceRegistry | None) -> bool:
    if presence is not None and presence.is_online(user.id):
        return True
    return is_recently_online(user)


def _user_brief(user: User, presence: PresenceRegistry | None = None) -> dict:
    return {**public_profile(user), "is_online": _online(user, presence)}


class FriendService:
    def _open_between(self, db: Session, user_a_id: int, user_b_id: int) -> Friendship | None:
        low, high = states.canonical_pair(user_a_id, user_b_id)
        return db.scalar(
            select(Friendship).where(
                Friendship.user_low_id == low,
                Friendship.user_high_id == high,
                Friendship.status.in_((states.PENDING, states.ACCEPTED, states.BLOCKED)),
            )
        )

    def _require_open_with(self, db: Session, user_id: int, friend_user_id: int) -> Friendship:
        friendship = self._open_between(db, user_id, friend_user_id)
        if friendship is None:
            raise NotFoundError("Friendship not found")
        return friendship

    def _require_accepted_with(self, db: Session, user_id: int, friend_user_id: int) -> Friendship:
        friendship = self._require_open_with(db, user_id, friend_user_id)
        if friendship.status != states.ACCEPTED:
            raise ConflictError(
                "You are not friends with this user",
                details={"status": friendship.status},
            )
        return friendship

    def _notify(
        self,
        db: Session,
        friendship: Friendship,
        recipient_id: int,
        actor_id: int,
        notification_type: str,
        message: str | None = None,
    ) -> None:
        db.add(
            FriendNotification(
                friendship_id=friendship.id,
                user_id=recipient_id,
                actor_id=actor_id,
                type=notification_type,
                message=message,
            )
        )

    def search_user_by_uid(
        self,
        db: Session,
        actor: User,
        uid: str,
        presence: PresenceRegistry | None = None,
    ) -> dict:
        normalized = uid.strip()
        if normalized == actor.uid:
            raise InvalidArgumentError("You cannot search for yourself")
        user = get_user_by_uid(db, normalized)
        if not user or not user.is_active:
            raise NotFoundError("User not found")

        friendship = self._open_between(db, actor.id, user.id)
        return {
            **_user_brief(user, presence),
            "friendship_status": friendship.status if friendship else None,
            "friendship_id": friendship.id if friendship else None,
            "can_send_request": friendship is None,
        }

    def send_request(
        self,
        db: Session,
        requester: User,
        addressee_uid: str,
        message: str | None = None,
    ) -> Friendship:
        normalized = addressee_uid.strip()
        if normalized == requester.uid:
            raise InvalidArgumentError("You cannot send a friend request to yourself")
        addressee = get_user_by_uid(db, normalized)
        if not addressee or not addressee.is_active:
            raise NotFoundError("User not found")

        existing = self._open_between(db, requester.id, addressee.id)
        if existing is not None:
            if existing.status == states.BLOCKED:
                raise ForbiddenError("Friend requests are blocked between these users")
            if existing.status == states.ACCEPTED:
                raise ConflictError("You are already friends")
            raise ConflictError("A friend request is already pending")

        low, high = states.canonical_pair(requester.id, addressee.id)
        note = (message or "").strip() or None
        friendship = Friendship(
            requester_id=requester.id,
            addressee_id=addressee.id,
            user_low_id=low,
            user_high_id=high,
            status=states.PENDING,
            requester_message=note,
        )
        db.add(friendship)
        db.flush()
        self._notify(db, friendship, addressee.id, requester.id, NOTIFY_REQUEST, note)
        commit_or_raise(db, "A friend request is already pending")
        db.refresh(friendship)
        logger.info(
            "friend_request_sent",
            friendship_id=friendship.id,
            requester_id=requester.id,
            addressee_id=addressee.id,
        )
        return friendship

    def list_requests(
        self,
        db: Session,
        user_id: int,
        request_type: str = "received",
        presence: PresenceRegistry | None = None,
    ) -> list[dict]:
        if request_type not in ("received", "sent"):
            raise InvalidArgumentError("type must be 'received' or 'sent'")
        column = Friendship.addressee_id if request_type == "received" else Friendship.requester_id
        rows = db.scalars(
            select(Friendship)
            .where(column == user_id, Friendship.status == states.PENDING)
            .order_by(Friendship.created_at.desc(), Friendship.id.desc())
        ).all()
        return [
            {
                "id": friendship.id,
                "status": friendship.status,
                "message": friendship.requester_message,
                "direction": request_type,
                "created_at": as_utc(friendship.created_at),
                "user": _user_brief(friendship.other_user(user_id), presence),
            }
            for friendship in rows
        ]

    def respond_to_request(
        self,
        db: Session,
        request_id: int,
        actor: User,
        action: str,
        message: str | None = None,
    ) -> Friendship:
        friendship = db.get(Friendship, request_id)
        if friendship is None:
            raise NotFoundError("Friend request not found")
        if friendship.addressee_id != actor.id:
            raise ForbiddenError("Only the recipient can respond to this request")
        if action not in (ACCEPT, DECLINE):
            raise InvalidArgumentError(f"Unknown action: {action}")

        now = _utc_now()
        note = (message or "").strip() or None
        if action == ACCEPT:
            states.ensure_transition(friendship.status, states.ACCEPTED)
            conversation = conversation_service.get_or_create_private(
                db,
                friendship.requester_id,
                friendship.addressee_id,
                created_by=actor.id,
                reactivate=True,
            )
            friendship.status = states.ACCEPTED
            friendship.conversation_id = conversation.id
            self._notify(db, friendship, friendship.requester_id, actor.id, NOTIFY_ACCEPTED, note)
        else:
            states.ensure_transition(friendship.status, states.DECLINED)
            friendship.status = states.DECLINED
            friendship.reject_reason = note
            self._notify(db, friendship, friendship.requester_id, actor.id, NOTIFY_DECLINED, note)

        friendship.responded_at = now
        commit_or_raise(db, "Friend request was already answered")
        db.refresh(friendship)
        logger.info(
            "friend_request_responded",
            friendship_id=friendship.id,
            action=action,
            actor_id=actor.id,
        )
        return friendship

    def list_friends(
        self,
        db: Session,
        user_id: int,
        presence: PresenceRegistry | None = None,
    ) -> list[dict]:
        rows = db.scalars(
            select(Friendship).where(
                Friendship.status == states.ACCEPTED,
                or_(Friendship.user_low_id == user_id, Friendship.user_high_id == user_id),
            )
        ).all()

        friends = []
        for friendship in rows:
            friend = friendship.other_user(user_id)
            conversation = friendship.conversation
            unread_count = 0
            last_message_at = None
            if conversation is not None:
                participant = conversation_service.get_participant(db, conversation.id, user_id)
                if participant is not None:
                    unread_count = conversation_service.unread_count(
                        db, conversation.id, user_id, participant.last_read_at
                    )
                if conversation.last_message_at:
                    last_message_at = as_utc(conversation.last_message_at)
            friends.append(
                {
                    **_user_brief(friend, presence),
                    "display_name": friendship.friendship_alias or friend.nickname or friend.username,
                    "last_seen_at": as_utc(friend.last_login_at) if friend.last_login_at else None,
                    "friend_since": as_utc(friendship.responded_at or friendship.created_at),
                    "friendship_id": friendship.id,
                    "conversation_id": conversation.conversation_id if conversation else None,
                    "is_starred": friendship.is_starred,
                    "is_muted": friendship.is_muted,
                    "unread_count": unread_count,
                    "last_message_at": last_message_at,
                }
            )

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        friends.sort(
            key=lambda item: (
                item["is_starred"],
                item["last_message_at"] or epoch,
                item["last_seen_at"] or epoch,
            ),
            reverse=True,
        )
        return friends

    def remove_friend(self, db: Session, user_id: int, friend_user_id: int) -> Friendship:
        friendship = self._require_open_with(db, user_id, friend_user_id)
        states.ensure_transition(friendship.status, states.REMOVED)
        friendship.status = states.REMOVED
        # History stays; the conversation just stops accepting messages.
        conversation_service.deactivate(db, friendship.conversation_id)
        db.commit()
        db.refresh(friendship)
        logger.info("friend_removed", friendship_id=friendship.id, user_id=user_id)
        return friendship

    def update_settings(
        self,
        db: Session,
        user_id: int,
        friend_user_id: int,
        *,
        alias: str | None = None,
        is_starred: bool | None = None,
        is_muted: bool | None = None,
    ) -> Friendship:
        friendship = self._require_accepted_with(db, user_id, friend_user_id)
        if alias is not None:
            friendship.friendship_alias = alias.strip() or None
        if is_starred is not None:
            friendship.is_starred = is_starred
        if is_muted is not None:
            friendship.is_muted = is_muted
        db.commit()
        db.refresh(friendship)
        return friendship

    def block(self, db: Session, user_id: int, friend_user_id: int) -> Friendship:
        friendship = self._require_open_with(db, user_id, friend_user_id)
        states.ensure_transition(friendship.status, states.BLOCKED)
        friendship.status = states.BLOCKED
        friendship.is_blocked = True
        friendship.blocked_by_id = user_id
        self._notify(db, friendship, friend_user_id, user_id, NOTIFY_BLOCKED)
        db.commit()
        db.refresh(friendship)
        logger.info("friend_blocked", friendship_id=friendship.id, blocked_by_id=user_id)
        return friendship

    def unblock(self, db: Session, user_id: int, friend_user_id: int) -> Friendship:
        friendship = self._require_open_with(db, user_id, friend_user_id)
        states.ensure_transition(friendship.status, states.ACCEPTED)
        if friendship.blocked_by_id != user_id:
            raise ForbiddenError("Only the user who blocked can unblock")
        friendship.status = states.ACCEPTED
        friendship.is_blocked = False
        friendship.blocked_by_id = None
        db.commit()
        db.refresh(friendship)
        logger.info("friend_unblocked", friendship_id=friendship.id, user_id=user_id)
        return friendship

    def list_notifications(
        self,
        db: Session,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        presence: PresenceRegistry | None = None,
    ) -> dict:
        limit = max(1, min(limit, get_settings().notification_page_size_max))
        offset = max(0, offset)
        base = select(FriendNotification).where(FriendNotification.user_id == user_id)
        total = db.scalar(
            select(func.count(FriendNotification.id)).where(FriendNotification.user_id == user_id)
        ) or 0
        unread = db.scalar(
            select(func.count(FriendNotification.id)).where(
                FriendNotification.user_id == user_id,
                FriendNotification.is_read.is_(False),
            )
        ) or 0
        rows = db.scalars(
            base.order_by(FriendNotification.created_at.desc(), FriendNotification.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return {
            "items": [self.serialize_notification(row, presence) for row in rows],
            "total": int(total),
            "unread": int(unread),
        }

    def mark_notification_read(self, db: Session, user_id: int, notification_id: int) -> FriendNotification:
        notification = db.get(FriendNotification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification not found")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = _utc_now()
            db.commit()
            db.refresh(notification)
        return notification

    def serialize_notification(
        self,
        notification: FriendNotification,
        presence: PresenceRegistry | None = None,
    ) -> dict:
        return {
            "id": notification.id,
            "friendship_id": notification.friendship_id,
            "type": notification.type,
            "message": notification.message,
            "is_read": notification.is_read,
            "read_at": as_utc(notification.read_at) if notification.read_at else None,
            "created_at": as_utc(notification.created_at),
            "from_user": _user_brief(notification.actor, presence) if notification.actor else None,
        }

    def serialize_friendship(self, friendship: Friendship) -> dict:
        return {
            "id": friendship.id,
            "requester_id": friendship.requester_id,
            "addressee_id": friendship.addressee_id,
            "status": friendship.status,
            "requester_message": friendship.requester_message,
            "reject_reason": friendship.reject_reason,
            "friendship_alias": friendship.friendship_alias,
            "is_starred": friendship.is_starred,
            "is_muted": friendship.is_muted,
            "is_blocked": friendship.is_blocked,
            "blocked_by_id": friendship.blocked_by_id,
            "conversation_id": friendship.conversation.conversation_id if friendship.conversation else None,
            "created_at": as_utc(friendship.created_at),
            "updated_at": as_utc(friendship.updated_at),
            "responded_at": as_utc(friendship.responded_at) if friendship.responded_at else None,
        }


friend_service = FriendService()
