from fastapi import APIRouter, Depends, Query, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from habitchat.api.deps import get_current_user, get_presence
from habitchat.db.models import User
from habitchat.db.session import get_db
from habitchat.realtime.socket_server import add_user_to_conversation_room, notify_user
from habitchat.schemas.common import ApiResponse
from habitchat.schemas.friends import (
    FriendNotificationPageRead,
    FriendNotificationRead,
    FriendRead,
    FriendRequestCreateRequest,
    FriendRequestRead,
    FriendRequestRespondRequest,
    FriendSettingsUpdateRequest,
    FriendshipRead,
    UserSearchRead,
)
from habitchat.services.auth_service import public_profile
from habitchat.services.friend_service import friend_service
from habitchat.services.presence_service import PresenceRegistry

router = APIRouter()


def _apply(operation, *args) -> FriendshipRead:
    """Run a friendship transition and serialize it while still on the worker thread."""
    return FriendshipRead.model_validate(friend_service.serialize_friendship(operation(*args)))


async def _push_friendship_updated(friendship: FriendshipRead, actor_id: int) -> None:
    other_id = friendship.addressee_id if friendship.requester_id == actor_id else friendship.requester_id
    await notify_user(
        other_id,
        "friendship_updated",
        {"friendship": friendship.model_dump(mode="json"), "actor_id": actor_id},
    )


@router.get("/search/{uid}", response_model=ApiResponse[UserSearchRead])
def search_user(
    uid: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    presence: PresenceRegistry = Depends(get_presence),
) -> ApiResponse[UserSearchRead]:
    result = friend_service.search_user_by_uid(db, current_user, uid, presence)
    return ApiResponse(data=UserSearchRead.model_validate(result))


@router.post(
    "/request",
    response_model=ApiResponse[FriendshipRead],
    status_code=status.HTTP_201_CREATED,
)
async def send_friend_request(
    payload: FriendRequestCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendshipRead]:
    data = await run_in_threadpool(
        _apply, friend_service.send_request, db, current_user, payload.uid, payload.message
    )
    await notify_user(
        data.addressee_id,
        "friend_request",
        {
            "friendship_id": data.id,
            "message": data.requester_message,
            "from_user": public_profile(current_user),
        },
    )
    return ApiResponse(message="Friend request sent", data=data)


@router.get("/requests", response_model=ApiResponse[list[FriendRequestRead]])
def list_friend_requests(
    request_type: str = Query(default="received", alias="type", pattern="^(received|sent)$"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    presence: PresenceRegistry = Depends(get_presence),
) -> ApiResponse[list[FriendRequestRead]]:
    rows = friend_service.list_requests(db, current_user.id, request_type, presence)
    return ApiResponse(data=[FriendRequestRead.model_validate(row) for row in rows])


@router.post("/requests/{request_id}", response_model=ApiResponse[FriendshipRead])
async def respond_to_friend_request(
    request_id: int,
    payload: FriendRequestRespondRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendshipRead]:
    data = await run_in_threadpool(
        _apply,
        friend_service.respond_to_request,
        db,
        request_id,
        current_user,
        payload.action,
        payload.message,
    )
    if data.conversation_id:
        await add_user_to_conversation_room(data.requester_id, data.conversation_id)
        await add_user_to_conversation_room(data.addressee_id, data.conversation_id)
    await notify_user(
        data.requester_id,
        "friend_request_responded",
        {
            "friendship_id": data.id,
            "action": payload.action,
            "status": data.status,
            "conversation_id": data.conversation_id,
            "from_user": public_profile(current_user),
        },
    )
    message = "Friend request accepted" if payload.action == "accept" else "Friend request declined"
    return ApiResponse(message=message, data=data)


@router.get("/notifications", response_model=ApiResponse[FriendNotificationPageRead])
def list_notifications(
    limit: int = Query(default=20, ge=1),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    presence: PresenceRegistry = Depends(get_presence),
) -> ApiResponse[FriendNotificationPageRead]:
    page = friend_service.list_notifications(db, current_user.id, limit, offset, presence)
    return ApiResponse(data=FriendNotificationPageRead.model_validate(page))


@router.post(
    "/notifications/{notification_id}/read",
    response_model=ApiResponse[FriendNotificationRead],
)
def mark_notification_read(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendNotificationRead]:
    notification = friend_service.mark_notification_read(db, current_user.id, notification_id)
    return ApiResponse(
        data=FriendNotificationRead.model_validate(friend_service.serialize_notification(notification))
    )


@router.get("", response_model=ApiResponse[list[FriendRead]])
def list_friends(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    presence: PresenceRegistry = Depends(get_presence),
) -> ApiResponse[list[FriendRead]]:
    friends = friend_service.list_friends(db, current_user.id, presence)
    return ApiResponse(data=[FriendRead.model_validate(friend) for friend in friends])


@router.delete("/{friend_user_id}", response_model=ApiResponse[FriendshipRead])
async def remove_friend(
    friend_user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendshipRead]:
    data = await run_in_threadpool(
        _apply, friend_service.remove_friend, db, current_user.id, friend_user_id
    )
    await _push_friendship_updated(data, current_user.id)
    return ApiResponse(message="Friend removed", data=data)


@router.put("/{friend_user_id}/settings", response_model=ApiResponse[FriendshipRead])
def update_friend_settings(
    friend_user_id: int,
    payload: FriendSettingsUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendshipRead]:
    friendship = friend_service.update_settings(
        db,
        current_user.id,
        friend_user_id,
        alias=payload.alias,
        is_starred=payload.is_starred,
        is_muted=payload.is_muted,
    )
    return ApiResponse(
        message="Settings updated",
        data=FriendshipRead.model_validate(friend_service.serialize_friendship(friendship)),
    )


@router.post("/{friend_user_id}/block", response_model=ApiResponse[FriendshipRead])
async def block_friend(
    friend_user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendshipRead]:
    data = await run_in_threadpool(_apply, friend_service.block, db, current_user.id, friend_user_id)
    await _push_friendship_updated(data, current_user.id)
    return ApiResponse(message="User blocked", data=data)


@router.post("/{friend_user_id}/unblock", response_model=ApiResponse[FriendshipRead])
async def unblock_friend(
    friend_user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[FriendshipRead]:
    data = await run_in_threadpool(_apply, friend_service.unblock, db, current_user.id, friend_user_id)
    await _push_friendship_updated(data, current_user.id)
    return ApiResponse(message="User unblocked", data=data)
