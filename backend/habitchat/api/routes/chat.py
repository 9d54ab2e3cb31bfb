from fastapi import APIRouter, Depends, Query, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from habitchat.api.deps import get_current_user
from habitchat.core.config import get_settings
from habitchat.db.models import User
from habitchat.db.session import get_db
from habitchat.realtime.socket_server import (
    add_user_to_conversation_room,
    broadcast_new_message,
    broadcast_read_receipt,
    serialize_message_payload,
    sio,
)
from habitchat.schemas.chat import (
    ConversationCreateRequest,
    ConversationRead,
    MarkReadRequest,
    MessageEditRequest,
    MessagePageRead,
    MessageRead,
    MessageSendRequest,
    ReadReceiptRead,
)
from habitchat.schemas.common import ApiResponse
from habitchat.services.conversation_service import conversation_service, room_name
from habitchat.services.message_service import message_service
from habitchat.services.rate_limit_service import CHAT_SEND, rate_limit_service

router = APIRouter()


def _ready_conversation(
    db: Session, creator: User, payload: ConversationCreateRequest
) -> tuple[ConversationRead, list[int]]:
    conversation = conversation_service.create_conversation(
        db,
        creator,
        payload.type,
        payload.participant_ids,
        name=payload.name,
        description=payload.description,
        avatar_url=payload.avatar_url,
    )
    data = ConversationRead.model_validate(conversation_service.serialize(db, conversation, creator.id))
    return data, conversation_service.participant_user_ids(db, conversation.id)


def _mark_read(
    db: Session, conversation_id: str, user_id: int, message_ids: list[str]
) -> ReadReceiptRead:
    changed = message_service.mark_messages_read(db, conversation_id, user_id, message_ids)
    _, participant = conversation_service.require_participant(db, conversation_id, user_id)
    return ReadReceiptRead(
        conversation_id=conversation_id,
        user_id=user_id,
        message_ids=changed,
        read_at=participant.last_read_at,
    )


def _message_payload(operation, *args, **kwargs) -> dict:
    return serialize_message_payload(operation(*args, **kwargs))


@router.get("/conversations", response_model=ApiResponse[list[ConversationRead]])
def list_conversations(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[list[ConversationRead]]:
    items = conversation_service.list_conversations(db, current_user.id)
    return ApiResponse(data=[ConversationRead.model_validate(item) for item in items])


@router.post(
    "/conversations",
    response_model=ApiResponse[ConversationRead],
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    payload: ConversationCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[ConversationRead]:
    data, participant_ids = await run_in_threadpool(_ready_conversation, db, current_user, payload)
    for user_id in participant_ids:
        await add_user_to_conversation_room(user_id, data.conversation_id)
    return ApiResponse(message="Conversation ready", data=data)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=ApiResponse[MessagePageRead],
)
def list_messages(
    conversation_id: str,
    page: int = Query(default=1, ge=1),
    size: int | None = Query(default=None, ge=1),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[MessagePageRead]:
    result = message_service.list_messages(db, conversation_id, current_user.id, page, size)
    return ApiResponse(data=MessagePageRead.model_validate(result))


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=ApiResponse[ReadReceiptRead],
)
async def mark_conversation_read(
    conversation_id: str,
    payload: MarkReadRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[ReadReceiptRead]:
    message_ids = payload.message_ids if payload else []
    receipt = await run_in_threadpool(_mark_read, db, conversation_id, current_user.id, message_ids)
    await broadcast_read_receipt(conversation_id, current_user.id, receipt.message_ids)
    return ApiResponse(message="Marked as read", data=receipt)


@router.post(
    "/messages",
    response_model=ApiResponse[MessageRead],
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    payload: MessageSendRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[MessageRead]:
    if get_settings().rate_limit_enabled:
        await run_in_threadpool(rate_limit_service.enforce, CHAT_SEND, current_user.id)
    body = await run_in_threadpool(
        _message_payload,
        message_service.send_message,
        db,
        payload.conversation_id,
        current_user.id,
        payload.content,
        payload.message_type,
        reply_to_id=payload.reply_to_id,
        media_url=payload.media_url,
        media_metadata=payload.media_metadata,
        mentions=payload.mentions,
    )
    await broadcast_new_message(body)
    return ApiResponse(message="Message sent", data=MessageRead.model_validate(body))


@router.patch("/messages/{message_id}", response_model=ApiResponse[MessageRead])
async def edit_message(
    message_id: str,
    payload: MessageEditRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[MessageRead]:
    body = await run_in_threadpool(
        _message_payload, message_service.edit_message, db, message_id, current_user.id, payload.content
    )
    await sio.emit("message_updated", body, room=room_name(body["conversation_id"]))
    return ApiResponse(message="Message edited", data=MessageRead.model_validate(body))


@router.delete("/messages/{message_id}", response_model=ApiResponse[MessageRead])
async def delete_message(
    message_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ApiResponse[MessageRead]:
    body = await run_in_threadpool(
        _message_payload, message_service.delete_message, db, message_id, current_user.id
    )
    await sio.emit("message_updated", body, room=room_name(body["conversation_id"]))
    return ApiResponse(message="Message deleted", data=MessageRead.model_validate(body))
