import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import parse_qs

import socketio
import structlog
from fastapi.concurrency import run_in_threadpool
from socketio.exceptions import ConnectionRefusedError as SocketConnectionRefused

from habitchat.core.config import get_settings
from habitchat.core.exceptions import AppError
from habitchat.core.request_meta import client_ip_from_environ
from habitchat.core.security import strip_bearer_prefix, user_id_from_token
from habitchat.db.models import Message
from habitchat.db.session import SessionLocal
from habitchat.schemas.chat import MessageRead
from habitchat.services.auth_service import get_active_user_by_id
from habitchat.services.conversation_service import conversation_service, room_name
from habitchat.services.message_service import message_service
from habitchat.services.presence_service import presence_registry
from habitchat.services.rate_limit_service import (
    CHAT_SEND,
    SOCKET_CONNECT,
    SOCKET_EVENT,
    rate_limit_service,
)

logger = structlog.get_logger(__name__)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")

settings = get_settings()


@dataclass
class ConnectionIdentity:
    user_id: int
    username: str


_sid_to_identity: dict[str, ConnectionIdentity] = {}
_presence_heartbeat_task: asyncio.Task | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def user_room(user_id: int) -> str:
    return f"user_{user_id}"


def _payload_str(data, *keys: str) -> str:
    if not isinstance(data, dict):
        return ""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def serialize_message_payload(message: Message) -> dict:
    """JSON-ready message, identical for socket broadcasts and REST responses."""
    return MessageRead.model_validate(message_service.serialize_message(message)).model_dump(mode="json")


def _is_socket_connect_allowed(client_ip: str) -> bool:
    if not settings.rate_limit_enabled:
        return True
    return rate_limit_service.hit(SOCKET_CONNECT, client_ip or "unknown").allowed


def _is_socket_event_allowed(sid: str, event_name: str) -> bool:
    if not settings.rate_limit_enabled:
        return True
    identity = _sid_to_identity.get(sid)
    if not identity:
        return False
    if not rate_limit_service.hit(SOCKET_EVENT, f"{event_name}:{identity.user_id}").allowed:
        return False
    if event_name == "send_message":
        return rate_limit_service.hit(CHAT_SEND, identity.user_id).allowed
    return True


def _resolve_token(auth: dict | None, environ: dict) -> str | None:
    token = auth.get("token") if isinstance(auth, dict) else None
    if (
        not token
        and settings.websocket_allow_query_token
        and not settings.websocket_require_auth_payload_token
    ):
        token = parse_qs(environ.get("QUERY_STRING", "")).get("token", [None])[0]
    return strip_bearer_prefix(token)


def _load_identity(token: str | None) -> tuple[ConnectionIdentity | None, list[str]]:
    user_id = user_id_from_token(token)
    if user_id is None:
        return None, []
    db = SessionLocal()
    try:
        user = get_active_user_by_id(db, user_id)
        if not user:
            return None, []
        conversation_ids = conversation_service.conversation_ids_for_user(db, user.id)
        return ConnectionIdentity(user_id=user.id, username=user.username), conversation_ids
    finally:
        db.close()


async def _touch_presence(sid: str) -> None:
    identity = _sid_to_identity.get(sid)
    if identity:
        await run_in_threadpool(presence_registry.touch, identity.user_id, sid)


async def _presence_heartbeat_loop() -> None:
    interval = max(1, settings.presence_ttl_seconds // 3)
    while True:
        await sio.sleep(interval)
        for sid, identity in list(_sid_to_identity.items()):
            await run_in_threadpool(presence_registry.touch, identity.user_id, sid)


def _ensure_presence_heartbeat_task() -> None:
    global _presence_heartbeat_task
    if not presence_registry.expires:
        return
    if _presence_heartbeat_task and not _presence_heartbeat_task.done():
        return
    _presence_heartbeat_task = sio.start_background_task(_presence_heartbeat_loop)


async def _emit_error(sid: str, event_name: str, message: str) -> dict:
    await sio.emit("error", {"event": event_name, "message": message}, room=sid)
    return {"ok": False, "message": message}


async def _rate_limited(sid: str, event_name: str) -> dict:
    return await _emit_error(sid, event_name, "Too many requests. Slow down.")


def _is_participant(conversation_id: str, user_id: int) -> bool:
    db = SessionLocal()
    try:
        return conversation_service.is_participant(db, conversation_id, user_id)
    finally:
        db.close()


async def _authorize_conversation(sid: str, conversation_id: str) -> bool:
    identity = _sid_to_identity.get(sid)
    if not identity or not conversation_id:
        return False
    return await run_in_threadpool(_is_participant, conversation_id, identity.user_id)


def _store_message(user_id: int, conversation_id: str, data: dict) -> dict:
    db = SessionLocal()
    try:
        message = message_service.send_message(
            db,
            conversation_id,
            user_id,
            data.get("content"),
            _payload_str(data, "messageType", "message_type") or "text",
            reply_to_id=_payload_str(data, "replyToId", "reply_to_id") or None,
            media_url=_payload_str(data, "mediaUrl", "media_url") or None,
        )
        return serialize_message_payload(message)
    except AppError:
        db.rollback()
        raise
    finally:
        db.close()


def _store_read(user_id: int, conversation_id: str, message_ids: list[str]) -> list[str]:
    db = SessionLocal()
    try:
        return message_service.mark_messages_read(db, conversation_id, user_id, message_ids)
    except AppError:
        db.rollback()
        raise
    finally:
        db.close()


def _flag_delivery(payload: dict) -> datetime | None:
    """Mark a fresh message delivered when another participant is online."""
    db = SessionLocal()
    try:
        conversation = conversation_service.get_by_external_id(db, payload["conversation_id"])
        recipients = [
            user_id
            for user_id in conversation_service.participant_user_ids(db, conversation.id)
            if user_id != payload.get("sender_id")
        ]
        if not presence_registry.online_user_ids(recipients):
            return None
        message = message_service.mark_delivered(db, payload["message_id"])
        if message is None:
            return None
        return message.delivered_at or _utc_now()
    finally:
        db.close()


@sio.event
async def connect(sid: str, environ: dict, auth: dict | None = None) -> bool:
    client_ip = client_ip_from_environ(environ)
    if not await run_in_threadpool(_is_socket_connect_allowed, client_ip):
        logger.warning("socket_connect_rate_limited", client_ip=client_ip)
        return False

    token = _resolve_token(auth, environ)
    identity, conversation_ids = await run_in_threadpool(_load_identity, token)
    if not identity:
        await sio.emit("auth_error", {"message": "Invalid or missing token"}, room=sid)
        raise SocketConnectionRefused("auth_error")

    _sid_to_identity[sid] = identity
    await run_in_threadpool(presence_registry.connect, identity.user_id, sid)
    _ensure_presence_heartbeat_task()
    await sio.save_session(
        sid,
        {
            "user_id": identity.user_id,
            "username": identity.username,
            "conversations": list(conversation_ids),
        },
    )
    await sio.enter_room(sid, user_room(identity.user_id))
    for conversation_id in conversation_ids:
        await sio.enter_room(sid, room_name(conversation_id))
    logger.info(
        "socket_connected",
        sid=sid,
        user_id=identity.user_id,
        conversation_count=len(conversation_ids),
    )
    return True


@sio.event
async def disconnect(sid: str) -> None:
    identity = _sid_to_identity.pop(sid, None)
    if not identity:
        return
    still_online = await run_in_threadpool(presence_registry.disconnect, identity.user_id, sid)
    logger.info("socket_disconnected", sid=sid, user_id=identity.user_id, still_online=still_online)


@sio.event
async def join_conversation(sid: str, data=None) -> dict:
    await _touch_presence(sid)
    if not await run_in_threadpool(_is_socket_event_allowed, sid, "join_conversation"):
        return await _rate_limited(sid, "join_conversation")
    conversation_id = data.strip() if isinstance(data, str) else _payload_str(
        data, "conversationId", "conversation_id"
    )
    if not await _authorize_conversation(sid, conversation_id):
        return await _emit_error(sid, "join_conversation", "Not a participant of this conversation")

    await sio.enter_room(sid, room_name(conversation_id))
    session = await sio.get_session(sid)
    joined = set(session.get("conversations") or [])
    joined.add(conversation_id)
    session["conversations"] = sorted(joined)
    await sio.save_session(sid, session)
    return {"ok": True, "conversation_id": conversation_id}


@sio.event
async def leave_conversation(sid: str, data=None) -> dict:
    conversation_id = data.strip() if isinstance(data, str) else _payload_str(
        data, "conversationId", "conversation_id"
    )
    if not conversation_id or sid not in _sid_to_identity:
        return {"ok": False, "message": "conversationId is required"}
    await sio.leave_room(sid, room_name(conversation_id))
    session = await sio.get_session(sid)
    session["conversations"] = [
        value for value in (session.get("conversations") or []) if value != conversation_id
    ]
    await sio.save_session(sid, session)
    return {"ok": True, "conversation_id": conversation_id}


@sio.event
async def send_message(sid: str, data=None) -> dict:
    identity = _sid_to_identity.get(sid)
    if not identity:
        return await _emit_error(sid, "send_message", "unauthorized")
    await _touch_presence(sid)
    if not await run_in_threadpool(_is_socket_event_allowed, sid, "send_message"):
        return await _rate_limited(sid, "send_message")

    data = data if isinstance(data, dict) else {}
    conversation_id = _payload_str(data, "conversationId", "conversation_id")
    try:
        payload = await run_in_threadpool(_store_message, identity.user_id, conversation_id, data)
    except AppError as exc:
        return await _emit_error(sid, "send_message", exc.message)

    await broadcast_new_message(payload)
    return {"ok": True, "message": payload}


@sio.event
async def mark_as_read(sid: str, data=None) -> dict:
    identity = _sid_to_identity.get(sid)
    if not identity:
        return await _emit_error(sid, "mark_as_read", "unauthorized")
    await _touch_presence(sid)
    if not await run_in_threadpool(_is_socket_event_allowed, sid, "mark_as_read"):
        return await _rate_limited(sid, "mark_as_read")

    data = data if isinstance(data, dict) else {}
    conversation_id = _payload_str(data, "conversationId", "conversation_id")
    raw_ids = data.get("messageIds") or data.get("message_ids") or []
    message_ids = [value for value in raw_ids if isinstance(value, str)] if isinstance(raw_ids, list) else []
    try:
        changed = await run_in_threadpool(_store_read, identity.user_id, conversation_id, message_ids)
    except AppError as exc:
        return await _emit_error(sid, "mark_as_read", exc.message)

    await broadcast_read_receipt(conversation_id, identity.user_id, changed)
    return {"ok": True, "message_ids": changed}


@sio.event
async def typing(sid: str, data=None) -> dict:
    identity = _sid_to_identity.get(sid)
    if not identity:
        return {"ok": False, "message": "unauthorized"}
    await _touch_presence(sid)
    if not await run_in_threadpool(_is_socket_event_allowed, sid, "typing"):
        return await _rate_limited(sid, "typing")

    conversation_id = _payload_str(data, "conversationId", "conversation_id")
    session = await sio.get_session(sid)
    if conversation_id not in (session.get("conversations") or []):
        return await _emit_error(sid, "typing", "Not a participant of this conversation")

    is_typing = bool(data.get("isTyping", data.get("is_typing", True)))
    await sio.emit(
        "user_typing",
        {
            "conversation_id": conversation_id,
            "user_id": identity.user_id,
            "username": identity.username,
            "is_typing": is_typing,
        },
        room=room_name(conversation_id),
        skip_sid=sid,
    )
    return {"ok": True}


async def broadcast_new_message(payload: dict) -> None:
    """Fan a serialized message out to its conversation room, then flag delivery."""
    conversation_id = payload["conversation_id"]
    await sio.emit("new_message", payload, room=room_name(conversation_id))

    try:
        delivered_at = await run_in_threadpool(_flag_delivery, payload)
    except AppError as exc:
        logger.warning("delivery_update_failed", conversation_id=conversation_id, error=exc.message)
        return
    if delivered_at is None:
        return

    await sio.emit(
        "message_status_update",
        {
            "conversation_id": conversation_id,
            "message_ids": [payload["message_id"]],
            "status": "delivered",
            "at": delivered_at.isoformat(),
        },
        room=room_name(conversation_id),
    )


async def broadcast_read_receipt(conversation_id: str, user_id: int, message_ids: list[str]) -> None:
    await sio.emit(
        "message_status_update",
        {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "message_ids": message_ids,
            "status": "read",
            "at": _utc_now().isoformat(),
        },
        room=room_name(conversation_id),
    )


async def notify_user(user_id: int, event: str, payload: dict) -> None:
    await sio.emit(event, payload, room=user_room(user_id))


async def add_user_to_conversation_room(user_id: int, conversation_id: str) -> None:
    """Attach every live socket of a user to a conversation room, e.g. after a friend accepts."""
    for user_sid, identity in list(_sid_to_identity.items()):
        if identity.user_id != user_id:
            continue
        await sio.enter_room(user_sid, room_name(conversation_id))
        try:
            session = await sio.get_session(user_sid)
        except KeyError:
            continue
        joined = set(session.get("conversations") or [])
        joined.add(conversation_id)
        session["conversations"] = sorted(joined)
        await sio.save_session(user_sid, session)


def build_socket_app(api_app) -> socketio.ASGIApp:
    return socketio.ASGIApp(sio, other_asgi_app=api_app, socketio_path="socket.io")
