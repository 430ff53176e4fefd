"""Chat gateway: HTTP routes and the live WebSocket channel.

The gateway validates request shape, delegates to the room directory and the
message store, and publishes hub events only after the store has committed.
"""

import json
import logging
from datetime import datetime

import pydantic
from fastapi import APIRouter, Depends, Path, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import directory, events, messages
from .auth import Principal, get_current_principal, resolve_principal
from .config import settings
from .db import get_db, get_sessionmaker
from .errors import ChatError, Unauthenticated, ValidationError
from .hub import BroadcastHub, LiveConnection, get_hub
from .schemas import (
    MessageCreate,
    MessageOut,
    MessageUpdate,
    Pagination,
    ReactionIn,
    ReactionOut,
    RoomCreate,
    RoomDetail,
    RoomOut,
    RoomSummary,
    RoomType,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])
ws_router = APIRouter()


def ok(data: dict | None = None, message: str | None = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _attachment(payload: MessageCreate) -> messages.Attachment | None:
    if not payload.attachment_url:
        return None
    return messages.Attachment(payload.attachment_url, payload.attachment_name, payload.attachment_size)


# ---------------------- ROOMS ----------------------
@router.get("/rooms")
async def list_rooms(
    type: RoomType | None = Query(None),
    active: bool = Query(True),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    rooms = await directory.list_rooms(db, principal, type=type, active_only=active)
    return ok({"rooms": [RoomSummary.model_validate(r) for r in rooms]})


@router.post("/rooms", status_code=201)
async def create_room(
    body: RoomCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    room = await directory.create_room(db, principal, body.name, body.display_name, body.description, body.type)
    return ok({"room": RoomOut.model_validate(room)})


@router.get("/rooms/{room_id}")
async def get_room(
    room_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    detail = await directory.get_room(db, principal, room_id)
    return ok(RoomDetail.model_validate(detail).model_dump())


@router.delete("/rooms/{room_id}")
async def deactivate_room(
    room_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    room = await directory.deactivate_room(db, principal, room_id)
    evicted = await hub.evict(room.name)
    if evicted:
        logger.info("Closed room %s dropped %d live connection(s)", room.name, len(evicted))
    return ok({"room": RoomOut.model_validate(room)}, "Chat room closed")


@router.post("/rooms/{room_id}/join")
async def join_room(
    room_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    room = await directory.join(db, principal, room_id)
    return ok({"room": RoomOut.model_validate(room)}, "Successfully joined chat room")


@router.post("/rooms/{room_id}/leave")
async def leave_room(
    room_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    room = await directory.leave(db, principal, room_id)
    # public rooms stay readable without a membership
    if room.type != "public" and await hub.evict(room.name, principal.id):
        await hub.publish(room.name, events.user_left(room.name, principal.id, principal.name))
    return ok({"room": RoomOut.model_validate(room)}, "Successfully left chat room")


@router.get("/rooms/{room_name}/presence")
async def room_presence(
    room_name: str = Path(min_length=1, max_length=100),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    await directory.require_room(db, principal, room_name, "read")
    return ok({"room": room_name, "users": hub.present_users(room_name)})


# ---------------------- MESSAGES ----------------------
@router.get("/messages/{room_name}")
async def list_messages(
    room_name: str = Path(min_length=1, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    before: datetime | None = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    result = await messages.list_messages(db, principal, room_name, page=page, limit=limit, before=before)
    return ok({
        "messages": [MessageOut.model_validate(m) for m in result.messages],
        "pagination": Pagination(
            page=result.page, limit=result.limit, total=result.total, totalPages=result.total_pages
        ),
    })


@router.post("/messages", status_code=201)
async def send_message(
    body: MessageCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    message = await messages.send(
        db, principal, body.room, body.body, body.message_type, body.reply_to, _attachment(body)
    )
    await hub.publish(message["room"], events.receive_message(message))
    return ok({"message": MessageOut.model_validate(message)})


@router.put("/messages/{message_id}")
async def edit_message(
    body: MessageUpdate,
    message_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    message = await messages.edit(db, principal, message_id, body.body)
    await hub.publish(message["room"], events.message_edited(message))
    return ok({"message": MessageOut.model_validate(message)})


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    removed = await messages.delete(db, principal, message_id)
    await hub.publish(removed["room"], events.message_deleted(removed["room"], removed["id"]))
    return ok(message="Message deleted successfully")


@router.post("/messages/{message_id}/reactions")
async def toggle_reaction(
    body: ReactionIn,
    message_id: int = Path(ge=1),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    hub: BroadcastHub = Depends(get_hub),
):
    result = await messages.toggle_reaction(db, principal, message_id, body.emoji)
    await hub.publish(result["room"], events.reaction_updated(result))
    return ok(ReactionOut.model_validate(result).model_dump())


# ---------------------- WEBSOCKETS ----------------------
def error_frame(message: str) -> dict:
    return {"type": "error", "message": message}


class ChatSocketSession:
    """Frame handling for one live connection.

    Channel subscriptions live in the hub; a connection may sit in a public room's
    channel without holding a membership row.
    """

    def __init__(
        self,
        conn: LiveConnection,
        principal: Principal,
        hub: BroadcastHub,
        sessions: async_sessionmaker[AsyncSession],
    ) -> None:
        self.conn = conn
        self.principal = principal
        self.hub = hub
        self.sessions = sessions

    async def handle(self, frame) -> None:
        if not isinstance(frame, dict):
            await self.conn.send(error_frame("Frames must be JSON objects"))
            return
        frame_type = frame.get("type")
        handler = {
            "join_chat": self.join_chat,
            "leave_chat": self.leave_chat,
            "send_message": self.send_message,
            "typing": self.typing,
            "ping": self.ping,
        }.get(frame_type) if isinstance(frame_type, str) else None
        if handler is None:
            await self.conn.send(error_frame("unknown message"))
            return
        try:
            await handler(frame)
        except ChatError as exc:
            await self.conn.send(error_frame(exc.message))
        except pydantic.ValidationError as exc:
            await self.conn.send({**error_frame("Validation failed"), "errors": json.loads(exc.json())})

    def _room(self, frame: dict) -> str:
        room = frame.get("room")
        if not isinstance(room, str) or not 1 <= len(room) <= 100:
            raise ValidationError("Room name must be between 1 and 100 characters")
        return room

    async def join_chat(self, frame: dict) -> None:
        room = self._room(frame)
        async with self.sessions() as db:
            allowed = await directory.can_access(db, self.principal, room, "read")
        if not allowed:
            await self.conn.send(error_frame("Access denied to this chat room"))
            return
        if await self.hub.subscribe(self.conn, room):
            logger.info("User %s joined live channel %s", self.principal.id, room)
            await self.hub.publish(room, events.user_joined(room, self.principal.id, self.principal.name))
        await self.conn.send({"type": "joined", "room": room, "users": self.hub.present_users(room)})

    async def leave_chat(self, frame: dict) -> None:
        room = self._room(frame)
        if await self.hub.unsubscribe(self.conn, room):
            await self.hub.publish(room, events.user_left(room, self.principal.id, self.principal.name))
        await self.conn.send({"type": "left", "room": room})

    async def send_message(self, frame: dict) -> None:
        payload = MessageCreate.model_validate(frame)
        async with self.sessions() as db:
            message = await messages.send(
                db, self.principal, payload.room, payload.body,
                payload.message_type, payload.reply_to, _attachment(payload),
            )
        await self.hub.publish(message["room"], events.receive_message(message))

    async def typing(self, frame: dict) -> None:
        room = self._room(frame)
        if room not in self.hub.channels_of(self.conn):
            await self.conn.send(error_frame("Join the room before sending typing updates"))
            return
        is_typing = frame.get("is_typing", True)
        if not isinstance(is_typing, bool):
            raise ValidationError("is_typing must be true or false")
        event = events.user_typing(room, self.principal.id, self.principal.name, is_typing)
        await self.hub.publish(room, event, exclude=[self.conn])

    async def ping(self, frame: dict) -> None:
        await self.conn.send({"type": "pong"})

    async def close(self) -> None:
        for room in await self.hub.disconnect(self.conn):
            await self.hub.publish(room, events.user_left(room, self.principal.id, self.principal.name))


# Chat WS: subscribe per room, persist then broadcast.
@ws_router.websocket("/ws/chat")
async def ws_chat(
    ws: WebSocket,
    hub: BroadcastHub = Depends(get_hub),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    try:
        async with sessions() as db:
            principal = await resolve_principal(db, ws.query_params.get("token"))
    except Unauthenticated:
        await ws.close(code=4401)
        return

    await ws.accept()
    conn = LiveConnection(ws, principal.id, principal.name)
    session = ChatSocketSession(conn, principal, hub, sessions)
    logger.info("User %s connected to live chat", principal.id)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await conn.send(error_frame("Invalid JSON format."))
                continue
            await session.handle(frame)
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()
        logger.info("User %s disconnected from live chat", principal.id)
