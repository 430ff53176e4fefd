"""Message store: ordered persistence of room messages, edits, replies and reactions.

Within a room messages are totally ordered by ``(created_at, id)``. Reactions are
kept per message as ``{emoji: [user ids]}``; updates to a message row take a row
lock and are checked against the row's version counter, retrying a bounded
number of times when another writer got there first.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import delete as sql_delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.orm.exc import StaleDataError

from . import audit, directory
from .auth import Principal
from .config import settings
from .errors import Conflict, Forbidden, InvalidReply, NotFound, ValidationError
from .models import MESSAGE_TYPES, Message, Room, RoomMember, User, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_EMOJI_LENGTH = 10


@dataclass
class MessagePage:
    messages: list[dict] = field(default_factory=list)
    page: int = 1
    limit: int = 50
    total: int = 0

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


@dataclass
class Attachment:
    url: str
    name: str | None = None
    size: int | None = None


def toggle_reaction_map(reactions: dict | None, emoji: str, user_id: int) -> tuple[dict[str, list[int]], bool]:
    """Toggle ``user_id`` under ``emoji``; returns the new map and whether the reaction was added.

    Emoji keys left without reactors are dropped. User id lists come back sorted.
    """
    current = {key: set(users) for key, users in (reactions or {}).items() if users}
    reactors = current.setdefault(emoji, set())
    added = user_id not in reactors
    if added:
        reactors.add(user_id)
    else:
        reactors.discard(user_id)
    return {key: sorted(users) for key, users in current.items() if users}, added


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clean_body(body: str | None) -> str:
    body = (body or "").strip()
    if not body:
        raise ValidationError("Message must not be empty")
    if len(body) > settings.message_max_length:
        raise ValidationError(f"Message must be at most {settings.message_max_length} characters")
    return body


def message_fields(message: Message) -> dict:
    return {
        "id": message.id,
        "room": message.room,
        "user_id": message.user_id,
        "body": message.body,
        "message_type": message.message_type,
        "attachment_url": message.attachment_url,
        "attachment_name": message.attachment_name,
        "attachment_size": message.attachment_size,
        "reply_to": message.reply_to,
        "reactions": dict(message.reactions or {}),
        "is_edited": message.is_edited,
        "edited_at": message.edited_at,
        "created_at": message.created_at,
    }


def _enriched_select():
    author = aliased(User)
    quoted = aliased(Message)
    quoted_author = aliased(User)
    return (
        select(
            Message,
            author.name.label("user_name"),
            author.avatar.label("user_avatar"),
            quoted.body.label("reply_message"),
            quoted_author.name.label("reply_user_name"),
        )
        .outerjoin(author, author.id == Message.user_id)
        .outerjoin(quoted, quoted.id == Message.reply_to)
        .outerjoin(quoted_author, quoted_author.id == quoted.user_id)
        .execution_options(populate_existing=True)
    )


def _enriched_row(row) -> dict:
    return {
        **message_fields(row.Message),
        "user_name": row.user_name,
        "user_avatar": row.user_avatar,
        "reply_message": row.reply_message,
        "reply_user_name": row.reply_user_name,
    }


async def get_message(db: AsyncSession, message_id: int) -> dict | None:
    row = (await db.execute(_enriched_select().where(Message.id == message_id))).first()
    return _enriched_row(row) if row else None


async def _retrying(db: AsyncSession, operation: Callable[[], Awaitable[T]]) -> T:
    attempts = max(1, settings.reaction_retry_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StaleDataError:
            await db.rollback()
            logger.debug("Concurrent update on message row, attempt %d/%d", attempt, attempts)
    raise Conflict("Message was modified concurrently, please retry")


async def _load_for_update(db: AsyncSession, message_id: int) -> Message:
    message = await db.get(Message, message_id, with_for_update=True, populate_existing=True)
    if message is None:
        raise NotFound("Message not found")
    return message


async def list_messages(
    db: AsyncSession,
    principal: Principal,
    room_name: str,
    page: int = 1,
    limit: int | None = None,
    before: datetime | None = None,
) -> MessagePage:
    """Return one page of a room's history in display order (oldest first).

    Page 1 holds the ``limit`` most recent messages older than ``before``; higher
    pages walk further back. Reading a room moves the caller's ``last_seen``
    watermark to now.
    """
    if limit is None:
        limit = settings.default_page_size
    if page < 1:
        raise ValidationError("Page must be a positive integer")
    if not 1 <= limit <= settings.max_page_size:
        raise ValidationError(f"Limit must be between 1 and {settings.max_page_size}")

    room = await directory.require_room(db, principal, room_name, "read")

    filters = [Message.room == room.name]
    if before is not None:
        filters.append(Message.created_at < _as_utc(before))

    stmt = (
        _enriched_select()
        .where(*filters)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = (await db.execute(stmt)).all()
    rows.reverse()
    total = await db.scalar(select(func.count(Message.id)).where(*filters))

    await db.execute(
        update(RoomMember)
        .where(
            RoomMember.room_id == room.id,
            RoomMember.user_id == principal.id,
            RoomMember.is_active.is_(True),
        )
        .values(last_seen=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return MessagePage(messages=[_enriched_row(r) for r in rows], page=page, limit=limit, total=total or 0)


async def send(
    db: AsyncSession,
    principal: Principal,
    room_name: str,
    body: str,
    message_type: str = "text",
    reply_to: int | None = None,
    attachment: Attachment | None = None,
) -> dict:
    body = _clean_body(body)
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f"Invalid message type: {message_type}")

    room = await directory.require_room(db, principal, room_name, "write")
    if reply_to is not None:
        quoted = await db.scalar(select(Message.id).where(Message.id == reply_to, Message.room == room.name))
        if quoted is None:
            raise InvalidReply()

    message = Message(
        room=room.name,
        user_id=principal.id,
        body=body,
        message_type=message_type,
        reply_to=reply_to,
        reactions={},
        created_at=utcnow(),
    )
    if attachment is not None:
        message.attachment_url = attachment.url
        message.attachment_name = attachment.name
        message.attachment_size = attachment.size
    db.add(message)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise NotFound("Chat room not found")

    # same transaction as the insert; never moves the marker backwards
    await db.execute(
        update(Room)
        .where(
            Room.name == room.name,
            or_(Room.last_message_at.is_(None), Room.last_message_at < message.created_at),
        )
        .values(last_message_at=message.created_at)
        .execution_options(synchronize_session=False)
    )
    await audit.record(
        db, principal.id, "chat_message_sent", f"Sent message in {room.name}",
        {"messageId": message.id, "room": room.name},
    )
    await db.commit()
    logger.debug("Message %s stored in %s by user %s", message.id, room.name, principal.id)
    return await get_message(db, message.id)


async def edit(db: AsyncSession, principal: Principal, message_id: int, body: str) -> dict:
    body = _clean_body(body)

    async def apply() -> None:
        message = await _load_for_update(db, message_id)
        if message.user_id != principal.id:
            raise Forbidden("Not authorized to edit this message")
        message.body = body
        message.is_edited = True
        message.edited_at = utcnow()
        await db.commit()

    await _retrying(db, apply)
    return await get_message(db, message_id)


async def delete(db: AsyncSession, principal: Principal, message_id: int) -> dict:
    """Hard-delete a message; allowed for its author, the room creator and elevated roles.

    Replies to the deleted message survive with ``reply_to`` cleared.
    """
    row = (await db.execute(
        select(Message, Room.created_by)
        .outerjoin(Room, Room.name == Message.room)
        .where(Message.id == message_id)
        .with_for_update(of=Message)
    )).first()
    if row is None:
        raise NotFound("Message not found")
    message, room_creator = row
    if not (message.user_id == principal.id or room_creator == principal.id or principal.is_elevated):
        raise Forbidden("Not authorized to delete this message")

    removed = {"id": message.id, "room": message.room}
    await db.execute(
        update(Message)
        .where(Message.reply_to == message.id)
        .values(reply_to=None)
        .execution_options(synchronize_session=False)
    )
    await db.execute(sql_delete(Message).where(Message.id == message.id).execution_options(synchronize_session=False))
    db.expunge(message)
    await audit.record(
        db, principal.id, "chat_message_deleted", f"Deleted message in {removed['room']}",
        {"messageId": removed["id"], "room": removed["room"]},
    )
    await db.commit()
    logger.info("Message %s in %s deleted by user %s", removed["id"], removed["room"], principal.id)
    return removed


async def toggle_reaction(db: AsyncSession, principal: Principal, message_id: int, emoji: str) -> dict:
    emoji = (emoji or "").strip()
    if not 1 <= len(emoji) <= MAX_EMOJI_LENGTH:
        raise ValidationError(f"Emoji must be between 1 and {MAX_EMOJI_LENGTH} characters")

    async def apply() -> dict:
        message = await _load_for_update(db, message_id)
        await directory.require_room(db, principal, message.room, "read")
        reactions, added = toggle_reaction_map(message.reactions, emoji, principal.id)
        message.reactions = reactions
        await db.commit()
        return {
            "id": message.id,
            "room": message.room,
            "emoji": emoji,
            "user_id": principal.id,
            "added": added,
            "reactions": reactions,
        }

    return await _retrying(db, apply)
