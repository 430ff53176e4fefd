"""Room directory: room existence, membership and access predicates.

Public rooms admit every authenticated principal, with or without a membership
row. Private and group rooms admit only principals holding an active
membership. Membership rows are never deleted; leaving flips ``is_active``.
"""

import logging

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from .auth import Principal
from .errors import AccessDenied, AlreadyMember, Conflict, Forbidden, NotFound, NotMember, ValidationError
from .models import ROOM_TYPES, Message, Room, RoomMember, User, utcnow

logger = logging.getLogger(__name__)

ACCESS_MODES = ("read", "write")


def room_fields(room: Room) -> dict:
    return {
        "id": room.id,
        "name": room.name,
        "display_name": room.display_name,
        "description": room.description,
        "type": room.type,
        "member_count": room.member_count,
        "last_message_at": room.last_message_at,
        "is_active": room.is_active,
        "created_by": room.created_by,
        "created_at": room.created_at,
    }


async def get_membership(db: AsyncSession, room_id: int, user_id: int, *, lock: bool = False) -> RoomMember | None:
    stmt = select(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()


async def _active_membership(db: AsyncSession, room_id: int, user_id: int) -> RoomMember | None:
    membership = await get_membership(db, room_id, user_id)
    if membership is not None and membership.is_active:
        return membership
    return None


async def _locked_room(db: AsyncSession, room_id: int) -> Room | None:
    stmt = select(Room).where(Room.id == room_id).with_for_update()
    return (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()


async def get_room_by_name(db: AsyncSession, room_name: str) -> Room | None:
    stmt = select(Room).where(Room.name == room_name)
    return (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()


async def list_rooms(
    db: AsyncSession,
    principal: Principal,
    type: str | None = None,
    active_only: bool = True,
) -> list[dict]:
    """Rooms visible to ``principal``, most recently active first.

    Each row carries the principal's membership role, the latest message body and
    the number of messages newer than the principal's ``last_seen`` watermark.
    Without a membership row there is no watermark and the unread count is 0.
    """
    baseline = func.coalesce(RoomMember.last_seen, RoomMember.joined_at)
    unread = (
        select(func.count(Message.id))
        .where(Message.room == Room.name, Message.created_at > baseline)
        .correlate(Room, RoomMember)
        .scalar_subquery()
    )
    last_message = (
        select(Message.body)
        .where(Message.room == Room.name)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
        .correlate(Room)
        .scalar_subquery()
    )
    stmt = (
        select(
            Room,
            User.name.label("created_by_name"),
            RoomMember.role.label("user_role"),
            RoomMember.joined_at.label("joined_at"),
            last_message.label("last_message"),
            unread.label("unread_count"),
        )
        .outerjoin(User, User.id == Room.created_by)
        .outerjoin(
            RoomMember,
            and_(
                RoomMember.room_id == Room.id,
                RoomMember.user_id == principal.id,
                RoomMember.is_active.is_(True),
            ),
        )
        .where(or_(Room.type == "public", RoomMember.id.is_not(None)))
        .order_by(Room.last_message_at.desc().nulls_last(), Room.created_at.desc(), Room.id.desc())
        .execution_options(populate_existing=True)
    )
    if active_only:
        stmt = stmt.where(Room.is_active.is_(True))
    if type:
        stmt = stmt.where(Room.type == type)

    rows = (await db.execute(stmt)).all()
    return [
        {
            **room_fields(row.Room),
            "created_by_name": row.created_by_name,
            "user_role": row.user_role,
            "joined_at": row.joined_at,
            "last_message": row.last_message,
            "unread_count": row.unread_count or 0,
        }
        for row in rows
    ]


async def get_room(db: AsyncSession, principal: Principal, room_id: int) -> dict:
    room = await db.get(Room, room_id, populate_existing=True)
    if room is None or not room.is_active:
        raise NotFound("Chat room not found")
    membership = await _active_membership(db, room.id, principal.id)
    if room.type != "public" and membership is None:
        raise AccessDenied()

    members = await db.execute(
        select(
            User.id,
            User.name,
            User.avatar,
            RoomMember.role,
            RoomMember.joined_at,
            RoomMember.last_seen,
        )
        .join(User, User.id == RoomMember.user_id)
        .where(RoomMember.room_id == room.id, RoomMember.is_active.is_(True))
        .order_by(RoomMember.joined_at.asc(), RoomMember.id.asc())
    )
    return {
        "room": {
            **room_fields(room),
            "user_role": membership.role if membership else None,
            "joined_at": membership.joined_at if membership else None,
        },
        "members": [dict(m) for m in members.mappings().all()],
    }


async def resolve_access(db: AsyncSession, principal: Principal, room_name: str) -> tuple[Room | None, bool]:
    room = await get_room_by_name(db, room_name)
    if room is None or not room.is_active:
        return None, False
    if room.type == "public":
        return room, True
    return room, await _active_membership(db, room.id, principal.id) is not None


async def can_access(db: AsyncSession, principal: Principal, room_name: str, mode: str = "read") -> bool:
    if mode not in ACCESS_MODES:
        raise ValueError(f"unknown access mode {mode!r}")
    _, allowed = await resolve_access(db, principal, room_name)
    return allowed


async def require_room(db: AsyncSession, principal: Principal, room_name: str, mode: str = "read") -> Room:
    """Return the room named ``room_name`` if ``principal`` may use it in ``mode``."""
    if mode not in ACCESS_MODES:
        raise ValueError(f"unknown access mode {mode!r}")
    room, allowed = await resolve_access(db, principal, room_name)
    if room is None:
        raise NotFound("Chat room not found")
    if not allowed:
        raise AccessDenied()
    return room


async def create_room(
    db: AsyncSession,
    principal: Principal,
    name: str,
    display_name: str | None = None,
    description: str | None = None,
    type: str = "public",
) -> Room:
    if type not in ROOM_TYPES:
        raise ValidationError(f"Invalid room type: {type}")
    room = Room(
        name=name,
        display_name=display_name or name,
        description=description,
        type=type,
        member_count=1,
        created_by=principal.id,
    )
    db.add(room)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        if "foreign key" in str(exc.orig).lower():
            raise NotFound("Room creator does not exist")
        raise Conflict(f"Chat room '{name}' already exists")
    db.add(RoomMember(room_id=room.id, user_id=principal.id, role="owner"))
    await audit.record(
        db, principal.id, "chat_room_created", f"Created chat room: {name}",
        {"roomId": room.id, "roomName": name},
    )
    await db.commit()
    await db.refresh(room)
    logger.info("Room %s (%s) created by user %s", room.name, room.type, principal.id)
    return room


async def deactivate_room(db: AsyncSession, principal: Principal, room_id: int) -> Room:
    room = await _locked_room(db, room_id)
    if room is None or not room.is_active:
        raise NotFound("Chat room not found")
    if room.created_by != principal.id and not principal.is_admin:
        raise Forbidden("Not authorized to close this room")
    room.is_active = False
    await db.commit()
    await db.refresh(room)
    logger.info("Room %s deactivated by user %s", room.name, principal.id)
    return room


async def join(db: AsyncSession, principal: Principal, room_id: int) -> Room:
    # the room row lock serializes membership transitions for this room
    room = await _locked_room(db, room_id)
    if room is None or not room.is_active:
        raise NotFound("Chat room not found")

    membership = await get_membership(db, room.id, principal.id, lock=True)
    if membership is not None and membership.is_active:
        raise AlreadyMember()
    try:
        if membership is None:
            db.add(RoomMember(room_id=room.id, user_id=principal.id, role="member"))
        else:
            membership.is_active = True
            membership.role = "member"
            membership.joined_at = utcnow()
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise AlreadyMember()

    await db.execute(
        update(Room).where(Room.id == room.id).values(member_count=Room.member_count + 1)
        .execution_options(synchronize_session=False)
    )
    await audit.record(
        db, principal.id, "chat_room_joined", f"Joined chat room: {room.name}",
        {"roomId": room.id, "roomName": room.name},
    )
    await db.commit()
    await db.refresh(room)
    logger.info("User %s joined room %s", principal.id, room.name)
    return room


async def leave(db: AsyncSession, principal: Principal, room_id: int) -> Room:
    room = await _locked_room(db, room_id)
    membership = await get_membership(db, room_id, principal.id, lock=True) if room else None
    if membership is None or not membership.is_active:
        raise NotMember()

    membership.is_active = False
    await db.flush()
    await db.execute(
        update(Room)
        .where(Room.id == room.id)
        .values(member_count=case((Room.member_count > 0, Room.member_count - 1), else_=0))
        .execution_options(synchronize_session=False)
    )
    await audit.record(
        db, principal.id, "chat_room_left", "Left chat room",
        {"roomId": room.id, "roomName": room.name},
    )
    await db.commit()
    await db.refresh(room)
    logger.info("User %s left room %s", principal.id, room.name)
    return room
