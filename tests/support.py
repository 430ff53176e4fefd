"""Shared fixtures: an in-memory SQLite database with a few users and rooms."""

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chathub.auth import Principal, create_access_token
from chathub.db import init_db
from chathub.models import Message, Room, RoomMember, User


class FakeSink:
    """Stands in for a WebSocket: records every JSON frame sent to it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def types(self):
        return [frame["type"] for frame in self.sent]


class ChatTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        await init_db(self.engine)
        self.sessions = async_sessionmaker(self.engine, expire_on_commit=False)

        self.u1 = await self.make_user("Ana", "ana@waterwise.org")
        self.u2 = await self.make_user("Ben", "ben@waterwise.org")
        self.u3 = await self.make_user("Cleo", "cleo@waterwise.org")
        self.admin = await self.make_user("Root", "root@waterwise.org", role="admin")

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def make_user(self, name, email, role="user", is_active=True) -> Principal:
        async with self.sessions() as db:
            user = User(name=name, email=email, password_hash="x", role=role, is_active=is_active)
            db.add(user)
            await db.commit()
            return Principal(id=user.id, role=role, name=name)

    async def make_room(self, name, type="public", created_by=None, is_active=True, **fields) -> int:
        async with self.sessions() as db:
            room = Room(
                name=name,
                display_name=name.replace("-", " ").title(),
                type=type,
                created_by=(created_by or self.admin).id,
                is_active=is_active,
                member_count=0,
                **fields,
            )
            db.add(room)
            await db.commit()
            return room.id

    async def add_member(self, room_id, principal, role="member", **fields):
        async with self.sessions() as db:
            db.add(RoomMember(room_id=room_id, user_id=principal.id, role=role, **fields))
            await db.commit()

    async def insert_message(self, room, principal, body, created_at, **fields) -> int:
        async with self.sessions() as db:
            message = Message(room=room, user_id=principal.id, body=body, reactions={}, created_at=created_at, **fields)
            db.add(message)
            await db.commit()
            return message.id

    async def fetch(self, model, ident):
        async with self.sessions() as db:
            return await db.get(model, ident)

    @staticmethod
    def token(principal) -> str:
        return create_access_token(str(principal.id))

    @staticmethod
    def at(minutes: int) -> datetime:
        return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
