import unittest

from sqlalchemy import select

from chathub.gateway import ChatSocketSession
from chathub.hub import BroadcastHub, LiveConnection
from chathub.models import Message

from support import ChatTestCase, FakeSink


class TestChatSocketSession(ChatTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.hub = BroadcastHub()
        await self.make_room("general")
        self.private_id = await self.make_room("mods-only", type="private")

    def open(self, principal):
        conn = LiveConnection(FakeSink(), principal.id, principal.name)
        return ChatSocketSession(conn, principal, self.hub, self.sessions)

    async def test_join_public_channel_without_membership(self):
        ana, ben = self.open(self.u1), self.open(self.u2)
        await ana.handle({"type": "join_chat", "room": "general"})
        await ben.handle({"type": "join_chat", "room": "general"})

        self.assertEqual(ana.conn.sink.types(), ["user_joined", "joined", "user_joined"])
        self.assertEqual(ben.conn.sink.sent[-1], {"type": "joined", "room": "general", "users": [self.u1.id, self.u2.id]})
        self.assertEqual(ana.conn.sink.sent[-1]["user_id"], self.u2.id)

    async def test_join_is_idempotent(self):
        ana = self.open(self.u1)
        await ana.handle({"type": "join_chat", "room": "general"})
        await ana.handle({"type": "join_chat", "room": "general"})
        self.assertEqual(ana.conn.sink.types(), ["user_joined", "joined", "joined"])

    async def test_private_channel_needs_membership(self):
        cleo = self.open(self.u3)
        await cleo.handle({"type": "join_chat", "room": "mods-only"})
        self.assertEqual(cleo.conn.sink.sent, [{"type": "error", "message": "Access denied to this chat room"}])
        self.assertEqual(self.hub.channels_of(cleo.conn), [])

        await self.add_member(self.private_id, self.u3)
        await cleo.handle({"type": "join_chat", "room": "mods-only"})
        self.assertEqual(self.hub.channels_of(cleo.conn), ["mods-only"])

    async def test_send_message_persists_then_broadcasts(self):
        ana, ben = self.open(self.u1), self.open(self.u2)
        await ben.handle({"type": "join_chat", "room": "general"})
        ben.conn.sink.sent.clear()

        await ana.handle({"type": "send_message", "room": "general", "message": "Hello"})

        [event] = ben.conn.sink.sent
        self.assertEqual(event["type"], "receive_message")
        self.assertEqual(event["message"]["body"], "Hello")
        async with self.sessions() as db:
            stored = (await db.scalars(select(Message.body))).all()
        self.assertEqual(stored, ["Hello"])

    async def test_failed_send_is_not_broadcast(self):
        ana, ben = self.open(self.u1), self.open(self.u2)
        await ben.handle({"type": "join_chat", "room": "general"})
        ben.conn.sink.sent.clear()

        await ana.handle({"type": "send_message", "room": "general", "message": "re", "replyTo": 42})
        await ana.handle({"type": "send_message", "room": "general", "message": ""})

        self.assertEqual(ben.conn.sink.sent, [])
        errors = ana.conn.sink.sent
        self.assertEqual(errors[0], {"type": "error", "message": "Reply message not found in this room"})
        self.assertEqual(errors[1]["message"], "Validation failed")

    async def test_typing_goes_to_others_only(self):
        ana, ben = self.open(self.u1), self.open(self.u2)
        for session in (ana, ben):
            await session.handle({"type": "join_chat", "room": "general"})
        for session in (ana, ben):
            session.conn.sink.sent.clear()

        await ana.handle({"type": "typing", "room": "general"})

        self.assertEqual(ana.conn.sink.sent, [])
        [event] = ben.conn.sink.sent
        self.assertEqual((event["type"], event["user_id"], event["is_typing"]), ("user_typing", self.u1.id, True))

    async def test_typing_flag_must_be_boolean(self):
        ana, ben = self.open(self.u1), self.open(self.u2)
        for session in (ana, ben):
            await session.handle({"type": "join_chat", "room": "general"})
        for session in (ana, ben):
            session.conn.sink.sent.clear()

        await ana.handle({"type": "typing", "room": "general", "is_typing": "false"})
        self.assertEqual(ana.conn.sink.types(), ["error"])
        self.assertEqual(ben.conn.sink.sent, [])

        await ana.handle({"type": "typing", "room": "general", "is_typing": False})
        [event] = ben.conn.sink.sent
        self.assertIs(event["is_typing"], False)

    async def test_typing_requires_subscription(self):
        ana = self.open(self.u1)
        await ana.handle({"type": "typing", "room": "general"})
        self.assertEqual(ana.conn.sink.types(), ["error"])

    async def test_leave_and_close_announce_departure(self):
        ana, ben = self.open(self.u1), self.open(self.u2)
        for session in (ana, ben):
            await session.handle({"type": "join_chat", "room": "general"})
        ben.conn.sink.sent.clear()

        await ana.handle({"type": "leave_chat", "room": "general"})
        self.assertEqual(ana.conn.sink.sent[-1], {"type": "left", "room": "general"})
        self.assertEqual(ben.conn.sink.types(), ["user_left"])

        await ana.handle({"type": "join_chat", "room": "general"})
        ben.conn.sink.sent.clear()
        await ana.close()
        self.assertEqual(ben.conn.sink.types(), ["user_left"])
        self.assertEqual(self.hub.present_users("general"), [self.u2.id])

    async def test_ping_and_unknown_frames(self):
        ana = self.open(self.u1)
        await ana.handle({"type": "ping"})
        await ana.handle({"type": "dance"})
        await ana.handle(["not", "an", "object"])
        await ana.handle({"type": "join_chat"})
        await ana.handle({"type": ["join_chat"]})
        await ana.handle({"type": {"name": "ping"}})
        self.assertEqual(ana.conn.sink.types(), ["pong", "error", "error", "error", "error", "error"])
        self.assertEqual(ana.conn.sink.sent[-1], {"type": "error", "message": "unknown message"})


if __name__ == "__main__":
    unittest.main()
