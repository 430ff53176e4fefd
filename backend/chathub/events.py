"""Live events fanned out over the broadcast hub.

Every event is a JSON-ready dict with a ``type`` key and the room it concerns.
"""

from fastapi.encoders import jsonable_encoder

USER_JOINED = "user_joined"
USER_LEFT = "user_left"
USER_TYPING = "user_typing"
RECEIVE_MESSAGE = "receive_message"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
REACTION_UPDATED = "reaction_updated"


def build_event(event_type: str, room: str, **payload) -> dict:
    return jsonable_encoder({"type": event_type, "room": room, **payload})


def user_joined(room: str, user_id: int, name: str) -> dict:
    return build_event(USER_JOINED, room, user_id=user_id, name=name)


def user_left(room: str, user_id: int, name: str) -> dict:
    return build_event(USER_LEFT, room, user_id=user_id, name=name)


def user_typing(room: str, user_id: int, name: str, is_typing: bool = True) -> dict:
    return build_event(USER_TYPING, room, user_id=user_id, name=name, is_typing=is_typing)


def receive_message(message: dict) -> dict:
    return build_event(RECEIVE_MESSAGE, message["room"], message=message)


def message_edited(message: dict) -> dict:
    return build_event(MESSAGE_EDITED, message["room"], message=message)


def message_deleted(room: str, message_id: int) -> dict:
    return build_event(MESSAGE_DELETED, room, message_id=message_id)


def reaction_updated(result: dict) -> dict:
    return build_event(
        REACTION_UPDATED,
        result["room"],
        message_id=result["id"],
        emoji=result["emoji"],
        user_id=result["user_id"],
        added=result["added"],
        reactions=result["reactions"],
    )
