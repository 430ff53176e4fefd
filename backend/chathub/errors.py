"""Error taxonomy shared by the room directory, the message store and the gateway.

Every error carries the HTTP status the gateway answers with; the message is
shown to the client as-is.
"""


class ChatError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(ChatError):
    status_code = 401
    default_message = "Not authorized to access this route"


class AccessDenied(ChatError):
    """Authenticated, but the room does not admit this principal."""

    status_code = 403
    default_message = "Access denied to this chat room"


class Forbidden(ChatError):
    """Authenticated, but not allowed to touch this particular message or room."""

    status_code = 403
    default_message = "Not authorized to perform this action"


class NotFound(ChatError):
    status_code = 404
    default_message = "Not found"


class InvalidReply(ChatError):
    status_code = 400
    default_message = "Reply message not found in this room"


class AlreadyMember(ChatError):
    status_code = 400
    default_message = "Already a member of this room"


class NotMember(ChatError):
    status_code = 400
    default_message = "Not a member of this room"


class ValidationError(ChatError):
    status_code = 400
    default_message = "Validation failed"


class Conflict(ChatError):
    status_code = 409
    default_message = "Duplicate entry. This record already exists."
