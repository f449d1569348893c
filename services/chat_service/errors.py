"""
Chat service exceptions surfaced to the UI layer.
"""


class ChatServiceError(Exception):
    """Base class for rejected chat operations"""
    pass


class AuthorizationError(ChatServiceError):
    """Missing or invalid credential; the operation never started"""
    pass


class PreconditionError(ChatServiceError):
    """Operation rejected before any state was touched"""
    pass


class ConversationNotFoundError(PreconditionError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class OwnershipError(ChatServiceError):
    """The current user does not own the conversation"""

    def __init__(self, conversation_id: str):
        super().__init__(f"Not authorized to modify conversation: {conversation_id}")
        self.conversation_id = conversation_id
