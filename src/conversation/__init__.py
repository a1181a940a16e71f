from src.conversation.store import (
    append_message,
    as_chat_messages,
    create_conversation,
    get_conversation,
    history,
)

__all__ = ["append_message", "as_chat_messages", "create_conversation", "get_conversation", "history"]
