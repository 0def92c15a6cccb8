from __future__ import annotations

import uuid
from typing import NewType

Identity = NewType("Identity", str)
ConversationId = NewType("ConversationId", str)

CONVERSATION_ID_SEPARATOR = "_"


def conversation_id(user_a: str, user_b: str) -> ConversationId:
    """Order-independent key for the two-party conversation between two users."""
    low, high = sorted((user_a, user_b))
    return ConversationId(f"{low}{CONVERSATION_ID_SEPARATOR}{high}")


def new_temp_id() -> str:
    return f"temp_{uuid.uuid4().hex}"
