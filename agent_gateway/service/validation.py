from __future__ import annotations

from typing import Any, Sequence

from agent_gateway.service.errors import BadRequestError

VALID_ROLES = frozenset({"user", "assistant", "system"})


def validate_messages(messages: Sequence[Any] | None) -> None:
    """Structural checks on the chat history before anything reaches the runtime.

    Raises:
        BadRequestError: list missing or empty, or a message without a known
            role or with empty content
    """
    if not messages:
        raise BadRequestError("messages array is required and must not be empty")
    for index, msg in enumerate(messages):
        role = getattr(msg, "role", None)
        content = getattr(msg, "content", None)
        if not role or not content:
            raise BadRequestError(
                "Each message must have role and content",
                detail={"index": index},
            )
        if role not in VALID_ROLES:
            raise BadRequestError(
                f"Invalid role '{role}'. Expected one of: assistant, system, user",
                detail={"index": index},
            )

