"""Prompt flattening and token estimates for the agent runtime.

The runtime entry point accepts a single prompt string, so the ordered chat
history is serialized into role-tagged blocks that keep turn boundaries
recoverable.
"""

from __future__ import annotations

import math
from typing import Iterable, Protocol

CHARS_PER_TOKEN = 4


class _Message(Protocol):
    role: str
    content: str


def format_block(role: str, content: str) -> str:
    return f"<{role}>{content}</{role}>"


def build_prompt(messages: Iterable[_Message]) -> str:
    """Join one ``<role>content</role>`` block per message, in input order."""
    blocks = [format_block(msg.role, msg.content) for msg in messages]
    return "\n\n".join(blocks).strip()


def estimate_tokens(text: str) -> int:
    """Approximate token count: characters divided by four, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
