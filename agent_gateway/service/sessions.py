from __future__ import annotations

import secrets
import string
import time
from typing import Optional

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 9


def new_session_id() -> str:
    """Mint ``sess_<epoch-ms>_<random base36>``; the time component sorts ids by creation."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"sess_{int(time.time() * 1000)}_{suffix}"


def resolve_session_id(provided: Optional[str]) -> str:
    """Echo a caller-supplied session id unchanged, or mint a new one.

    Session ids only correlate client-side conversations; the gateway keeps no
    state for them, so a supplied id is never looked up or validated.
    """
    if provided:
        return provided
    return new_session_id()
