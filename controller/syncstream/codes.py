"""Short connection codes and the rendezvous identities derived from them."""
from __future__ import annotations

import secrets

DEFAULT_PREFIX = "syncstream-v1-"
CODE_LENGTH = 4


def generate_code() -> str:
    """Uniformly random code in [1000, 9999]."""

    return str(1000 + secrets.randbelow(9000))


def is_valid_code(text: object) -> bool:
    return isinstance(text, str) and len(text) == CODE_LENGTH and text.isascii() and text.isdigit()


def namespace(code: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Map a code to the identity peers rendezvous on.

    The prefix keeps our codes apart from unrelated users of a shared relay.
    Identities are only ever compared for equality; nothing parses them back.
    """

    if not is_valid_code(code):
        raise ValueError(f"invalid connection code: {code!r}")
    return f"{prefix}{code}"


__all__ = ["generate_code", "is_valid_code", "namespace", "CODE_LENGTH", "DEFAULT_PREFIX"]
