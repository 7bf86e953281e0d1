"""Small helpers shared by the transit modules."""

import secrets
import string

LETTERS = string.ascii_lowercase + string.ascii_uppercase


def random_string(size: int) -> str:
    """Return a random string of ``size`` ASCII letters.

    Safe to call from many threads at once.
    """
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    return "".join(secrets.choice(LETTERS) for _ in range(size))