"""
Default device names and passwords.

Names are three-word "pet names" such as ``wholly-merry-otter`` from the
``petname`` package. Passwords take an explicit random source so callers can
pass a seeded ``random.Random`` in tests; production code uses
``secrets.SystemRandom``.
"""

import secrets
import string
from typing import Sequence

import petname

PASSWORD_LENGTH = 20
PASSWORD_ALPHABET = string.ascii_letters


def generate_name(words: int = 3, separator: str = "-") -> str:
    """
    Generate a human readable name.

    The last word is an animal, the one before it an adjective, and any
    earlier words are adverbs.
    """
    if words < 1:
        raise ValueError("a name needs at least one word")
    return petname.generate(words=words, separator=separator)


def generate_password(
    length: int = PASSWORD_LENGTH,
    alphabet: Sequence[str] = PASSWORD_ALPHABET,
    random_source=None,
) -> str:
    """Generate a random password of ``length`` characters from ``alphabet``."""
    rng = random_source if random_source is not None else secrets.SystemRandom()
    return "".join(rng.choice(alphabet) for _ in range(length))
