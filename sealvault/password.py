"""
Password generation and entropy estimation.
"""

import math
import secrets
import string
from typing import Union

from . import config
from .errors import InvalidLengthError, UserInputError
from .secure_buffer import SecureBuffer

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = string.punctuation

# Pool size each character class contributes when present
CLASS_SIZES = (
    (frozenset(LOWERCASE), len(LOWERCASE)),
    (frozenset(UPPERCASE), len(UPPERCASE)),
    (frozenset(DIGITS), len(DIGITS)),
    (frozenset(SYMBOLS), len(SYMBOLS)),
)

STRENGTH_BANDS = (
    (35.0, "Very Weak"),
    (59.0, "Weak"),
    (119.0, "Strong"),
)


def generate(length: int = config.PASSWORD_GENERATOR_DEFAULT_LENGTH,
             lowercase: bool = True,
             uppercase: bool = True,
             digits: bool = True,
             symbols: bool = True,
             exclude_ambiguous: bool = False) -> SecureBuffer:
    """
    Generate a random password.

    Every character is drawn independently and uniformly from the union of
    the selected classes using the ``secrets`` CSPRNG.

    Args:
        length: Number of characters
        exclude_ambiguous: Leave out look-alike characters such as 0/O and 1/l

    Returns:
        The password as ASCII bytes in a SecureBuffer

    Raises:
        InvalidLengthError: If length is not between 1 and the configured maximum
        UserInputError: If no character class is selected
    """
    if isinstance(length, bool) or not isinstance(length, int) or length <= 0:
        raise InvalidLengthError(f"Password length must be a positive integer, got {length!r}.")
    if length > config.PASSWORD_GENERATOR_MAX_LENGTH:
        raise InvalidLengthError(
            f"Password length must be at most {config.PASSWORD_GENERATOR_MAX_LENGTH}, got {length}.")

    chars = ""
    if lowercase:
        chars += LOWERCASE
    if uppercase:
        chars += UPPERCASE
    if digits:
        chars += DIGITS
    if symbols:
        chars += SYMBOLS
    if exclude_ambiguous:
        chars = "".join(c for c in chars if c not in config.PASSWORD_GENERATOR_AMBIGUOUS_CHARS)
    if not chars:
        raise UserInputError("Select at least one character class.")

    alphabet = chars.encode("ascii")
    out = bytearray(length)
    for i in range(length):
        out[i] = alphabet[secrets.randbelow(len(alphabet))]
    return SecureBuffer(out)


def _pool_size(chars) -> int:
    present = set(chars)
    return sum(size for members, size in CLASS_SIZES if present & members)


def entropy(password: Union[str, SecureBuffer]) -> float:
    """
    Estimate password entropy as ``length * log2(pool)``.

    The pool is the sum of the sizes of the character classes present
    (lowercase 26, uppercase 26, digits 10, ASCII punctuation 32); each
    class counts once however often it occurs. An empty password or a pool
    of at most one character scores 0.
    """
    if isinstance(password, SecureBuffer):
        with password.use() as view:
            # UTF-8 continuation bytes do not start a character
            length = sum(1 for b in view if b & 0xC0 != 0x80)
            pool = _pool_size(chr(b) for b in view if b < 0x80)
    else:
        length = len(password)
        pool = _pool_size(password)

    if length == 0 or pool <= 1:
        return 0.0
    return length * math.log2(pool)


def strength_label(bits: float) -> str:
    """Human readable band for an entropy value."""
    for limit, label in STRENGTH_BANDS:
        if bits <= limit:
            return label
    return "Very Strong"
