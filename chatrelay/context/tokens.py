"""Character-class token estimation.

Estimation model:
    Wide characters (CJK ideographs, kana, hangul syllables) cost one token each;
    every other character costs 0.75 tokens. The sum is rounded up. A fixed
    overhead per message models role and formatting metadata.

Determinism:
    Pure and side-effect free; O(n) in character count.
"""

from typing import Iterable

from chatrelay.core.types import Message

MESSAGE_OVERHEAD_TOKENS = 10

# Inclusive code point ranges counted as wide.
WIDE_RANGES = (
    (0x3040, 0x30FF),  # hiragana, katakana
    (0x3400, 0x4DBF),  # CJK extension A
    (0x4E00, 0x9FFF),  # CJK unified ideographs
    (0xAC00, 0xD7AF),  # hangul syllables
    (0xF900, 0xFAFF),  # CJK compatibility ideographs
)


def is_wide(char: str) -> bool:
    code = ord(char)
    for start, end in WIDE_RANGES:
        if start <= code <= end:
            return True
    return False


def estimate_tokens(text: str) -> int:
    """Estimate the model-input cost of one text blob.

    Args:
        text: Arbitrary text; `None` and empty strings cost nothing.

    Returns:
        `ceil(wide + 0.75 * narrow)`, computed in integer arithmetic.
    """
    if not text:
        return 0

    wide = sum(1 for char in text if is_wide(char))
    narrow = len(text) - wide
    # ceil((4 * wide + 3 * narrow) / 4)
    return (4 * wide + 3 * narrow + 3) // 4


def estimate_history(messages: Iterable[Message]) -> int:
    """Sum content estimates plus the per-message overhead."""
    return sum(
        estimate_tokens(message.content) + MESSAGE_OVERHEAD_TOKENS
        for message in messages
    )
