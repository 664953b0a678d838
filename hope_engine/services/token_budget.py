"""
Token cost approximation shared by every prompt-size decision.
"""

import math
from typing import Iterable, Optional

CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    """Approximate the number of model tokens in text.

    Args:
        text: Arbitrary text, None counts as empty

    Returns:
        ceil(len(text) / 4)
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_total(texts: Iterable[str]) -> int:
    return sum(estimate_tokens(text) for text in texts)
