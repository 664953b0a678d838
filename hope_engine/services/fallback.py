"""
Deterministic supportive replies used when the provider cannot answer.
"""

from typing import Tuple

RATE_LIMIT_MESSAGE = "Take a moment to breathe. I'll be ready when you are."
EMPTY_RESPONSE_MESSAGE = "I'm here with you. What's on your mind?"

DEFAULT_FALLBACK = ("I'm having technical trouble right now, but what you're going through matters. "
                    "Take some breaths, and I'll be back soon. If you need immediate help, reach out to a crisis service.")

# Ordered: the first table entry with a matching keyword wins.
FALLBACK_TABLE: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (('help', 'support'),
     "I'm having some technical trouble right now, but your feelings matter. If you need support urgently, "
     "reach out to someone you trust or a crisis helpline. I'll be back soon."),
    (('anxious', 'anxiety'),
     "I'm having technical issues, but anxiety is real and it does pass. Maybe try some slow breaths or "
     "grounding yourself with what you can see and touch around you. Take it moment by moment."),
    (('sad', 'depressed', 'down'),
     "I'm having some technical trouble connecting right now. Whatever you're feeling is real and valid. "
     "Maybe do something small that feels safe, reach out to someone, take a walk, or just rest. "
     "You don't have to push through alone."),
    (('stress', 'overwhelmed'),
     "I'm experiencing technical difficulties, but it sounds like there's a lot on you right now. "
     "Maybe try breaking one thing into smaller pieces, or just pause and breathe. It's okay to step back."),
)


def select_fallback(user_message: str) -> str:
    """Pick the fallback reply matching the first keyword family found in the message.

    Args:
        user_message: The user's original message

    Returns:
        Non-empty supportive text
    """
    lowered = (user_message or '').lower()
    for keywords, reply in FALLBACK_TABLE:
        if any(keyword in lowered for keyword in keywords):
            return reply
    return DEFAULT_FALLBACK


def ensure_text(text: str) -> str:
    """Guarantee a non-empty reply."""
    if text and text.strip():
        return text
    return EMPTY_RESPONSE_MESSAGE
