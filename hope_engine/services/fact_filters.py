"""
Declarative admission filters for long-term memory facts.

Every function here is pure: text in, classification out. The stages run in
a fixed order. Privacy is always evaluated first and cannot be overridden,
explicit consent skips relevance and frequency, relevance gates storage,
frequency only boosts importance, and categorization picks the fact variant.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from ..models.core import FactCategory, FactType
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

EXPLICIT_IMPORTANCE = 9
BASE_IMPORTANCE = 5
HIGH_RELEVANCE_IMPORTANCE = 8
RECURRING_IMPORTANCE = 7
HIGH_RELEVANCE_SCORE = 6
RELEVANCE_THRESHOLD = 2
POSITIVE_PATTERN_SCORE = 3
LOW_VALUE_PENALTY = 5
SHORT_CONTENT_PENALTY = 2
SHORT_CONTENT_LENGTH = 10
RECURRING_FREQUENCY = 3
FREQUENCY_WINDOW = 20
MAX_KEY_TERMS = 10

PRIVACY_RULES: Tuple[Tuple[Pattern, str], ...] = (
    (re.compile(r'\b(?:\d{4}[\s-]?){3}\d{4}\b'), 'Contains potential credit card number'),
    (re.compile(r'\b(?:password|passwd|pwd)\s*[:=]\s*\S+', re.I), 'Contains potential password'),
    (re.compile(r'\b(?:my password is|password is)\s+\S+', re.I), 'Contains potential password'),
    (re.compile(r'\b\d{3}-\d{2}-\d{4}\b'), 'Contains potential SSN'),
    (re.compile(r'\bdiagnosed with\s+(?:cancer|hiv|aids|std|sti|terminal|fatal)\b', re.I),
     'Contains sensitive medical information'),
    (re.compile(r'\b(?:terminal|fatal|life-threatening)\s+illness\b', re.I), 'Contains sensitive medical information'),
    (re.compile(r'\b(?:account|acct|routing)\s+(?:number|#|no\.?)\s*[:=]?\s*\d{8,}\b', re.I),
     'Contains potential account number'),
)

RELEVANCE_PATTERNS: Tuple[Tuple[str, Pattern], ...] = (
    ('name', re.compile(r"\b(?:my name is|i'm|i am|call me|i go by)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)", re.I)),
    ('pronouns', re.compile(r'\b(?:my pronouns are|i use|pronouns?)\s+(he|she|they|it|xe|ze)', re.I)),
    ('birthday', re.compile(r'\b(?:birthday|born on|my birthday is)\s+([A-Z][a-z]+\s+\d{1,2}|\d{1,2}\s+[A-Z][a-z]+)',
                            re.I)),
    ('preference', re.compile(r"\b(?:i prefer|i like|i want|i'd like|prefer|favorite|favourite)\s+(.+?)(?:\.|,|$)", re.I)),
    ('style', re.compile(r'\b(?:explain like|teach me like|be more|be less|tone should be)\s+(.+?)(?:\.|,|$)', re.I)),
    ('project', re.compile(r'\b(?:working on|building|developing|studying|learning|project)\s+(.+?)(?:\.|,|$)', re.I)),
    ('hobby', re.compile(r'\b(?:hobby|interest|passion|i enjoy|i love)\s+(.+?)(?:\.|,|$)', re.I)),
    ('goal', re.compile(r'\b(?:goal|trying to|want to|aiming to|planning to)\s+(.+?)(?:\.|,|$)', re.I)),
    ('challenge', re.compile(r'\b(?:struggling with|having trouble with|difficulty with|challenge)\s+(.+?)(?:\.|,|$)',
                             re.I)),
)

LOW_VALUE_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r'\b(?:just kidding|haha|lol|lmao|jk|random thought|thinking out loud)\b', re.I),
    re.compile(r'\b(?:ignore that|never mind|scratch that|cancel that)\b', re.I),
    re.compile(r'\b(?:test|testing|this is a test)\b', re.I),
)

# Ordered: first match wins, Notes/insight otherwise.
CATEGORY_RULES: Tuple[Tuple[Pattern, FactCategory, FactType], ...] = (
    (re.compile(r"\b(?:my name is|i'm|i am|call me|pronouns?|birthday|born on)\b", re.I),
     FactCategory.IDENTITY, FactType.INSIGHT),
    (re.compile(r'\b(?:prefer|like|want|favorite|favourite|style|tone|explain like)\b', re.I),
     FactCategory.STYLE, FactType.PREFERENCE),
    (re.compile(r'\b(?:working on|building|developing|project|app|studying|learning)\b', re.I),
     FactCategory.PROJECTS, FactType.GOAL),
    (re.compile(r'\b(?:goal|trying to|want to|aiming to|planning to|hope to)\b', re.I),
     FactCategory.GOALS, FactType.GOAL),
    (re.compile(r'\b(?:feel|feeling|emotion|anxious|depressed|stressed|happy|sad)\b', re.I),
     FactCategory.EMOTIONAL, FactType.EMOTIONAL_THEME),
    (re.compile(r'\b(?:cope|coping|deal with|handle|manage|when i feel)\b', re.I),
     FactCategory.COPING, FactType.COPING_PATTERN),
    (re.compile(r'\b(?:friend|partner|spouse|parent|sibling|colleague|boss|teacher)\b', re.I),
     FactCategory.PEOPLE, FactType.PERSON),
    (re.compile(r'\b(?:trigger|triggers|when|if|makes me|causes me)\b', re.I),
     FactCategory.TRIGGERS, FactType.TRIGGER),
)

STOP_WORDS = frozenset([
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'by', 'is', 'are', 'was',
    'were', 'be', 'been', 'being', 'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'should', 'could',
    'may', 'might', 'must', 'can', 'i', 'you', 'he', 'she', 'it', 'we', 'they', 'this', 'that', 'these', 'those',
    'my', 'your', 'his', 'her', 'its', 'our', 'their', 'me', 'him', 'us', 'them'
])

_WORD = re.compile(r'\b[a-z]{2,}\b')


@dataclass
class FilterDecision:
    """Outcome of the filter chain for one candidate utterance."""
    should_store: bool
    reason: str
    category: Optional[FactCategory] = None
    fact_type: Optional[FactType] = None
    importance: Optional[int] = None
    relevance_score: int = 0
    frequency: int = 0


def check_privacy(content: str) -> Optional[str]:
    """Return the block reason for sensitive content, or None if it may be stored."""
    for pattern, reason in PRIVACY_RULES:
        if pattern.search(content):
            return reason
    return None


def relevance_score(content: str) -> int:
    text = content.lower().strip()
    score = 0
    for name, pattern in RELEVANCE_PATTERNS:
        if pattern.search(text):
            score += POSITIVE_PATTERN_SCORE
            logger.debug(f'Relevance filter: found {name} pattern')
    for pattern in LOW_VALUE_PATTERNS:
        if pattern.search(text):
            score -= LOW_VALUE_PENALTY
    if len(text) < SHORT_CONTENT_LENGTH:
        score -= SHORT_CONTENT_PENALTY
    return score


def extract_key_terms(text: str) -> List[str]:
    """Stop-word-filtered lowercase words, first ten only."""
    words = _WORD.findall((text or '').lower())
    return [word for word in words if word not in STOP_WORDS][:MAX_KEY_TERMS]


def topic_frequency(content: str, previous_messages: Sequence[str]) -> int:
    """
    Count recent messages sharing at least one key term with content.

    Terms overlap when either one contains the other.

    Args:
        content: Candidate utterance
        previous_messages: Message texts, oldest first; only the last 20 count

    Returns:
        Number of matching messages
    """
    if not previous_messages:
        return 0
    terms = extract_key_terms(content)
    if not terms:
        return 0
    count = 0
    for message in list(previous_messages)[-FREQUENCY_WINDOW:]:
        message_terms = extract_key_terms(message)
        if any(term in other or other in term for term in terms for other in message_terms):
            count += 1
    return count


def categorize(content: str) -> Tuple[FactCategory, FactType]:
    text = content.lower()
    for pattern, category, fact_type in CATEGORY_RULES:
        if pattern.search(text):
            return category, fact_type
    return FactCategory.NOTES, FactType.INSIGHT


def score_importance(score: int, frequency: int) -> int:
    importance = BASE_IMPORTANCE
    high_relevance = score >= HIGH_RELEVANCE_SCORE
    recurring = frequency >= RECURRING_FREQUENCY
    if high_relevance:
        importance = HIGH_RELEVANCE_IMPORTANCE
    if recurring:
        importance = max(importance, RECURRING_IMPORTANCE)
    if high_relevance and recurring:
        importance = EXPLICIT_IMPORTANCE
    return importance


def evaluate(content: str, explicit: bool = False, previous_messages: Iterable[str] = ()) -> FilterDecision:
    """
    Run the full filter chain over a candidate utterance.

    Args:
        content: Candidate text
        explicit: Caller marked this as an explicit "remember this" directive
        previous_messages: Recent message texts for the frequency stage

    Returns:
        FilterDecision describing whether and how to store the content
    """
    blocked = check_privacy(content)
    if blocked:
        logger.debug(f'Memory filter: blocked by privacy filter ({blocked})')
        return FilterDecision(should_store=False, reason=blocked)

    category, fact_type = categorize(content)
    if explicit:
        return FilterDecision(should_store=True,
                              reason='User explicitly requested to remember',
                              category=category,
                              fact_type=fact_type,
                              importance=EXPLICIT_IMPORTANCE)

    score = relevance_score(content)
    if score < RELEVANCE_THRESHOLD:
        logger.debug(f'Memory filter: blocked by relevance filter (score: {score})')
        return FilterDecision(should_store=False,
                              reason='Not relevant enough for future conversations',
                              relevance_score=score)

    frequency = topic_frequency(content, list(previous_messages))
    importance = score_importance(score, frequency)
    logger.debug(f'Memory filter: passed ({category.value}, importance {importance}, frequency {frequency})')
    return FilterDecision(should_store=True,
                          reason='Passed all filters',
                          category=category,
                          fact_type=fact_type,
                          importance=importance,
                          relevance_score=score,
                          frequency=frequency)
