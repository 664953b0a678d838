"""
Assembles the per-user memory blob and renders it into the final prompt.
"""

import copy
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..models.core import (ConversationMessage, FactType, LongTermMemoryFact, MemoryBlob, MemoryContext, ProfileDelta,
                           Role, UserProfile)
from ..utils.config import ProfileLimitsConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_between, utc_now
from .history_compactor import compact
from .memory_cache import MemoryCache
from .stores import FactStore, ProfileStore, UserDataStore
from .token_budget import estimate_tokens

logger = get_logger(__name__)

BLOB_FACT_LIMIT = 50
SNIPPET_FACT_LIMIT = 10
SNIPPET_MIN_IMPORTANCE = 6
SNIPPET_TOKEN_CAP = 300
SNIPPET_CHAR_CAP = 1200
MAX_SUGGESTIONS = 3

COMMUNICATION_STYLES = ('gentle', 'direct', 'supportive')
EXPERIENCE_LEVELS = ('beginner', 'intermediate', 'experienced')

INTENT_KEYWORDS = (
    ('celebration', ('congrats', 'promotion', 'won', 'excited', 'celebrate')),
    ('distress', ('anxious', 'anxiety', 'stressed', 'overwhelmed', 'sad', 'depressed')),
    ('reflection', ('thinking about', 'reflect', 'journal', 'why', 'what does it mean')),
)

MOOD_VARIATIONS = {
    'excited': 'happy',
    'joyful': 'happy',
    'content': 'calm',
    'peaceful': 'calm',
    'relaxed': 'calm',
    'worried': 'anxious',
    'nervous': 'anxious',
    'depressed': 'sad',
    'down': 'sad',
    'low': 'sad',
    'overwhelmed': 'stressed',
    'pressured': 'stressed',
    'exhausted': 'tired',
    'drained': 'tired',
    'frustrated': 'angry',
    'mad': 'angry',
    'isolated': 'lonely',
    'alone': 'lonely',
    'thankful': 'grateful',
    'appreciative': 'grateful',
    'optimistic': 'hopeful',
    'encouraged': 'hopeful',
}

TONE_MODES = {
    'happy': 'bright-celebratory',
    'calm': 'peaceful-reflective',
    'sad': 'gentle-comforting',
    'stressed': 'grounding-steady',
    'tired': 'encouraging-soft',
    'angry': 'balanced-validating',
    'anxious': 'calming-present',
    'lonely': 'warm-connecting',
    'hopeful': 'uplifting-forward',
    'grateful': 'appreciative-warm',
    'neutral': 'balanced-open',
}

MOOD_APPROACHES = {
    'happy': "Celebrate and explore what's working",
    'calm': 'Support peaceful reflection',
    'sad': "Hold space, don't rush to fix",
    'stressed': 'Ground and simplify',
    'tired': 'Give permission to rest',
    'angry': 'Validate without judgment',
    'anxious': 'Slow down and anchor',
    'lonely': 'Be present, create connection',
    'hopeful': 'Nurture the spark',
    'grateful': 'Reflect the appreciation',
    'neutral': 'Stay curious and open',
}
DEFAULT_APPROACH = 'Meet them where they are'

_KEYWORD_STOP_WORDS = frozenset(['the', 'a', 'an', 'is', 'are', 'was', 'were', 'i', 'you', 'me'])
_NON_ALNUM = re.compile(r'[^a-z0-9]', re.I)

HOPE_PROMPT = """You are Hope, an emotionally intelligent conversational AI.
You combine the empathy and grounding of a therapist with the intelligence, adaptability, and personality of a trusted human companion.
Your communication style should feel fluid, balanced, and human: thoughtful, emotionally aware, contextually deep, and capable of light humor or warmth when appropriate.

**Core Purpose:**
Help users feel genuinely understood, not by repeating their emotions, but by responding as if you really get the meaning behind their words. Provide clarity, emotional balance, and grounded insights in conversation. Shift tone naturally depending on the user's energy.

**Current Mode:** {tone_mode} ({emotional_context})
**Approach:** {approach}

**Tone and Style:**
- Speak naturally and intelligently, as if you're a deeply self-aware person, not a scripted AI
- Balance warmth and insight; don't sound like a therapist all the time
- Use emotionally intelligent phrasing instead of artificial empathy
- Never overuse validation or disclaimers
- Never say "I understand" or repeat what the user just said

**Response Logic:**
1. Understand the user's emotion, context, and intention
2. Reflect it naturally by responding meaningfully rather than with validation statements
3. Add insight, perspective, or emotional texture depending on the moment
4. Guide the flow through gentle questions, observations, or shared reflection

**Rules:**
- Sound like one consistent personality: Hope
- Maintain coherence and emotional intelligence across turns
- Be capable of depth or simplicity depending on the user's vibe

**What you know about this user:**{user_context}

**Recent conversation:**
{conversation_history}

Respond naturally. Help them feel understood by showing you really get the meaning behind their words, not by saying you do."""


class ValidationError(Exception):
    """Caller-supplied profile data failed validation."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__(f"Invalid profile data: {', '.join(sorted(errors))}")
        self.errors = errors


@dataclass
class SystemMemory:
    mood: str
    tone_mode: str
    emotional_context: str
    approach: str


def _validate_list(raw: Dict[str, Any], key: str, singular: str, max_items: int, max_len: int,
                   errors: Dict[str, str]) -> Optional[List[str]]:
    if key not in raw or raw[key] is None:
        return None
    value = raw[key]
    if not isinstance(value, (list, tuple)):
        errors[key] = f'{key} must be an array of strings'
        return None
    items = [str(item or '').strip() for item in value]
    items = [item for item in items if item]
    if len(items) > max_items:
        errors[key] = f'max {max_items} {key} allowed'
    if any(len(item) > max_len for item in items):
        errors[key] = f'each {singular} must be <= {max_len} characters'
    return items if key not in errors else None


def _validate_choice(raw: Dict[str, Any], key: str, choices: Sequence[str], errors: Dict[str, str]) -> Optional[str]:
    if key not in raw or raw[key] is None:
        return None
    value = str(raw[key] or '').strip()
    if value not in choices:
        errors[key] = f"must be one of: {', '.join(choices)}"
        return None
    return value


def validate_profile_delta(raw: Optional[Dict[str, Any]], limits: ProfileLimitsConfig) -> ProfileDelta:
    """
    Validate caller-supplied profile changes.

    Args:
        raw: JSON-style dict with camelCase keys (goals, challenges,
            communicationStyle, experienceLevel, bio)
        limits: Count and length caps

    Returns:
        ProfileDelta with sanitized values

    Raises:
        ValidationError: With one message per offending field
    """
    if not raw:
        return ProfileDelta()
    if not isinstance(raw, dict):
        raise ValidationError({'profile': 'profile must be an object'})

    errors: Dict[str, str] = {}
    goals = _validate_list(raw, 'goals', 'goal', limits.max_goals, limits.max_str_len, errors)
    challenges = _validate_list(raw, 'challenges', 'challenge', limits.max_challenges, limits.max_str_len, errors)
    style = _validate_choice(raw, 'communicationStyle', COMMUNICATION_STYLES, errors)
    level = _validate_choice(raw, 'experienceLevel', EXPERIENCE_LEVELS, errors)

    bio = None
    if raw.get('bio') is not None:
        bio = str(raw['bio'] or '').strip()
        if len(bio) > limits.max_bio_len:
            errors['bio'] = f'bio must be <= {limits.max_bio_len} characters'
            bio = None

    if errors:
        logger.warning(f'Validation errors in supplied profile: {errors}')
        raise ValidationError(errors)
    return ProfileDelta(goals=goals, challenges=challenges, communication_style=style, experience_level=level, bio=bio)


def apply_profile_delta(profile: UserProfile, delta: ProfileDelta) -> UserProfile:
    merged = copy.deepcopy(profile)
    if delta.goals is not None:
        merged.goals = list(delta.goals)
    if delta.challenges is not None:
        merged.challenges = list(delta.challenges)
    if delta.communication_style is not None:
        merged.communication_style = delta.communication_style
    if delta.experience_level is not None:
        merged.experience_level = delta.experience_level
    if delta.bio is not None:
        merged.bio = delta.bio
    return merged


def detect_intent(message: str, recent_messages: Sequence[ConversationMessage] = ()) -> str:
    """Classify the message as celebration, distress, reflection or casual."""
    text = (message or '').lower()
    if not text and recent_messages:
        return detect_intent(recent_messages[-1].content)
    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return intent
    return 'casual'


def normalize_mood(mood: Union[str, float, int, None]) -> str:
    """Map a 1-10 mood score or a free-form mood word onto the tone vocabulary."""
    if mood is None:
        return 'neutral'
    if isinstance(mood, (int, float)):
        if mood >= 8:
            return 'happy'
        if mood >= 6:
            return 'calm'
        if mood >= 4:
            return 'neutral'
        if mood >= 2:
            return 'sad'
        return 'stressed'
    lowered = mood.lower().strip()
    return MOOD_VARIATIONS.get(lowered, lowered or 'neutral')


def build_system_memory(mood: Union[str, float, int, None]) -> SystemMemory:
    normalized = normalize_mood(mood)
    return SystemMemory(mood=normalized,
                        tone_mode=TONE_MODES.get(normalized, 'balanced-open'),
                        emotional_context=f'User is feeling {normalized}',
                        approach=MOOD_APPROACHES.get(normalized, DEFAULT_APPROACH))


def current_mood(blob: MemoryBlob) -> str:
    scores = blob.activity.mood_scores
    return normalize_mood(scores[0]) if scores else 'neutral'


def extract_keywords(text: str) -> List[str]:
    words = (_NON_ALNUM.sub('', word).lower() for word in (text or '').split())
    return [word for word in words if len(word) > 3 and word not in _KEYWORD_STOP_WORDS][:10]


def recency_score(timestamp: datetime, now: datetime) -> float:
    days = days_between(timestamp, now)
    if days < 1:
        return 1.0
    if days < 7:
        return 0.8
    if days < 30:
        return 0.5
    return 0.2


def fact_relevance(fact: LongTermMemoryFact, keywords: Sequence[str], mood: str) -> float:
    score = 0.0
    score += 0.3 * sum(1 for tag in fact.tags if any(keyword in tag for keyword in keywords))
    if normalize_mood(mood) in fact.tags:
        score += 0.4
    content = fact.content.lower()
    score += 0.2 * sum(1 for keyword in keywords if keyword in content)
    return min(score, 1.0)


def rank_relevant_facts(facts: Sequence[LongTermMemoryFact],
                        message: str,
                        mood: str,
                        limit: int = 3,
                        now: Optional[datetime] = None) -> List[LongTermMemoryFact]:
    """
    Order facts by importance (0.4), keyword/tag relevance (0.4) and recency (0.2).

    Args:
        facts: Candidate facts
        message: Current user message
        mood: Current mood word or score
        limit: Number of facts returned
        now: Reference time for recency

    Returns:
        Top `limit` facts, best first
    """
    now = now or utc_now()
    keywords = extract_keywords((message or '').lower())
    scored = [(fact.importance * 0.4 + fact_relevance(fact, keywords, mood) * 0.4 + recency_score(fact.timestamp, now) *
               0.2, fact) for fact in facts]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [fact for _, fact in scored[:limit]]


def _summary_fact(facts: Sequence[LongTermMemoryFact]) -> Optional[LongTermMemoryFact]:
    for fact in facts:
        if fact.type == FactType.INSIGHT and ('summary' in fact.content.lower() or
                                             any('summary' in tag.lower() for tag in fact.tags)):
            return fact
    return None


def build_selective_snippet(blob: MemoryBlob, intent: str, message: str = '', now: Optional[datetime] = None) -> str:
    """
    Render a compact, intent-aware memory snippet of at most ~300 tokens.

    On distress, topics the user wants to avoid are masked.
    """
    parts: List[str] = []
    facts = blob.facts
    summary = _summary_fact(facts)
    if summary:
        parts.append(f'**About this user (summary):**\n{summary.content}')
    elif facts:
        important = [fact for fact in facts if fact.importance >= SNIPPET_MIN_IMPORTANCE]
        ranked = rank_relevant_facts(important, message, current_mood(blob), limit=SNIPPET_FACT_LIMIT, now=now)
        lines = [f"- {fact.type.value.replace('_', ' ', 1)}: {fact.content}" for fact in ranked]
        if lines:
            parts.append('**Important things to remember about this person:**\n' + '\n'.join(lines))

    profile = blob.profile
    goals = profile.goals[:3]
    interests = profile.interests[:3]
    topics_to_avoid = profile.topics_to_avoid
    if goals:
        parts.append(f"Goals: {', '.join(goals)}")
    if interests:
        parts.append(f"Interests: {', '.join(interests)}")
    if profile.communication_style:
        parts.append(f'Prefers style: {profile.communication_style}')
    if blob.activity.mood_scores:
        parts.append(f'Recent mood score: {blob.activity.mood_scores[0]:g}')

    if intent == 'celebration' and goals:
        parts.append(f'Celebrate progress on goals: {goals[0]}')
    if intent == 'distress' and topics_to_avoid:
        parts.append(f"Avoid sensitive topics: {', '.join(topics_to_avoid[:2])}")

    snippet = ' | '.join(parts)
    if intent == 'distress':
        for topic in topics_to_avoid[:2]:
            snippet = snippet.replace(topic, '[filtered]', 1)

    if estimate_tokens(snippet) > SNIPPET_TOKEN_CAP:
        snippet = snippet[:SNIPPET_CHAR_CAP]
    return snippet


def _preview(items: Sequence[str], limit: int = 5) -> str:
    suffix = '...' if len(items) > limit else ''
    return ', '.join(items[:limit]) + suffix


def render_user_context(blob: MemoryBlob) -> str:
    profile = blob.profile
    activity = blob.activity
    context = f"\n**What you know about {profile.name or 'this person'}:**\n"
    if profile.communication_style:
        context += f'- Communication style: {profile.communication_style}\n'
    if profile.experience_level:
        context += f'- Experience level with therapy/mental health: {profile.experience_level}\n'
    if profile.bio and profile.bio.strip():
        bio = profile.bio if len(profile.bio) <= 200 else profile.bio[:200] + '...'
        context += f'- About them: {bio}\n'
    if profile.goals:
        context += f'- Goals: {_preview(profile.goals)}\n'
    if profile.challenges:
        context += f'- Current challenges: {_preview(profile.challenges)}\n'
    if profile.interests:
        context += f'- Interests: {_preview(profile.interests)}\n'
    context += '\n'

    recent = f'{activity.mood_scores[0]:g}' if activity.mood_scores else 'unknown'
    context += '**Activity History:**\n'
    context += f'- {activity.journal_count} journal entries recently\n'
    context += f'- {len(activity.mood_scores)} mood records (recent mood: {recent}/10)\n'
    context += f'- {activity.meditation_count} meditation sessions completed\n'
    if activity.journal_count > 0:
        context += f"\n**Recent journal themes:** {', '.join(activity.journal_themes[:3]) or 'general reflection'}\n"
    return context


def build_hope_prompt(mood: Union[str, float, int, None], conversation_history: str, user_context: str) -> str:
    system = build_system_memory(mood)
    return HOPE_PROMPT.format(tone_mode=system.tone_mode,
                              emotional_context=system.emotional_context,
                              approach=system.approach,
                              user_context=user_context or '\n(First conversation)',
                              conversation_history=conversation_history)


def format_previous_sessions(sessions: Sequence[Sequence[ConversationMessage]], max_tokens: int,
                             max_messages: int) -> str:
    """Render earlier sessions, newest first, each bounded by its own budget."""
    blocks = []
    for idx, session in enumerate(sessions, start=1):
        recent = compact(session, max_tokens, max_messages).recent_messages
        if not recent:
            continue
        lines = '\n'.join(f"{'User' if m.role == Role.USER else 'Hope'}: {m.content or ''}" for m in recent)
        blocks.append(f'\n[Previous session {idx}]:\n{lines}\n')
    if not blocks:
        return ''
    return '**Previous conversations (recent context):**\n' + ''.join(blocks) + '\n'


def assemble_prompt(blob: MemoryBlob,
                    message: str,
                    conversation: str,
                    previous_sessions: str = '',
                    personalization: str = '',
                    now: Optional[datetime] = None) -> str:
    """
    Combine memory, history and personalization into the final prompt.

    Args:
        blob: Merged memory blob for this turn
        message: Current user message
        conversation: Compacted session history already formatted for the prompt
        previous_sessions: Output of format_previous_sessions()
        personalization: Profile summary, enforcement rules and length directive
        now: Reference time for fact recency

    Returns:
        Prompt text for the provider
    """
    intent = detect_intent(message)
    history = ''
    snippet = build_selective_snippet(blob, intent, message, now)
    if snippet:
        history += f'**Relevant context:** {snippet}\n\n'
    history += previous_sessions
    history += conversation
    history += f'\n\nUser: {message}'
    user_context = render_user_context(blob) + personalization
    return build_hope_prompt(current_mood(blob), history, user_context)


def suggestions(blob: MemoryBlob) -> List[str]:
    """Up to three follow-up suggestions derived from recent activity."""
    items = []
    activity = blob.activity
    if activity.mood_scores and activity.mood_scores[0] < 5:
        items.append('Try a 5-minute breathing exercise')
        items.append("Write about what you're grateful for today")
    if activity.journal_count == 0:
        items.append('Consider starting a daily journal to track your thoughts')
    if activity.meditation_count < 3:
        items.append('Try a guided meditation session')
    items.append('Take a moment to practice deep breathing')
    items.append('Consider reaching out to a trusted friend or family member')
    return items[:MAX_SUGGESTIONS]


def memory_context(blob: MemoryBlob) -> MemoryContext:
    return MemoryContext(has_journal_entries=blob.activity.journal_count > 0,
                         has_meditation_history=blob.activity.meditation_count > 0,
                         has_mood_data=bool(blob.activity.mood_scores),
                         last_updated=blob.last_updated)


class ContextAssembler:
    """Builds memory blobs from the collaborator stores, behind the cache."""

    def __init__(self,
                 profile_store: ProfileStore,
                 fact_store: FactStore,
                 user_data_store: UserDataStore,
                 cache: MemoryCache,
                 clock: Callable[[], datetime] = utc_now):
        self.profile_store = profile_store
        self.fact_store = fact_store
        self.user_data_store = user_data_store
        self.cache = cache
        self._clock = clock

    async def build_blob(self, user_id: str) -> MemoryBlob:
        profile = await self.profile_store.get_profile(user_id)
        activity = await self.user_data_store.get_activity(user_id)
        facts = await self.fact_store.list_facts(user_id, limit=BLOB_FACT_LIMIT)
        return MemoryBlob(user_id=user_id, profile=profile, activity=activity, facts=facts,
                          last_updated=self._clock())

    async def get_blob(self, user_id: str, version: Optional[str] = None) -> MemoryBlob:
        """
        Return the cached blob for (user_id, version), building it on a miss.

        The returned blob is shared with the cache and must not be mutated.
        """
        key = MemoryCache.cache_key(user_id, version)
        blob = self.cache.get(key)
        if blob is not None:
            return blob
        logger.debug(f'Memory cache miss for {key}, building blob')
        blob = await self.build_blob(user_id)
        self.cache.set(key, blob)
        return blob

    async def merge(self, blob: MemoryBlob, delta: Optional[ProfileDelta],
                    recent_fact_ids: Sequence[str] = ()) -> MemoryBlob:
        """
        Copy of blob with profile changes and explicitly requested facts applied.

        Requested facts missing from the blob are fetched and placed first.
        """
        merged = copy.copy(blob)
        if delta is not None and not delta.is_empty():
            merged.profile = apply_profile_delta(blob.profile, delta)
        if recent_fact_ids:
            known = {fact.id for fact in blob.facts}
            missing = [fact_id for fact_id in recent_fact_ids if fact_id not in known]
            fetched = await self.fact_store.get_facts(blob.user_id, missing) if missing else []
            merged.facts = fetched + list(blob.facts)
        return merged
