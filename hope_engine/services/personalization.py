"""
Time decay of personalization signals and their rendering into prompt instructions.

Decay is applied on read to a copy of the profile. Persisting derived state
is the job of the external analysis process.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..models.core import AdaptationRule, BehavioralTendency, PersonalizationProfile
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now, weeks_between

logger = get_logger(__name__)

TENDENCY_MIN_CONFIDENCE = 0.2
RULE_MIN_CONFIDENCE = 0.3
CONTEXT_TENDENCY_CONFIDENCE = 0.5
CONTEXT_TENDENCY_LIMIT = 10
CONTEXT_RULE_CONFIDENCE = 0.4
CONTEXT_RULE_LIMIT = 20
HIGH_PRIORITY = 0.7
HIGH_PRIORITY_LIMIT = 5
OBSERVED_PATTERN_LIMIT = 3
LOW_DATA_QUALITY = 0.5
ENGAGEMENT_ALPHA = 0.3

STYLE_DIRECTIVES = {
    'gentle': 'Use soft, empathetic language. Be patient and understanding. Ask gentle questions.',
    'direct': 'Be straightforward and concise. Get to the point. Use clear, direct statements.',
    'supportive': 'Be encouraging and warm. Validate feelings. Provide emotional support.',
}

VERBOSITY_DIRECTIVES = {
    'concise': 'Limit to 2-3 sentences unless user explicitly asks for more detail.',
    'detailed': 'Provide comprehensive explanations with examples when helpful.',
}
DEFAULT_VERBOSITY_DIRECTIVE = 'Provide balanced, moderate-length responses (4-6 sentences typically).'

FORMAT_DIRECTIVES = {
    'structured': '**Format:** Structure responses with clear sections or bullet points when appropriate.',
    'conversational': '**Format:** Keep responses natural and conversational, avoiding rigid structures.',
}

EMOJI_DIRECTIVES = {
    'none': '**Emojis:** Do NOT use emojis or emoticons in responses.',
    'minimal': '**Emojis:** Use emojis very sparingly, only when they add meaningful emphasis.',
    'frequent': '**Emojis:** Feel free to use emojis to add warmth and expressiveness.',
}

# Used when no personalization profile is available.
PROMPT_VERBOSITY_LINES = {
    'concise': 'Respond concisely in 2-3 lines unless the user explicitly asks for more detail.',
    'detailed': 'Provide comprehensive responses with examples when helpful (4-8 sentences typically).',
}
DEFAULT_PROMPT_VERBOSITY_LINE = ('Respond concisely in 2-4 lines unless the user asks for step-by-step '
                                 'or the situation clearly requires more detail.')

FEEDBACK_QUALITY = {'positive': 0.8, 'negative': 0.2, 'neutral': 0.5}


def decay_factor(weeks: float, decay_rate: float) -> float:
    return max(0.0, 1 - weeks * decay_rate)


@dataclass
class PersonalizationContext:
    """Effective, decayed view of a profile as used for prompt rendering."""
    style: str
    verbosity: str
    response_format: str
    emoji_usage: str
    topics_to_avoid: List[str]
    preferred_topics: List[str]
    long_term_goals: List[str]
    current_focus: List[str]
    tendencies: List[BehavioralTendency] = field(default_factory=list)
    rules: List[AdaptationRule] = field(default_factory=list)
    data_quality: float = 0.3
    version: int = 1


def decay(profile: PersonalizationProfile, now: Optional[datetime] = None) -> PersonalizationProfile:
    """
    Return a decayed copy of profile. The input is not modified.

    Tendencies decay by time since last observed and are dropped at
    confidence <= 0.2; rules decay by time since last applied and are dropped
    at confidence <= 0.3. Data quality decays by time since last analysis.

    Args:
        profile: Stored personalization profile
        now: Reference time, defaults to the current UTC time

    Returns:
        New PersonalizationProfile
    """
    now = now or utc_now()
    decayed = copy.deepcopy(profile)
    rate = profile.decay_rate

    tendencies = []
    for tendency in decayed.tendencies:
        factor = decay_factor(weeks_between(tendency.last_observed, now), rate)
        tendency.confidence *= factor
        tendency.frequency *= factor
        if tendency.confidence > TENDENCY_MIN_CONFIDENCE:
            tendencies.append(tendency)
    decayed.tendencies = sorted(tendencies, key=lambda t: t.confidence, reverse=True)

    rules = []
    for rule in decayed.rules:
        factor = decay_factor(weeks_between(rule.last_applied, now), rate)
        rule.confidence *= factor
        rule.effectiveness *= factor
        if rule.confidence > RULE_MIN_CONFIDENCE:
            rules.append(rule)
    decayed.rules = sorted(rules, key=lambda r: r.priority, reverse=True)

    decayed.data_quality = profile.data_quality * decay_factor(weeks_between(profile.last_analysis, now), rate)
    return decayed


def build_context(decayed: Optional[PersonalizationProfile]) -> Optional[PersonalizationContext]:
    """Resolve overrides and apply the confidence gates used for rendering."""
    if decayed is None or not decayed.enabled:
        return None
    overrides = decayed.overrides
    communication = decayed.communication
    rules = sorted((r for r in decayed.rules if r.confidence > CONTEXT_RULE_CONFIDENCE),
                   key=lambda r: r.priority,
                   reverse=True)
    return PersonalizationContext(
        style=overrides.communication_style or communication.style or 'gentle',
        verbosity=overrides.verbosity or communication.verbosity or 'moderate',
        response_format=communication.format or 'conversational',
        emoji_usage=communication.emoji_usage or 'minimal',
        topics_to_avoid=list(overrides.topics_to_avoid) + list(decayed.topics_to_avoid),
        preferred_topics=list(overrides.preferred_topics) + list(decayed.preferred_topics),
        long_term_goals=list(decayed.intent.long_term_goals),
        current_focus=list(decayed.intent.current_focus),
        tendencies=[t for t in decayed.tendencies if t.confidence > CONTEXT_TENDENCY_CONFIDENCE][:CONTEXT_TENDENCY_LIMIT],
        rules=rules[:CONTEXT_RULE_LIMIT],
        data_quality=decayed.data_quality,
        version=decayed.version or 1)


def build_enforcement_rules(decayed: Optional[PersonalizationProfile]) -> str:
    """
    Render the mandatory personalization block for the prompt.

    Args:
        decayed: Profile already passed through decay()

    Returns:
        Instruction text, empty when personalization is missing or disabled
    """
    context = build_context(decayed)
    if context is None:
        return ''

    rules = '\n**=== MANDATORY PERSONALIZATION RULES (ENFORCE STRICTLY) ===**\n\n'

    rules += f'**Communication Style:** You MUST communicate in a {context.style} style. '
    rules += STYLE_DIRECTIVES.get(context.style, '') + '\n'

    rules += f'**Response Length:** You MUST keep responses {context.verbosity}. '
    rules += VERBOSITY_DIRECTIVES.get(context.verbosity, DEFAULT_VERBOSITY_DIRECTIVE) + '\n'

    if context.response_format in FORMAT_DIRECTIVES:
        rules += FORMAT_DIRECTIVES[context.response_format] + '\n'
    if context.emoji_usage in EMOJI_DIRECTIVES:
        rules += EMOJI_DIRECTIVES[context.emoji_usage] + '\n'

    if context.topics_to_avoid:
        rules += f"**Topics to Avoid:** Do NOT bring up or focus on: {', '.join(context.topics_to_avoid)}\n"
    if context.preferred_topics:
        rules += f"**Preferred Topics:** When relevant, focus on: {', '.join(context.preferred_topics)}\n"
    if context.long_term_goals:
        rules += f"**Long-term Goals:** Keep these goals in mind: {', '.join(context.long_term_goals)}\n"
    if context.current_focus:
        rules += f"**Current Focus:** Current priorities: {', '.join(context.current_focus)}\n"

    if context.tendencies:
        patterns = ', '.join(t.pattern for t in context.tendencies[:OBSERVED_PATTERN_LIMIT])
        rules += f'**Observed Patterns:** User typically: {patterns}\n'

    high_priority = [r for r in context.rules if r.priority > HIGH_PRIORITY]
    if high_priority:
        rules += '\n**High-Priority Adaptation Rules:**\n'
        for idx, rule in enumerate(high_priority[:HIGH_PRIORITY_LIMIT], start=1):
            rules += f'{idx}. IF {rule.condition} THEN {rule.action}\n'

    rules += '\n**=== END PERSONALIZATION RULES ===**\n\n'

    if context.data_quality < LOW_DATA_QUALITY:
        rules += ('**Note:** Personalization data quality is moderate - prefer general approaches '
                  'until more patterns emerge.\n\n')
    return rules


def build_profile_summary(decayed: Optional[PersonalizationProfile]) -> str:
    """Render a descriptive profile summary block for context injection."""
    context = build_context(decayed)
    if context is None:
        return ''

    summary = '\n**=== USER PROFILE SUMMARY (for context) ===**\n\n'
    if context.long_term_goals or context.current_focus:
        summary += '**User Intent & Goals:**\n'
        if context.long_term_goals:
            summary += f"- Long-term goals: {', '.join(context.long_term_goals)}\n"
        if context.current_focus:
            summary += f"- Current focus: {', '.join(context.current_focus)}\n"
        summary += '\n'

    summary += '**Communication Preferences:**\n'
    summary += f'- Style: {context.style}\n'
    summary += f'- Verbosity: {context.verbosity}\n'
    summary += f'- Format: {context.response_format}\n'
    summary += f'- Emoji usage: {context.emoji_usage}\n'
    if context.preferred_topics:
        summary += f"- Preferred topics: {', '.join(context.preferred_topics[:5])}\n"
    summary += '\n'

    confident = [t for t in context.tendencies if t.confidence > 0.7]
    if confident:
        summary += '**Observed Behavioral Patterns (High Confidence):**\n'
        for idx, tendency in enumerate(confident[:5], start=1):
            summary += f'{idx}. {tendency.pattern} (confidence: {tendency.confidence * 100:.0f}%)\n'
        summary += '\n'

    summary += '**=== END PROFILE SUMMARY ===**\n\n'
    return summary


def verbosity_directive(decayed: Optional[PersonalizationProfile]) -> str:
    """One-line length instruction for the base prompt."""
    context = build_context(decayed)
    verbosity = context.verbosity if context else 'moderate'
    return PROMPT_VERBOSITY_LINES.get(verbosity, DEFAULT_PROMPT_VERBOSITY_LINE)


def track_engagement(profile: PersonalizationProfile,
                     session_length: float,
                     messages_count: int,
                     feedback: Optional[str] = None,
                     now: Optional[datetime] = None) -> PersonalizationProfile:
    """
    Fold one session's engagement signal into the profile.

    Args:
        profile: Current profile, not modified
        session_length: Session length in minutes
        messages_count: Messages exchanged in the session
        feedback: Optional positive | negative | neutral
        now: Reference time

    Returns:
        Updated copy with a bumped version, for the external store to persist
    """
    updated = copy.deepcopy(profile)
    engagement = updated.engagement
    previous_avg = engagement.avg_messages_per_session

    engagement.avg_session_length = (ENGAGEMENT_ALPHA * session_length +
                                     (1 - ENGAGEMENT_ALPHA) * engagement.avg_session_length)
    engagement.avg_messages_per_session = (ENGAGEMENT_ALPHA * messages_count +
                                           (1 - ENGAGEMENT_ALPHA) * previous_avg)
    engagement.last_engagement = now or utc_now()

    if engagement.avg_messages_per_session > previous_avg * 1.1:
        engagement.engagement_trend = 'increasing'
    elif engagement.avg_messages_per_session < previous_avg * 0.9:
        engagement.engagement_trend = 'decreasing'
    else:
        engagement.engagement_trend = 'stable'

    if feedback in FEEDBACK_QUALITY:
        engagement.response_quality = (ENGAGEMENT_ALPHA * FEEDBACK_QUALITY[feedback] +
                                       (1 - ENGAGEMENT_ALPHA) * engagement.response_quality)

    engagement.session_count += 1
    updated.version = (profile.version or 1) + 1
    logger.debug(f'Updated engagement metrics for user {profile.user_id}')
    return updated
