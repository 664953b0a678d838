"""
Core data models for the context assembly and throttling engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

MEMORY_BLOB_SCHEMA_VERSION = 2


class Role(str, Enum):
    USER = 'user'
    ASSISTANT = 'assistant'


class FactType(str, Enum):
    """The closed set of long-term memory fact variants."""
    EMOTIONAL_THEME = 'emotional_theme'
    COPING_PATTERN = 'coping_pattern'
    GOAL = 'goal'
    TRIGGER = 'trigger'
    INSIGHT = 'insight'
    PREFERENCE = 'preference'
    PERSON = 'person'
    SCHOOL = 'school'
    ORGANIZATION = 'organization'


class FactCategory(str, Enum):
    """Human-facing label the categorization stage attaches to a fact."""
    IDENTITY = 'Identity'
    STYLE = 'Style'
    PROJECTS = 'Projects'
    GOALS = 'Goals'
    EMOTIONAL = 'Emotional'
    COPING = 'Coping'
    PEOPLE = 'People'
    TRIGGERS = 'Triggers'
    NOTES = 'Notes'


@dataclass
class ConversationMessage:
    """A single persisted chat message. Never mutated by the engine."""
    role: Role
    content: str
    timestamp: datetime


@dataclass
class LongTermMemoryFact:
    """A durable, categorized statement about a user."""
    id: str
    user_id: str
    type: FactType
    content: str
    importance: int  # 1-10
    timestamp: datetime
    tags: List[str] = field(default_factory=list)
    context: str = ''
    category: FactCategory = FactCategory.NOTES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'type': self.type.value,
            'content': self.content,
            'importance': self.importance,
            'tags': list(self.tags),
            'timestamp': self.timestamp.isoformat(),
            'context': self.context,
            'category': self.category.value,
        }


@dataclass
class UserProfile:
    """Profile fields that feed the prompt. Edited outside the engine."""
    name: str = ''
    bio: str = ''
    goals: List[str] = field(default_factory=list)
    challenges: List[str] = field(default_factory=list)
    interests: List[str] = field(default_factory=list)
    communication_style: Optional[str] = None
    experience_level: Optional[str] = None
    topics_to_avoid: List[str] = field(default_factory=list)
    preferred_techniques: List[str] = field(default_factory=list)


@dataclass
class ActivitySnapshot:
    """Read-only view of the user's journaling, meditation and mood activity."""
    journal_count: int = 0
    journal_themes: List[str] = field(default_factory=list)
    meditation_count: int = 0
    mood_scores: List[float] = field(default_factory=list)  # most recent first


@dataclass
class MemoryBlob:
    """Assembled per-user context, cached between requests."""
    user_id: str
    profile: UserProfile
    activity: ActivitySnapshot
    facts: List[LongTermMemoryFact]
    last_updated: datetime
    schema_version: int = MEMORY_BLOB_SCHEMA_VERSION


@dataclass
class BehavioralTendency:
    pattern: str
    confidence: float
    frequency: float
    last_observed: Optional[datetime] = None


@dataclass
class AdaptationRule:
    condition: str
    action: str
    priority: float
    confidence: float
    source: str = 'inferred'
    effectiveness: float = 0.5
    last_applied: Optional[datetime] = None


@dataclass
class CommunicationPreferences:
    style: str = 'gentle'  # gentle | direct | supportive
    verbosity: str = 'moderate'  # concise | moderate | detailed
    format: str = 'conversational'
    emoji_usage: str = 'minimal'  # none | minimal | moderate | frequent


@dataclass
class UserIntent:
    long_term_goals: List[str] = field(default_factory=list)
    current_focus: List[str] = field(default_factory=list)


@dataclass
class UserOverrides:
    """Explicit user choices. These win over inferred preferences."""
    communication_style: Optional[str] = None
    verbosity: Optional[str] = None
    topics_to_avoid: List[str] = field(default_factory=list)
    preferred_topics: List[str] = field(default_factory=list)


@dataclass
class EngagementMetrics:
    avg_session_length: float = 0.0
    avg_messages_per_session: float = 0.0
    engagement_trend: str = 'stable'  # increasing | stable | decreasing
    response_quality: float = 0.5
    session_count: int = 0
    last_engagement: Optional[datetime] = None


@dataclass
class PersonalizationProfile:
    """Inferred personalization state, decayed on read."""
    user_id: str
    communication: CommunicationPreferences = field(default_factory=CommunicationPreferences)
    tendencies: List[BehavioralTendency] = field(default_factory=list)
    rules: List[AdaptationRule] = field(default_factory=list)
    intent: UserIntent = field(default_factory=UserIntent)
    overrides: UserOverrides = field(default_factory=UserOverrides)
    topics_to_avoid: List[str] = field(default_factory=list)
    preferred_topics: List[str] = field(default_factory=list)
    engagement: EngagementMetrics = field(default_factory=EngagementMetrics)
    decay_rate: float = 0.05
    data_quality: float = 0.3
    last_analysis: Optional[datetime] = None
    version: int = 1
    enabled: bool = True


@dataclass
class ProfileDelta:
    """Validated caller-supplied profile changes, applied to a copy only."""
    goals: Optional[List[str]] = None
    challenges: Optional[List[str]] = None
    communication_style: Optional[str] = None
    experience_level: Optional[str] = None
    bio: Optional[str] = None

    def is_empty(self) -> bool:
        return all(value is None for value in (self.goals, self.challenges, self.communication_style,
                                               self.experience_level, self.bio))


@dataclass
class ChatRequest:
    user_id: str
    session_id: str
    message: str
    profile_delta: Optional[Dict[str, Any]] = None
    recent_fact_ids: List[str] = field(default_factory=list)
    stream: bool = False
    remember: bool = False
    memory_version: Optional[str] = None


@dataclass
class MemoryContext:
    has_journal_entries: bool
    has_meditation_history: bool
    has_mood_data: bool
    last_updated: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hasJournalEntries': self.has_journal_entries,
            'hasMeditationHistory': self.has_meditation_history,
            'hasMoodData': self.has_mood_data,
            'lastUpdated': self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class ChatResponse:
    response: str
    session_id: str
    suggestions: List[str] = field(default_factory=list)
    is_failover: bool = False
    memory_context: Optional[MemoryContext] = None
    personalization_version: int = 1
    retry_after: Optional[int] = None
    memory_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'success': True,
            'response': self.response,
            'sessionId': self.session_id,
            'suggestions': list(self.suggestions),
            'isFailover': self.is_failover,
            'memoryContext': self.memory_context.to_dict() if self.memory_context else None,
            'personalizationVersion': self.personalization_version,
        }
        if self.retry_after is not None:
            payload['retryAfter'] = self.retry_after
        if self.memory_action is not None:
            payload['memoryAction'] = self.memory_action
        return payload


@dataclass
class StreamEvent:
    """One streamed delivery step: a text chunk, or the final complete event."""
    type: str  # chunk | complete
    content: str = ''
    response: Optional[ChatResponse] = None
