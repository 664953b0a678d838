"""
Long-term memory admission: runs candidates through the filter chain and
stores survivors with de-duplication and a per-user cap.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ..models.core import ConversationMessage, FactCategory, FactType, LongTermMemoryFact, Role
from ..utils.config import FactStoreConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now
from .fact_filters import FilterDecision, evaluate
from .stores import FactStore, StorageError

logger = get_logger(__name__)

REMEMBER_REPLY = "Got it, I'll remember that."
REMEMBER_PROMPT_REPLY = 'Tell me what you want me to remember.'
REMEMBER_DECLINED_REPLY = "That looks like sensitive information, so I won't keep it in memory."
FORGET_REPLY = "Understood, I'll forget that."
FORGET_PROMPT_REPLY = 'Tell me what you want me to forget.'

_VAGUE_SUBJECTS = {'this', 'that', 'it'}
_FORGET_ALL_PHRASES = ('forget everything', 'forget all', 'forget what you know about me')
_DONT_REMEMBER = re.compile(r"^(?:don['’]?t|do not)\s+remember\s+(.*)$", re.I | re.S)
_FORGET = re.compile(r'^forget(?:\s+what you know about)?\s+(.*)$', re.I | re.S)
_REMEMBER = re.compile(r'^remember(?:\s+that)?\s+(.*)$', re.I | re.S)
_SENTENCE_BOUNDARY = re.compile(r'[.!?]')

KEYWORD_FAMILIES = (
    (FactType.GOAL, 7, ['goal', 'user-stated'],
     ('goal', 'want to', 'hope to', 'plan to', 'aim to', 'target', 'wish', 'dream', 'aspire', 'strive')),
    (FactType.TRIGGER, 8, ['trigger', 'emotional'],
     ('trigger', 'makes me', 'causes', 'when', 'stress', 'anxious', 'anxiety', 'worried', 'afraid', 'scared', 'fear',
      'panic')),
    (FactType.INSIGHT, 9, ['insight', 'breakthrough'],
     ('realized', 'understood', 'learned', 'insight', 'realize', 'understand', 'discovered', 'found out', 'noticed',
      'aware')),
    (FactType.PREFERENCE, 6, ['preference', 'user-preference'],
     ('prefer', 'like', 'dislike', 'enjoy', 'love', 'hate', 'favorite', 'favourite', 'better', 'best')),
    (FactType.COPING_PATTERN, 7, ['pattern', 'behavior'],
     ('always', 'usually', 'pattern', 'habit', 'tend to', 'often', 'frequently', 'typically')),
)
EMOTIONAL_KEYWORDS = ('feel', 'feeling', 'emotion', 'emotional', 'mood', 'sad', 'happy', 'angry', 'depressed',
                      'lonely', 'excited')
EMOTIONAL_MIN_LENGTH = 20
EMOTIONAL_IMPORTANCE = 7

USER_SUMMARY_TAG = 'user-summary'
USER_SUMMARY_IMPORTANCE = 8
USER_SUMMARY_MAX_LENGTH = 1000
USER_SUMMARY_WINDOW = 40
USER_SUMMARY_PROMPT = ('Write a short summary of who this user is (3-4 sentences max).\n'
                       'Focus on: recurring emotional themes, goals, what helps them, how they like to talk.\n'
                       '{existing}\nConversation:\n{conversation}\n\nSummary:')


@dataclass
class MemoryCommand:
    action: str  # remember | forget
    subject: str = ''
    forget_all: bool = False


@dataclass
class FactCandidate:
    """A fact proposed for storage before de-duplication."""
    type: FactType
    content: str
    importance: int
    tags: List[str] = field(default_factory=list)
    context: str = ''
    category: FactCategory = FactCategory.NOTES


def parse_memory_command(message: str) -> Optional[MemoryCommand]:
    """
    Recognize explicit memory control phrases.

    Args:
        message: Raw user message

    Returns:
        MemoryCommand, or None for ordinary chat
    """
    text = (message or '').strip()
    if not text:
        return None
    lower = text.lower()
    if any(phrase in lower for phrase in _FORGET_ALL_PHRASES):
        return MemoryCommand(action='forget', forget_all=True)

    for pattern, action in ((_DONT_REMEMBER, 'forget'), (_FORGET, 'forget'), (_REMEMBER, 'remember')):
        match = pattern.match(text)
        if match:
            subject = match.group(1).strip()
            if subject.lower() in _VAGUE_SUBJECTS:
                subject = ''
            return MemoryCommand(action=action, subject=subject)
    return None


def build_user_summary_prompt(messages: Sequence[ConversationMessage], existing: Optional[str] = None) -> str:
    """Prompt for a rolling user summary over the most recent messages, folding in the previous one."""
    conversation = '\n'.join(f'{m.role.value}: {m.content}' for m in messages[-USER_SUMMARY_WINDOW:])
    previous = f'Previous summary (keep what still holds):\n{existing}\n' if existing else ''
    return USER_SUMMARY_PROMPT.format(existing=previous, conversation=conversation)


def _first_sentence_with(content: str, keywords: Sequence[str]) -> Optional[str]:
    for sentence in _SENTENCE_BOUNDARY.split(content):
        lowered = sentence.lower()
        if any(keyword in lowered for keyword in keywords):
            return sentence.strip()
    return None


def extract_key_facts(messages: Sequence[ConversationMessage], limit: int = 10) -> List[FactCandidate]:
    """
    Keyword-based batch extraction over a session's user messages.

    Each keyword family contributes at most one sentence per message; emotional
    messages longer than 20 characters contribute their first 200 characters.

    Args:
        messages: Session history
        limit: Maximum candidates returned

    Returns:
        Candidates ordered by importance, highest first
    """
    facts: List[FactCandidate] = []
    for message in messages:
        if message.role != Role.USER:
            continue
        original = message.content or ''
        content = original.lower()
        context = to_iso(message.timestamp) or ''

        for fact_type, importance, tags, keywords in KEYWORD_FAMILIES:
            if not any(keyword in content for keyword in keywords):
                continue
            sentence = _first_sentence_with(original, keywords)
            if sentence:
                facts.append(FactCandidate(type=fact_type,
                                           content=sentence,
                                           importance=importance,
                                           tags=list(tags),
                                           context=context))

        if any(keyword in content for keyword in EMOTIONAL_KEYWORDS) and len(content) > EMOTIONAL_MIN_LENGTH:
            facts.append(FactCandidate(type=FactType.EMOTIONAL_THEME,
                                       content=original.strip()[:200],
                                       importance=EMOTIONAL_IMPORTANCE,
                                       tags=['emotion', 'emotional-state'],
                                       context=context))

    facts.sort(key=lambda fact: fact.importance, reverse=True)
    return facts[:limit]


class FactExtractionPipeline:
    """Filters candidate utterances and persists the survivors."""

    def __init__(self,
                 fact_store: FactStore,
                 config: FactStoreConfig,
                 on_change: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], datetime] = utc_now):
        """
        Args:
            fact_store: Long-term fact collaborator
            config: Fact store limits
            on_change: Called with the user id after facts were written or deleted
            clock: Source of fact timestamps
        """
        self.fact_store = fact_store
        self.config = config
        self.on_change = on_change
        self._clock = clock

    def _notify(self, user_id: str) -> None:
        if self.on_change is not None:
            self.on_change(user_id)

    async def process(self,
                      user_id: str,
                      utterance: str,
                      previous_messages: Sequence[str] = (),
                      explicit: bool = False,
                      context: str = '') -> FilterDecision:
        """
        Evaluate one utterance and store it if it survives the filters.

        Storage failures are logged and swallowed.

        Args:
            user_id: Owner of the fact
            utterance: Candidate text
            previous_messages: Recent message texts, oldest first
            explicit: Caller marked the utterance as "remember this"
            context: Free-form provenance stored with the fact

        Returns:
            The filter decision
        """
        decision = evaluate(utterance, explicit=explicit, previous_messages=previous_messages)
        if not decision.should_store:
            return decision

        tags = ['user-controlled', 'explicit-memory'] if explicit else [decision.category.value.lower()]
        candidate = FactCandidate(type=decision.fact_type,
                                  content=utterance.strip(),
                                  importance=decision.importance,
                                  tags=tags,
                                  context=context,
                                  category=decision.category)
        await self.store(user_id, [candidate])
        return decision

    async def store(self, user_id: str, candidates: Sequence[FactCandidate]) -> List[LongTermMemoryFact]:
        """
        Insert candidates, raising near-duplicates instead of duplicating them,
        then prune the user's facts to the configured cap.

        Returns:
            Facts inserted or updated; empty on storage failure
        """
        written: List[LongTermMemoryFact] = []
        try:
            for candidate in candidates:
                content = candidate.content[:self.config.content_max_length]
                if not content:
                    continue
                now = self._clock()
                existing = await self.fact_store.find_similar(user_id, content[:self.config.dedupe_prefix])
                if existing is None:
                    fact = LongTermMemoryFact(id=uuid.uuid4().hex,
                                              user_id=user_id,
                                              type=candidate.type,
                                              content=content,
                                              importance=candidate.importance,
                                              timestamp=now,
                                              tags=list(candidate.tags),
                                              context=candidate.context,
                                              category=candidate.category)
                    await self.fact_store.insert(fact)
                    written.append(fact)
                    logger.debug(f'Stored fact: {fact.type.value} - {content[:50]}')
                elif candidate.importance > existing.importance:
                    existing.importance = candidate.importance
                    existing.timestamp = now
                    await self.fact_store.update(existing)
                    written.append(existing)
                    logger.debug(f'Raised importance of existing fact: {content[:50]}')

            pruned = await self.fact_store.prune(user_id, self.config.max_facts_per_user)
            if pruned:
                logger.debug(f'Pruned {pruned} low-importance facts for user {user_id}')
        except StorageError as e:
            logger.error(f'Error storing facts for user {user_id}: {e}')
            return []

        if written or pruned:
            self._notify(user_id)
        return written

    async def process_session(self, user_id: str, messages: Sequence[ConversationMessage],
                              limit: Optional[int] = None) -> List[LongTermMemoryFact]:
        """
        Batch-analyze a session and store the key facts that pass the filters.

        Args:
            user_id: Owner of the facts
            messages: Full session history
            limit: Candidate limit; 15 for sessions over 20 messages, else 10

        Returns:
            Facts inserted or updated
        """
        if limit is None:
            limit = 15 if len(messages) > 20 else 10
        texts = [message.content for message in messages]
        accepted: List[FactCandidate] = []
        for candidate in extract_key_facts(messages, limit):
            decision = evaluate(candidate.content, previous_messages=texts)
            if not decision.should_store:
                continue
            candidate.importance = max(candidate.importance, decision.importance)
            candidate.category = decision.category
            accepted.append(candidate)
        if not accepted:
            return []
        logger.info(f'Session analysis accepted {len(accepted)} key facts for user {user_id}')
        return await self.store(user_id, accepted)

    async def user_summary(self, user_id: str) -> Optional[LongTermMemoryFact]:
        facts = await self.fact_store.list_facts(user_id)
        return next((fact for fact in facts if USER_SUMMARY_TAG in fact.tags), None)

    async def store_user_summary(self, user_id: str, content: str) -> Optional[LongTermMemoryFact]:
        """
        Create or replace the user's single summary fact.

        The summary bypasses the filter chain and de-duplication; there is at
        most one per user and it is updated in place.

        Returns:
            The stored fact, or None if content was empty or storage failed
        """
        content = (content or '').strip()[:USER_SUMMARY_MAX_LENGTH]
        if not content:
            return None
        try:
            fact = await self.user_summary(user_id)
            if fact is None:
                fact = LongTermMemoryFact(id=uuid.uuid4().hex,
                                          user_id=user_id,
                                          type=FactType.INSIGHT,
                                          content=content,
                                          importance=USER_SUMMARY_IMPORTANCE,
                                          timestamp=self._clock(),
                                          tags=[USER_SUMMARY_TAG],
                                          context='Generated from conversation history')
                await self.fact_store.insert(fact)
            else:
                fact.content = content
                fact.importance = max(fact.importance, USER_SUMMARY_IMPORTANCE)
                fact.timestamp = self._clock()
                await self.fact_store.update(fact)
        except StorageError as e:
            logger.error(f'Error storing user summary for user {user_id}: {e}')
            return None
        self._notify(user_id)
        logger.info(f'Stored user summary for user {user_id}')
        return fact

    async def remember(self, user_id: str, subject: str, previous_messages: Sequence[str] = ()) -> FilterDecision:
        return await self.process(user_id, subject, previous_messages, explicit=True,
                                  context='User asked to remember this')

    async def forget(self, user_id: str, subject: str = '', forget_all: bool = False) -> int:
        """
        Delete facts whose content contains subject, or every fact.

        Returns:
            Number of facts deleted; 0 on storage failure
        """
        try:
            facts = await self.fact_store.list_facts(user_id)
            if forget_all:
                targets = [fact.id for fact in facts]
            elif subject:
                needle = subject.lower()
                targets = [fact.id for fact in facts if needle in fact.content.lower()]
            else:
                return 0
            deleted = await self.fact_store.delete(user_id, targets) if targets else 0
        except StorageError as e:
            logger.error(f'Error forgetting facts for user {user_id}: {e}')
            return 0
        self._notify(user_id)
        logger.info(f'Forgot {deleted} facts for user {user_id}')
        return deleted
