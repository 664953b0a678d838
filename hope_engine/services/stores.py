"""
Collaborator store interfaces consumed by the engine, plus in-memory implementations.

The engine reads and appends through these; schema and durability belong to
the concrete backends.
"""

import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from ..models.core import (ActivitySnapshot, ConversationMessage, LongTermMemoryFact, PersonalizationProfile,
                           UserProfile)
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class StorageError(Exception):
    """Custom exception for collaborator store failures."""
    pass


def sort_facts(facts: Sequence[LongTermMemoryFact]) -> List[LongTermMemoryFact]:
    """Importance descending, newest first within equal importance."""
    return sorted(facts, key=lambda fact: (fact.importance, fact.timestamp), reverse=True)


class MessageStore(ABC):
    """Append-only session history."""

    @abstractmethod
    async def get_messages(self, session_id: str) -> List[ConversationMessage]:
        pass

    @abstractmethod
    async def append_messages(self, user_id: str, session_id: str, messages: Sequence[ConversationMessage]) -> None:
        pass

    @abstractmethod
    async def get_previous_sessions(self, user_id: str, exclude_session_id: str,
                                    limit: int = 2) -> List[List[ConversationMessage]]:
        """Most recent sessions first, excluding the given one."""
        pass


class FactStore(ABC):
    """Importance-ordered long-term facts with cap enforcement."""

    @abstractmethod
    async def list_facts(self, user_id: str, limit: Optional[int] = None) -> List[LongTermMemoryFact]:
        pass

    @abstractmethod
    async def get_facts(self, user_id: str, fact_ids: Sequence[str]) -> List[LongTermMemoryFact]:
        pass

    @abstractmethod
    async def find_similar(self, user_id: str, prefix: str) -> Optional[LongTermMemoryFact]:
        """First fact whose content contains prefix, case-insensitively."""
        pass

    @abstractmethod
    async def insert(self, fact: LongTermMemoryFact) -> None:
        pass

    @abstractmethod
    async def update(self, fact: LongTermMemoryFact) -> None:
        pass

    @abstractmethod
    async def delete(self, user_id: str, fact_ids: Sequence[str]) -> int:
        pass

    async def prune(self, user_id: str, keep: int) -> int:
        """Delete everything beyond the top `keep` facts. Returns the number deleted."""
        facts = sort_facts(await self.list_facts(user_id))
        if len(facts) <= keep:
            return 0
        return await self.delete(user_id, [fact.id for fact in facts[keep:]])

    async def health_check(self) -> bool:
        return True


class ProfileStore(ABC):

    @abstractmethod
    async def get_profile(self, user_id: str) -> UserProfile:
        pass

    @abstractmethod
    async def get_personalization(self, user_id: str) -> Optional[PersonalizationProfile]:
        pass

    @abstractmethod
    async def save_personalization(self, profile: PersonalizationProfile) -> None:
        pass


class UserDataStore(ABC):
    """Read-only view onto journaling, meditation and mood data."""

    @abstractmethod
    async def get_activity(self, user_id: str) -> ActivitySnapshot:
        pass


class InMemoryMessageStore(MessageStore):

    def __init__(self):
        self._sessions: Dict[str, List[ConversationMessage]] = defaultdict(list)
        self._owners: Dict[str, str] = {}
        self._order: List[str] = []

    async def get_messages(self, session_id: str) -> List[ConversationMessage]:
        return list(self._sessions.get(session_id, []))

    async def append_messages(self, user_id: str, session_id: str, messages: Sequence[ConversationMessage]) -> None:
        if session_id not in self._owners:
            self._owners[session_id] = user_id
        if session_id in self._order:
            self._order.remove(session_id)
        self._order.append(session_id)
        self._sessions[session_id].extend(messages)

    async def get_previous_sessions(self, user_id: str, exclude_session_id: str,
                                    limit: int = 2) -> List[List[ConversationMessage]]:
        sessions = []
        for session_id in reversed(self._order):
            if session_id == exclude_session_id or self._owners.get(session_id) != user_id:
                continue
            sessions.append(list(self._sessions[session_id]))
            if len(sessions) >= limit:
                break
        return sessions


class InMemoryFactStore(FactStore):

    def __init__(self):
        self._facts: Dict[str, Dict[str, LongTermMemoryFact]] = defaultdict(dict)

    async def list_facts(self, user_id: str, limit: Optional[int] = None) -> List[LongTermMemoryFact]:
        facts = sort_facts([copy.deepcopy(fact) for fact in self._facts.get(user_id, {}).values()])
        return facts[:limit] if limit is not None else facts

    async def get_facts(self, user_id: str, fact_ids: Sequence[str]) -> List[LongTermMemoryFact]:
        stored = self._facts.get(user_id, {})
        return [copy.deepcopy(stored[fact_id]) for fact_id in fact_ids if fact_id in stored]

    async def find_similar(self, user_id: str, prefix: str) -> Optional[LongTermMemoryFact]:
        needle = prefix.lower()
        for fact in self._facts.get(user_id, {}).values():
            if needle in fact.content.lower():
                return copy.deepcopy(fact)
        return None

    async def insert(self, fact: LongTermMemoryFact) -> None:
        self._facts[fact.user_id][fact.id] = copy.deepcopy(fact)

    async def update(self, fact: LongTermMemoryFact) -> None:
        if fact.id not in self._facts.get(fact.user_id, {}):
            raise StorageError(f'Fact {fact.id} not found for user {fact.user_id}')
        self._facts[fact.user_id][fact.id] = copy.deepcopy(fact)

    async def delete(self, user_id: str, fact_ids: Sequence[str]) -> int:
        stored = self._facts.get(user_id, {})
        deleted = 0
        for fact_id in fact_ids:
            if stored.pop(fact_id, None) is not None:
                deleted += 1
        return deleted


class InMemoryProfileStore(ProfileStore):

    def __init__(self):
        self.profiles: Dict[str, UserProfile] = {}
        self.personalization: Dict[str, PersonalizationProfile] = {}

    async def get_profile(self, user_id: str) -> UserProfile:
        return copy.deepcopy(self.profiles.get(user_id, UserProfile()))

    async def get_personalization(self, user_id: str) -> Optional[PersonalizationProfile]:
        profile = self.personalization.get(user_id)
        return copy.deepcopy(profile) if profile else None

    async def save_personalization(self, profile: PersonalizationProfile) -> None:
        self.personalization[profile.user_id] = copy.deepcopy(profile)


class InMemoryUserDataStore(UserDataStore):

    def __init__(self):
        self.activity: Dict[str, ActivitySnapshot] = {}

    async def get_activity(self, user_id: str) -> ActivitySnapshot:
        return copy.deepcopy(self.activity.get(user_id, ActivitySnapshot()))
