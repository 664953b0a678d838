"""
Shared fixtures: scripted provider, manual clocks, in-memory stores and fast configuration.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from hope_engine.models.core import ConversationMessage, Role
from hope_engine.services.chat_service import ChatService
from hope_engine.services.stores import (InMemoryFactStore, InMemoryMessageStore, InMemoryProfileStore,
                                         InMemoryUserDataStore)
from hope_engine.utils.bedrock_llm import UpstreamTransient
from hope_engine.utils.config import (AppConfig, BedrockLLMConfig, CacheConfig, FactStoreConfig, HistoryConfig,
                                      MCPConfig, OpenSearchConfig, ProfileLimitsConfig, QueueConfig, RateLimitConfig)

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    """Deterministic datetime clock."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider:
    """Scripted generative provider.

    Each call consumes the next scripted item: a string is returned, an
    exception is raised. When the script is empty the default is used.
    """

    def __init__(self, responses=None, default: str = 'I hear you. Tell me more.', failing: bool = False):
        self.responses = list(responses or [])
        self.default = default
        self.failing = failing
        self.prompts: List[str] = []
        self.params: List[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _next(self) -> str:
        if self.failing:
            raise UpstreamTransient('provider unreachable')
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        return item

    async def generate(self, prompt: str, **params) -> str:
        self.prompts.append(prompt)
        self.params.append(params)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return self._next()
        finally:
            self.in_flight -= 1

    async def stream(self, prompt: str, **params):
        self.prompts.append(prompt)
        self.params.append(params)
        text = self._next()
        for start in range(0, len(text), 8):
            await asyncio.sleep(0)
            yield text[start:start + 8]


def make_message(role: Role, content: str, minutes: int = 0) -> ConversationMessage:
    return ConversationMessage(role=role, content=content, timestamp=BASE_TIME + timedelta(minutes=minutes))


def make_queue_config(**overrides) -> QueueConfig:
    values = dict(max_retries=2,
                  initial_retry_delay=0.001,
                  max_retry_delay=0.01,
                  retry_jitter=0.0,
                  error_retry_delay=0.001,
                  inter_request_delay=0.0,
                  residency_timeout=5.0,
                  max_size=100)
    values.update(overrides)
    return QueueConfig(**values)


def make_app_config(**overrides) -> AppConfig:
    sections = dict(
        environment='test',
        log_level='DEBUG',
        bedrock_llm=BedrockLLMConfig(region='us-east-1',
                                     model_id='test-model',
                                     max_tokens=256,
                                     temperature=0.8,
                                     top_p=0.95,
                                     request_timeout=1.0),
        queue=make_queue_config(),
        rate_limit=RateLimitConfig(window_seconds=60, user_max_requests=15, global_max_requests=20, retry_after=60),
        cache=CacheConfig(ttl_seconds=300, max_entries=200, sweep_interval_seconds=60),
        history=HistoryConfig(max_tokens=4000,
                              max_messages=40,
                              previous_session_max_tokens=1000,
                              previous_session_max_messages=15,
                              summary_threshold=0),
        profile_limits=ProfileLimitsConfig(max_goals=10, max_challenges=10, max_str_len=200, max_bio_len=500),
        fact_store=FactStoreConfig(backend='memory', max_facts_per_user=100, dedupe_prefix=50, content_max_length=200),
        opensearch=OpenSearchConfig(endpoint='localhost', port=443, region='us-east-1', index_name='test_facts'),
        mcp=MCPConfig(transport='sse', host='127.0.0.1', port=8000),
    )
    sections.update(overrides)
    return AppConfig(**sections)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def app_config():
    return make_app_config()


@pytest.fixture
def stores():
    return {
        'message_store': InMemoryMessageStore(),
        'fact_store': InMemoryFactStore(),
        'profile_store': InMemoryProfileStore(),
        'user_data_store': InMemoryUserDataStore(),
    }


@pytest.fixture
async def service(app_config, provider, stores, wall_clock, clock):
    chat = ChatService(app_config, provider, clock=wall_clock, monotonic=clock, **stores)
    await chat.start()
    yield chat
    await chat.stop()
