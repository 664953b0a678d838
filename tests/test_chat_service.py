"""
End-to-end tests for the chat service over in-memory collaborators.
"""

import asyncio

import pytest
from conftest import BASE_TIME, FakeProvider, make_app_config, make_message

from hope_engine.models.core import (ChatRequest, CommunicationPreferences, FactCategory, FactType,
                                     PersonalizationProfile, Role)
from hope_engine.services.chat_service import ChatService
from hope_engine.services.context_assembly import ValidationError
from hope_engine.services.fact_extraction import (FORGET_REPLY, REMEMBER_DECLINED_REPLY, REMEMBER_PROMPT_REPLY,
                                                  REMEMBER_REPLY, USER_SUMMARY_TAG, FactCandidate)
from hope_engine.services.fallback import RATE_LIMIT_MESSAGE, select_fallback
from hope_engine.utils.bedrock_llm import UpstreamTransient
from hope_engine.utils.config import HistoryConfig, RateLimitConfig
from hope_engine.utils.health_check import PROBE_PROMPT, check_health, get_health_status


def chat(message, session_id='s1', user_id='u1', **kwargs):
    return ChatRequest(user_id=user_id, session_id=session_id, message=message, **kwargs)


@pytest.fixture
async def make_service(stores, wall_clock, clock):
    services = []

    async def factory(provider, **overrides):
        service = ChatService(make_app_config(**overrides), provider, clock=wall_clock, monotonic=clock, **stores)
        await service.start()
        services.append(service)
        return service

    yield factory
    for service in services:
        await service.stop()


class SummaryAwareProvider(FakeProvider):
    """Answers user summary prompts separately from chat prompts."""

    def __init__(self, summary_fails: bool = False):
        super().__init__()
        self.summary_fails = summary_fails
        self.summary_prompts = []

    async def generate(self, prompt, **params):
        if prompt.startswith('Write a short summary of who this user is'):
            self.summary_prompts.append(prompt)
            if self.summary_fails:
                raise UpstreamTransient('provider unreachable')
            return f'Training for a marathon, check-in {len(self.summary_prompts)}.'
        return await super().generate(prompt, **params)


class TestSend:

    async def test_each_turn_persists_user_and_assistant_message(self, service, provider, stores):
        provider.responses = ['Reply one', 'Reply two']

        first = await service.send(chat('Hello there'))
        second = await service.send(chat('How was my week?'))
        messages = await stores['message_store'].get_messages('s1')

        assert (first.response, second.response) == ('Reply one', 'Reply two')
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT] * 2
        assert [m.content for m in messages] == ['Hello there', 'Reply one', 'How was my week?', 'Reply two']
        assert first.is_failover is False
        assert 1 <= len(first.suggestions) <= 3
        assert first.to_dict()['memoryContext']['hasMoodData'] is False

    async def test_prompt_contains_earlier_turns(self, service, provider):
        await service.send(chat('I moved to Lisbon'))
        await service.send(chat('Any tips?'))

        assert 'User: I moved to Lisbon\nHope: I hear you. Tell me more.' in provider.prompts[1]
        assert provider.prompts[1].rstrip().endswith('not by saying you do.')

    async def test_previous_sessions_are_included(self, service, provider, stores):
        await stores['message_store'].append_messages('u1', 'old', [
            make_message(Role.USER, 'I started a new job'),
            make_message(Role.ASSISTANT, 'How is it going?', minutes=1),
        ])
        await service.send(chat('Hi again', session_id='s2'))

        assert '[Previous session 1]:\nUser: I started a new job\nHope: How is it going?' in provider.prompts[0]

    async def test_profile_delta_shapes_one_prompt_only(self, service, provider, stores):
        await service.send(chat('Hello there', profile_delta={'goals': ['run a marathon']}))
        await service.send(chat('Hello again'))

        assert 'run a marathon' in provider.prompts[0]
        assert 'run a marathon' not in provider.prompts[1]
        assert (await stores['profile_store'].get_profile('u1')).goals == []

    async def test_personalization_is_rendered_and_versioned(self, service, provider, stores):
        stores['profile_store'].personalization['u1'] = PersonalizationProfile(
            user_id='u1', communication=CommunicationPreferences(style='direct'), version=3, last_analysis=BASE_TIME)

        response = await service.send(chat('Hello there'))

        assert response.personalization_version == 3
        assert 'You MUST communicate in a direct style.' in provider.prompts[0]

    @pytest.mark.parametrize('request_kwargs,field', [
        ({'message': '   '}, 'message'),
        ({'message': 'hi', 'user_id': ''}, 'userId'),
        ({'message': 'hi', 'session_id': ''}, 'sessionId'),
        ({'message': 'hi', 'profile_delta': {'communicationStyle': 'rude'}}, 'communicationStyle'),
    ])
    async def test_invalid_requests_raise_and_persist_nothing(self, service, provider, stores, request_kwargs,
                                                              field):
        with pytest.raises(ValidationError) as exc_info:
            await service.send(chat(**request_kwargs))

        assert field in exc_info.value.errors
        assert provider.prompts == []
        assert await stores['message_store'].get_messages('s1') == []

    async def test_rate_limited_request_gets_retry_after(self, make_service, stores, clock):
        provider = FakeProvider()
        service = await make_service(provider,
                                     rate_limit=RateLimitConfig(window_seconds=60, user_max_requests=2,
                                                                global_max_requests=20, retry_after=60))
        await service.send(chat('one'))
        await service.send(chat('two'))
        limited = await service.send(chat('three'))

        assert limited.response == RATE_LIMIT_MESSAGE
        assert limited.is_failover is True
        assert limited.to_dict()['retryAfter'] == 60
        assert len(provider.prompts) == 2
        assert len(await stores['message_store'].get_messages('s1')) == 4

        clock.advance(61)
        assert (await service.send(chat('four'))).is_failover is False

    async def test_stopped_queue_degrades_to_fallback(self, service, provider, stores):
        await service.queue.stop()

        response = await service.send(chat('I feel so down today'))

        assert response.is_failover is True
        assert response.response == select_fallback('I feel so down today')
        assert provider.prompts == []
        assert len(await stores['message_store'].get_messages('s1')) == 2

    async def test_repeated_anxiety_becomes_a_recurring_fact(self, make_service, stores):
        provider = FakeProvider(failing=True)
        service = await make_service(provider)
        message = 'Still struggling with being anxious about my exam'

        responses = []
        for _ in range(3):
            responses.append(await service.send(chat(message)))
            await service.drain()
        facts = await stores['fact_store'].list_facts('u1')

        assert all(response.is_failover for response in responses)
        assert all(response.response == select_fallback(message) for response in responses)
        assert 'breaths' in responses[0].response
        assert service.queue.calls_started == 9
        assert len(await stores['message_store'].get_messages('s1')) == 6
        assert len(facts) == 1
        assert facts[0].importance == 7
        assert facts[0].category == FactCategory.EMOTIONAL
        assert facts[0].type == FactType.EMOTIONAL_THEME

    async def test_remember_flag_stores_message_as_explicit_fact(self, service, stores):
        await service.send(chat('The weather was fine today', remember=True))
        await service.drain()
        facts = await stores['fact_store'].list_facts('u1')

        assert [fact.content for fact in facts] == ['The weather was fine today']
        assert facts[0].importance == 9
        assert facts[0].context == 'session:s1'

    async def test_low_value_message_is_not_stored(self, service, stores):
        await service.send(chat('haha just kidding'))
        await service.drain()

        assert await stores['fact_store'].list_facts('u1') == []

    async def test_unexpected_provider_errors_degrade_to_fallback(self, make_service, stores):
        provider = FakeProvider([RuntimeError('connection reset')] * 3)
        service = await make_service(provider)

        response = await service.send(chat('I feel anxious today'))

        assert response.is_failover is True
        assert response.response == select_fallback('I feel anxious today')
        assert service.queue.calls_started == 3
        assert len(await stores['message_store'].get_messages('s1')) == 2

    async def test_memory_version_selects_cache_entry(self, service):
        await service.send(chat('Hello there', memory_version='v1'))
        await service.send(chat('Hello again'))

        assert 'u1:v1' in service.cache
        assert 'u1:latest' in service.cache
        assert service.invalidate('u1') == 2

    async def test_history_over_budget_still_persists_every_turn(self, make_service, provider, stores):
        service = await make_service(provider,
                                     history=HistoryConfig(max_tokens=5,
                                                           max_messages=2,
                                                           previous_session_max_tokens=1000,
                                                           previous_session_max_messages=15,
                                                           summary_threshold=0))
        for idx in range(6):
            await service.send(chat(f'Turn number {idx} went fine'))
            await service.drain()
        messages = await stores['message_store'].get_messages('s1')

        assert len(messages) == 12
        assert [m.content for m in messages if m.role == Role.USER] == [
            f'Turn number {idx} went fine' for idx in range(6)
        ]
        assert any(prompt.startswith('Summarize this conversation history') for prompt in provider.prompts)


class TestBackgroundWork:

    async def test_expired_rate_limit_windows_are_pruned(self, make_service, clock):
        service = await make_service(FakeProvider(),
                                     rate_limit=RateLimitConfig(window_seconds=0.02, user_max_requests=15,
                                                                global_max_requests=20, retry_after=60))
        await service.send(chat('Hello there'))
        assert service.admission.window_for('u1') is not None

        clock.advance(1)
        for _ in range(100):
            if service.admission.window_for('u1') is None:
                break
            await asyncio.sleep(0.01)

        assert service.admission.window_for('u1') is None

    async def test_user_summary_every_ten_messages(self, make_service, stores):
        provider = SummaryAwareProvider()
        service = await make_service(provider)

        for idx in range(10):
            await service.send(chat(f'Chat turn {idx}'))
            await service.drain()
            if idx == 4:
                assert len(provider.summary_prompts) == 1
        summaries = [fact for fact in await stores['fact_store'].list_facts('u1') if USER_SUMMARY_TAG in fact.tags]
        await service.send(chat('What should I do next?'))

        assert len(provider.summary_prompts) == 2
        assert 'Previous summary (keep what still holds):\nTraining for a marathon, check-in 1.' in (
            provider.summary_prompts[1])
        assert [fact.content for fact in summaries] == ['Training for a marathon, check-in 2.']
        assert '**About this user (summary):**\nTraining for a marathon, check-in 2.' in provider.prompts[-1]

    async def test_failed_user_summary_does_not_affect_replies(self, make_service, stores):
        provider = SummaryAwareProvider(summary_fails=True)
        service = await make_service(provider)

        responses = []
        for idx in range(5):
            responses.append(await service.send(chat(f'Chat turn {idx}')))
            await service.drain()
        facts = await stores['fact_store'].list_facts('u1')

        assert len(provider.summary_prompts) == 3
        assert not any(response.is_failover for response in responses)
        assert all(USER_SUMMARY_TAG not in fact.tags for fact in facts)


class TestMemoryCommands:

    async def test_remember_command_skips_provider_and_invalidates_cache(self, service, provider, stores):
        await service.send(chat('Hello there'))
        response = await service.send(chat('Remember that I run on Sundays'))
        await service.send(chat('What should I do this weekend?'))
        facts = await stores['fact_store'].list_facts('u1')

        assert response.response == REMEMBER_REPLY
        assert response.memory_action == 'remember'
        assert len(provider.prompts) == 2
        assert [fact.content for fact in facts] == ['I run on Sundays']
        assert facts[0].importance == 9
        assert facts[0].tags == ['user-controlled', 'explicit-memory']
        assert '- insight: I run on Sundays' in provider.prompts[1]
        assert len(await stores['message_store'].get_messages('s1')) == 6

    async def test_sensitive_remember_is_declined(self, service, stores):
        response = await service.send(chat('Remember that my password is hunter2'))

        assert response.response == REMEMBER_DECLINED_REPLY
        assert await stores['fact_store'].list_facts('u1') == []

    async def test_vague_remember_asks_for_subject(self, service, provider):
        response = await service.send(chat('remember this'))

        assert response.response == REMEMBER_PROMPT_REPLY
        assert provider.prompts == []

    async def test_forget_command_deletes_matching_facts(self, service, stores):
        await service.facts.store('u1', [
            FactCandidate(type=FactType.INSIGHT, content='Quit my old job in May', importance=6),
            FactCandidate(type=FactType.GOAL, content='Wants to run a marathon', importance=7),
        ])

        response = await service.send(chat('Forget my old job'))
        remaining = [fact.content for fact in await stores['fact_store'].list_facts('u1')]

        assert response.response == FORGET_REPLY
        assert response.memory_action == 'forget'
        assert remaining == ['Wants to run a marathon']


class TestStream:

    async def test_chunks_then_complete(self, service, provider, stores):
        provider.responses = ['A streamed reply that spans chunks']

        events = [event async for event in service.stream(chat('Hello there', stream=True))]
        chunks = [event.content for event in events if event.type == 'chunk']

        assert len(chunks) > 1
        assert ''.join(chunks) == 'A streamed reply that spans chunks'
        assert events[-1].type == 'complete'
        assert events[-1].response.response == 'A streamed reply that spans chunks'
        assert [m.content for m in await stores['message_store'].get_messages('s1')] == [
            'Hello there', 'A streamed reply that spans chunks'
        ]

    async def test_rate_limited_stream_is_one_chunk(self, make_service):
        service = await make_service(FakeProvider(),
                                     rate_limit=RateLimitConfig(window_seconds=60, user_max_requests=1,
                                                                global_max_requests=20, retry_after=30))
        await service.send(chat('one'))

        events = [event async for event in service.stream(chat('two'))]

        assert [event.type for event in events] == ['chunk', 'complete']
        assert events[0].content == RATE_LIMIT_MESSAGE
        assert events[1].response.retry_after == 30

    async def test_failing_provider_streams_fallback(self, make_service):
        service = await make_service(FakeProvider(failing=True))

        events = [event async for event in service.stream(chat('I am so stressed'))]

        assert [event.type for event in events] == ['chunk', 'complete']
        assert events[0].content == select_fallback('I am so stressed')
        assert events[1].response.is_failover is True


class TestSessionLifecycle:

    async def test_end_session_stores_key_facts_and_tracks_engagement(self, service, stores):
        stores['profile_store'].personalization['u1'] = PersonalizationProfile(user_id='u1', version=3)
        await stores['message_store'].append_messages('u1', 's1', [
            make_message(Role.USER, 'My goal is to finish my thesis this spring.'),
            make_message(Role.ASSISTANT, 'That is a big goal.', minutes=1),
        ])

        stored = await service.end_session('u1', 's1', session_length=12, feedback='positive')
        saved = await stores['profile_store'].get_personalization('u1')

        assert stored == 1
        assert [fact.content for fact in await stores['fact_store'].list_facts('u1')] == [
            'My goal is to finish my thesis this spring'
        ]
        assert saved.version == 4
        assert saved.engagement.session_count == 1

    async def test_end_of_empty_session_does_nothing(self, service):
        assert await service.end_session('u1', 'missing') == 0

    async def test_list_memories_returns_dicts(self, service):
        await service.facts.store('u1', [FactCandidate(type=FactType.GOAL, content='Run a marathon', importance=7)])

        memories = await service.list_memories('u1')

        assert memories[0]['content'] == 'Run a marathon'
        assert memories[0]['type'] == 'goal'
        assert memories[0]['userId'] == 'u1'


class TestHealth:

    async def test_status_without_probe(self, service, provider):
        status = await get_health_status(service)

        assert status['provider']['probed'] is False
        assert status['fact_store']['healthy'] is True
        assert status['fact_store']['backend'] == 'memory'
        assert status['queue']['healthy'] is True
        assert status['cache']['healthy'] is True
        assert provider.prompts == []
        assert await check_health(service) is True

    async def test_probe_goes_through_queue(self, service, provider):
        status = await get_health_status(service, probe_provider=True)

        assert status['provider']['healthy'] is True
        assert provider.prompts == [PROBE_PROMPT]
        assert service.queue.calls_started == 1

    async def test_stopped_queue_is_unhealthy(self, service):
        await service.queue.stop()
        assert await check_health(service) is False
