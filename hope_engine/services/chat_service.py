"""
Chat orchestration: admission, context assembly, provider dispatch,
persistence and background long-term memory extraction.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from ..models.core import ChatRequest, ChatResponse, ConversationMessage, MemoryBlob, ProfileDelta, Role, StreamEvent
from ..utils.config import AppConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .context_assembly import (ContextAssembler, ValidationError, assemble_prompt, format_previous_sessions,
                               memory_context, suggestions, validate_profile_delta)
from .fact_extraction import (FORGET_PROMPT_REPLY, FORGET_REPLY, REMEMBER_DECLINED_REPLY, REMEMBER_PROMPT_REPLY,
                              REMEMBER_REPLY, FactExtractionPipeline, MemoryCommand, build_user_summary_prompt,
                              parse_memory_command)
from .fallback import ensure_text, select_fallback
from .history_compactor import SUMMARY_MAX_TOKENS, SUMMARY_TEMPERATURE, compact_and_summarize, format_for_prompt
from .memory_cache import MemoryCache
from .personalization import build_enforcement_rules, build_profile_summary, decay, track_engagement, verbosity_directive
from .request_queue import (AdmissionController, GenerationResult, QueueClosed, QueueTimeout, RateLimitExceeded,
                            ThrottledRequestQueue, UpstreamExhausted)
from .stores import FactStore, MessageStore, ProfileStore, StorageError, UserDataStore

logger = get_logger(__name__)

PREVIOUS_SESSION_LIMIT = 2
# Regenerate the user summary every this many persisted session messages
USER_SUMMARY_INTERVAL = 10


@dataclass
class PreparedTurn:
    """Everything needed to dispatch one chat turn to the provider."""
    request: ChatRequest
    blob: MemoryBlob
    prompt: str
    personalization_version: int
    received_at: datetime


class ChatService:
    """Owns the request queue, memory cache and admission windows for one process."""

    def __init__(self,
                 app_config: AppConfig,
                 provider,
                 message_store: MessageStore,
                 fact_store: FactStore,
                 profile_store: ProfileStore,
                 user_data_store: UserDataStore,
                 clock: Callable[[], datetime] = utc_now,
                 monotonic: Callable[[], float] = time.monotonic):
        """
        Args:
            app_config: Application configuration
            provider: Generative provider with async generate() and stream()
            message_store: Session history collaborator
            fact_store: Long-term fact collaborator
            profile_store: Profile and personalization collaborator
            user_data_store: Activity snapshot collaborator
            clock: Wall clock for message and fact timestamps
            monotonic: Clock for cache ages and admission windows
        """
        self.config = app_config
        self.provider = provider
        self.message_store = message_store
        self.fact_store = fact_store
        self.profile_store = profile_store
        self._clock = clock
        self.admission = AdmissionController(app_config.rate_limit, clock=monotonic)
        self.queue = ThrottledRequestQueue(provider, app_config.queue,
                                           request_timeout=app_config.bedrock_llm.request_timeout)
        self.cache = MemoryCache(app_config.cache, clock=monotonic)
        self.assembler = ContextAssembler(profile_store, fact_store, user_data_store, self.cache, clock=clock)
        self.facts = FactExtractionPipeline(fact_store, app_config.fact_store, on_change=self.invalidate, clock=clock)
        self._background: Set[asyncio.Task] = set()
        self._housekeeping: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.queue.start()
        await self.cache.start()
        if self._housekeeping is None:
            self._housekeeping = asyncio.create_task(self._housekeeping_loop())
        logger.info('Chat service started')

    async def stop(self) -> None:
        await self.drain()
        await self.queue.stop()
        await self.cache.stop()
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            try:
                await self._housekeeping
            except asyncio.CancelledError:
                pass
            self._housekeeping = None
        logger.info('Chat service stopped')

    async def _housekeeping_loop(self) -> None:
        """Drop expired per-user admission windows once per window length."""
        interval = self.config.rate_limit.window_seconds
        while True:
            try:
                await asyncio.sleep(interval)
                pruned = self.admission.prune()
                if pruned:
                    logger.debug(f'Pruned {pruned} expired rate limit windows')
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f'Rate limit housekeeping failed: {e}')

    async def drain(self) -> None:
        """Wait for background fact extraction started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def invalidate(self, user_id: str) -> int:
        return self.cache.invalidate(user_id)

    async def list_memories(self, user_id: str, limit: Optional[int] = None) -> List[Dict]:
        facts = await self.fact_store.list_facts(user_id, limit=limit)
        return [fact.to_dict() for fact in facts]

    def _validate(self, request: ChatRequest) -> ProfileDelta:
        errors = {}
        if not request.user_id:
            errors['userId'] = 'userId is required'
        if not request.session_id:
            errors['sessionId'] = 'sessionId is required'
        if not (request.message or '').strip():
            errors['message'] = 'message is required'
        if errors:
            raise ValidationError(errors)
        return validate_profile_delta(request.profile_delta, self.config.profile_limits)

    def _rate_limited(self, request: ChatRequest, error: RateLimitExceeded) -> ChatResponse:
        return ChatResponse(response=error.fallback_message,
                            session_id=request.session_id,
                            is_failover=True,
                            retry_after=error.retry_after)

    def _message(self, role: Role, content: str) -> ConversationMessage:
        return ConversationMessage(role=role, content=content, timestamp=self._clock())

    async def _persist(self, request: ChatRequest, user_message: ConversationMessage, reply: str) -> None:
        try:
            await self.message_store.append_messages(request.user_id, request.session_id,
                                                     [user_message, self._message(Role.ASSISTANT, reply)])
        except StorageError as e:
            logger.error(f'Failed to persist exchange for session {request.session_id}: {e}')

    async def _run_memory_command(self, request: ChatRequest, command: MemoryCommand) -> ChatResponse:
        user_message = self._message(Role.USER, request.message)
        if command.action == 'forget':
            if command.forget_all or command.subject:
                await self.facts.forget(request.user_id, command.subject, forget_all=command.forget_all)
                reply = FORGET_REPLY
            else:
                reply = FORGET_PROMPT_REPLY
        elif not command.subject:
            reply = REMEMBER_PROMPT_REPLY
        else:
            history = await self.message_store.get_messages(request.session_id)
            decision = await self.facts.remember(request.user_id, command.subject,
                                                 [message.content for message in history])
            reply = REMEMBER_REPLY if decision.should_store else REMEMBER_DECLINED_REPLY

        await self._persist(request, user_message, reply)
        logger.info(f'Handled {command.action} memory command for user {request.user_id}')
        return ChatResponse(response=reply, session_id=request.session_id, memory_action=command.action)

    async def _personalization(self, user_id: str):
        profile = await self.profile_store.get_personalization(user_id)
        return decay(profile, self._clock()) if profile else None

    async def _prepare(self, request: ChatRequest, delta: ProfileDelta) -> PreparedTurn:
        received_at = self._clock()
        blob = await self.assembler.get_blob(request.user_id, request.memory_version)
        blob = await self.assembler.merge(blob, delta, request.recent_fact_ids)

        history_config = self.config.history
        history = await self.message_store.get_messages(request.session_id)
        compacted = await compact_and_summarize(history,
                                                history_config.max_tokens,
                                                history_config.max_messages,
                                                summarizer=self.queue.complete,
                                                threshold=history_config.summary_threshold)
        if compacted.truncated_count:
            logger.info(f'Truncated {compacted.truncated_count} messages from session {request.session_id} '
                        f'for the prompt ({compacted.total_tokens} tokens kept)')
        conversation = format_for_prompt(compacted.summary, compacted.recent_messages)

        previous = await self.message_store.get_previous_sessions(request.user_id, request.session_id,
                                                                  limit=PREVIOUS_SESSION_LIMIT)
        previous_sessions = format_previous_sessions(previous, history_config.previous_session_max_tokens,
                                                     history_config.previous_session_max_messages)

        decayed = await self._personalization(request.user_id)
        personalization = build_profile_summary(decayed) + build_enforcement_rules(decayed)
        personalization += '\n' + verbosity_directive(decayed)

        prompt = assemble_prompt(blob, request.message, conversation, previous_sessions, personalization,
                                 now=received_at)
        return PreparedTurn(request=request,
                            blob=blob,
                            prompt=prompt,
                            personalization_version=decayed.version if decayed else 1,
                            received_at=received_at)

    def _generation_params(self) -> Dict[str, float]:
        llm = self.config.bedrock_llm
        return {'temperature': llm.temperature, 'top_p': llm.top_p, 'max_tokens': llm.max_tokens}

    def _schedule_extraction(self, request: ChatRequest) -> None:
        task = asyncio.create_task(self._extract(request))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _extract(self, request: ChatRequest) -> None:
        try:
            history = await self.message_store.get_messages(request.session_id)
            decision = await self.facts.process(request.user_id,
                                                request.message, [message.content for message in history],
                                                explicit=request.remember,
                                                context=f'session:{request.session_id}')
            logger.debug(f'Fact filter for user {request.user_id}: {decision.reason}')
            if len(history) >= USER_SUMMARY_INTERVAL and len(history) % USER_SUMMARY_INTERVAL == 0:
                await self._summarize_user(request.user_id, history)
        except StorageError as e:
            logger.error(f'Fact extraction failed for user {request.user_id}: {e}')

    async def _summarize_user(self, user_id: str, history: List[ConversationMessage]) -> None:
        existing = await self.facts.user_summary(user_id)
        prompt = build_user_summary_prompt(history, existing.content if existing else None)
        try:
            summary = await self.queue.complete(prompt, temperature=SUMMARY_TEMPERATURE, max_tokens=SUMMARY_MAX_TOKENS)
        except (UpstreamExhausted, QueueTimeout, QueueClosed, RateLimitExceeded) as e:
            logger.warning(f'User summary for user {user_id} was not generated: {e}')
            return
        await self.facts.store_user_summary(user_id, summary)

    async def _finish(self, turn: PreparedTurn, result: GenerationResult) -> ChatResponse:
        request = turn.request
        reply = ensure_text(result.text)
        await self._persist(request, ConversationMessage(role=Role.USER, content=request.message,
                                                         timestamp=turn.received_at), reply)
        self._schedule_extraction(request)
        return ChatResponse(response=reply,
                            session_id=request.session_id,
                            suggestions=suggestions(turn.blob),
                            is_failover=result.is_failover,
                            memory_context=memory_context(turn.blob),
                            personalization_version=turn.personalization_version)

    async def send(self, request: ChatRequest) -> ChatResponse:
        """
        Handle one chat turn and return the response.

        Provider failures degrade to a fallback reply; only malformed input raises.

        Raises:
            ValidationError: If required fields or profile changes are invalid
        """
        delta = self._validate(request)
        try:
            self.admission.admit(request.user_id)
        except RateLimitExceeded as e:
            return self._rate_limited(request, e)

        command = parse_memory_command(request.message)
        if command is not None:
            return await self._run_memory_command(request, command)

        turn = await self._prepare(request, delta)
        try:
            result = await self.queue.submit(turn.prompt, user_message=request.message, **self._generation_params())
        except RateLimitExceeded as e:
            return self._rate_limited(request, e)
        except (QueueTimeout, QueueClosed) as e:
            logger.warning(f'Provider request for session {request.session_id} did not run: {e}')
            result = GenerationResult(text=select_fallback(request.message), is_failover=True)
        return await self._finish(turn, result)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """
        Handle one chat turn as a stream of chunk events followed by one complete event.

        The exchange is persisted after the last chunk, as in send().

        Raises:
            ValidationError: If required fields or profile changes are invalid
        """
        delta = self._validate(request)
        try:
            self.admission.admit(request.user_id)
        except RateLimitExceeded as e:
            response = self._rate_limited(request, e)
            yield StreamEvent(type='chunk', content=response.response)
            yield StreamEvent(type='complete', response=response)
            return

        command = parse_memory_command(request.message)
        if command is not None:
            response = await self._run_memory_command(request, command)
            yield StreamEvent(type='chunk', content=response.response)
            yield StreamEvent(type='complete', response=response)
            return

        turn = await self._prepare(request, delta)
        try:
            handle = self.queue.stream(turn.prompt, user_message=request.message, **self._generation_params())
        except RateLimitExceeded as e:
            response = self._rate_limited(request, e)
            yield StreamEvent(type='chunk', content=response.response)
            yield StreamEvent(type='complete', response=response)
            return

        try:
            async for chunk in handle:
                yield StreamEvent(type='chunk', content=chunk)
            result = await handle.result()
        except (QueueTimeout, QueueClosed) as e:
            logger.warning(f'Streamed provider request for session {request.session_id} did not run: {e}')
            result = GenerationResult(text=select_fallback(request.message), is_failover=True)
            yield StreamEvent(type='chunk', content=result.text)

        response = await self._finish(turn, result)
        yield StreamEvent(type='complete', response=response)

    async def end_session(self,
                          user_id: str,
                          session_id: str,
                          session_length: float = 0.0,
                          feedback: Optional[str] = None) -> int:
        """
        Batch-analyze a finished session and fold its engagement into personalization.

        Args:
            user_id: Session owner
            session_id: Finished session
            session_length: Session length in minutes
            feedback: Optional positive | negative | neutral

        Returns:
            Number of facts stored or updated
        """
        messages = await self.message_store.get_messages(session_id)
        if not messages:
            return 0
        stored = await self.facts.process_session(user_id, messages)

        profile = await self.profile_store.get_personalization(user_id)
        if profile is not None:
            updated = track_engagement(profile, session_length, len(messages), feedback, now=self._clock())
            try:
                await self.profile_store.save_personalization(updated)
            except StorageError as e:
                logger.error(f'Failed to save engagement metrics for user {user_id}: {e}')
            self.invalidate(user_id)
        logger.info(f'Ended session {session_id} for user {user_id}: {len(stored)} facts stored')
        return len(stored)
