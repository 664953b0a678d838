"""
Admission control and single-worker dispatch to the generative provider.

Admitted work is served strictly FIFO by one worker task, so at most one
provider call is in flight per queue. Each call is retried with backoff and,
once attempts are exhausted, replaced by a keyword-matched fallback reply.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..utils.bedrock_llm import BedrockLLMError, UpstreamQuotaExceeded, UpstreamTransient
from ..utils.config import QueueConfig, RateLimitConfig
from ..utils.logging_config import get_logger
from .fallback import RATE_LIMIT_MESSAGE, select_fallback

logger = get_logger(__name__)


class RateLimitExceeded(Exception):
    """Local admission rejected the request. Never queued."""

    def __init__(self, message: str, retry_after: int, fallback_message: str = RATE_LIMIT_MESSAGE):
        super().__init__(message)
        self.retry_after = retry_after
        self.fallback_message = fallback_message


class QueueTimeout(Exception):
    """Request waited longer than the residency timeout before starting."""
    pass


class QueueClosed(Exception):
    """Queue was stopped before the request could run."""
    pass


class UpstreamExhausted(Exception):
    """All provider attempts failed and no fallback was requested."""
    pass


@dataclass
class RateLimitWindow:
    count: int
    reset_time: float


class AdmissionController:
    """Fixed windows per user plus one global window.

    Both windows are checked before either is incremented, so a rejected
    request never consumes quota.
    """

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._global = RateLimitWindow(count=0, reset_time=0.0)
        self._users: Dict[str, RateLimitWindow] = {}

    def _reject(self, scope: str, user_id: str) -> None:
        logger.warning(f'Rate limit exceeded ({scope}) for user {user_id}')
        raise RateLimitExceeded(f'{scope} rate limit exceeded', retry_after=self.config.retry_after)

    def admit(self, user_id: str) -> None:
        """
        Admit one request for user_id or reject it.

        Raises:
            RateLimitExceeded: If the global or the user window is full
        """
        now = self._clock()
        if now > self._global.reset_time:
            self._global = RateLimitWindow(count=0, reset_time=now + self.config.window_seconds)
        if self._global.count >= self.config.global_max_requests:
            self._reject('global', user_id)

        window = self._users.get(user_id)
        if window is None or now > window.reset_time:
            window = RateLimitWindow(count=0, reset_time=now + self.config.window_seconds)
            self._users[user_id] = window
        if window.count >= self.config.user_max_requests:
            self._reject('user', user_id)

        window.count += 1
        self._global.count += 1

    def prune(self) -> int:
        """Drop expired per-user windows. Returns the number removed."""
        now = self._clock()
        expired = [user_id for user_id, window in self._users.items() if now > window.reset_time]
        for user_id in expired:
            del self._users[user_id]
        return len(expired)

    def window_for(self, user_id: str) -> Optional[RateLimitWindow]:
        return self._users.get(user_id)


@dataclass
class GenerationResult:
    text: str
    is_failover: bool = False


@dataclass
class QueuedRequest:
    prompt: str
    user_message: str
    params: Dict[str, Any]
    enqueue_time: float
    future: asyncio.Future
    use_fallback: bool = True
    started: asyncio.Event = field(default_factory=asyncio.Event)
    chunks: Optional[asyncio.Queue] = None


class StreamingRequest:
    """Handle for a streamed request: iterate for chunks, then await result()."""

    def __init__(self, queue: 'ThrottledRequestQueue', request: QueuedRequest):
        self._queue = queue
        self._request = request

    async def __aiter__(self) -> AsyncIterator[str]:
        await self._queue._wait_started(self._request)
        while True:
            chunk = await self._request.chunks.get()
            if chunk is None:
                break
            yield chunk

    async def result(self) -> GenerationResult:
        return await self._request.future


class ThrottledRequestQueue:
    """Bounded FIFO of provider requests drained by a single worker task."""

    def __init__(self, provider, config: QueueConfig, request_timeout: float = 30.0):
        """
        Args:
            provider: Object exposing async generate() and async-iterator stream()
            config: QueueConfig with retry, pacing and residency settings
            request_timeout: Per-attempt provider timeout in seconds
        """
        self.provider = provider
        self.config = config
        self.request_timeout = request_timeout
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self.calls_started = 0

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.config.max_size)
        self._closed = False
        self._worker = asyncio.create_task(self._worker_loop())
        logger.info('Provider request queue started')

    async def stop(self) -> None:
        self._closed = True
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                request = self._queue.get_nowait()
                if not request.future.done():
                    request.future.set_exception(QueueClosed('Request queue stopped'))
                if request.chunks is not None:
                    request.chunks.put_nowait(None)
                # wake the caller so it sees QueueClosed instead of waiting out residency
                request.started.set()
        logger.info('Provider request queue stopped')

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def qsize(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _enqueue(self, prompt: str, user_message: str, params: Dict[str, Any], use_fallback: bool,
                 streaming: bool = False) -> QueuedRequest:
        if self._closed or self._queue is None:
            raise QueueClosed('Request queue is not running')
        loop = asyncio.get_running_loop()
        request = QueuedRequest(prompt=prompt,
                                user_message=user_message,
                                params=params,
                                enqueue_time=loop.time(),
                                future=loop.create_future(),
                                use_fallback=use_fallback,
                                chunks=asyncio.Queue() if streaming else None)
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            logger.warning(f'Provider queue full ({self.config.max_size} pending)')
            raise RateLimitExceeded('Provider queue is full', retry_after=int(self.config.residency_timeout))
        logger.debug(f'Enqueued provider request (pending: {self._queue.qsize()})')
        return request

    async def _wait_started(self, request: QueuedRequest) -> None:
        try:
            await asyncio.wait_for(request.started.wait(), timeout=self.config.residency_timeout)
        except asyncio.TimeoutError:
            request.future.cancel()
            logger.warning(f'Request exceeded queue residency timeout of {self.config.residency_timeout}s')
            raise QueueTimeout(f'Request did not start within {self.config.residency_timeout}s')

    async def submit(self, prompt: str, user_message: str = '', **params) -> GenerationResult:
        """
        Queue a completion and wait for it.

        Args:
            prompt: Full prompt text
            user_message: Original user message, used to pick a fallback
            **params: temperature, top_p, max_tokens

        Returns:
            GenerationResult, with is_failover set when the fallback was used

        Raises:
            QueueTimeout: If the request never started within the residency timeout
            QueueClosed: If the queue is stopped
            RateLimitExceeded: If the queue is full
        """
        request = self._enqueue(prompt, user_message, params, use_fallback=True)
        await self._wait_started(request)
        return await request.future

    async def complete(self, prompt: str, **params) -> str:
        """
        Queue a completion with no fallback.

        Raises:
            UpstreamExhausted: If every attempt failed
        """
        request = self._enqueue(prompt, '', params, use_fallback=False)
        await self._wait_started(request)
        result = await request.future
        return result.text

    def stream(self, prompt: str, user_message: str = '', **params) -> StreamingRequest:
        """Queue a streamed completion. The returned handle yields chunks in order."""
        request = self._enqueue(prompt, user_message, params, use_fallback=True, streaming=True)
        return StreamingRequest(self, request)

    async def _worker_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            request = await self._queue.get()
            processed = False
            try:
                if request.future.done():
                    logger.debug('Skipping cancelled provider request')
                    continue
                waited = loop.time() - request.enqueue_time
                if waited > self.config.residency_timeout:
                    logger.warning(f'Dropping stale provider request after {waited:.1f}s in queue')
                    request.future.cancel()
                    continue
                request.started.set()
                processed = True
                result = await self._process(request)
                if not request.future.done():
                    request.future.set_result(result)
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.set_exception(QueueClosed('Request queue stopped'))
                raise
            except Exception as e:
                logger.error(f'Provider request failed: {e}')
                if not request.future.done():
                    request.future.set_exception(e)
            finally:
                if request.chunks is not None:
                    request.chunks.put_nowait(None)
                self._queue.task_done()
            if processed and self.config.inter_request_delay > 0:
                await asyncio.sleep(self.config.inter_request_delay)

    async def _process(self, request: QueuedRequest) -> GenerationResult:
        emitted: List[str] = []
        try:
            text = await self._call_with_retry(request, emitted)
            return GenerationResult(text=text)
        except UpstreamExhausted:
            if not request.use_fallback:
                raise
            if emitted:
                # Partial stream already delivered; keep what the user saw
                return GenerationResult(text=''.join(emitted))
            fallback = select_fallback(request.user_message)
            logger.warning('Provider exhausted, returning fallback response')
            if request.chunks is not None:
                request.chunks.put_nowait(fallback)
            return GenerationResult(text=fallback, is_failover=True)

    async def _attempt(self, request: QueuedRequest, emitted: List[str]) -> str:
        if request.chunks is None:
            return await self.provider.generate(request.prompt, **request.params)
        async for chunk in self.provider.stream(request.prompt, **request.params):
            emitted.append(chunk)
            request.chunks.put_nowait(chunk)
        return ''.join(emitted)

    def backoff_delay(self, attempt: int) -> float:
        base = min(self.config.initial_retry_delay * (2**attempt), self.config.max_retry_delay)
        return base + random.uniform(0, self.config.retry_jitter)

    async def _call_with_retry(self, request: QueuedRequest, emitted: List[str]) -> str:
        attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            self.calls_started += 1
            try:
                logger.debug(f'Provider request attempt {attempt + 1}/{attempts}')
                text = await asyncio.wait_for(self._attempt(request, emitted), timeout=self.request_timeout)
                if not text or not text.strip():
                    raise UpstreamTransient('Empty response from provider')
                if attempt > 0:
                    logger.info(f'Provider request succeeded on attempt {attempt + 1}')
                return text
            except UpstreamQuotaExceeded as e:
                last_error = e
                delay = self.backoff_delay(attempt)
            except (BedrockLLMError, asyncio.TimeoutError) as e:
                last_error = e
                delay = self.config.error_retry_delay
            except Exception as e:
                logger.error(f'Unexpected provider error: {e!r}')
                last_error = e
                delay = self.config.error_retry_delay

            if emitted:
                break
            logger.warning(f'Provider attempt {attempt + 1}/{attempts} failed: {last_error!r}')
            if attempt < attempts - 1:
                logger.info(f'Retrying provider request in {delay:.2f}s')
                await asyncio.sleep(delay)

        raise UpstreamExhausted(f'Provider failed after {attempts} attempts: {last_error}') from last_error
