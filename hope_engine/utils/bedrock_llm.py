"""
Amazon Bedrock generative provider wrapper with error classification.

Each call is a single attempt. Retry, backoff and pacing belong to the
request queue so that only one provider call is ever in flight.
"""

import asyncio
import threading
from typing import AsyncIterator, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

QUOTA_ERROR_CODES = {'ThrottlingException', 'ServiceQuotaExceededException', 'TooManyRequestsException'}
QUOTA_ERROR_MARKERS = ('429', 'quota exceeded', 'rate_limit_exceeded', 'too many requests')


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class UpstreamQuotaExceeded(BedrockLLMError):
    """Provider rejected the call for quota or rate reasons."""
    pass


class UpstreamTransient(BedrockLLMError):
    """Any other provider failure, including empty output."""
    pass


def classify_error(error: Exception) -> BedrockLLMError:
    """Map a low-level provider exception onto the provider error taxonomy.

    Args:
        error: Exception raised by botocore or the network layer

    Returns:
        UpstreamQuotaExceeded for throttling-shaped errors, UpstreamTransient otherwise
    """
    if isinstance(error, BedrockLLMError):
        return error
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if code in QUOTA_ERROR_CODES or status == 429:
            return UpstreamQuotaExceeded(str(error))
    text = str(error).lower()
    if any(marker in text for marker in QUOTA_ERROR_MARKERS):
        return UpstreamQuotaExceeded(str(error))
    return UpstreamTransient(str(error))


class BedrockLLM:
    """Amazon Bedrock client exposing single-attempt async completion and streaming."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        # Per-attempt timeouts are enforced by the queue; the SDK must not retry on its own
        self.bedrock_runtime = client or boto3.client('bedrock-runtime',
                                                      region_name=config.region,
                                                      config=BotoConfig(connect_timeout=config.request_timeout,
                                                                        read_timeout=config.request_timeout,
                                                                        retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _request(self, prompt: str, temperature: Optional[float], top_p: Optional[float],
                 max_tokens: Optional[int]) -> dict:
        return {
            'modelId': self.model_id,
            'messages': [{'role': 'user', 'content': [{'text': prompt}]}],
            'inferenceConfig': {
                'maxTokens': max_tokens or self.config.max_tokens,
                'temperature': self.config.temperature if temperature is None else temperature,
                'topP': self.config.top_p if top_p is None else top_p,
            },
        }

    def _converse(self, request: dict) -> str:
        response = self.bedrock_runtime.converse(**request)
        blocks = response.get('output', {}).get('message', {}).get('content', [])
        return ''.join(block.get('text', '') for block in blocks)

    async def generate(self,
                       prompt: str,
                       temperature: Optional[float] = None,
                       top_p: Optional[float] = None,
                       max_tokens: Optional[int] = None) -> str:
        """
        Generate a single completion.

        Args:
            prompt: Full prompt text
            temperature: Sampling temperature (config default if None)
            top_p: Nucleus sampling mass (config default if None)
            max_tokens: Maximum tokens to generate (config default if None)

        Returns:
            Generated text, possibly empty

        Raises:
            UpstreamQuotaExceeded: If the provider throttled the call
            UpstreamTransient: For any other provider failure
        """
        request = self._request(prompt, temperature, top_p, max_tokens)
        try:
            text = await asyncio.to_thread(self._converse, request)
            logger.debug(f'Bedrock LLM response generated (length: {len(text)})')
            return text
        except (ClientError, BotoCoreError) as e:
            logger.warning(f'Bedrock LLM call failed: {e}')
            raise classify_error(e) from e
        except Exception as e:
            logger.error(f'Unexpected Bedrock LLM error: {e}')
            raise UpstreamTransient(f'Unexpected Bedrock LLM error: {e}') from e

    async def stream(self,
                     prompt: str,
                     temperature: Optional[float] = None,
                     top_p: Optional[float] = None,
                     max_tokens: Optional[int] = None) -> AsyncIterator[str]:
        """
        Stream a completion chunk by chunk via converse_stream.

        The blocking event stream is consumed on a worker thread and handed
        back to the event loop through an asyncio.Queue. Closing the generator
        early stops the worker thread at the next event.
        """
        request = self._request(prompt, temperature, top_p, max_tokens)
        loop = asyncio.get_running_loop()
        chunks: asyncio.Queue = asyncio.Queue()
        done = object()
        stopped = threading.Event()

        def pump() -> None:
            try:
                stream = self.bedrock_runtime.converse_stream(**request).get('stream')
                if stream:
                    for event in stream:
                        if stopped.is_set():
                            stream.close()
                            return
                        if 'contentBlockDelta' in event:
                            text = event['contentBlockDelta']['delta'].get('text', '')
                            if text:
                                loop.call_soon_threadsafe(chunks.put_nowait, text)
                loop.call_soon_threadsafe(chunks.put_nowait, done)
            except Exception as e:
                loop.call_soon_threadsafe(chunks.put_nowait, e)

        loop.run_in_executor(None, pump)
        try:
            while True:
                item = await chunks.get()
                if item is done:
                    break
                if isinstance(item, Exception):
                    logger.warning(f'Bedrock LLM stream failed: {item}')
                    raise classify_error(item) from item
                yield item
        finally:
            stopped.set()

