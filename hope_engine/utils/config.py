"""
Configuration management for the provider, throttling, cache and memory settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock generative provider."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    top_p: float
    request_timeout: float


@dataclass
class QueueConfig:
    """Configuration for the single-worker provider queue and its retry policy."""
    max_retries: int
    initial_retry_delay: float
    max_retry_delay: float
    retry_jitter: float
    error_retry_delay: float
    inter_request_delay: float
    residency_timeout: float
    max_size: int


@dataclass
class RateLimitConfig:
    """Configuration for per-user and global admission windows."""
    window_seconds: float
    user_max_requests: int
    global_max_requests: int
    retry_after: int


@dataclass
class CacheConfig:
    """Configuration for the assembled memory blob cache."""
    ttl_seconds: float
    max_entries: int
    sweep_interval_seconds: float


@dataclass
class HistoryConfig:
    """Token and message budgets for conversation history in prompts."""
    max_tokens: int
    max_messages: int
    previous_session_max_tokens: int
    previous_session_max_messages: int
    summary_threshold: int


@dataclass
class ProfileLimitsConfig:
    """Limits applied to caller-supplied profile deltas."""
    max_goals: int
    max_challenges: int
    max_str_len: int
    max_bio_len: int


@dataclass
class FactStoreConfig:
    """Configuration for long-term fact storage."""
    backend: str
    max_facts_per_user: int
    dedupe_prefix: int
    content_max_length: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    queue: QueueConfig
    rate_limit: RateLimitConfig
    cache: CacheConfig
    history: HistoryConfig
    profile_limits: ProfileLimitsConfig
    fact_store: FactStoreConfig
    opensearch: OpenSearchConfig
    mcp: MCPConfig


def _sweep_interval(ttl_seconds: float, override: Optional[str]) -> float:
    if override:
        return float(override)
    return max(60.0, ttl_seconds / 5)


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.8')),
                                          top_p=float(os.getenv('BEDROCK_LLM_TOP_P', '0.95')),
                                          request_timeout=float(os.getenv('BEDROCK_LLM_REQUEST_TIMEOUT', '30')))

    # Provider queue configuration
    queue_config = QueueConfig(max_retries=int(os.getenv('AI_MAX_RETRIES', '2')),
                               initial_retry_delay=float(os.getenv('AI_INITIAL_RETRY_DELAY', '0.8')),
                               max_retry_delay=float(os.getenv('AI_MAX_RETRY_DELAY', '30')),
                               retry_jitter=float(os.getenv('AI_RETRY_JITTER', '1.0')),
                               error_retry_delay=float(os.getenv('AI_ERROR_RETRY_DELAY', '1.0')),
                               inter_request_delay=float(os.getenv('AI_INTER_REQUEST_DELAY', '1.0')),
                               residency_timeout=float(os.getenv('AI_QUEUE_TIMEOUT', '300')),
                               max_size=int(os.getenv('AI_QUEUE_MAX_SIZE', '100')))

    # Admission windows
    rate_limit_config = RateLimitConfig(window_seconds=float(os.getenv('RATE_LIMIT_WINDOW_SECONDS', '60')),
                                        user_max_requests=int(os.getenv('RATE_LIMIT_USER_MAX', '15')),
                                        global_max_requests=int(os.getenv('RATE_LIMIT_GLOBAL_MAX', '20')),
                                        retry_after=int(os.getenv('RATE_LIMIT_RETRY_AFTER', '60')))

    # Memory cache configuration
    ttl_seconds = float(os.getenv('MEMORY_CACHE_TTL_SECONDS', '300'))
    cache_config = CacheConfig(ttl_seconds=ttl_seconds,
                               max_entries=int(os.getenv('MEMORY_CACHE_MAX_ENTRIES', '200')),
                               sweep_interval_seconds=_sweep_interval(ttl_seconds, os.getenv('MEMORY_CACHE_SWEEP_SECONDS')))

    history_config = HistoryConfig(max_tokens=int(os.getenv('HISTORY_MAX_TOKENS', '4000')),
                                   max_messages=int(os.getenv('HISTORY_MAX_MESSAGES', '40')),
                                   previous_session_max_tokens=int(os.getenv('PREVIOUS_SESSION_MAX_TOKENS', '1000')),
                                   previous_session_max_messages=int(os.getenv('PREVIOUS_SESSION_MAX_MESSAGES', '15')),
                                   summary_threshold=int(os.getenv('HISTORY_SUMMARY_THRESHOLD', '0')))

    profile_limits_config = ProfileLimitsConfig(max_goals=int(os.getenv('MAX_GOALS', '10')),
                                                max_challenges=int(os.getenv('MAX_CHALLENGES', '10')),
                                                max_str_len=int(os.getenv('MAX_PROFILE_STR_LEN', '200')),
                                                max_bio_len=int(os.getenv('MAX_BIO_LEN', '500')))

    fact_store_config = FactStoreConfig(backend=os.getenv('FACT_STORE_BACKEND', 'memory'),
                                        max_facts_per_user=int(os.getenv('MAX_FACTS_PER_USER', '100')),
                                        dedupe_prefix=int(os.getenv('FACT_DEDUPE_PREFIX', '50')),
                                        content_max_length=int(os.getenv('FACT_CONTENT_MAX', '200')))

    # Fact store search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'hope_long_term_memory'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     queue=queue_config,
                     rate_limit=rate_limit_config,
                     cache=cache_config,
                     history=history_config,
                     profile_limits=profile_limits_config,
                     fact_store=fact_store_config,
                     opensearch=opensearch_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
