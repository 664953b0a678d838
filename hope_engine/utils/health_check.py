"""
Health check utilities for the application.
"""

from typing import Any, Dict

from .logging_config import get_logger

logger = get_logger(__name__)

PROBE_PROMPT = "Respond with just 'OK'."


async def check_health(service, probe_provider: bool = False) -> bool:
    """Check the health of all engine components.

    Args:
        service: Running ChatService
        probe_provider: Send a tiny completion through the request queue

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = await get_health_status(service, probe_provider)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All engine components are healthy')
        else:
            logger.warning('Some engine components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


async def get_health_status(service, probe_provider: bool = False) -> Dict[str, Any]:
    """Get detailed health status of provider, fact store, queue and cache.

    The provider probe goes through the request queue so it never adds a
    second in-flight provider call.

    Args:
        service: Running ChatService
        probe_provider: Send a tiny completion through the request queue

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}
    model_id = service.config.bedrock_llm.model_id

    if probe_provider:
        try:
            text = await service.queue.complete(PROBE_PROMPT, temperature=0.0, max_tokens=10)
            health_status['provider'] = {'healthy': bool(text.strip()), 'service': 'Amazon Bedrock LLM', 'model': model_id}
        except Exception as e:
            health_status['provider'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}
    else:
        health_status['provider'] = {'healthy': True, 'service': 'Amazon Bedrock LLM', 'model': model_id, 'probed': False}

    try:
        store_healthy = await service.fact_store.health_check()
        health_status['fact_store'] = {
            'healthy': store_healthy,
            'service': type(service.fact_store).__name__,
            'backend': service.config.fact_store.backend
        }
    except Exception as e:
        health_status['fact_store'] = {'healthy': False, 'service': type(service.fact_store).__name__, 'error': str(e)}

    queue = service.queue
    health_status['queue'] = {
        'healthy': queue.running,
        'pending': queue.qsize(),
        'max_size': service.config.queue.max_size,
        'calls_started': queue.calls_started
    }

    cache_stats = service.cache.stats()
    health_status['cache'] = {'healthy': cache_stats['sweeper_running'], **cache_stats}

    return health_status
