"""
MCP Interface Layer using fastmcp for the chat backend collaborators.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import ChatRequest
from .services.chat_service import ChatService
from .services.context_assembly import ValidationError
from .services.stores import (FactStore, InMemoryFactStore, InMemoryMessageStore, InMemoryProfileStore,
                              InMemoryUserDataStore)
from .utils.bedrock_llm import BedrockLLM
from .utils.config import AppConfig, config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger
from .utils.opensearch_client import OpenSearchFactStore

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Hope Context Engine')
_service: Optional[ChatService] = None


def build_fact_store(app_config: AppConfig) -> FactStore:
    if app_config.fact_store.backend == 'opensearch':
        return OpenSearchFactStore(app_config.opensearch)
    return InMemoryFactStore()


def build_service(app_config: AppConfig = config) -> ChatService:
    """Wire the chat service with the Bedrock provider and the configured stores."""
    return ChatService(app_config,
                       provider=BedrockLLM(app_config.bedrock_llm),
                       message_store=InMemoryMessageStore(),
                       fact_store=build_fact_store(app_config),
                       profile_store=InMemoryProfileStore(),
                       user_data_store=InMemoryUserDataStore())


async def get_service() -> ChatService:
    global _service
    if _service is None:
        _service = build_service()
        if isinstance(_service.fact_store, OpenSearchFactStore):
            await _service.fact_store.create_index_if_not_exists()
        await _service.start()
    return _service


async def run_chat(service: ChatService, request: ChatRequest) -> Dict[str, Any]:
    """Answer one request, collecting streamed chunks when request.stream is set."""
    if not request.stream:
        return (await service.send(request)).to_dict()
    chunks: List[str] = []
    response = None
    async for event in service.stream(request):
        if event.type == 'chunk':
            chunks.append(event.content)
        else:
            response = event.response
    payload = response.to_dict()
    payload['chunks'] = chunks
    return payload


@mcp.tool()
async def chat(user_id: str,
               session_id: str,
               message: str,
               profile: Optional[Dict[str, Any]] = None,
               recent_fact_ids: Optional[List[str]] = None,
               remember: bool = False,
               stream: bool = False,
               memory_version: Optional[str] = None) -> Dict[str, Any]:
    """Send one chat message and get Hope's reply.

    Args:
        user_id: User ID
        session_id: Chat session ID
        message: User message
        profile: Optional profile changes (goals, challenges, communicationStyle, experienceLevel, bio)
        recent_fact_ids: Fact IDs to force into the context
        remember: Store the message as an explicit memory
        stream: Generate through the streaming path and return the chunks with the reply
        memory_version: Profile version token; a new token bypasses cached context

    Returns:
        Response payload with camelCase keys
    """
    service = await get_service()
    request = ChatRequest(user_id=user_id,
                          session_id=session_id,
                          message=message,
                          profile_delta=profile,
                          recent_fact_ids=list(recent_fact_ids or []),
                          remember=remember,
                          stream=stream,
                          memory_version=memory_version)
    try:
        payload = await run_chat(service, request)
    except ValidationError as e:
        logger.warning(f'Rejected chat request for user {user_id}: {e.errors}')
        return {'success': False, 'error': 'Validation failed', 'errors': e.errors}

    logger.debug(f"MCP chat answered user {user_id} (failover: {payload['isFailover']})")
    return payload


@mcp.tool()
async def list_memories(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """List a user's long-term memory facts, most important first.

    Args:
        user_id: User ID
        limit: Maximum number of facts to return (default: 20)

    Returns:
        List of fact dictionaries
    """
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')
    service = await get_service()
    return await service.list_memories(user_id, limit)


@mcp.tool()
async def invalidate_memory_cache(user_id: str) -> Dict[str, Any]:
    """Drop cached context for a user after a profile edit.

    Args:
        user_id: User ID

    Returns:
        Number of cache entries removed
    """
    service = await get_service()
    return {'success': True, 'invalidated': service.invalidate(user_id)}


@mcp.tool()
async def end_session(user_id: str, session_id: str, session_length: float = 0.0,
                      feedback: Optional[str] = None) -> Dict[str, Any]:
    """Analyze a finished session for long-term facts and engagement."""
    service = await get_service()
    stored = await service.end_session(user_id, session_id, session_length, feedback)
    return {'success': True, 'factsStored': stored}


@mcp.tool()
async def health(probe_provider: bool = False) -> Dict[str, Any]:
    """Report provider, fact store, queue and cache health."""
    service = await get_service()
    return await get_health_status(service, probe_provider)


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
