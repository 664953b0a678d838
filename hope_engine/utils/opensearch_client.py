"""
OpenSearch-backed long-term fact store.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import FactCategory, FactType, LongTermMemoryFact
from ..services.stores import FactStore, StorageError, sort_facts
from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import from_iso, to_iso

logger = get_logger(__name__)

SEARCH_SIZE = 1000

FACT_INDEX_BODY = {
    'mappings': {
        'properties': {
            'id': {
                'type': 'keyword'
            },
            'user_id': {
                'type': 'keyword'
            },
            'type': {
                'type': 'keyword'
            },
            'category': {
                'type': 'keyword'
            },
            'content': {
                'type': 'text'
            },
            'importance': {
                'type': 'integer'
            },
            'tags': {
                'type': 'keyword'
            },
            'context': {
                'type': 'text'
            },
            'timestamp': {
                'type': 'date'
            }
        }
    }
}


class OpenSearchError(StorageError):
    """Custom exception for OpenSearch errors."""
    pass


def fact_to_document(fact: LongTermMemoryFact) -> Dict[str, Any]:
    return {
        'id': fact.id,
        'user_id': fact.user_id,
        'type': fact.type.value,
        'category': fact.category.value,
        'content': fact.content,
        'importance': fact.importance,
        'tags': list(fact.tags),
        'context': fact.context,
        'timestamp': to_iso(fact.timestamp),
    }


def document_to_fact(document: Dict[str, Any]) -> LongTermMemoryFact:
    return LongTermMemoryFact(id=document['id'],
                              user_id=document['user_id'],
                              type=FactType(document['type']),
                              content=document.get('content', ''),
                              importance=int(document.get('importance', 5)),
                              timestamp=from_iso(document['timestamp']),
                              tags=list(document.get('tags') or []),
                              context=document.get('context') or '',
                              category=FactCategory(document.get('category', FactCategory.NOTES.value)))


class OpenSearchFactStore(FactStore):
    """Fact store on OpenSearch Serverless with AWS SigV4 authentication.

    The opensearch-py client is synchronous; every call runs in a worker thread.
    """

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize the fact store.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client, mainly for tests
        """
        self.config = config
        self.index_name = config.index_name
        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]
            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
            logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')
        self.client = client

    async def _call(self, description: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except OpenSearchException as e:
            logger.error(f'Error during OpenSearch {description}: {e}')
            raise OpenSearchError(f'OpenSearch {description} failed: {e}') from e

    async def create_index_if_not_exists(self) -> str:
        """
        Create the fact index if needed.

        Returns:
            'exists', 'created' or 'failed'
        """
        if await self._call('index lookup', self.client.indices.exists, index=self.index_name):
            logger.debug(f'Index {self.index_name} already exists')
            return 'exists'
        response = await self._call('index creation', self.client.indices.create, index=self.index_name,
                                    body=FACT_INDEX_BODY)
        if response.get('acknowledged', False):
            logger.info(f'Created index {self.index_name}')
            return 'created'
        return 'failed'

    async def _search(self, user_id: str, must: List[Dict[str, Any]], size: int) -> List[LongTermMemoryFact]:
        body = {
            'size': size,
            'query': {
                'bool': {
                    'must': must,
                    'filter': [{
                        'term': {
                            'user_id': user_id
                        }
                    }]
                }
            },
            'sort': [{
                'importance': {
                    'order': 'desc'
                }
            }, {
                'timestamp': {
                    'order': 'desc'
                }
            }]
        }
        response = await self._call('search', self.client.search, index=self.index_name, body=body)
        facts = [document_to_fact(hit['_source']) for hit in response['hits']['hits']]
        logger.debug(f'Fact search returned {len(facts)} results for user {user_id}')
        return facts

    async def list_facts(self, user_id: str, limit: Optional[int] = None) -> List[LongTermMemoryFact]:
        facts = sort_facts(await self._search(user_id, [{'match_all': {}}], limit or SEARCH_SIZE))
        return facts[:limit] if limit is not None else facts

    async def get_facts(self, user_id: str, fact_ids: Sequence[str]) -> List[LongTermMemoryFact]:
        if not fact_ids:
            return []
        return await self._search(user_id, [{'terms': {'id': list(fact_ids)}}], len(fact_ids))

    async def find_similar(self, user_id: str, prefix: str) -> Optional[LongTermMemoryFact]:
        needle = prefix.lower()
        for fact in await self.list_facts(user_id):
            if needle in fact.content.lower():
                return fact
        return None

    async def insert(self, fact: LongTermMemoryFact) -> None:
        response = await self._call('index', self.client.index, index=self.index_name, id=fact.id,
                                    body=fact_to_document(fact))
        if response.get('result') not in ('created', 'updated'):
            logger.warning(f'Unexpected result indexing fact {fact.id}: {response}')

    async def update(self, fact: LongTermMemoryFact) -> None:
        await self.insert(fact)

    async def delete(self, user_id: str, fact_ids: Sequence[str]) -> int:
        deleted = 0
        for fact_id in fact_ids:
            try:
                response = await asyncio.to_thread(self.client.delete, index=self.index_name, id=fact_id)
            except NotFoundError:
                logger.warning(f'Fact {fact_id} not found for deletion')
                continue
            except OpenSearchException as e:
                logger.error(f'Error deleting fact {fact_id}: {e}')
                raise OpenSearchError(f'Failed to delete fact: {e}') from e
            if response.get('result') == 'deleted':
                deleted += 1
        logger.debug(f'Deleted {deleted} facts for user {user_id}')
        return deleted

    async def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is reachable, False otherwise
        """
        try:
            response = await asyncio.to_thread(self.client.indices.exists, index=self.index_name)
            return response in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
