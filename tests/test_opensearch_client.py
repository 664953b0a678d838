"""
Tests for the OpenSearch fact store against a mocked client.
"""

from unittest.mock import MagicMock

import pytest
from conftest import BASE_TIME
from opensearchpy.exceptions import NotFoundError, TransportError

from hope_engine.models.core import FactCategory, FactType, LongTermMemoryFact
from hope_engine.services.stores import StorageError
from hope_engine.utils.config import OpenSearchConfig
from hope_engine.utils.opensearch_client import (FACT_INDEX_BODY, OpenSearchError, OpenSearchFactStore,
                                                 document_to_fact, fact_to_document)


def make_fact(fact_id='f1', importance=5, content='Runs on Sundays'):
    return LongTermMemoryFact(id=fact_id,
                              user_id='u1',
                              type=FactType.COPING_PATTERN,
                              content=content,
                              importance=importance,
                              timestamp=BASE_TIME,
                              tags=['pattern'],
                              context='session:s1',
                              category=FactCategory.COPING)


def hits(*facts):
    return {'hits': {'hits': [{'_source': fact_to_document(fact)} for fact in facts]}}


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client):
    config = OpenSearchConfig(endpoint='https://example.aoss.amazonaws.com', port=443, region='us-east-1',
                              index_name='facts')
    return OpenSearchFactStore(config, client=client)


class TestDocuments:

    def test_document_keeps_every_field(self):
        fact = make_fact()
        document = fact_to_document(fact)

        assert document['user_id'] == 'u1'
        assert document['type'] == 'coping_pattern'
        assert document['category'] == 'Coping'
        assert document['timestamp'] == BASE_TIME.isoformat()
        assert document_to_fact(document) == fact


class TestOpenSearchFactStore:

    async def test_existing_index_is_left_alone(self, store, client):
        client.indices.exists.return_value = True

        assert await store.create_index_if_not_exists() == 'exists'
        client.indices.create.assert_not_called()

    async def test_missing_index_is_created(self, store, client):
        client.indices.exists.return_value = False
        client.indices.create.return_value = {'acknowledged': True}

        assert await store.create_index_if_not_exists() == 'created'
        client.indices.create.assert_called_once_with(index='facts', body=FACT_INDEX_BODY)

    async def test_list_facts_filters_by_user_and_orders_by_importance(self, store, client):
        client.search.return_value = hits(make_fact('low', 3), make_fact('high', 8))

        facts = await store.list_facts('u1', limit=5)
        body = client.search.call_args.kwargs['body']

        assert [fact.id for fact in facts] == ['high', 'low']
        assert body['size'] == 5
        assert body['query']['bool']['filter'] == [{'term': {'user_id': 'u1'}}]

    async def test_get_facts_without_ids_skips_search(self, store, client):
        assert await store.get_facts('u1', []) == []
        client.search.assert_not_called()

    async def test_find_similar_is_case_insensitive(self, store, client):
        client.search.return_value = hits(make_fact(content='Runs on Sundays to clear their head'))

        found = await store.find_similar('u1', 'runs on sundays')

        assert found.id == 'f1'

    async def test_insert_indexes_by_fact_id(self, store, client):
        client.index.return_value = {'result': 'created'}
        fact = make_fact()

        await store.insert(fact)

        client.index.assert_called_once_with(index='facts', id='f1', body=fact_to_document(fact))

    async def test_delete_counts_only_deleted_documents(self, store, client):
        client.delete.side_effect = [{'result': 'deleted'}, NotFoundError(404, 'not_found', {})]

        assert await store.delete('u1', ['f1', 'gone']) == 1

    async def test_client_errors_become_storage_errors(self, store, client):
        client.search.side_effect = TransportError(500, 'search_phase_execution_exception', {})

        with pytest.raises(OpenSearchError) as exc_info:
            await store.list_facts('u1')
        assert isinstance(exc_info.value, StorageError)

    async def test_prune_deletes_beyond_cap(self, store, client):
        client.search.return_value = hits(make_fact('a', 9), make_fact('b', 5), make_fact('c', 2))
        client.delete.return_value = {'result': 'deleted'}

        assert await store.prune('u1', keep=2) == 1
        client.delete.assert_called_once_with(index='facts', id='c')

    async def test_health_check(self, store, client):
        client.indices.exists.return_value = False
        assert await store.health_check() is True

        client.indices.exists.side_effect = ConnectionRefusedError('down')
        assert await store.health_check() is False
