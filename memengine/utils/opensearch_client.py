"""
OpenSearch-backed record store for memories, entities, connections, insights and consolidation runs.
"""

import threading
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger
from .record_store import RecordStore, RecordStoreError

logger = get_logger(__name__)

KEYWORD = {'type': 'keyword'}
TEXT = {'type': 'text'}
FLOAT = {'type': 'float'}
INTEGER = {'type': 'integer'}
DATE = {'type': 'date'}
BOOLEAN = {'type': 'boolean'}
OPAQUE = {'type': 'object', 'enabled': False}

# Scoring happens in the engine, so embeddings are stored but not indexed.
INDEX_MAPPINGS = {
    'memories': {
        'id': KEYWORD,
        'user_id': KEYWORD,
        'memory_type': KEYWORD,
        'title': TEXT,
        'content': TEXT,
        'tags': KEYWORD,
        'source_collection': KEYWORD,
        'source_record_ids': KEYWORD,
        'temporal_context': OPAQUE,
        'importance': FLOAT,
        'strength': FLOAT,
        'access_count': INTEGER,
        'last_accessed': DATE,
        'embedding': OPAQUE,
        'created_at': DATE,
        'updated_at': DATE
    },
    'entities': {
        'id': KEYWORD,
        'user_id': KEYWORD,
        'entity_type': KEYWORD,
        'name': KEYWORD,
        'description': TEXT,
        'importance': FLOAT,
        'first_seen': DATE,
        'last_seen': DATE,
        'interaction_count': INTEGER,
        'embedding': OPAQUE,
        'attributes': OPAQUE,
        'source_record_ids': KEYWORD
    },
    'memory_connections': {
        'id': KEYWORD,
        'user_id': KEYWORD,
        'source_type': KEYWORD,
        'source_id': KEYWORD,
        'target_type': KEYWORD,
        'target_id': KEYWORD,
        'connection_type': KEYWORD,
        'strength': FLOAT,
        'metadata': OPAQUE,
        'created_at': DATE
    },
    'insights': {
        'id': KEYWORD,
        'user_id': KEYWORD,
        'title': TEXT,
        'content': TEXT,
        'category': KEYWORD,
        'confidence': FLOAT,
        'source_memories': KEYWORD,
        'related_entities': KEYWORD,
        'is_highlighted': BOOLEAN,
        'user_rating': INTEGER,
        'created_at': DATE
    },
    'consolidation_processes': {
        'id': KEYWORD,
        'user_id': KEYWORD,
        'process_type': KEYWORD,
        'start_time': DATE,
        'end_time': DATE,
        'status': KEYWORD,
        'items_processed': INTEGER,
        'items_created': INTEGER,
        'items_modified': INTEGER,
        'log': TEXT
    }
}


class OpenSearchError(RecordStoreError):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchRecordStore(RecordStore):
    """Record store keeping one OpenSearch index per record collection."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch record store.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (a new one is created when None)
        """
        self.config = config
        self.client = client if client is not None else self._build_client(config)
        self._ready_indices = set()
        self._index_lock = threading.Lock()

        logger.info(f'Initialized OpenSearch record store for endpoint: {config.endpoint}')

    @staticmethod
    def _build_client(config: OpenSearchConfig) -> OpenSearch:
        auth = None
        if config.use_aws_auth:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                          http_auth=auth,
                          use_ssl=config.use_ssl,
                          verify_certs=config.use_ssl,
                          connection_class=RequestsHttpConnection)

    def index_name(self, collection: str) -> str:
        return f'{self.config.index_prefix}_{collection}'

    def create_index_if_not_exists(self, collection: str) -> str:
        """
        Create the index for a record collection if it doesn't exist.

        Args:
            collection: Record collection name

        Returns:
            'exists' or 'created'

        Raises:
            OpenSearchError: If the index cannot be created
        """
        index_name = self.index_name(collection)
        with self._index_lock:
            if index_name in self._ready_indices:
                return 'exists'
            try:
                if self.client.indices.exists(index=index_name):
                    logger.debug(f'Index {index_name} already exists')
                    self._ready_indices.add(index_name)
                    return 'exists'

                index_body = {'mappings': {'properties': INDEX_MAPPINGS.get(collection, {'id': KEYWORD, 'user_id': KEYWORD})}}
                self.client.indices.create(index=index_name, body=index_body)
                self._ready_indices.add(index_name)
                logger.info(f'Created index {index_name}')
                return 'created'

            except OpenSearchException as e:
                logger.error(f'Error creating index {index_name}: {e}')
                raise OpenSearchError(f'Failed to create index: {e}')

    def save(self, record) -> None:
        index_name = self.index_name(record.collection)
        self.create_index_if_not_exists(record.collection)

        params = {}
        if self.config.service != 'aoss':
            # Serverless collections refresh on their own schedule
            params['refresh'] = 'true'

        try:
            response = self.client.index(index=index_name, id=record.id, body=record.to_document(), params=params)
            if response.get('result') not in ['created', 'updated']:
                logger.warning(f'Unexpected result indexing {record.collection} record {record.id}: {response}')
            logger.debug(f'Indexed {record.collection} record {record.id}')

        except OpenSearchException as e:
            logger.error(f'Error indexing {record.collection} record {record.id}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def find_by_id(self, record_type, record_id):
        index_name = self.index_name(record_type.collection)
        self.create_index_if_not_exists(record_type.collection)

        try:
            response = self.client.get(index=index_name, id=record_id)
            if not response.get('found'):
                return None
            return record_type.from_document(response['_source'])

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting {record_type.collection} record {record_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def find_all_by_filter(self, record_type, filters: Dict[str, Any]) -> List:
        index_name = self.index_name(record_type.collection)
        self.create_index_if_not_exists(record_type.collection)

        search_body = {
            'size': self.config.max_results,
            'query': {
                'bool': {
                    'filter': [{
                        'term': {
                            key: value
                        }
                    } for key, value in filters.items()]
                }
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)
            results = [record_type.from_document(hit['_source']) for hit in response['hits']['hits']]
            logger.debug(f'Filter search on {index_name} returned {len(results)} records')
            return results

        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Filter search failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('memories'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
