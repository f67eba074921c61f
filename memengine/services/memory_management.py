"""
Memory Management Service for memory construction, ranking, connections and insights.
"""

import math
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (ConsolidationProcess, Connection, Entity, Insight, Memory, MemoryInput, MemoryType, NodeType, clamp,
                           new_id)
from ..utils.activity_utils import DUE_OVERDUE, DUE_SOON, DUE_THIS_WEEK, DUE_TODAY, due_date_bucket
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.record_store import RecordStore, RecordStoreError, create_record_store
from ..utils.text_utils import STOP_WORDS, contains_any, cosine_similarity, tokenize
from ..utils.timestamp_utils import days_between, ensure_utc, parse_datetime, to_iso, utc_now
from .embedding import EmbeddingError, EmbeddingService
from .entity_extraction import EntityRecognitionService

logger = get_logger(__name__)

TYPE_IMPORTANCE_BONUS = {MemoryType.EPISODIC.value: 0.1, MemoryType.PROCEDURAL.value: 0.05}

SOURCE_IMPORTANCE_BONUS = {
    'tasks': 0.1,
    'habits': 0.05,
    'daily_log': 0.05,
    'life_balance': 0.15,
    'track_focus': 0.1,
    'track_items': 0.05
}

DUE_IMPORTANCE_BONUS = {DUE_OVERDUE: 0.3, DUE_TODAY: 0.25, DUE_SOON: 0.15, DUE_THIS_WEEK: 0.05}

EMOTIONAL_KEYWORDS = [
    'amazing', 'terrible', 'awful', 'wonderful', 'excited', 'sad', 'angry', 'happy', 'thrilled', 'depressed', 'frustrated',
    'anxious', 'proud', 'disappointed', 'grateful', 'overwhelmed', 'exhausted', 'energized', 'inspired', 'stressed', 'love',
    'hate', 'important', 'critical', 'urgent'
]

URGENCY_KEYWORDS = ['tomorrow', 'today', 'immediately', 'urgent', 'deadline', 'soon', 'now', 'asap']

SEMANTIC_WEIGHT = 0.40
KEYWORD_WEIGHT = 0.25
RECENCY_WEIGHT = 0.15
SALIENCE_WEIGHT = 0.15
ACCESS_WEIGHT = 0.05

SEMANTIC_FLOOR = 0.1
SEMANTIC_CUTOFF = 0.3
RECENCY_DAYS = 30.0


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


class MemoryValidationError(MemoryManagementError):
    """Raised when a request is missing required fields or carries invalid values."""
    pass


class MemoryNotFoundError(MemoryManagementError):
    """Raised when a record does not exist or belongs to another user."""
    pass


def json_safe(value: Any) -> Any:
    """Convert metadata values into JSON-compatible structures."""
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    return value


class MemoryCache:
    """Per-user memory cache, lazily loaded from the record store."""

    def __init__(self, store: RecordStore):
        self.store = store
        self._users: Dict[str, Dict[str, Memory]] = {}
        self._lock = threading.RLock()

    def _load(self, user_id: str) -> Dict[str, Memory]:
        try:
            memories = self.store.find_all_by_filter(Memory, {'user_id': user_id})
        except RecordStoreError as e:
            logger.error(f'Failed to load memories for user {user_id}: {e}')
            raise MemoryManagementError(f'Failed to load memories: {e}')
        logger.debug(f'Loaded {len(memories)} memories for user {user_id}')
        return {m.id: m for m in memories}

    def user_memories(self, user_id: str) -> Dict[str, Memory]:
        with self._lock:
            memories = self._users.get(user_id)
            if memories is None:
                memories = self._load(user_id)
                self._users[user_id] = memories
            return memories

    def values(self, user_id: str) -> List[Memory]:
        with self._lock:
            return list(self.user_memories(user_id).values())

    def get(self, user_id: str, memory_id: str) -> Optional[Memory]:
        with self._lock:
            return self.user_memories(user_id).get(memory_id)

    def put(self, memory: Memory) -> None:
        with self._lock:
            self.user_memories(memory.user_id)[memory.id] = memory

    def clear(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._users.clear()
            else:
                self._users.pop(user_id, None)


class MemoryManagementService:
    """Unified service for memory creation, retrieval, connections, insights and consolidation."""

    def __init__(self,
                 store: Optional[RecordStore] = None,
                 embedding: Optional[EmbeddingService] = None,
                 entities: Optional[EntityRecognitionService] = None,
                 settings: Optional[MemoryConfig] = None):
        """Initialize the memory management service.

        Args:
            store: Record store, built from configuration when None
            embedding: Embedding service, built from configuration when None
            entities: Entity recognition service sharing the same store and embeddings
            settings: MemoryConfig, uses the global configuration if None
        """
        from .consolidation import ConsolidationService

        self.store = store if store is not None else create_record_store()
        self.embedding = embedding if embedding is not None else EmbeddingService()
        self.entities = entities if entities is not None else EntityRecognitionService(self.store, self.embedding)
        self.settings = settings or config.memory

        self.cache = MemoryCache(self.store)
        self._connection_lock = threading.Lock()
        self.consolidation = ConsolidationService(self)

        logger.info('Initialized MemoryManagementService')

    # Memory construction

    def calculate_importance(self, memory_input: MemoryInput, now: Optional[datetime] = None) -> float:
        """Estimate initial salience from type, source, keywords and due-date proximity.

        Args:
            memory_input: Memory being created
            now: Reference time for due-date proximity

        Returns:
            Importance in [0, 1]
        """
        importance = 0.5
        importance += TYPE_IMPORTANCE_BONUS.get(memory_input.memory_type, 0.0)
        importance += SOURCE_IMPORTANCE_BONUS.get(memory_input.source_collection, 0.0)

        text = f'{memory_input.title} {memory_input.content}'
        if contains_any(text, EMOTIONAL_KEYWORDS):
            importance += 0.05
        if contains_any(text, URGENCY_KEYWORDS):
            importance += 0.1

        metadata = memory_input.metadata or {}
        due = parse_datetime(metadata.get('due') or metadata.get('due_date'))
        bucket, _ = due_date_bucket(due, now or utc_now())
        importance += DUE_IMPORTANCE_BONUS.get(bucket, 0.0)

        return clamp(importance)

    def _validate_input(self, memory_input: MemoryInput) -> None:
        if not memory_input.user_id:
            raise MemoryValidationError('User ID is required')
        if not (memory_input.title or '').strip():
            raise MemoryValidationError('Memory title is required')
        if not (memory_input.content or '').strip():
            raise MemoryValidationError('Memory content is required')
        if not memory_input.memory_type:
            memory_input.memory_type = MemoryType.EPISODIC.value
        if isinstance(memory_input.memory_type, MemoryType):
            memory_input.memory_type = memory_input.memory_type.value
        if memory_input.memory_type not in {t.value for t in MemoryType}:
            raise MemoryValidationError(f'Unsupported memory type: {memory_input.memory_type}')

    def _embed(self, text: str) -> Optional[List[float]]:
        try:
            return self.embedding.embed(text)
        except EmbeddingError as e:
            logger.warning(f'Embedding unavailable, storing memory without vector: {e}')
            return None

    def _save(self, record) -> None:
        try:
            self.store.save(record)
        except RecordStoreError as e:
            logger.error(f'Failed to save {record.collection} record {record.id}: {e}')
            raise MemoryManagementError(f'Failed to save {record.collection} record: {e}')

    def create_memory(self, memory_input: MemoryInput) -> Memory:
        """Build, embed, persist and cache a new memory.

        Args:
            memory_input: Memory fields; importance is computed when not supplied

        Returns:
            The stored Memory

        Raises:
            MemoryValidationError: If required fields are missing
            MemoryManagementError: If the memory cannot be persisted
        """
        self._validate_input(memory_input)

        now = utc_now()
        if memory_input.importance is not None:
            importance = clamp(memory_input.importance)
        else:
            importance = self.calculate_importance(memory_input, now)

        temporal_context = json_safe(dict(memory_input.metadata or {}))
        temporal_context['created_at'] = to_iso(now)

        title = memory_input.title.strip()
        content = memory_input.content.strip()
        memory = Memory(id=new_id(),
                        user_id=memory_input.user_id,
                        memory_type=memory_input.memory_type,
                        title=title,
                        content=content,
                        tags=[t for t in memory_input.tags if t],
                        source_collection=memory_input.source_collection,
                        source_record_ids=[s for s in memory_input.source_record_ids if s],
                        temporal_context=temporal_context,
                        importance=importance,
                        strength=1.0,
                        access_count=0,
                        last_accessed=now,
                        embedding=self._embed(f'{title} {content}'),
                        created_at=now,
                        updated_at=now)

        self._save(memory)
        self.cache.put(memory)

        for entity_id in memory_input.entity_ids or []:
            try:
                self.create_connection(memory.user_id, NodeType.MEMORY.value, memory.id, NodeType.ENTITY.value, entity_id, 'related_to',
                                       0.7)
            except MemoryManagementError as e:
                logger.warning(f'Failed to link memory {memory.id} to entity {entity_id}: {e}')

        logger.debug(f'Created {memory.memory_type} memory {memory.id} for user {memory.user_id}')
        return memory

    def update_memory(self, memory: Memory, reembed: bool = False) -> Memory:
        """Persist changes made to a cached memory."""
        memory.importance = clamp(memory.importance)
        memory.strength = clamp(memory.strength)
        memory.updated_at = utc_now()
        if reembed:
            memory.embedding = self._embed(f'{memory.title} {memory.content}') or memory.embedding
        self._save(memory)
        self.cache.put(memory)
        return memory

    def find_memory_by_title(self, user_id: str, memory_type: str, title: str) -> Optional[Memory]:
        """Return the user's memory of a type whose title matches case-insensitively."""
        wanted = title.strip().lower()
        matches = [m for m in self.cache.values(user_id) if m.memory_type == memory_type and m.title.strip().lower() == wanted]
        if not matches:
            return None
        return min(matches, key=lambda m: m.created_at)

    def append_to_memory(self,
                         memory: Memory,
                         text: Optional[str] = None,
                         source_record_ids: Optional[List[str]] = None,
                         tags: Optional[List[str]] = None) -> Memory:
        """Merge new evidence into an existing memory without duplicating content.

        Args:
            memory: Memory to extend
            text: Sentence to append when not already present
            source_record_ids: Source records to add
            tags: Tags to add

        Returns:
            The updated Memory
        """
        changed_text = False
        text = (text or '').strip()
        if text and text not in memory.content:
            memory.content = f'{memory.content} {text}'.strip()
            changed_text = True
        for source_id in source_record_ids or []:
            if source_id and source_id not in memory.source_record_ids:
                memory.source_record_ids.append(source_id)
        memory.add_tags(tags or [])
        return self.update_memory(memory, reembed=changed_text)

    def create_or_update_memory(self, memory_input: MemoryInput, update_text: Optional[str] = None) -> Tuple[Memory, bool]:
        """Find the user's semantic/procedural memory with the same title and extend it, or create it.

        Args:
            memory_input: Memory fields; memory_type must be semantic or procedural
            update_text: Text appended to an existing memory (defaults to memory_input.content)

        Returns:
            Tuple of (memory, created flag)

        Raises:
            MemoryValidationError: If the input is invalid or the memory type is episodic
        """
        self._validate_input(memory_input)
        if memory_input.memory_type == MemoryType.EPISODIC.value:
            raise MemoryValidationError('Only semantic and procedural memories can be merged by title')

        existing = self.find_memory_by_title(memory_input.user_id, memory_input.memory_type, memory_input.title)
        if existing is None:
            return self.create_memory(memory_input), True

        text = memory_input.content if update_text is None else update_text
        memory = self.append_to_memory(existing, text, memory_input.source_record_ids, memory_input.tags)
        for entity_id in memory_input.entity_ids or []:
            try:
                self.create_connection(memory.user_id, NodeType.MEMORY.value, memory.id, NodeType.ENTITY.value, entity_id, 'related_to',
                                       0.7)
            except MemoryManagementError as e:
                logger.warning(f'Failed to link memory {memory.id} to entity {entity_id}: {e}')
        return memory, False

    # Connections

    def create_connection(self,
                          user_id: str,
                          source_type: str,
                          source_id: str,
                          target_type: str,
                          target_id: str,
                          connection_type: str,
                          strength: float = 0.5,
                          metadata: Optional[Dict[str, Any]] = None) -> Connection:
        """Create a typed edge, or strengthen the existing one for the same endpoints and type.

        Returns:
            The stored Connection

        Raises:
            MemoryValidationError: If an endpoint or the connection type is invalid
            MemoryManagementError: If persistence fails
        """
        connection, _ = self.upsert_connection(user_id, source_type, source_id, target_type, target_id, connection_type, strength,
                                               metadata)
        return connection

    def upsert_connection(self,
                          user_id: str,
                          source_type: str,
                          source_id: str,
                          target_type: str,
                          target_id: str,
                          connection_type: str,
                          strength: float = 0.5,
                          metadata: Optional[Dict[str, Any]] = None) -> Tuple[Connection, bool]:
        """Same as create_connection, also reporting whether a new edge was created."""
        node_types = {t.value for t in NodeType}
        if not user_id:
            raise MemoryValidationError('User ID is required')
        if source_type not in node_types or target_type not in node_types:
            raise MemoryValidationError(f'Connection endpoints must be one of {sorted(node_types)}')
        if not source_id or not target_id or not connection_type:
            raise MemoryValidationError('Connection source, target and type are required')
        if source_type == target_type and source_id == target_id:
            raise MemoryValidationError('A node cannot be connected to itself')

        strength = clamp(strength)
        key = {
            'user_id': user_id,
            'source_type': source_type,
            'source_id': source_id,
            'target_type': target_type,
            'target_id': target_id,
            'connection_type': connection_type
        }

        with self._connection_lock:
            try:
                existing = self.store.find_one_by_filter(Connection, key)
            except RecordStoreError as e:
                raise MemoryManagementError(f'Failed to look up connection: {e}')

            if existing is not None:
                if strength > existing.strength:
                    existing.strength = strength
                    self._save(existing)
                return existing, False

            connection = Connection(id=new_id(),
                                    user_id=user_id,
                                    source_type=source_type,
                                    source_id=source_id,
                                    target_type=target_type,
                                    target_id=target_id,
                                    connection_type=connection_type,
                                    strength=strength,
                                    metadata=json_safe(metadata or {}))
            self._save(connection)

        logger.debug(f'Created {connection_type} connection {source_type}:{source_id} -> {target_type}:{target_id}')
        return connection, True

    def _node_connections(self, user_id: str, node_type: str, node_id: str) -> List[Connection]:
        if not user_id:
            raise MemoryValidationError('User ID is required')
        try:
            outgoing = self.store.find_all_by_filter(Connection, {'user_id': user_id, 'source_type': node_type, 'source_id': node_id})
            incoming = self.store.find_all_by_filter(Connection, {'user_id': user_id, 'target_type': node_type, 'target_id': node_id})
        except RecordStoreError as e:
            raise MemoryManagementError(f'Failed to load connections: {e}')

        connections = {}
        for connection in outgoing + incoming:
            connections[connection.id] = connection
        return sorted(connections.values(), key=lambda c: c.strength, reverse=True)

    def get_memory_connections(self, user_id: str, memory_id: str) -> List[Connection]:
        """All edges touching a memory, strongest first."""
        return self._node_connections(user_id, NodeType.MEMORY.value, memory_id)

    def get_entity_connections(self, user_id: str, entity_id: str) -> List[Connection]:
        """All edges touching an entity, strongest first."""
        return self._node_connections(user_id, NodeType.ENTITY.value, entity_id)

    def get_user_connections(self, user_id: str) -> List[Connection]:
        try:
            return self.store.find_all_by_filter(Connection, {'user_id': user_id})
        except RecordStoreError as e:
            raise MemoryManagementError(f'Failed to load connections: {e}')

    # Retrieval

    def list_memories(self, user_id: str) -> List[Memory]:
        """All of a user's memories, newest first."""
        if not user_id:
            raise MemoryValidationError('User ID is required')
        return sorted(self.cache.values(user_id), key=lambda m: m.created_at, reverse=True)

    def get_memory(self, user_id: str, memory_id: str) -> Optional[Memory]:
        if not user_id:
            raise MemoryValidationError('User ID is required')
        return self.cache.get(user_id, memory_id)

    def score_memory(self, memory: Memory, query: str, query_embedding: Optional[List[float]] = None, now: Optional[datetime] = None) -> float:
        """Weighted relevance of a memory to a query.

        Combines embedding similarity, keyword overlap, recency, salience
        (importance and strength) and how often the memory has been recalled.
        """
        now = now or utc_now()

        semantic = SEMANTIC_FLOOR
        if query_embedding and memory.embedding:
            similarity = cosine_similarity(query_embedding, memory.embedding)
            if similarity > SEMANTIC_CUTOFF:
                semantic = similarity

        keyword = self._keyword_score(memory, query)
        recency = math.exp(-max(days_between(memory.created_at, now), 0.0) / RECENCY_DAYS)
        salience = 0.7 * memory.importance + 0.3 * memory.strength
        access = min(memory.access_count / 10.0, 1.0)

        return (SEMANTIC_WEIGHT * semantic + KEYWORD_WEIGHT * keyword + RECENCY_WEIGHT * recency + SALIENCE_WEIGHT * salience +
                ACCESS_WEIGHT * access)

    @staticmethod
    def _keyword_score(memory: Memory, query: str) -> float:
        needle = query.strip().lower()
        title = memory.title.lower()
        content = memory.content.lower()
        if not needle:
            return 0.0
        if needle in title:
            return 1.0
        if needle in content:
            return 0.9

        terms = [t for t in tokenize(needle) if len(t) > 2 and t not in STOP_WORDS]
        if not terms:
            return 0.0
        found = sum(1 for t in terms if t in title or t in content)
        return found / len(terms)

    def retrieve_scored_memories(self, user_id: str, query: str, limit: int = 10) -> List[Tuple[Memory, float]]:
        """Rank a user's memories against a query and record the access on each result.

        Args:
            user_id: User ID for isolation
            query: Free-text query; empty returns the newest memories
            limit: Maximum results (non-positive uses the configured maximum)

        Returns:
            List of (memory, score) pairs, best first

        Raises:
            MemoryValidationError: If user_id is empty
        """
        if not user_id or not str(user_id).strip():
            raise MemoryValidationError('User ID is required')
        if limit is None or limit <= 0:
            limit = self.settings.max_search_results

        memories = self.cache.values(user_id)
        query = (query or '').strip()
        now = utc_now()

        if not query:
            newest = sorted(memories, key=lambda m: m.created_at, reverse=True)[:limit]
            return [(m, 0.0) for m in newest]

        try:
            query_embedding = self.embedding.embed(query)
        except EmbeddingError as e:
            logger.warning(f'Query embedding unavailable, using keyword scoring only: {e}')
            query_embedding = None

        scored = []
        for memory in memories:
            if memory.strength < self.settings.min_strength_threshold:
                continue
            score = self.score_memory(memory, query, query_embedding, now)
            if score > self.settings.min_retrieval_score:
                scored.append((memory, score))

        scored.sort(key=lambda pair: (pair[1], pair[0].created_at), reverse=True)
        scored = scored[:limit]

        for memory, _ in scored:
            memory.access_count += 1
            memory.last_accessed = now
            try:
                self._save(memory)
            except MemoryManagementError as e:
                logger.warning(f'Failed to update memory access for {memory.id}: {e}')

        logger.debug(f'Retrieved {len(scored)} memories for user {user_id}')
        return scored

    def retrieve_memories(self, user_id: str, query: str, limit: int = 10) -> List[Memory]:
        """Relevance-ranked memories for a query (see retrieve_scored_memories)."""
        return [memory for memory, _ in self.retrieve_scored_memories(user_id, query, limit)]

    def get_recent_memories_by_tags(self, user_id: str, tags: List[str], limit: int = 10, match_all: bool = False) -> List[Memory]:
        """Newest memories carrying the given tags.

        Args:
            user_id: User ID for isolation
            tags: Tags to match; empty matches every memory
            limit: Maximum results
            match_all: Require every tag instead of any of them

        Returns:
            List of memories, newest first
        """
        if not user_id:
            raise MemoryValidationError('User ID is required')
        wanted = [t for t in tags or [] if t]

        def matches(memory: Memory) -> bool:
            if not wanted:
                return True
            present = set(memory.tags)
            if match_all:
                return all(t in present for t in wanted)
            return any(t in present for t in wanted)

        memories = [m for m in self.cache.values(user_id) if matches(m)]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return memories[:limit] if limit and limit > 0 else memories

    def get_memory_details(self, user_id: str, memory_id: str) -> Dict[str, Any]:
        """A memory with its connections; viewing it counts as an access.

        Raises:
            MemoryNotFoundError: If the memory does not exist for this user
        """
        memory = self.get_memory(user_id, memory_id)
        if memory is None:
            raise MemoryNotFoundError(f'Memory {memory_id} not found')

        memory.access_count += 1
        memory.last_accessed = utc_now()
        self._save(memory)

        return {'memory': memory, 'connections': self.get_memory_connections(user_id, memory_id)}

    def get_memory_timeline(self,
                            user_id: str,
                            start: Optional[datetime] = None,
                            end: Optional[datetime] = None,
                            tags: Optional[List[str]] = None,
                            limit: int = 50) -> List[Memory]:
        """Memories created in [start, end], oldest first; defaults to the last 30 days."""
        if not user_id:
            raise MemoryValidationError('User ID is required')
        end = ensure_utc(end) if end else utc_now()
        start = ensure_utc(start) if start else end - timedelta(days=30)
        if start > end:
            raise MemoryValidationError('Timeline start must not be after end')

        wanted = set(tags or [])
        memories = [
            m for m in self.cache.values(user_id) if start <= m.created_at <= end and (not wanted or wanted.intersection(m.tags))
        ]
        memories.sort(key=lambda m: m.created_at)
        return memories[:limit] if limit > 0 else memories

    def get_memory_tags(self, user_id: str) -> List[Tuple[str, int]]:
        """Every tag the user's memories carry with its usage count, most used first."""
        if not user_id:
            raise MemoryValidationError('User ID is required')
        counts: Dict[str, int] = {}
        for memory in self.cache.values(user_id):
            for tag in memory.tags:
                counts[tag] = counts.get(tag, 0) + 1
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    def get_entities(self, user_id: str, entity_type: Optional[str] = None, limit: int = 50) -> List[Entity]:
        if not user_id:
            raise MemoryValidationError('User ID is required')
        return self.entities.get_entities(user_id, entity_type, limit)

    # Insights

    def create_insight(self, insight: Insight) -> Insight:
        """Validate and persist an insight."""
        if not insight.user_id:
            raise MemoryValidationError('User ID is required')
        if not (insight.title or '').strip():
            raise MemoryValidationError('Insight title is required')
        if not (insight.content or '').strip():
            raise MemoryValidationError('Insight content is required')
        if not insight.category:
            raise MemoryValidationError('Insight category is required')
        if not insight.id:
            insight.id = new_id()
        insight.confidence = clamp(insight.confidence)
        self._save(insight)
        return insight

    def get_insights(self, user_id: str, category: Optional[str] = None, limit: int = 20) -> List[Insight]:
        """A user's insights, most confident and newest first."""
        if not user_id:
            raise MemoryValidationError('User ID is required')
        filters = {'user_id': user_id}
        if category:
            filters['category'] = category
        try:
            insights = self.store.find_all_by_filter(Insight, filters)
        except RecordStoreError as e:
            raise MemoryManagementError(f'Failed to load insights: {e}')
        insights.sort(key=lambda i: (i.confidence, i.created_at), reverse=True)
        return insights[:limit] if limit > 0 else insights

    def rate_insight(self, user_id: str, insight_id: str, rating: int) -> Insight:
        """Record the user's 1-5 rating of an insight; an insight can be rated once.

        Raises:
            MemoryValidationError: If the user id is empty, the rating is out of range or already set
            MemoryNotFoundError: If the insight does not exist for this user
        """
        if not user_id or not str(user_id).strip():
            raise MemoryValidationError('User ID is required')
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise MemoryValidationError('Rating must be an integer between 1 and 5')

        try:
            insight = self.store.find_by_id(Insight, insight_id)
        except RecordStoreError as e:
            raise MemoryManagementError(f'Failed to load insight: {e}')
        if insight is None or insight.user_id != user_id:
            raise MemoryNotFoundError(f'Insight {insight_id} not found')
        if insight.user_rating is not None:
            raise MemoryValidationError(f'Insight {insight_id} has already been rated')

        insight.user_rating = rating
        self._save(insight)
        logger.debug(f'User {user_id} rated insight {insight_id}: {rating}')
        return insight

    def generate_insights(self, user_id: str, groups: Optional[List[List[Memory]]] = None) -> List[Insight]:
        """Derive and persist insights from recent memories (see ConsolidationService)."""
        if not user_id:
            raise MemoryValidationError('User ID is required')
        return self.consolidation.generate_insights(user_id, groups)

    # Maintenance

    def consolidate_memories(self, user_id: str, force: bool = False) -> Optional[ConsolidationProcess]:
        """Run decay, grouping, pattern synthesis and insight generation for a user.

        Returns:
            The audit record of the run, or None when the run was skipped
        """
        if not user_id:
            raise MemoryValidationError('User ID is required')
        return self.consolidation.consolidate(user_id, force=force)

    def get_system_status(self, user_id: str) -> Dict[str, Any]:
        """Counts of the user's memories, entities, connections and insights plus the latest consolidation."""
        if not user_id:
            raise MemoryValidationError('User ID is required')

        memory_counts = {t.value: 0 for t in MemoryType}
        archivable = 0
        for memory in self.cache.values(user_id):
            memory_counts[memory.memory_type] = memory_counts.get(memory.memory_type, 0) + 1
            if memory.is_archivable(self.settings.archive_strength_floor):
                archivable += 1

        entity_counts: Dict[str, int] = {}
        for entity in self.entities.get_entities(user_id, limit=0):
            entity_counts[entity.entity_type] = entity_counts.get(entity.entity_type, 0) + 1

        latest = self.consolidation.latest_process(user_id)
        return {
            'memories': memory_counts,
            'total_memories': sum(memory_counts.values()),
            'archivable_memories': archivable,
            'entities': entity_counts,
            'connections': len(self.get_user_connections(user_id)),
            'insights': len(self.get_insights(user_id, limit=0)),
            'last_consolidation': latest.to_document() if latest else None,
            'embedding': self.embedding.stats()
        }

    def clear_cache(self, user_id: Optional[str] = None) -> None:
        self.cache.clear(user_id)
        self.entities.clear_cache(user_id)
        if user_id is None:
            self.embedding.clear_cache()
