"""
Core data models for the activity memory engine.

Every record belongs to exactly one user and serializes to a flat, JSON-compatible
document so it can be stored by any RecordStore implementation.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import parse_datetime, to_iso, utc_now


class MemoryType(str, Enum):
    """Kinds of memory."""
    EPISODIC = 'episodic'  # A specific event
    SEMANTIC = 'semantic'  # A generalized fact or pattern
    PROCEDURAL = 'procedural'  # A recurring workflow or habit


class NodeType(str, Enum):
    """Endpoint kinds of a connection."""
    MEMORY = 'memory'
    ENTITY = 'entity'


class ProcessStatus(str, Enum):
    """States of a consolidation run."""
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'


class InsightCategory(str, Enum):
    """Generated insight categories."""
    ENTITY_SUMMARY = 'entity_summary'
    TEMPORAL_PATTERN = 'temporal_pattern'
    THEMATIC_PATTERN = 'thematic_pattern'
    TOPIC_TREND = 'topic_trend'
    HIGHLIGHT = 'highlight'


def new_id() -> str:
    return str(uuid.uuid4())


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, float(value)))


def _unique(values) -> List[str]:
    seen = []
    for value in values or []:
        if value and value not in seen:
            seen.append(value)
    return seen


@dataclass
class Memory:
    """A unit of recorded experience."""
    id: str
    user_id: str
    memory_type: str
    title: str
    content: str
    tags: List[str] = field(default_factory=list)
    source_collection: str = ''
    source_record_ids: List[str] = field(default_factory=list)
    temporal_context: Dict[str, Any] = field(default_factory=dict)
    importance: float = 0.5
    strength: float = 1.0
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    collection = 'memories'

    def __post_init__(self):
        self.tags = _unique(self.tags)
        self.importance = clamp(self.importance)
        self.strength = clamp(self.strength)
        if self.last_accessed is None:
            self.last_accessed = self.created_at

    def add_tags(self, tags: List[str]) -> None:
        self.tags = _unique(list(self.tags) + list(tags or []))

    def is_archivable(self, floor: float) -> bool:
        """True when strength has dropped below the host's archival floor."""
        return self.strength < floor

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'memory_type': self.memory_type,
            'title': self.title,
            'content': self.content,
            'tags': list(self.tags),
            'source_collection': self.source_collection,
            'source_record_ids': list(self.source_record_ids),
            'temporal_context': dict(self.temporal_context),
            'importance': self.importance,
            'strength': self.strength,
            'access_count': self.access_count,
            'last_accessed': to_iso(self.last_accessed),
            'embedding': list(self.embedding) if self.embedding else None,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at)
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Memory':
        created_at = parse_datetime(doc.get('created_at')) or utc_now()
        return cls(id=doc['id'],
                   user_id=doc.get('user_id', ''),
                   memory_type=doc.get('memory_type', MemoryType.EPISODIC.value),
                   title=doc.get('title', ''),
                   content=doc.get('content', ''),
                   tags=list(doc.get('tags') or []),
                   source_collection=doc.get('source_collection', ''),
                   source_record_ids=list(doc.get('source_record_ids') or []),
                   temporal_context=dict(doc.get('temporal_context') or {}),
                   importance=doc.get('importance', 0.5),
                   strength=doc.get('strength', 1.0),
                   access_count=int(doc.get('access_count', 0)),
                   last_accessed=parse_datetime(doc.get('last_accessed')) or created_at,
                   embedding=list(doc['embedding']) if doc.get('embedding') else None,
                   created_at=created_at,
                   updated_at=parse_datetime(doc.get('updated_at')) or created_at)


@dataclass
class MemoryInput:
    """Fields accepted when creating a memory."""
    user_id: str
    title: str
    content: str
    memory_type: str = MemoryType.EPISODIC.value
    tags: List[str] = field(default_factory=list)
    source_collection: str = ''
    source_record_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    entity_ids: List[str] = field(default_factory=list)
    importance: Optional[float] = None


@dataclass
class Entity:
    """A named thing referenced across memories."""
    id: str
    user_id: str
    entity_type: str
    name: str
    description: str = ''
    importance: float = 0.5
    first_seen: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    interaction_count: int = 1
    embedding: Optional[List[float]] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    source_record_ids: List[str] = field(default_factory=list)

    collection = 'entities'

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'entity_type': self.entity_type,
            'name': self.name,
            'description': self.description,
            'importance': self.importance,
            'first_seen': to_iso(self.first_seen),
            'last_seen': to_iso(self.last_seen),
            'interaction_count': self.interaction_count,
            'embedding': list(self.embedding) if self.embedding else None,
            'attributes': dict(self.attributes),
            'source_record_ids': list(self.source_record_ids)
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Entity':
        first_seen = parse_datetime(doc.get('first_seen')) or utc_now()
        return cls(id=doc['id'],
                   user_id=doc.get('user_id', ''),
                   entity_type=doc.get('entity_type', ''),
                   name=doc.get('name', ''),
                   description=doc.get('description', ''),
                   importance=float(doc.get('importance', 0.5)),
                   first_seen=first_seen,
                   last_seen=parse_datetime(doc.get('last_seen')) or first_seen,
                   interaction_count=int(doc.get('interaction_count', 1)),
                   embedding=list(doc['embedding']) if doc.get('embedding') else None,
                   attributes=dict(doc.get('attributes') or {}),
                   source_record_ids=list(doc.get('source_record_ids') or []))


@dataclass
class Connection:
    """A directed, typed, weighted edge between two memory/entity nodes."""
    id: str
    user_id: str
    source_type: str
    source_id: str
    target_type: str
    target_id: str
    connection_type: str
    strength: float = 0.5
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    collection = 'memory_connections'

    def __post_init__(self):
        self.strength = clamp(self.strength)

    def other_end(self, node_type: str, node_id: str):
        """Return (type, id) of the endpoint opposite the given node."""
        if self.source_type == node_type and self.source_id == node_id:
            return self.target_type, self.target_id
        return self.source_type, self.source_id

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'source_type': self.source_type,
            'source_id': self.source_id,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'connection_type': self.connection_type,
            'strength': self.strength,
            'metadata': dict(self.metadata),
            'created_at': to_iso(self.created_at)
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Connection':
        return cls(id=doc['id'],
                   user_id=doc.get('user_id', ''),
                   source_type=doc.get('source_type', ''),
                   source_id=doc.get('source_id', ''),
                   target_type=doc.get('target_type', ''),
                   target_id=doc.get('target_id', ''),
                   connection_type=doc.get('connection_type', ''),
                   strength=doc.get('strength', 0.5),
                   metadata=dict(doc.get('metadata') or {}),
                   created_at=parse_datetime(doc.get('created_at')) or utc_now())


@dataclass
class Insight:
    """A derived, human-readable observation."""
    id: str
    user_id: str
    title: str
    content: str
    category: str
    confidence: float = 0.5
    source_memories: List[str] = field(default_factory=list)
    related_entities: List[str] = field(default_factory=list)
    is_highlighted: bool = False
    user_rating: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)

    collection = 'insights'

    def __post_init__(self):
        self.confidence = clamp(self.confidence)

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'content': self.content,
            'category': self.category,
            'confidence': self.confidence,
            'source_memories': list(self.source_memories),
            'related_entities': list(self.related_entities),
            'is_highlighted': self.is_highlighted,
            'user_rating': self.user_rating,
            'created_at': to_iso(self.created_at)
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Insight':
        rating = doc.get('user_rating')
        return cls(id=doc['id'],
                   user_id=doc.get('user_id', ''),
                   title=doc.get('title', ''),
                   content=doc.get('content', ''),
                   category=doc.get('category', ''),
                   confidence=doc.get('confidence', 0.5),
                   source_memories=list(doc.get('source_memories') or []),
                   related_entities=list(doc.get('related_entities') or []),
                   is_highlighted=bool(doc.get('is_highlighted', False)),
                   user_rating=int(rating) if rating else None,
                   created_at=parse_datetime(doc.get('created_at')) or utc_now())


@dataclass
class ConsolidationProcess:
    """Audit record of one consolidation run."""
    id: str
    user_id: str
    process_type: str = 'consolidation'
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    status: str = ProcessStatus.IN_PROGRESS.value
    items_processed: int = 0
    items_created: int = 0
    items_modified: int = 0
    log: str = ''

    collection = 'consolidation_processes'

    def append_log(self, line: str) -> None:
        self.log = f'{self.log}\n{line}' if self.log else line

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'process_type': self.process_type,
            'start_time': to_iso(self.start_time),
            'end_time': to_iso(self.end_time),
            'status': self.status,
            'items_processed': self.items_processed,
            'items_created': self.items_created,
            'items_modified': self.items_modified,
            'log': self.log
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'ConsolidationProcess':
        return cls(id=doc['id'],
                   user_id=doc.get('user_id', ''),
                   process_type=doc.get('process_type', 'consolidation'),
                   start_time=parse_datetime(doc.get('start_time')) or utc_now(),
                   end_time=parse_datetime(doc.get('end_time')),
                   status=doc.get('status', ProcessStatus.IN_PROGRESS.value),
                   items_processed=int(doc.get('items_processed', 0)),
                   items_created=int(doc.get('items_created', 0)),
                   items_modified=int(doc.get('items_modified', 0)),
                   log=doc.get('log', ''))
