"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
import threading
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from memengine.models.core import Connection, Entity, Insight, Memory
from memengine.services.event_ingestion import EventIngestionService
from memengine.services.memory_management import MemoryManagementError, MemoryManagementService, MemoryValidationError
from memengine.utils.config import config
from memengine.utils.health_check import get_system_info
from memengine.utils.logging_config import get_logger
from memengine.utils.timestamp_utils import parse_datetime

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Activity Memory')

_services: Dict[str, Any] = {}
_services_lock = threading.Lock()


def get_memory_service() -> MemoryManagementService:
    """Build the shared services on first use so importing this module has no side effects."""
    with _services_lock:
        if 'memory' not in _services:
            _services['memory'] = MemoryManagementService()
            _services['ingestion'] = EventIngestionService(_services['memory'])
        return _services['memory']


def get_ingestion_service() -> EventIngestionService:
    get_memory_service()
    return _services['ingestion']


def serialize_memory(memory: Memory, score: Optional[float] = None) -> Dict[str, Any]:
    """Memory document without its embedding vector."""
    document = memory.to_document()
    document.pop('embedding', None)
    if score is not None:
        document['score'] = round(score, 4)
    return document


def serialize_entity(entity: Entity) -> Dict[str, Any]:
    document = entity.to_document()
    document.pop('embedding', None)
    return document


def serialize_connection(connection: Connection) -> Dict[str, Any]:
    return connection.to_document()


def serialize_insight(insight: Insight) -> Dict[str, Any]:
    return insight.to_document()


def _fail(action: str, error: Exception):
    if isinstance(error, MemoryValidationError):
        logger.warning(f'Invalid request in MCP {action}: {error}')
    else:
        logger.error(f'Memory management error in MCP {action}: {error}')
    raise Exception(f'{action} failed: {error}')


@mcp.tool()
def retrieve_memories(user_id: str, query: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Search a user's memories by relevance.

    Args:
        user_id: User ID
        query: Natural language query; empty returns the most recent memories
        limit: Maximum number of results to return (default: 10)

    Returns:
        List of memory documents with their relevance score
    """
    try:
        results = get_memory_service().retrieve_scored_memories(user_id, query, limit)
        logger.debug(f'MCP retrieve returned {len(results)} memories for user {user_id}')
        return [serialize_memory(memory, score) for memory, score in results]
    except MemoryManagementError as e:
        _fail('Memory retrieval', e)


@mcp.tool()
def get_recent_memories_by_tags(user_id: str, tags: List[str], limit: int = 10, match_all: bool = False) -> List[Dict[str, Any]]:
    """Most recent memories carrying any (or all) of the given tags."""
    try:
        memories = get_memory_service().get_recent_memories_by_tags(user_id, tags, limit, match_all)
        return [serialize_memory(memory) for memory in memories]
    except MemoryManagementError as e:
        _fail('Tag lookup', e)


@mcp.tool()
def get_memory_details(user_id: str, memory_id: str) -> Dict[str, Any]:
    """A memory with all of its connections."""
    try:
        details = get_memory_service().get_memory_details(user_id, memory_id)
        return {
            'memory': serialize_memory(details['memory']),
            'connections': [serialize_connection(c) for c in details['connections']]
        }
    except MemoryManagementError as e:
        _fail('Memory lookup', e)


@mcp.tool()
def get_memory_connections(user_id: str, memory_id: str) -> List[Dict[str, Any]]:
    """All connections touching a memory, strongest first."""
    try:
        return [serialize_connection(c) for c in get_memory_service().get_memory_connections(user_id, memory_id)]
    except MemoryManagementError as e:
        _fail('Connection lookup', e)


@mcp.tool()
def get_entity_connections(user_id: str, entity_id: str) -> List[Dict[str, Any]]:
    """All connections touching an entity, strongest first."""
    try:
        return [serialize_connection(c) for c in get_memory_service().get_entity_connections(user_id, entity_id)]
    except MemoryManagementError as e:
        _fail('Connection lookup', e)


@mcp.tool()
def get_memory_timeline(user_id: str,
                        start: Optional[str] = None,
                        end: Optional[str] = None,
                        tags: Optional[List[str]] = None,
                        limit: int = 50) -> List[Dict[str, Any]]:
    """Memories created between two ISO-8601 timestamps, oldest first (defaults to the last 30 days)."""
    try:
        memories = get_memory_service().get_memory_timeline(user_id, parse_datetime(start), parse_datetime(end), tags, limit)
        return [serialize_memory(memory) for memory in memories]
    except MemoryManagementError as e:
        _fail('Timeline lookup', e)


@mcp.tool()
def get_memory_tags(user_id: str) -> List[Dict[str, Any]]:
    """Every tag used on the user's memories with its count."""
    try:
        return [{'tag': tag, 'count': count} for tag, count in get_memory_service().get_memory_tags(user_id)]
    except MemoryManagementError as e:
        _fail('Tag listing', e)


@mcp.tool()
def get_entities(user_id: str, entity_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """The user's entities, most interacted-with first."""
    try:
        return [serialize_entity(e) for e in get_memory_service().get_entities(user_id, entity_type, limit)]
    except MemoryManagementError as e:
        _fail('Entity listing', e)


@mcp.tool()
def get_insights(user_id: str, category: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    """The user's generated insights, most confident first."""
    try:
        return [serialize_insight(i) for i in get_memory_service().get_insights(user_id, category, limit)]
    except MemoryManagementError as e:
        _fail('Insight listing', e)


@mcp.tool()
def rate_insight(user_id: str, insight_id: str, rating: int) -> Dict[str, Any]:
    """Record the user's 1-5 rating of an insight."""
    try:
        return serialize_insight(get_memory_service().rate_insight(user_id, insight_id, rating))
    except MemoryManagementError as e:
        _fail('Insight rating', e)


@mcp.tool()
def ingest_record(kind: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Ingest one activity record (tasks, habits, daily_log, life_balance, track_items, track_focus).

    Returns:
        The created memory, or None when the record was skipped
    """
    try:
        memory = get_ingestion_service().process_record(kind, record)
        return serialize_memory(memory) if memory is not None else None
    except MemoryManagementError as e:
        _fail('Record ingestion', e)


@mcp.tool()
def consolidate_memories(user_id: str, force: bool = False) -> Optional[Dict[str, Any]]:
    """Run memory consolidation for a user.

    Returns:
        The consolidation process record, or None when the run was skipped
    """
    try:
        process = get_memory_service().consolidate_memories(user_id, force)
        return process.to_document() if process is not None else None
    except MemoryManagementError as e:
        _fail('Consolidation', e)


@mcp.tool()
def get_system_status(user_id: str) -> Dict[str, Any]:
    """Memory, entity, connection and insight counts for a user plus service health."""
    try:
        service = get_memory_service()
        status = service.get_system_status(user_id)
        status['system'] = get_system_info(store=service.store)
        return status
    except MemoryManagementError as e:
        _fail('Status lookup', e)


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
