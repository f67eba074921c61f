"""Tests for the MCP layer helpers."""
import pytest

from memengine import mcp_interface
from memengine.models.core import MemoryInput

USER = 'user-1'


@pytest.fixture
def wired(monkeypatch, memory_service, ingestion):
    monkeypatch.setattr(mcp_interface, '_services', {'memory': memory_service, 'ingestion': ingestion})
    return memory_service


class TestServices:

    def test_shared_services_are_reused(self, wired, ingestion):
        assert mcp_interface.get_memory_service() is wired
        assert mcp_interface.get_ingestion_service() is ingestion


class TestSerializers:

    def test_memory_without_embedding(self, memory_service):
        memory = memory_service.create_memory(MemoryInput(user_id=USER, title='Morning run', content='Five kilometers'))
        assert memory.embedding
        document = mcp_interface.serialize_memory(memory, 0.123456)
        assert 'embedding' not in document
        assert document['score'] == 0.1235
        assert document['title'] == 'Morning run'
        assert isinstance(document['created_at'], str)

    def test_entity_without_embedding(self, entities):
        entity = entities.get_or_create_entity(USER, 'person', 'Sarah Johnson')
        document = mcp_interface.serialize_entity(entity)
        assert 'embedding' not in document
        assert document['name'] == 'Sarah Johnson'

    def test_failures_are_reraised_with_context(self):
        with pytest.raises(Exception, match='Memory retrieval failed: boom'):
            mcp_interface._fail('Memory retrieval', RuntimeError('boom'))
