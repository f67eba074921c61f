"""MemEngine test configuration."""
import dataclasses

import pytest

from memengine.services.embedding import EmbeddingService
from memengine.services.entity_extraction import EntityRecognitionService
from memengine.services.event_ingestion import EventIngestionService
from memengine.services.memory_management import MemoryManagementService
from memengine.utils.config import EmbeddingConfig, config
from memengine.utils.record_store import InMemoryRecordStore

TEST_DIMENSION = 256


@pytest.fixture
def store():
    """Fresh in-process record store."""
    return InMemoryRecordStore()


@pytest.fixture
def embedding_settings():
    return EmbeddingConfig(dimension=TEST_DIMENSION,
                           use_external_api=False,
                           use_fallback=True,
                           tokens_per_minute=150000,
                           max_cache_entries=1000)


@pytest.fixture
def embedding(embedding_settings):
    """Embedding service using only the local hashed fallback."""
    return EmbeddingService(settings=embedding_settings)


@pytest.fixture
def entity_settings():
    return dataclasses.replace(config.entity,
                               name_length_ratio=0.7,
                               max_edit_distance_ratio=0.3,
                               min_name_length=3,
                               concept_min_occurrences=2,
                               concept_frequency_threshold=3,
                               concept_min_word_length=4)


@pytest.fixture
def entities(store, embedding, entity_settings):
    return EntityRecognitionService(store, embedding, settings=entity_settings)


@pytest.fixture
def memory_settings():
    """Memory settings pinned to the documented defaults regardless of the environment."""
    return dataclasses.replace(config.memory,
                               decay_rate=0.05,
                               min_strength_threshold=0.2,
                               archive_strength_floor=0.05,
                               strength_epsilon=0.01,
                               max_search_results=50,
                               min_retrieval_score=0.5,
                               recent_days_threshold=3,
                               min_similarity_threshold=0.7,
                               min_cluster_embeddings=5,
                               enable_insight_generation=True,
                               max_insights_per_consolidation=5,
                               min_insight_memories=5,
                               concept_frequency_threshold=3,
                               highlight_importance_threshold=0.8,
                               consolidation_interval_hours=24,
                               max_memories_per_consolidation=500,
                               enable_semantic_clustering=True,
                               generic_tags=['daily_log', 'app_usage'])


@pytest.fixture
def memory_service(store, embedding, entities, memory_settings):
    return MemoryManagementService(store=store, embedding=embedding, entities=entities, settings=memory_settings)


@pytest.fixture
def ingestion(memory_service):
    return EventIngestionService(memory_service)
