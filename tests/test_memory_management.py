"""Tests for memory construction, connections, retrieval and insight rating."""
from datetime import timedelta

import pytest

from memengine.models.core import Connection, Insight, Memory, MemoryInput, new_id
from memengine.services.memory_management import MemoryManagementService, MemoryNotFoundError, MemoryValidationError
from memengine.utils.record_store import InMemoryRecordStore, RecordStoreError
from memengine.utils.timestamp_utils import to_iso, utc_now

USER = 'user-1'


def _input(title, content, **kwargs):
    return MemoryInput(user_id=kwargs.pop('user_id', USER), title=title, content=content, **kwargs)


class TestCreateMemory:
    """Validation and memory construction."""

    @pytest.mark.parametrize('title,content', [('', 'content'), ('title', ''), ('   ', 'content')])
    def test_required_fields(self, memory_service, title, content):
        with pytest.raises(MemoryValidationError):
            memory_service.create_memory(_input(title, content))

    def test_user_required(self, memory_service):
        with pytest.raises(MemoryValidationError):
            memory_service.create_memory(_input('Title', 'Content', user_id=''))

    def test_unknown_memory_type(self, memory_service):
        with pytest.raises(MemoryValidationError):
            memory_service.create_memory(_input('Title', 'Content', memory_type='dream'))

    def test_defaults_and_persistence(self, store, memory_service):
        memory = memory_service.create_memory(
            _input('Lunch with the team', 'We talked about the roadmap', tags=['team', 'team'], metadata={'place': 'office'}))
        assert memory.memory_type == 'episodic'
        assert memory.strength == 1.0
        assert memory.access_count == 0
        assert memory.tags == ['team']
        assert memory.temporal_context['place'] == 'office'
        assert memory.embedding is not None
        assert store.find_by_id(Memory, memory.id).title == 'Lunch with the team'

    def test_explicit_importance_is_clamped(self, memory_service):
        memory = memory_service.create_memory(_input('Title', 'Content', importance=1.7))
        assert memory.importance == 1.0

    def test_links_supplied_entities(self, memory_service, entities):
        entity = entities.get_or_create_entity(USER, 'person', 'Sarah Johnson')
        memory = memory_service.create_memory(_input('Coffee', 'Coffee with Sarah', entity_ids=[entity.id]))
        connections = memory_service.get_memory_connections(USER, memory.id)
        assert [(c.target_id, c.connection_type, c.strength) for c in connections] == [(entity.id, 'related_to', 0.7)]


class TestImportance:
    """Importance heuristic."""

    def test_bounds(self, memory_service):
        loud = _input('URGENT deadline today', 'amazing critical urgent now', memory_type='episodic', source_collection='life_balance',
                      metadata={'due': to_iso(utc_now() - timedelta(days=2))})
        quiet = _input('Note', 'plain text', memory_type='semantic')
        assert memory_service.calculate_importance(loud) == 1.0
        assert memory_service.calculate_importance(quiet) == 0.5

    def test_due_date_tiers_decrease(self, memory_service):
        now = utc_now().replace(hour=12, minute=0, second=0, microsecond=0)

        def importance(delta):
            return memory_service.calculate_importance(
                _input('Pay rent', 'Transfer money', memory_type='semantic', metadata={'due': to_iso(now + delta)}), now)

        overdue = importance(timedelta(days=-2))
        today = importance(timedelta(minutes=1))
        soon = importance(timedelta(days=2))
        week = importance(timedelta(days=5))
        later = importance(timedelta(days=30))
        assert overdue > today > soon > week > later

    def test_type_and_source_bonus(self, memory_service):
        episodic = memory_service.calculate_importance(_input('Note', 'plain text', memory_type='episodic'))
        semantic = memory_service.calculate_importance(_input('Note', 'plain text', memory_type='semantic'))
        tasks = memory_service.calculate_importance(_input('Note', 'plain text', memory_type='semantic', source_collection='tasks'))
        assert episodic > semantic
        assert tasks > semantic


class TestCreateOrUpdate:
    """Title-keyed merging of semantic and procedural memories."""

    def test_second_call_appends(self, memory_service):
        first, created = memory_service.create_or_update_memory(_input('Morning runs', 'Runs in the morning.', memory_type='semantic'))
        second, created_again = memory_service.create_or_update_memory(
            _input('morning runs', 'Ran 5k before work.', memory_type='semantic', source_record_ids=['r2']), 'Ran 5k before work.')
        assert created and not created_again
        assert second.id == first.id
        assert second.content == 'Runs in the morning. Ran 5k before work.'
        assert 'r2' in second.source_record_ids

    def test_append_is_not_repeated(self, memory_service):
        memory_service.create_or_update_memory(_input('Weekly review', 'Review every Friday.', memory_type='procedural'))
        memory_service.create_or_update_memory(_input('Weekly review', 'Review every Friday.', memory_type='procedural'))
        memory, _ = memory_service.create_or_update_memory(_input('Weekly review', 'Review every Friday.', memory_type='procedural'))
        assert memory.content == 'Review every Friday.'

    def test_episodic_rejected(self, memory_service):
        with pytest.raises(MemoryValidationError):
            memory_service.create_or_update_memory(_input('Title', 'Content', memory_type='episodic'))

    def test_types_merge_separately(self, memory_service):
        semantic, _ = memory_service.create_or_update_memory(_input('Weekly review', 'Reviews happen on Friday.', memory_type='semantic'))
        procedural, created = memory_service.create_or_update_memory(
            _input('Weekly review', 'Open the tracker, close stale tasks.', memory_type='procedural'))
        assert created
        assert procedural.id != semantic.id
        assert procedural.memory_type == 'procedural'


class TestConnections:
    """Connection creation is idempotent per endpoints and type."""

    def test_no_duplicates_and_monotone_strength(self, store, memory_service):
        a = memory_service.create_memory(_input('First', 'one'))
        b = memory_service.create_memory(_input('Second', 'two'))
        first = memory_service.create_connection(USER, 'memory', a.id, 'memory', b.id, 'related_to', 0.6)
        weaker = memory_service.create_connection(USER, 'memory', a.id, 'memory', b.id, 'related_to', 0.3)
        stronger = memory_service.create_connection(USER, 'memory', a.id, 'memory', b.id, 'related_to', 0.9)
        assert first.id == weaker.id == stronger.id
        assert weaker.strength == 0.6
        assert stronger.strength == 0.9
        assert store.count(Connection) == 1

    def test_different_type_is_new_edge(self, memory_service):
        a = memory_service.create_memory(_input('First', 'one'))
        b = memory_service.create_memory(_input('Second', 'two'))
        memory_service.create_connection(USER, 'memory', a.id, 'memory', b.id, 'related_to', 0.6)
        memory_service.create_connection(USER, 'memory', a.id, 'memory', b.id, 'part_of_pattern', 0.75)
        connections = memory_service.get_memory_connections(USER, b.id)
        assert [c.connection_type for c in connections] == ['part_of_pattern', 'related_to']

    def test_self_link_rejected(self, memory_service):
        a = memory_service.create_memory(_input('First', 'one'))
        with pytest.raises(MemoryValidationError):
            memory_service.create_connection(USER, 'memory', a.id, 'memory', a.id, 'related_to')

    def test_bad_endpoint_type(self, memory_service):
        with pytest.raises(MemoryValidationError):
            memory_service.create_connection(USER, 'document', 'x', 'memory', 'y', 'related_to')

    def test_entity_connections(self, memory_service, entities):
        entity = entities.get_or_create_entity(USER, 'place', 'Central Park')
        memory = memory_service.create_memory(_input('Walk', 'A walk in the park', entity_ids=[entity.id]))
        connections = memory_service.get_entity_connections(USER, entity.id)
        assert [c.source_id for c in connections] == [memory.id]


class TestRetrieval:
    """Ranking, access tracking and ordering."""

    def test_empty_query_returns_most_recent(self, memory_service):
        titles = ['Oldest', 'Middle', 'Newest']
        for index, title in enumerate(titles):
            memory = memory_service.create_memory(_input(title, f'entry {title}'))
            memory.created_at = utc_now() - timedelta(hours=len(titles) - index)
            memory_service.update_memory(memory)
        results = memory_service.retrieve_memories(USER, '', limit=2)
        assert [m.title for m in results] == ['Newest', 'Middle']

    def test_exact_title_ranks_first(self, memory_service):
        target = memory_service.create_memory(_input('Submit tax report', 'File the annual tax report with the accountant'))
        memory_service.create_memory(_input('Yoga class', 'Stretching session at the gym'))
        results = memory_service.retrieve_scored_memories(USER, 'Submit tax report')
        assert results[0][0].id == target.id
        assert all(score > 0.5 for _, score in results)

    def test_exact_title_scores_above_unrelated(self, memory_service):
        target = memory_service.create_memory(_input('Submit tax report', 'File the annual return'))
        unrelated = memory_service.create_memory(_input('Yoga class', 'Stretching session at the gym'))
        query = 'Submit tax report'
        query_embedding = memory_service.embedding.embed(query)
        assert memory_service.score_memory(target, query, query_embedding) >= memory_service.score_memory(unrelated, query, query_embedding)

    def test_retrieval_records_access(self, memory_service):
        memory = memory_service.create_memory(_input('Submit tax report', 'File the annual return'))
        memory_service.retrieve_memories(USER, 'Submit tax report')
        assert memory_service.get_memory(USER, memory.id).access_count == 1

    def test_access_save_failure_still_returns(self, embedding, entities, memory_settings):

        class ReadOnlyStore(InMemoryRecordStore):
            read_only = False

            def save(self, record):
                if self.read_only:
                    raise RecordStoreError('index is read-only')
                super().save(record)

        store = ReadOnlyStore()
        service = MemoryManagementService(store=store, embedding=embedding, entities=entities, settings=memory_settings)
        memory = service.create_memory(_input('Submit tax report', 'File the annual return'))
        store.read_only = True
        results = service.retrieve_memories(USER, 'Submit tax report')
        assert [m.id for m in results] == [memory.id]
        assert results[0].access_count == 1

    def test_weak_memories_are_skipped(self, memory_service):
        memory = memory_service.create_memory(_input('Submit tax report', 'File the annual return'))
        memory.strength = 0.1
        memory_service.update_memory(memory)
        assert memory_service.retrieve_memories(USER, 'Submit tax report') == []

    def test_user_id_required(self, memory_service):
        with pytest.raises(MemoryValidationError):
            memory_service.retrieve_memories('  ', 'anything')

    def test_users_are_isolated(self, memory_service):
        memory_service.create_memory(_input('Submit tax report', 'File the annual return', user_id='user-2'))
        assert memory_service.retrieve_memories(USER, 'Submit tax report') == []

    def test_recent_by_tags(self, memory_service):
        memory_service.create_memory(_input('Run', 'Morning run', tags=['exercise', 'outdoor']))
        memory_service.create_memory(_input('Gym', 'Weights', tags=['exercise']))
        memory_service.create_memory(_input('Read', 'Novel', tags=['reading']))
        assert len(memory_service.get_recent_memories_by_tags(USER, ['exercise'])) == 2
        both = memory_service.get_recent_memories_by_tags(USER, ['exercise', 'outdoor'], match_all=True)
        assert [m.title for m in both] == ['Run']

    def test_memory_details_and_not_found(self, memory_service):
        memory = memory_service.create_memory(_input('Run', 'Morning run'))
        details = memory_service.get_memory_details(USER, memory.id)
        assert details['memory'].access_count == 1
        assert details['connections'] == []
        with pytest.raises(MemoryNotFoundError):
            memory_service.get_memory_details('user-2', memory.id)

    def test_timeline_and_tags(self, memory_service):
        old = memory_service.create_memory(_input('Old trip', 'Went hiking', tags=['hiking']))
        old.created_at = utc_now() - timedelta(days=45)
        memory_service.update_memory(old)
        memory_service.create_memory(_input('Recent trip', 'Went hiking again', tags=['hiking']))
        memory_service.create_memory(_input('Book', 'Finished a novel', tags=['reading']))

        timeline = memory_service.get_memory_timeline(USER)
        assert [m.title for m in timeline] == ['Recent trip', 'Book']
        assert [m.title for m in memory_service.get_memory_timeline(USER, tags=['hiking'])] == ['Recent trip']
        assert memory_service.get_memory_tags(USER) == [('hiking', 2), ('reading', 1)]

    def test_timeline_rejects_inverted_range(self, memory_service):
        now = utc_now()
        with pytest.raises(MemoryValidationError):
            memory_service.get_memory_timeline(USER, start=now, end=now - timedelta(days=1))


class TestInsights:
    """Insight persistence and rating."""

    def _insight(self, memory_service, user_id=USER):
        return memory_service.create_insight(
            Insight(id=new_id(), user_id=user_id, title='Interest in Hiking', content='You hike a lot.', category='topic_trend', confidence=0.75))

    def test_rate_once(self, memory_service):
        insight = self._insight(memory_service)
        rated = memory_service.rate_insight(USER, insight.id, 4)
        assert rated.user_rating == 4
        with pytest.raises(MemoryValidationError):
            memory_service.rate_insight(USER, insight.id, 5)

    @pytest.mark.parametrize('rating', [0, 6, True, 3.5])
    def test_rating_range(self, memory_service, rating):
        insight = self._insight(memory_service)
        with pytest.raises(MemoryValidationError):
            memory_service.rate_insight(USER, insight.id, rating)

    def test_other_users_insight_is_not_found(self, memory_service):
        insight = self._insight(memory_service, user_id='user-2')
        with pytest.raises(MemoryNotFoundError):
            memory_service.rate_insight(USER, insight.id, 3)

    def test_empty_user_rejected(self, memory_service):
        insight = self._insight(memory_service)
        with pytest.raises(MemoryValidationError):
            memory_service.rate_insight('', insight.id, 3)

    def test_get_insights_by_category(self, memory_service):
        self._insight(memory_service)
        assert len(memory_service.get_insights(USER, 'topic_trend')) == 1
        assert memory_service.get_insights(USER, 'highlight') == []


class TestSystemStatus:

    def test_counts(self, memory_service):
        memory_service.create_memory(_input('Run', 'Morning run'))
        memory_service.create_or_update_memory(_input('Running habit', 'Runs often', memory_type='semantic'))
        status = memory_service.get_system_status(USER)
        assert status['memories']['episodic'] == 1
        assert status['memories']['semantic'] == 1
        assert status['total_memories'] == 2
        assert status['last_consolidation'] is None
