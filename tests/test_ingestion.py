"""Tests for turning host activity records into memories."""
from datetime import timedelta

import pytest

from memengine.models.core import Entity
from memengine.services.memory_management import MemoryValidationError
from memengine.utils.timestamp_utils import to_iso, utc_now

USER = 'user-1'


def _connection_types(memory_service, memory_id):
    return {c.connection_type for c in memory_service.get_memory_connections(USER, memory_id)}


def _by_title(memory_service, title):
    matches = [m for m in memory_service.list_memories(USER) if m.title == title]
    return matches[0] if matches else None


class TestDispatch:
    """Kind routing and required fields."""

    def test_unknown_kind_is_skipped(self, ingestion, memory_service):
        assert ingestion.process_record('calendar', {'id': 'c1', 'user_id': USER, 'title': 'Standup'}) is None
        assert memory_service.list_memories(USER) == []

    def test_missing_user_rejected(self, ingestion):
        with pytest.raises(MemoryValidationError):
            ingestion.process_record('tasks', {'id': 't1', 'title': 'Buy milk'})

    def test_user_alias_field(self, ingestion):
        memory = ingestion.process_record('tasks', {'id': 't1', 'user': USER, 'title': 'Buy milk'})
        assert memory.user_id == USER


class TestTasks:

    def test_task_due_tomorrow(self, ingestion):
        due = utc_now() + timedelta(days=1)
        memory = ingestion.process_record('tasks', {'id': 't1', 'user_id': USER, 'title': 'Submit report', 'due': to_iso(due)})
        assert memory.title == 'Task: Submit report'
        assert memory.importance >= 0.75
        assert 'due-soon' in memory.tags
        assert 'The task is due tomorrow.' in memory.content
        assert memory.source_record_ids == ['t1']

    def test_overdue_task(self, ingestion):
        due = utc_now() - timedelta(days=2)
        memory = ingestion.process_record('tasks', {'id': 't2', 'user_id': USER, 'title': 'Renew passport', 'due': to_iso(due)})
        assert 'overdue' in memory.tags
        assert memory.importance == 0.9
        assert 'overdue by 2 days' in memory.content

    def test_category_tag_and_no_due_date(self, ingestion):
        memory = ingestion.process_record('tasks', {'id': 't3', 'user_id': USER, 'title': 'Water plants', 'category': 'Home'})
        assert memory.tags == ['task', 'home']
        assert 'due' not in memory.temporal_context

    def test_task_without_title_is_skipped(self, ingestion):
        assert ingestion.process_record('tasks', {'id': 't4', 'user_id': USER, 'title': '  '}) is None

    def test_project_entity_and_workflow_memory(self, ingestion, memory_service, store):
        first = ingestion.process_record('tasks', {'id': 't5', 'user_id': USER, 'title': 'Draft launch plan', 'project': 'Phoenix'})
        second = ingestion.process_record('tasks', {'id': 't6', 'user_id': USER, 'title': 'Book venue', 'project': 'Phoenix'})

        projects = store.find_all_by_filter(Entity, {'user_id': USER, 'entity_type': 'project'})
        assert [p.name for p in projects] == ['Phoenix']
        assert projects[0].interaction_count == 2

        workflow = _by_title(memory_service, 'Working on project: Phoenix')
        assert workflow.memory_type == 'procedural'
        assert 'Added new task: Book venue.' in workflow.content
        assert set(workflow.source_record_ids) == {'t5', 't6'}

        for memory in (first, second):
            assert {'belongs_to_project', 'contributes_to'} <= _connection_types(memory_service, memory.id)


class TestHabits:

    def test_long_streak_creates_formation_pattern(self, ingestion, memory_service):
        memory = ingestion.process_record('habits', {
            'id': 'h1',
            'user_id': USER,
            'name': 'Meditate',
            'type': 'Wellness',
            'status': 'Active',
            'streak': 10,
            'priority': 3
        })
        assert memory.title == 'Habit: Meditate'
        assert memory.tags == ['habit', 'wellness', 'active']
        assert memory.importance == 0.95
        assert 'This is a significant streak!' in memory.content

        pattern = _by_title(memory_service, 'Habit formation patterns')
        assert pattern.memory_type == 'procedural'
        assert 'demonstrates_pattern' in _connection_types(memory_service, memory.id)

    def test_second_streak_reinforces_pattern(self, ingestion, memory_service):
        ingestion.process_record('habits', {'id': 'h1', 'user_id': USER, 'name': 'Meditate', 'streak': 10})
        second = ingestion.process_record('habits', {'id': 'h2', 'user_id': USER, 'name': 'Journal', 'streak': 8})

        patterns = [m for m in memory_service.list_memories(USER) if m.title == 'Habit formation patterns']
        assert len(patterns) == 1
        assert "The habit 'Journal' has been maintained for 8 days" in patterns[0].content
        assert 'reinforces_pattern' in _connection_types(memory_service, second.id)

    def test_short_streak_has_no_pattern(self, ingestion, memory_service):
        ingestion.process_record('habits', {'id': 'h3', 'user_id': USER, 'name': 'Stretch', 'streak': 3})
        assert _by_title(memory_service, 'Habit formation patterns') is None


class TestDailyLog:

    def _log(self, ingestion, log_id, day, **fields):
        record = {'id': log_id, 'user_id': USER, 'date': f'2024-05-{day:02d}T21:00:00+00:00'}
        record.update(fields)
        return ingestion.process_record('daily_log', record)

    def test_log_memory(self, ingestion):
        memory = self._log(ingestion, 'd1', 3, summary='Walked along the river', feeling='Calm', score=4, bath=True)
        assert memory.title == 'Daily Log: May 3, 2024'
        assert memory.content.startswith('Daily reflection for May 3, 2024. Feeling: calm. Day rated 4/5. Took a bath today')
        assert memory.tags == ['daily_log', 'feeling', 'calm', 'bath', 'good-day']
        assert memory.importance == pytest.approx(0.75)

    def test_empty_log_is_skipped(self, ingestion):
        assert self._log(ingestion, 'd1', 3) is None

    def test_recurring_feeling_becomes_pattern(self, ingestion, memory_service):
        self._log(ingestion, 'd1', 1, feeling='tired', summary='Long meeting day')
        self._log(ingestion, 'd2', 2, feeling='tired', summary='Late train home')
        assert _by_title(memory_service, 'Pattern of feeling: tired') is None

        third = self._log(ingestion, 'd3', 3, feeling='tired', summary='Too much coffee')
        pattern = _by_title(memory_service, 'Pattern of feeling: tired')
        assert pattern.memory_type == 'semantic'
        assert 'contributes_to_pattern' in _connection_types(memory_service, third.id)

    def test_recurring_good_days(self, ingestion, memory_service):
        for day in (1, 2, 3):
            self._log(ingestion, f'd{day}', day, score=5, summary=f'Finished chapter {day} of the book')
        assert _by_title(memory_service, 'Pattern of positive days') is not None
        assert _by_title(memory_service, 'Pattern of challenging days') is None


class TestLifeBalance:

    def _assess(self, ingestion, balance_id, **scores):
        record = {'id': balance_id, 'user_id': USER, 'date': '2024-05-03T10:00:00+00:00'}
        record.update(scores)
        return ingestion.process_record('life_balance', record)

    def test_assessment_memory(self, ingestion, memory_service):
        memory = self._assess(ingestion, 'b1', health=9, career=2, finance=5)
        assert memory.title == 'Life Balance: May 3, 2024'
        assert memory.tags == ['life_balance', 'assessment', 'strength-health', 'challenge-career']
        assert memory.importance == pytest.approx(0.7)
        assert 'Strongest area is Health (9/10)' in memory.content

        assert _by_title(memory_service, 'Understanding of health area').tags == ['life_balance', 'health', 'positive']
        assert _by_title(memory_service, 'Understanding of career area').tags == ['life_balance', 'career', 'negative']
        assert _by_title(memory_service, 'Understanding of finance area') is None
        assert 'provides_understanding' in _connection_types(memory_service, memory.id)

    def test_too_few_valid_scores(self, ingestion):
        assert self._assess(ingestion, 'b1', health=11, career=4, finance=0) is None

    def test_improving_trend(self, ingestion, memory_service):
        for index, health in enumerate((4, 5, 6)):
            latest = self._assess(ingestion, f'b{index}', health=health, career=5, finance=5)

        trend = _by_title(memory_service, 'Improving trend in health')
        assert trend.memory_type == 'procedural'
        assert trend.tags == ['trend', 'health', 'improving']
        assert 'evidence_of_trend' in _connection_types(memory_service, latest.id)
        assert _by_title(memory_service, 'Improving trend in career') is None

    def test_mixed_series_has_no_trend(self, ingestion, memory_service):
        for index, health in enumerate((4, 6, 5)):
            self._assess(ingestion, f'b{index}', health=health, career=5, finance=5)
        assert not [m for m in memory_service.list_memories(USER) if 'trend' in m.tags]


class TestAppUsage:

    def _session(self, ingestion, item_id, minutes, **fields):
        begin = utc_now().replace(hour=9, minute=0, second=0, microsecond=0)
        record = {
            'id': item_id,
            'user_id': USER,
            'app': 'VS Code',
            'begin_date': to_iso(begin),
            'end_date': to_iso(begin + timedelta(minutes=minutes))
        }
        record.update(fields)
        return ingestion.process_record('track_items', record)

    def test_session_memory_and_device(self, ingestion, memory_service, store):
        memory = self._session(ingestion, 'a1', 45, title='memengine', device='laptop')
        assert memory.title == 'Using VS Code: memengine'
        assert memory.tags == ['app_usage', 'vs code', 'development', 'morning', 'medium-session']
        assert memory.importance == pytest.approx(0.5)
        assert 'for 45 minutes' in memory.content

        devices = store.find_all_by_filter(Entity, {'user_id': USER, 'entity_type': 'device'})
        assert [d.name for d in devices] == ['Device laptop']
        assert 'used_device' in _connection_types(memory_service, memory.id)

    def test_title_falls_back_to_app(self, ingestion):
        assert self._session(ingestion, 'a1', 10).title == 'Using VS Code'

    def test_too_short_or_incomplete_is_skipped(self, ingestion):
        assert self._session(ingestion, 'a1', 0.5) is None
        assert self._session(ingestion, 'a2', 20, app='') is None
        assert self._session(ingestion, 'a3', 20, end_date=None) is None

    def test_regular_usage_becomes_pattern(self, ingestion, memory_service):
        for index in range(3):
            latest = self._session(ingestion, f'a{index}', 40)
        pattern = _by_title(memory_service, 'VS Code usage pattern')
        assert pattern.memory_type == 'procedural'
        assert 'establishes_pattern' in _connection_types(memory_service, latest.id)


class TestFocus:

    def _focus(self, ingestion, focus_id, minutes, tags='["Writing", "work"]'):
        begin = utc_now().replace(hour=14, minute=0, second=0, microsecond=0)
        return ingestion.process_record('track_focus', {
            'id': focus_id,
            'user_id': USER,
            'tags': tags,
            'begin_date': to_iso(begin),
            'end_date': to_iso(begin + timedelta(minutes=minutes))
        })

    def test_deep_focus_memory(self, ingestion):
        memory = self._focus(ingestion, 'f1', 100)
        assert memory.title == 'Focus Session: writing, work'
        assert memory.tags == ['focus_session', 'writing', 'work', 'afternoon', 'deep-focus']
        assert memory.importance == pytest.approx(0.85)
        assert 'Focused for 1 hour 40 minutes' in memory.content

    def test_short_session_is_skipped(self, ingestion):
        assert self._focus(ingestion, 'f1', 4) is None

    def test_comma_separated_tags(self, ingestion):
        assert self._focus(ingestion, 'f1', 30, tags='reading, study').tags[:3] == ['focus_session', 'reading', 'study']

    def test_repeated_focus_becomes_pattern(self, ingestion, memory_service):
        for index in range(3):
            latest = self._focus(ingestion, f'f{index}', 50)
        assert _by_title(memory_service, 'Focus pattern: writing').memory_type == 'semantic'
        assert _by_title(memory_service, 'Focus pattern: work') is not None
        assert 'establishes_pattern' in _connection_types(memory_service, latest.id)
