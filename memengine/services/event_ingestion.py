"""
Event Ingestion Service: turns host activity records into memories, entities and connections.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.core import Memory, MemoryInput, MemoryType, NodeType
from ..models.events import AppUsageEvent, DailyLogEvent, EventKind, FocusEvent, HabitEvent, LifeBalanceEvent, TaskEvent
from ..utils.activity_utils import (DUE_OVERDUE, DUE_SOON, DUE_THIS_WEEK, DUE_TODAY, PRODUCTIVE_APP_CATEGORIES, categorize_app,
                                    due_date_bucket, format_duration, time_of_day_bucket)
from ..utils.logging_config import get_logger
from ..utils.text_utils import contains_any
from ..utils.timestamp_utils import to_iso, utc_now
from .entity_extraction import EntityRecognitionError
from .memory_management import EMOTIONAL_KEYWORDS, MemoryManagementError, MemoryManagementService, MemoryValidationError

logger = get_logger(__name__)

TASK_DUE_IMPORTANCE = {DUE_OVERDUE: 0.9, DUE_TODAY: 0.85, DUE_SOON: 0.8, DUE_THIS_WEEK: 0.75}
TASK_FUTURE_IMPORTANCE = 0.7

HABIT_STREAK_THRESHOLD = 7
PATTERN_MIN_OCCURRENCES = 3
FOCUS_PATTERN_TAGS = ('creative', 'writing', 'learning', 'work')

DEVICE_DESCRIPTION = 'A device used for activities'


def _day_label(moment: datetime, short: bool = False) -> str:
    month = moment.strftime('%b' if short else '%B')
    return f'{month} {moment.day}, {moment.year}'


def _clock_label(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    return f'{hour}:{moment.minute:02d} {"AM" if moment.hour < 12 else "PM"}'


class EventIngestionService:
    """Dispatches activity records to one handler per event kind."""

    def __init__(self, memories: MemoryManagementService):
        self.memories = memories
        self.entities = memories.entities
        self._handlers: Dict[EventKind, Callable[[Dict[str, Any]], Optional[Memory]]] = {
            EventKind.TASKS: self.process_task,
            EventKind.HABITS: self.process_habit,
            EventKind.DAILY_LOG: self.process_daily_log,
            EventKind.LIFE_BALANCE: self.process_life_balance,
            EventKind.TRACK_ITEMS: self.process_track_item,
            EventKind.TRACK_FOCUS: self.process_track_focus
        }
        logger.info('Initialized EventIngestionService')

    def process_record(self, kind: str, record: Dict[str, Any]) -> Optional[Memory]:
        """Ingest one host record.

        Args:
            kind: Collection kind of the record (tasks, habits, daily_log, ...)
            record: Record fields; must carry a user id

        Returns:
            The episodic memory created for the record, or None when the kind is
            unsupported or the record carries too little signal

        Raises:
            MemoryValidationError: If the record has no user id
            MemoryManagementError: If the episodic memory cannot be persisted
        """
        event_kind = EventKind.parse(kind)
        if event_kind is None:
            logger.info(f'Skipping unsupported record kind: {kind}')
            return None

        record = record or {}
        if not (record.get('user_id') or record.get('user')):
            raise MemoryValidationError(f'{event_kind.value} record {record.get("id", "")} has no user id')

        logger.debug(f'Processing {event_kind.value} record {record.get("id", "")}')
        return self._handlers[event_kind](record)

    # Shared helpers

    def _extract_entity_ids(self, user_id: str, text: str) -> List[str]:
        try:
            return [entity.id for entity in self.entities.extract_entities(user_id, text)]
        except EntityRecognitionError as e:
            logger.warning(f'Entity extraction failed, continuing without entities: {e}')
            return []

    def _link(self, user_id: str, source: Memory, target_type: str, target_id: str, connection_type: str, strength: float) -> None:
        try:
            self.memories.create_connection(user_id, NodeType.MEMORY.value, source.id, target_type, target_id, connection_type, strength)
        except MemoryManagementError as e:
            logger.error(f'Failed to create {connection_type} connection from memory {source.id}: {e}')

    def _link_device(self, user_id: str, memory: Memory, device: str) -> None:
        if not device:
            return
        try:
            entity = self.entities.get_or_create_entity(user_id, 'device', f'Device {device}', DEVICE_DESCRIPTION)
        except EntityRecognitionError as e:
            logger.error(f'Failed to register device {device}: {e}')
            return
        self._link(user_id, memory, NodeType.ENTITY.value, entity.id, 'used_device', 0.7)

    def _recent_episodes(self, user_id: str, tags: List[str], limit: int = 10) -> List[Memory]:
        memories = self.memories.get_recent_memories_by_tags(user_id, tags, limit=0, match_all=True)
        episodes = [m for m in memories if m.memory_type == MemoryType.EPISODIC.value]
        return episodes[:limit] if limit > 0 else episodes

    def _merge_pattern(self,
                       user_id: str,
                       episode: Memory,
                       memory_input: MemoryInput,
                       update_text: Optional[str],
                       existing_link: str,
                       new_link: str,
                       strength: float) -> Optional[Memory]:
        """Extend or create a semantic/procedural memory and link the episode to it."""
        try:
            pattern, created = self.memories.create_or_update_memory(memory_input, update_text)
        except MemoryManagementError as e:
            logger.error(f'Failed to record pattern memory {memory_input.title!r}: {e}')
            return None
        self._link(user_id, episode, NodeType.MEMORY.value, pattern.id, new_link if created else existing_link, strength)
        return pattern

    # Handlers

    def process_task(self, record: Dict[str, Any]) -> Optional[Memory]:
        event = TaskEvent.from_record(record)
        if not event.title:
            logger.debug(f'Skipping task {event.id} without a title')
            return None

        bucket, days = due_date_bucket(event.due, utc_now())

        content = f"Created a task titled '{event.title}'"
        if event.description:
            content += f' with description: {event.description}'
        if bucket == DUE_OVERDUE:
            overdue_days = max(-days, 0)
            content += f' The task is overdue by {overdue_days} days.' if overdue_days else ' The task is overdue.'
        elif bucket == DUE_TODAY:
            content += ' The task is due today.'
        elif bucket is not None and days == 1:
            content += ' The task is due tomorrow.'
        elif bucket is not None:
            content += f' The task is due in {days} days.'

        tags = ['task']
        if event.category:
            tags.append(event.category.lower())
        if bucket is not None:
            tags.append(bucket)

        metadata = {'task_id': event.id, 'title': event.title, 'description': event.description}
        if event.project:
            metadata['project'] = event.project
        if event.category:
            metadata['category'] = event.category
        if event.due is not None:
            metadata['due'] = to_iso(event.due)

        importance = None
        if bucket is not None:
            importance = TASK_DUE_IMPORTANCE.get(bucket, TASK_FUTURE_IMPORTANCE)

        memory = self.memories.create_memory(
            MemoryInput(user_id=event.user_id,
                        title=f'Task: {event.title}',
                        content=content,
                        memory_type=MemoryType.EPISODIC.value,
                        tags=tags,
                        source_collection=EventKind.TASKS.value,
                        source_record_ids=[event.id],
                        metadata=metadata,
                        entity_ids=self._extract_entity_ids(event.user_id, f'{event.title} {event.description}'),
                        importance=importance))

        if event.project:
            self._record_project(event, memory)

        logger.debug(f'Created memory {memory.id} for task {event.id}')
        return memory

    def _record_project(self, event: TaskEvent, memory: Memory) -> None:
        try:
            project = self.entities.get_or_create_entity(event.user_id, 'project', event.project,
                                                         f'A project containing tasks like: {event.title}')
        except EntityRecognitionError as e:
            logger.error(f'Failed to register project {event.project!r}: {e}')
            return

        self._link(event.user_id, memory, NodeType.ENTITY.value, project.id, 'belongs_to_project', 0.9)
        self._merge_pattern(
            event.user_id, memory,
            MemoryInput(user_id=event.user_id,
                        title=f'Working on project: {event.project}',
                        content=f'The project {event.project} involves tasks including: {event.title}.',
                        memory_type=MemoryType.PROCEDURAL.value,
                        tags=['project', 'workflow', event.project.lower()],
                        source_collection=EventKind.TASKS.value,
                        source_record_ids=[event.id],
                        entity_ids=[project.id]), f'Added new task: {event.title}.', 'contributes_to', 'contributes_to', 0.8)

    def process_habit(self, record: Dict[str, Any]) -> Optional[Memory]:
        event = HabitEvent.from_record(record)
        if not event.name:
            logger.debug(f'Skipping habit {event.id} without a name')
            return None

        tags = ['habit']
        if event.habit_type:
            tags.append(event.habit_type.lower())
        if event.status:
            tags.append(event.status.lower())

        content = f"Tracking habit '{event.name}' of type '{event.habit_type}' with status '{event.status}'."
        if event.streak > 0:
            content += f' Current streak: {event.streak} days.'
            if event.streak >= HABIT_STREAK_THRESHOLD:
                content += ' This is a significant streak!'

        importance = min(0.5 + event.priority * 0.1 + event.streak * 0.02, 0.95)
        memory = self.memories.create_memory(
            MemoryInput(user_id=event.user_id,
                        title=f'Habit: {event.name}',
                        content=content,
                        memory_type=MemoryType.EPISODIC.value,
                        tags=tags,
                        source_collection=EventKind.HABITS.value,
                        source_record_ids=[event.id],
                        metadata={
                            'habit_id': event.id,
                            'habit_name': event.name,
                            'type': event.habit_type,
                            'status': event.status,
                            'streak': event.streak,
                            'priority': event.priority
                        },
                        importance=importance))

        if event.streak >= HABIT_STREAK_THRESHOLD:
            self._record_habit_formation(event, memory)

        logger.debug(f'Created memory {memory.id} for habit {event.id}')
        return memory

    def _record_habit_formation(self, event: HabitEvent, memory: Memory) -> None:
        title = 'Habit formation patterns'
        existing = self.memories.find_memory_by_title(event.user_id, MemoryType.PROCEDURAL.value, title)
        if existing is not None:
            if event.name in existing.content:
                return
            try:
                self.memories.append_to_memory(
                    existing, f"The habit '{event.name}' has been maintained for {event.streak} days, showing consistent behavior.",
                    [event.id])
            except MemoryManagementError as e:
                logger.error(f'Failed to update habit formation memory: {e}')
                return
            self._link(event.user_id, memory, NodeType.MEMORY.value, existing.id, 'reinforces_pattern', 0.8)
            return

        self._merge_pattern(
            event.user_id, memory,
            MemoryInput(user_id=event.user_id,
                        title=title,
                        content=f"Regular habits like '{event.name}' of type '{event.habit_type}' with a streak of "
                        f'{event.streak} days demonstrate consistent behavior patterns.',
                        memory_type=MemoryType.PROCEDURAL.value,
                        tags=['habit', 'pattern', 'consistency'] + ([event.habit_type.lower()] if event.habit_type else []),
                        source_collection=EventKind.HABITS.value,
                        source_record_ids=[event.id]), None, 'reinforces_pattern', 'demonstrates_pattern', 0.8)

    def process_daily_log(self, record: Dict[str, Any]) -> Optional[Memory]:
        event = DailyLogEvent.from_record(record)
        if not event.summary and not event.feeling:
            logger.debug(f'Skipping daily log {event.id} without summary or feeling')
            return None

        log_date = event.date or utc_now()
        score = event.score if 1 <= event.score <= 5 else 0
        emotional = contains_any(event.summary, EMOTIONAL_KEYWORDS)

        tags = ['daily_log']
        if event.feeling:
            tags.extend(['feeling', event.feeling])
        if event.bath:
            tags.append('bath')
        if score >= 4:
            tags.append('good-day')
        elif score and score <= 2:
            tags.append('challenging-day')
        if emotional:
            tags.append('emotional')

        importance = 0.6
        if score and (score >= 4 or score <= 2):
            importance += 0.15
        if emotional:
            importance += 0.1
        importance = min(importance, 0.95)

        content = f'Daily reflection for {_day_label(log_date)}'
        if event.feeling:
            content += f'. Feeling: {event.feeling}'
        if score:
            content += f'. Day rated {score}/5'
        if event.bath:
            content += '. Took a bath today'
        if event.summary:
            content += f'. {event.summary}'

        memory = self.memories.create_memory(
            MemoryInput(user_id=event.user_id,
                        title=f'Daily Log: {_day_label(log_date, short=True)}',
                        content=content,
                        memory_type=MemoryType.EPISODIC.value,
                        tags=tags,
                        source_collection=EventKind.DAILY_LOG.value,
                        source_record_ids=[event.id],
                        metadata={
                            'log_id': event.id,
                            'date': to_iso(log_date),
                            'score': score,
                            'feeling': event.feeling,
                            'bath': event.bath
                        },
                        entity_ids=self._extract_entity_ids(event.user_id, event.summary) if event.summary else [],
                        importance=importance))

        if event.feeling and len(self._recent_episodes(event.user_id, ['daily_log', 'feeling', event.feeling])) >= PATTERN_MIN_OCCURRENCES:
            self._merge_pattern(
                event.user_id, memory,
                MemoryInput(user_id=event.user_id,
                            title=f'Pattern of feeling: {event.feeling}',
                            content=f"There appears to be a pattern of feeling '{event.feeling}' across multiple days recently.",
                            memory_type=MemoryType.SEMANTIC.value,
                            tags=['pattern', 'feeling', event.feeling],
                            source_collection=EventKind.DAILY_LOG.value,
                            source_record_ids=[event.id]), '', 'contributes_to_pattern', 'contributes_to_pattern', 0.75)

        if score and (score >= 4 or score <= 2):
            score_tag = 'good-day' if score >= 4 else 'challenging-day'
            if len(self._recent_episodes(event.user_id, ['daily_log', score_tag])) >= PATTERN_MIN_OCCURRENCES:
                quality = 'positive' if score >= 4 else 'challenging'
                self._merge_pattern(
                    event.user_id, memory,
                    MemoryInput(user_id=event.user_id,
                                title=f'Pattern of {quality} days',
                                content=f'There appears to be a pattern of {quality} days recently.',
                                memory_type=MemoryType.SEMANTIC.value,
                                tags=['pattern', 'day-quality', score_tag],
                                source_collection=EventKind.DAILY_LOG.value,
                                source_record_ids=[event.id]), '', 'contributes_to_pattern', 'contributes_to_pattern', 0.75)

        logger.debug(f'Created memory {memory.id} for daily log {event.id}')
        return memory

    def process_life_balance(self, record: Dict[str, Any]) -> Optional[Memory]:
        event = LifeBalanceEvent.from_record(record)
        if len(event.scores) < 3:
            logger.debug(f'Not enough valid scores in life balance record {event.id}')
            return None

        assessed = event.date or utc_now()
        scores = event.scores
        highest = max(scores, key=lambda area: scores[area])
        lowest = min(scores, key=lambda area: scores[area])
        average = sum(scores.values()) / len(scores)

        importance = 0.6
        if average >= 8.0 or average <= 3.0:
            importance += 0.2
        if any(score >= 9 or score <= 2 for score in scores.values()):
            importance += 0.1

        content = f'Life balance assessment for {_day_label(assessed)}. '
        content += ''.join(f'{area.title()}: {score}/10. ' for area, score in scores.items())
        content += (f'Strongest area is {highest.title()} ({scores[highest]}/10) and the area needing most improvement is '
                    f'{lowest.title()} ({scores[lowest]}/10).')

        metadata: Dict[str, Any] = {'balance_id': event.id, 'date': to_iso(assessed)}
        metadata.update(scores)

        memory = self.memories.create_memory(
            MemoryInput(user_id=event.user_id,
                        title=f'Life Balance: {_day_label(assessed, short=True)}',
                        content=content,
                        memory_type=MemoryType.EPISODIC.value,
                        tags=['life_balance', 'assessment', f'strength-{highest}', f'challenge-{lowest}'],
                        source_collection=EventKind.LIFE_BALANCE.value,
                        source_record_ids=[event.id],
                        metadata=metadata,
                        importance=min(importance, 1.0)))

        for area, score in scores.items():
            if score >= 8 or score <= 3:
                sentiment = 'positive' if score >= 8 else 'negative'
                self._merge_pattern(
                    event.user_id, memory,
                    MemoryInput(user_id=event.user_id,
                                title=f'Understanding of {area} area',
                                content=f'The {area} area of life shows a {sentiment} pattern with a score of {score}/10.',
                                memory_type=MemoryType.SEMANTIC.value,
                                tags=['life_balance', area, sentiment],
                                source_collection=EventKind.LIFE_BALANCE.value,
                                source_record_ids=[event.id]),
                    f'The {area} area of life continues to show a {sentiment} pattern with a recent score of {score}/10.',
                    'reinforces_understanding', 'provides_understanding', 0.8)

        for area in scores:
            self._record_trend(event, memory, area)

        logger.debug(f'Created memory {memory.id} for life balance {event.id}')
        return memory

    def _record_trend(self, event: LifeBalanceEvent, memory: Memory, area: str) -> None:
        assessments = self._recent_episodes(event.user_id, ['life_balance', 'assessment'], limit=0)
        history = [m for m in assessments if isinstance(m.temporal_context.get(area), (int, float))][:5]
        if len(history) < 3:
            return

        # Oldest first
        series = [m.temporal_context[area] for m in reversed(history)]
        pairs = list(zip(series, series[1:]))
        if all(later > earlier for earlier, later in pairs):
            trend, description = 'improving', 'showing improvement over time'
        elif all(later < earlier for earlier, later in pairs):
            trend, description = 'declining', 'showing decline over time'
        else:
            return

        self._merge_pattern(
            event.user_id, memory,
            MemoryInput(user_id=event.user_id,
                        title=f'{trend.title()} trend in {area}',
                        content=f'The {area} area of life is {description}. This trend may indicate underlying factors affecting '
                        'this life domain.',
                        memory_type=MemoryType.PROCEDURAL.value,
                        tags=['trend', area, trend],
                        source_collection=EventKind.LIFE_BALANCE.value,
                        source_record_ids=[event.id]), '', 'evidence_of_trend', 'evidence_of_trend', 0.85)

    def process_track_item(self, record: Dict[str, Any]) -> Optional[Memory]:
        event = AppUsageEvent.from_record(record)
        if not event.app or event.begin is None or event.end is None:
            logger.debug(f'Skipping app usage {event.id} without app or time range')
            return None

        minutes = event.duration_minutes
        if minutes < 1:
            return None

        app_tag = event.app.lower()
        category = categorize_app(event.app)
        if minutes >= 60:
            session, bonus = 'long-session', 0.2
        elif minutes >= 30:
            session, bonus = 'medium-session', 0.1
        else:
            session, bonus = 'short-session', 0.05 if minutes >= 15 else 0.0

        importance = 0.3 + bonus
        if category in PRODUCTIVE_APP_CATEGORIES:
            importance += 0.1
        importance = min(importance, 0.75)

        duration_text = format_duration(minutes)
        content = f'Used {event.app} for {duration_text} on {_day_label(event.begin)}. '
        if event.title:
            content += f'Worked on: {event.title}. '
        content += f'Session started at {_clock_label(event.begin)}.'

        memory = self.memories.create_memory(
            MemoryInput(user_id=event.user_id,
                        title=f'Using {event.app}: {event.title}' if event.title else f'Using {event.app}',
                        content=content,
                        memory_type=MemoryType.EPISODIC.value,
                        tags=['app_usage', app_tag, category, time_of_day_bucket(event.begin), session],
                        source_collection=EventKind.TRACK_ITEMS.value,
                        source_record_ids=[event.id],
                        metadata={
                            'track_id': event.id,
                            'app': event.app,
                            'task_name': event.task_name,
                            'title': event.title,
                            'device': event.device,
                            'begin_date': to_iso(event.begin),
                            'end_date': to_iso(event.end),
                            'duration': minutes
                        },
                        entity_ids=self._extract_entity_ids(event.user_id, event.title) if event.title else [],
                        importance=importance))

        self._link_device(event.user_id, memory, event.device)

        if minutes >= 30 and len(self._recent_episodes(event.user_id, ['app_usage', app_tag])) >= PATTERN_MIN_OCCURRENCES:
            self._merge_pattern(
                event.user_id, memory,
                MemoryInput(user_id=event.user_id,
                            title=f'{event.app} usage pattern',
                            content=f'Regular usage of {event.app} has been observed, with a recent session of {duration_text}.',
                            memory_type=MemoryType.PROCEDURAL.value,
                            tags=['app_usage', 'pattern', app_tag],
                            source_collection=EventKind.TRACK_ITEMS.value,
                            source_record_ids=[event.id]),
                f'Regular usage of {event.app} continues, with a recent session of {duration_text}.', 'reinforces_pattern',
                'establishes_pattern', 0.75)

        logger.debug(f'Created memory {memory.id} for app usage {event.id}')
        return memory

    def process_track_focus(self, record: Dict[str, Any]) -> Optional[Memory]:
        event = FocusEvent.from_record(record)
        if event.begin is None or event.end is None:
            logger.debug(f'Skipping focus session {event.id} without a time range')
            return None

        minutes = event.duration_minutes
        if minutes < 5:
            return None

        if minutes >= 90:
            depth, bonus = 'deep-focus', 0.2
        elif minutes >= 45:
            depth, bonus = 'medium-focus', 0.1
        else:
            depth, bonus = 'short-focus', 0.0

        importance = 0.6 + bonus
        if any(tag in FOCUS_PATTERN_TAGS for tag in event.tags):
            importance += 0.05
        importance = min(importance, 0.9)

        duration_text = format_duration(minutes)
        content = f'Focused for {duration_text} on {_day_label(event.begin)}. '
        if event.tags:
            content += f'Focus categories: {", ".join(event.tags)}. '
        if event.notes:
            content += f'Notes: {event.notes}. '
        content += f'Session started at {_clock_label(event.begin)} and ended at {_clock_label(event.end)}.'

        memory = self.memories.create_memory(
            MemoryInput(user_id=event.user_id,
                        title=f'Focus Session: {", ".join(event.tags)}' if event.tags else 'Focus Session',
                        content=content,
                        memory_type=MemoryType.EPISODIC.value,
                        tags=['focus_session'] + event.tags + [time_of_day_bucket(event.begin), depth],
                        source_collection=EventKind.TRACK_FOCUS.value,
                        source_record_ids=[event.id],
                        metadata={
                            'focus_id': event.id,
                            'device': event.device,
                            'user_metadata': event.notes,
                            'begin_date': to_iso(event.begin),
                            'end_date': to_iso(event.end),
                            'duration': minutes,
                            'focus_tags': event.tags
                        },
                        entity_ids=self._extract_entity_ids(event.user_id, event.notes) if event.notes else [],
                        importance=importance))

        self._link_device(event.user_id, memory, event.device)

        if minutes >= 45:
            for tag in event.tags:
                if len(self._recent_episodes(event.user_id, ['focus_session', tag])) < PATTERN_MIN_OCCURRENCES:
                    continue
                self._merge_pattern(
                    event.user_id, memory,
                    MemoryInput(user_id=event.user_id,
                                title=f'Focus pattern: {tag}',
                                content=f'Regular focus on {tag} has been observed, with a recent session of {duration_text}.',
                                memory_type=MemoryType.SEMANTIC.value,
                                tags=['focus_session', 'pattern', tag],
                                source_collection=EventKind.TRACK_FOCUS.value,
                                source_record_ids=[event.id]),
                    f'Regular focus on {tag} continues, with a recent session of {duration_text}.', 'reinforces_pattern',
                    'establishes_pattern', 0.8)

        logger.debug(f'Created memory {memory.id} for focus session {event.id}')
        return memory
