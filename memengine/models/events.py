"""
Typed activity events fed into the memory engine by the host application.

Each event is built from a host record (a plain dict) with `from_record`; unknown
fields are ignored and missing ones take neutral defaults so that the ingestion
handlers decide whether an event carries enough signal to become a memory.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import parse_datetime

LIFE_BALANCE_AREAS = ('relationship', 'health', 'career', 'growth', 'life', 'social', 'hobby', 'finance')


class EventKind(str, Enum):
    """Closed set of activity collections the engine ingests."""
    TASKS = 'tasks'
    HABITS = 'habits'
    DAILY_LOG = 'daily_log'
    LIFE_BALANCE = 'life_balance'
    TRACK_ITEMS = 'track_items'
    TRACK_FOCUS = 'track_focus'

    @classmethod
    def parse(cls, value: Any) -> Optional['EventKind']:
        """Return the matching kind, or None for unsupported collections."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


def _str(record: Dict[str, Any], key: str) -> str:
    value = record.get(key)
    return str(value).strip() if value is not None else ''


def _int(record: Dict[str, Any], key: str) -> int:
    try:
        return int(record.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def _user(record: Dict[str, Any]) -> str:
    return _str(record, 'user_id') or _str(record, 'user')


def _string_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            value = value.split(',')
        if isinstance(value, str):
            value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


@dataclass
class TaskEvent:
    id: str
    user_id: str
    title: str
    description: str = ''
    project: str = ''
    category: str = ''
    due: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'TaskEvent':
        return cls(id=_str(record, 'id'),
                   user_id=_user(record),
                   title=_str(record, 'title'),
                   description=_str(record, 'description'),
                   project=_str(record, 'project'),
                   category=_str(record, 'category'),
                   due=parse_datetime(record.get('due')))


@dataclass
class HabitEvent:
    id: str
    user_id: str
    name: str
    habit_type: str = ''
    status: str = ''
    streak: int = 0
    priority: int = 0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'HabitEvent':
        return cls(id=_str(record, 'id'),
                   user_id=_user(record),
                   name=_str(record, 'name'),
                   habit_type=_str(record, 'type'),
                   status=_str(record, 'status'),
                   streak=_int(record, 'streak'),
                   priority=_int(record, 'priority'))


@dataclass
class DailyLogEvent:
    id: str
    user_id: str
    summary: str = ''
    feeling: str = ''
    score: int = 0
    bath: bool = False
    date: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'DailyLogEvent':
        return cls(id=_str(record, 'id'),
                   user_id=_user(record),
                   summary=_str(record, 'summary'),
                   feeling=_str(record, 'feeling').lower(),
                   score=_int(record, 'score'),
                   bath=bool(record.get('bath')),
                   date=parse_datetime(record.get('date')))


@dataclass
class LifeBalanceEvent:
    id: str
    user_id: str
    scores: Dict[str, int] = field(default_factory=dict)
    date: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'LifeBalanceEvent':
        scores = {}
        for area in LIFE_BALANCE_AREAS:
            score = _int(record, area)
            if 1 <= score <= 10:
                scores[area] = score
        return cls(id=_str(record, 'id'), user_id=_user(record), scores=scores, date=parse_datetime(record.get('date')))


@dataclass
class AppUsageEvent:
    id: str
    user_id: str
    app: str
    title: str = ''
    task_name: str = ''
    device: str = ''
    begin: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def duration_minutes(self) -> float:
        if self.begin is None or self.end is None:
            return 0.0
        return (self.end - self.begin).total_seconds() / 60.0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'AppUsageEvent':
        return cls(id=_str(record, 'id'),
                   user_id=_user(record),
                   app=_str(record, 'app'),
                   title=_str(record, 'title'),
                   task_name=_str(record, 'task_name'),
                   device=_str(record, 'device'),
                   begin=parse_datetime(record.get('begin_date')),
                   end=parse_datetime(record.get('end_date')))


@dataclass
class FocusEvent:
    id: str
    user_id: str
    tags: List[str] = field(default_factory=list)
    notes: str = ''
    device: str = ''
    begin: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def duration_minutes(self) -> float:
        if self.begin is None or self.end is None:
            return 0.0
        return (self.end - self.begin).total_seconds() / 60.0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'FocusEvent':
        return cls(id=_str(record, 'id'),
                   user_id=_user(record),
                   tags=[t.lower() for t in _string_list(record.get('tags'))],
                   notes=_str(record, 'metadata') or _str(record, 'notes'),
                   device=_str(record, 'device'),
                   begin=parse_datetime(record.get('begin_date')),
                   end=parse_datetime(record.get('end_date')))
