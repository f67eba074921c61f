"""
Helpers for bucketing activity records: app categories, time of day, durations and due dates.
"""

from datetime import datetime
from typing import Optional, Tuple

from .timestamp_utils import ensure_utc

APP_CATEGORIES = [
    ('productivity', [
        'word', 'excel', 'powerpoint', 'notes', 'evernote', 'notion', 'onenote', 'docs', 'sheets', 'slides', 'calendar',
        'reminders', 'outlook', 'gmail', 'trello', 'asana', 'jira', 'slack', 'teams', 'zoom', 'meet'
    ]),
    ('development', [
        'code', 'vscode', 'visual studio', 'intellij', 'pycharm', 'android studio', 'xcode', 'sublime', 'vim', 'emacs', 'terminal',
        'powershell', 'command', 'github', 'gitlab', 'bitbucket', 'sourcetree'
    ]),
    ('creativity', [
        'photoshop', 'illustrator', 'indesign', 'lightroom', 'premiere', 'after effects', 'figma', 'sketch', 'canva', 'gimp',
        'blender', 'maya', 'garageband', 'logic', 'audacity', 'protools', 'ableton'
    ]),
    ('entertainment', [
        'netflix', 'hulu', 'disney', 'youtube', 'spotify', 'apple music', 'prime video', 'hbo', 'twitch', 'games', 'steam',
        'epic games', 'xbox', 'playstation'
    ]),
    ('social', [
        'facebook', 'instagram', 'twitter', 'snapchat', 'tiktok', 'whatsapp', 'telegram', 'signal', 'messenger', 'discord',
        'reddit', 'linkedin'
    ]),
    ('web-browsing', ['chrome', 'firefox', 'safari', 'edge', 'opera', 'brave', 'browser']),
]

PRODUCTIVE_APP_CATEGORIES = ('productivity', 'development', 'creativity')

DUE_OVERDUE = 'overdue'
DUE_TODAY = 'due-today'
DUE_SOON = 'due-soon'
DUE_THIS_WEEK = 'due-this-week'
DUE_FUTURE = 'future'


def categorize_app(app_name: str) -> str:
    """Map an application name onto a coarse category by substring match."""
    app_lower = (app_name or '').lower()
    for category, needles in APP_CATEGORIES:
        for needle in needles:
            if needle in app_lower:
                return category
    return 'other'


def time_of_day_bucket(moment: datetime) -> str:
    """Bucket the wall-clock hour of a timestamp (as recorded, not converted)."""
    hour = moment.hour
    if 5 <= hour < 12:
        return 'morning'
    if 12 <= hour < 17:
        return 'afternoon'
    if 17 <= hour < 21:
        return 'evening'
    return 'night'


def format_duration(minutes: float) -> str:
    """Render a duration as e.g. '1 hour 5 minutes' or '45 minutes'."""
    total = int(minutes)
    hours, mins = divmod(total, 60)

    def plural(count: int) -> str:
        return '' if count == 1 else 's'

    if hours > 0:
        if mins > 0:
            return f'{hours} hour{plural(hours)} {mins} minute{plural(mins)}'
        return f'{hours} hour{plural(hours)}'
    return f'{mins} minute{plural(mins)}'


def due_date_bucket(due: Optional[datetime], now: datetime) -> Tuple[Optional[str], int]:
    """Classify a due date relative to now.

    Days are counted in calendar days in the due date's own timezone, so a task due
    tomorrow evening is one day away regardless of the current hour.

    Args:
        due: Due timestamp (aware), or None
        now: Reference time (aware)

    Returns:
        Tuple of (bucket name or None when there is no due date, signed day difference)
    """
    if due is None:
        return None, 0

    tz = due.tzinfo
    local_now = ensure_utc(now).astimezone(tz) if tz is not None else now
    days = (due.date() - local_now.date()).days

    if due < now:
        return DUE_OVERDUE, days
    if days <= 0:
        return DUE_TODAY, 0
    if days < 3:
        return DUE_SOON, days
    if days < 7:
        return DUE_THIS_WEEK, days
    return DUE_FUTURE, days
