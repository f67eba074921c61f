"""
Entity Recognition Service with priority-ordered, context-gated extraction patterns.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

from ..models.core import Entity, new_id
from ..utils.config import EntityConfig, config
from ..utils.logging_config import get_logger
from ..utils.record_store import RecordStore, RecordStoreError
from ..utils.text_utils import levenshtein_distance, tokenize
from ..utils.timestamp_utils import utc_now
from .embedding import EmbeddingError, EmbeddingService

logger = get_logger(__name__)

NAME = r'[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?'
ACRONYM = r'[A-Z]{2,}[0-9]*'
DOTTED = r'[A-Z][a-zA-Z]*(?:\.[a-zA-Z]{1,5})+'

ENTITY_IMPORTANCE = {
    'person': 0.7,
    'project': 0.8,
    'place': 0.6,
    'organization': 0.7,
    'technology': 0.6,
    'concept': 0.5
}

ENTITY_DESCRIPTIONS = {
    'person': 'A person mentioned in your content',
    'place': 'A location referenced in your content',
    'project': "A project you've mentioned",
    'organization': 'An organization referenced in your content',
    'technology': 'A technology mentioned in your content',
    'concept': 'A concept that appears in your content'
}

COMMON_WORDS = frozenset([
    # Common English words
    'a', 'an', 'the', 'and', 'or', 'but', 'if', 'then', 'else', 'when', 'at', 'from', 'by', 'for', 'with', 'about', 'against',
    'between', 'into', 'through', 'during', 'before', 'after', 'above', 'below', 'to', 'of', 'in', 'out', 'on', 'off', 'over',
    'under', 'again', 'further', 'once', 'here', 'there', 'where', 'why', 'how', 'all', 'any', 'both', 'each', 'few', 'more',
    'most', 'other', 'some', 'such', 'no', 'nor', 'not', 'only', 'own', 'same', 'so', 'than', 'too', 'very', 'this', 'that',
    'these', 'those', 'one', 'two', 'three', 'four', 'five', 'first', 'last', 'next', 'many', 'much', 'will', 'shall', 'may',
    'might', 'must', 'can', 'could', 'would', 'should', 'ought', 'need', 'want', 'like', 'hate', 'love', 'think', 'know',
    'feel', 'see', 'hear', 'smell', 'taste', 'touch', 'look', 'watch', 'listen', 'say', 'tell', 'make', 'create', 'build',
    'break', 'read', 'write', 'speak', 'talk', 'walk', 'run', 'take', 'put', 'send', 'receive', 'buy', 'sell', 'pay', 'cost',
    'find', 'lose', 'start', 'stop', 'begin', 'end', 'open', 'close', 'show', 'hide', 'come', 'go', 'move', 'stand', 'sit',
    'lie', 'rise', 'fall', 'increase', 'decrease', 'grow', 'help', 'play', 'work', 'study', 'learn', 'teach', 'change', 'try',
    'attempt', 'have', 'has', 'had', 'was', 'were', 'been', 'being', 'are', 'is', 'did', 'does', 'done', 'just', 'also',
    'what', 'which', 'who', 'whom', 'whose', 'they', 'them', 'their', 'with', 'your', 'yours', 'our', 'ours',
    # Common terms in tasks and daily notes
    'today', 'tomorrow', 'yesterday', 'week', 'month', 'year', 'morning', 'afternoon', 'evening', 'night', 'plan', 'task',
    'todo', 'meeting', 'call', 'email', 'message', 'update', 'review', 'check', 'finish', 'complete', 'pending', 'progress',
    'continue', 'follow', 'priority', 'medium', 'important', 'urgent', 'later', 'soon', 'now', 'never', 'always',
    'sometimes', 'often', 'rarely', 'regular', 'routine', 'daily', 'weekly', 'monthly', 'yearly', 'goal', 'target',
    'deadline', 'due', 'schedule', 'calendar', 'appointment', 'event',
    # Common feelings and states
    'happy', 'sad', 'angry', 'frustrated', 'excited', 'bored', 'tired', 'energetic', 'focused', 'distracted', 'productive',
    'unproductive', 'motivated', 'unmotivated', 'stressed', 'relaxed', 'busy', 'free', 'available', 'unavailable', 'present',
    'absent',
    # Common action words
    'add', 'remove', 'edit', 'delete', 'modify', 'adjust', 'fix', 'repair', 'improve', 'enhance', 'optimize', 'simplify',
    'complicate', 'draft', 'prepare', 'submit', 'book', 'organize',
    # Titles
    'mr', 'mrs', 'ms', 'dr', 'prof', 'miss', 'sir', 'madam', 'lord', 'lady',
    # Months and days
    'january', 'february', 'march', 'april', 'june', 'july', 'august', 'september', 'october', 'november', 'december',
    'monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday',
    # Generic adjectives
    'good', 'great', 'bad', 'nice', 'fine', 'new', 'old', 'big', 'small', 'high', 'low'
])


class EntityRecognitionError(Exception):
    """Custom exception for entity recognition errors."""
    pass


class EntityPatternError(EntityRecognitionError):
    """Raised when an extraction pattern cannot be compiled."""
    pass


@dataclass
class EntityPattern:
    """A compiled extraction rule; group 1 of the regex is the entity name."""
    entity_type: str
    regex: Pattern
    context_words: List[str] = field(default_factory=list)
    priority: int = 50

    def has_context(self, text: str) -> bool:
        if not self.context_words:
            return True
        lowered = text.lower()
        return any(re.search(r'\b' + re.escape(word) + r'\b', lowered) for word in self.context_words)


def is_common_word(word: str) -> bool:
    return word.lower() in COMMON_WORDS


def clean_candidate(name: str) -> str:
    """Collapse whitespace and drop leading/trailing common words from a captured name."""
    words = name.split()
    while words and is_common_word(words[0]):
        words.pop(0)
    while words and is_common_word(words[-1]):
        words.pop()
    return ' '.join(words)


def count_occurrences(text: str, word: str) -> int:
    return len(re.findall(r'\b' + re.escape(word.lower()) + r'\b', text.lower()))


class EntityRecognitionService:
    """Extract typed entities from free text and keep a deduplicated per-user entity set."""

    def __init__(self,
                 store: RecordStore,
                 embedding: Optional[EmbeddingService] = None,
                 settings: Optional[EntityConfig] = None,
                 register_defaults: bool = True):
        """
        Initialize the entity recognition service.

        Args:
            store: Record store holding Entity records
            embedding: Embedding service for entity vectors (entities get no embedding when None)
            settings: EntityConfig, uses the global configuration if None
            register_defaults: Register the built-in pattern set
        """
        self.store = store
        self.embedding = embedding
        self.settings = settings or config.entity

        self._patterns: List[EntityPattern] = []
        self._known_entities: Dict[str, Dict[Tuple[str, str], Entity]] = {}
        self._lock = threading.RLock()

        if register_defaults:
            self._register_default_patterns()

        logger.info('Initialized EntityRecognitionService')

    # Pattern registry

    def register_pattern(self, entity_type: str, pattern: str, context_words: Optional[List[str]] = None, priority: int = 50) -> EntityPattern:
        """Compile and register an extraction pattern.

        Args:
            entity_type: Entity type produced by the pattern
            pattern: Regular expression whose first group captures the entity name
            context_words: Words of which at least one must occur in the text for the pattern to fire
            priority: Higher priorities run first and claim their text spans

        Returns:
            The registered EntityPattern

        Raises:
            EntityPatternError: If the regular expression is invalid or has no capture group
        """
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            raise EntityPatternError(f'Invalid pattern for {entity_type}: {e}')
        if compiled.groups < 1:
            raise EntityPatternError(f'Pattern for {entity_type} must capture the entity name in group 1')

        entry = EntityPattern(entity_type=entity_type,
                              regex=compiled,
                              context_words=[w.lower() for w in (context_words or [])],
                              priority=priority)
        with self._lock:
            self._patterns.append(entry)
            self._patterns.sort(key=lambda p: p.priority, reverse=True)
        logger.debug(f'Registered {entity_type} pattern with priority {priority}')
        return entry

    @property
    def patterns(self) -> List[EntityPattern]:
        with self._lock:
            return list(self._patterns)

    def _register_default_patterns(self) -> None:
        self.register_pattern(
            'person', r'\b(?i:met\s+with|met\s+up\s+with|met|with|talked\s+to|talked\s+with|spoke\s+to|spoke\s+with|called|'
            r'messaged|texted|saw|meeting\s+with|colleague|friend|family|mom|dad)\s+(' + NAME + r')\b',
            ['met', 'with', 'talked', 'spoke', 'called', 'messaged', 'texted', 'saw', 'meeting', 'colleague', 'friend', 'family'], 100)

        self.register_pattern(
            'place', r'(?<!work )(?<!works )(?<!worked )(?<!working )\b(?i:at|near|visited|went\s+to|arrived\s+at|'
            r'traveled\s+to|travelled\s+to|moved\s+to)\s+(?i:the\s+)?(' + NAME + r')\b',
            ['at', 'near', 'visited', 'went', 'arrived', 'traveled', 'travelled', 'moved'], 90)
        self.register_pattern(
            'place', r'\b(' + NAME + r'\s+(?:Park|Street|Avenue|Road|Plaza|Square|Cafe|Restaurant|Station|Airport|Beach|'
            r'Mall|Library|Museum|Hospital|Gym))\b', [], 90)

        self.register_pattern(
            'project', r'\b(' + NAME + '|' + ACRONYM + r')\s+(?i:project|initiative|roadmap)\b',
            ['project', 'initiative', 'roadmap'], 80)
        self.register_pattern(
            'project', r'\b(?i:project|working\s+on|building|developing|launching|shipping|planning)\s+(?i:the\s+)?(' + NAME +
            '|' + ACRONYM + r')\b', ['project', 'working', 'building', 'developing', 'launching', 'shipping', 'planning'], 80)

        self.register_pattern(
            'organization', r'\b((?:' + NAME + '|' + ACRONYM + r')\s+(?:Inc|Corp|Corporation|LLC|Ltd|Company|Group|Institute|'
            r'Association|Foundation|University|Labs))\b', [], 70)
        self.register_pattern(
            'organization', r'\b(?i:works\s+at|working\s+at|worked\s+at|work\s+at|joined|employed\s+by|hired\s+by|'
            r'partnered\s+with|interview\s+with|team\s+at)\s+(' + NAME + '|' + ACRONYM + r')\b',
            ['works', 'working', 'worked', 'work', 'joined', 'employed', 'hired', 'partnered', 'interview', 'team'], 70)

        self.register_pattern(
            'technology', r'\b(?i:using|learning|learned|coding\s+in|programming\s+in|written\s+in|built\s+with|migrated\s+to|'
            r'switched\s+to|installed|upgraded)\s+(' + DOTTED + '|' + NAME + '|' + ACRONYM + r')',
            ['using', 'learning', 'learned', 'coding', 'programming', 'written', 'built', 'migrated', 'switched', 'installed', 'upgraded'],
            60)
        self.register_pattern(
            'technology', r'\b(' + DOTTED + r')',
            ['framework', 'library', 'language', 'platform', 'tool', 'software', 'technology', 'stack', 'coding', 'programming'], 60)

        self.register_pattern(
            'concept', r'\b([a-z]{4,})\b',
            ['concept', 'idea', 'theory', 'strategy', 'approach', 'method', 'philosophy', 'principle', 'thought', 'insight',
             'understanding'], 50)

    # Extraction

    def extract_entities(self, user_id: str, text: str) -> List[Entity]:
        """Extract entities from text and register them for the user.

        Args:
            user_id: User ID for entity isolation
            text: Free text to analyze

        Returns:
            List of Entity objects, deduplicated by id, in discovery order

        Raises:
            EntityRecognitionError: If user_id is empty
        """
        if not user_id:
            raise EntityRecognitionError('User ID is required for entity extraction')
        if not text or not text.strip():
            return []

        self._ensure_user_cache(user_id)

        extracted = []
        claimed: List[Tuple[int, int, str]] = []

        for pattern in self.patterns:
            if not pattern.has_context(text):
                continue

            for match in pattern.regex.finditer(text):
                start, end = match.span(1)
                if any(s < end and start < e and t != pattern.entity_type for s, e, t in claimed):
                    continue

                name = clean_candidate(match.group(1))
                if not self._is_valid_candidate(name):
                    continue

                if pattern.entity_type == 'concept':
                    if name.lower() in pattern.context_words:
                        continue
                    if count_occurrences(text, name) < self.settings.concept_min_occurrences:
                        continue

                claimed.append((start, end, pattern.entity_type))
                entity = self._safe_get_or_create(user_id, pattern.entity_type, name, self._describe(pattern.entity_type, name))
                if entity is not None:
                    extracted.append(entity)

        extracted.extend(self._extract_frequent_concepts(user_id, text))

        unique = []
        seen = set()
        for entity in extracted:
            if entity.id not in seen:
                seen.add(entity.id)
                unique.append(entity)

        logger.debug(f'Extracted {len(unique)} entities for user {user_id}')
        return unique

    def _extract_frequent_concepts(self, user_id: str, text: str) -> List[Entity]:
        counts: Dict[str, int] = {}
        for word in tokenize(text):
            if len(word) >= self.settings.concept_min_word_length and word.isalpha() and not is_common_word(word):
                counts[word] = counts.get(word, 0) + 1

        entities = []
        for word, count in counts.items():
            if count >= self.settings.concept_frequency_threshold:
                entity = self._safe_get_or_create(user_id, 'concept', word, f'A concept mentioned frequently in content ({count} times)')
                if entity is not None:
                    entities.append(entity)
        return entities

    def _is_valid_candidate(self, name: str) -> bool:
        return len(name) >= self.settings.min_name_length and not is_common_word(name)

    @staticmethod
    def _describe(entity_type: str, name: str) -> str:
        return ENTITY_DESCRIPTIONS.get(entity_type, f'A {entity_type} entity in your content')

    def _safe_get_or_create(self, user_id: str, entity_type: str, name: str, description: str) -> Optional[Entity]:
        try:
            return self.get_or_create_entity(user_id, entity_type, name, description)
        except EntityRecognitionError as e:
            logger.error(f'Error creating {entity_type} entity {name!r}: {e}')
            return None

    # Dedup and merge

    def names_similar(self, name1: str, name2: str) -> bool:
        """Heuristic name equivalence: exact, then substring with a length-ratio guard, then edit-distance ratio."""
        a = name1.lower().strip()
        b = name2.lower().strip()
        if a == b:
            return True
        if not a or not b:
            return False

        longest = max(len(a), len(b))
        if a in b or b in a:
            return min(len(a), len(b)) / longest >= self.settings.name_length_ratio

        return levenshtein_distance(a, b) / longest < self.settings.max_edit_distance_ratio

    def get_or_create_entity(self, user_id: str, entity_type: str, name: str, description: str = '') -> Entity:
        """Return the user's entity for a name, merging near-duplicates, or create it.

        Every call counts as one interaction with the returned entity.

        Args:
            user_id: Owning user
            entity_type: Entity type
            name: Entity name as found in text
            description: Description fragment to accumulate

        Returns:
            The matched, merged or newly created Entity

        Raises:
            EntityRecognitionError: If the arguments are empty or the entity cannot be persisted
        """
        name = (name or '').strip()
        if not user_id or not entity_type or not name:
            raise EntityRecognitionError('User ID, entity type and name are required')

        with self._lock:
            user_entities = self._ensure_user_cache(user_id)
            key = (entity_type, name.lower())

            entity = user_entities.get(key)
            if entity is not None:
                self._touch(entity, description)
                return self._persist(entity)

            for candidate in user_entities.values():
                if candidate.entity_type == entity_type and self.names_similar(name, candidate.name):
                    if name.lower() not in candidate.description.lower():
                        candidate.description = f'{candidate.description} Also known as: {name}'.strip()
                    self._touch(candidate, '')
                    logger.debug(f'Merged entity name {name!r} into {candidate.name!r}')
                    return self._persist(candidate)

            try:
                existing = self.store.find_one_by_filter(Entity, {'user_id': user_id, 'entity_type': entity_type, 'name': name})
            except RecordStoreError as e:
                raise EntityRecognitionError(f'Failed to look up entity {name!r}: {e}')
            if existing is not None:
                self._touch(existing, description)
                user_entities[key] = existing
                return self._persist(existing)

            now = utc_now()
            entity = Entity(id=new_id(),
                            user_id=user_id,
                            entity_type=entity_type,
                            name=name,
                            description=description,
                            importance=ENTITY_IMPORTANCE.get(entity_type, 0.5),
                            first_seen=now,
                            last_seen=now,
                            interaction_count=1,
                            embedding=self._embed(f'{name} {description}'))
            self._persist(entity)
            user_entities[key] = entity
            logger.debug(f'Created {entity_type} entity {name!r} for user {user_id}')
            return entity

    @staticmethod
    def _touch(entity: Entity, description: str) -> None:
        entity.interaction_count += 1
        entity.last_seen = utc_now()
        if description and description not in entity.description:
            entity.description = f'{entity.description} {description}'.strip()

    def _persist(self, entity: Entity) -> Entity:
        try:
            self.store.save(entity)
        except RecordStoreError as e:
            raise EntityRecognitionError(f'Failed to save entity {entity.name!r}: {e}')
        return entity

    def _embed(self, text: str) -> Optional[List[float]]:
        if self.embedding is None:
            return None
        try:
            return self.embedding.embed(text)
        except EmbeddingError as e:
            logger.warning(f'Entity embedding unavailable: {e}')
            return None

    # Cache

    def _ensure_user_cache(self, user_id: str) -> Dict[Tuple[str, str], Entity]:
        with self._lock:
            user_entities = self._known_entities.get(user_id)
            if user_entities is None:
                user_entities = self.load_user_entities(user_id)
            return user_entities

    def load_user_entities(self, user_id: str) -> Dict[Tuple[str, str], Entity]:
        """(Re)load a user's entities from the record store into the cache."""
        try:
            entities = self.store.find_all_by_filter(Entity, {'user_id': user_id})
        except RecordStoreError as e:
            logger.warning(f'Could not load entities for user {user_id}: {e}')
            entities = []

        entities.sort(key=lambda e: e.first_seen)
        user_entities = {(e.entity_type, e.name.lower()): e for e in entities}
        with self._lock:
            self._known_entities[user_id] = user_entities
        logger.debug(f'Loaded {len(user_entities)} entities for user {user_id}')
        return user_entities

    def get_entity(self, user_id: str, entity_id: str) -> Optional[Entity]:
        with self._lock:
            for entity in self._ensure_user_cache(user_id).values():
                if entity.id == entity_id:
                    return entity
        return None

    def get_entities(self, user_id: str, entity_type: Optional[str] = None, limit: int = 50) -> List[Entity]:
        """List a user's entities, most interacted-with first."""
        with self._lock:
            entities = [e for e in self._ensure_user_cache(user_id).values() if entity_type is None or e.entity_type == entity_type]
        entities.sort(key=lambda e: (e.interaction_count, e.last_seen), reverse=True)
        return entities[:limit] if limit > 0 else entities

    def clear_cache(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._known_entities.clear()
            else:
                self._known_entities.pop(user_id, None)
