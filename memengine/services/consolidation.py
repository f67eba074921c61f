"""
Consolidation Service: forgetting-curve decay, grouping of related memories, pattern synthesis and insights.
"""

import math
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.core import (ConsolidationProcess, Insight, InsightCategory, Memory, MemoryInput, MemoryType, NodeType, ProcessStatus,
                           clamp, new_id)
from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger
from ..utils.record_store import RecordStoreError
from ..utils.text_utils import cosine_similarity, extract_excerpt, jaccard_similarity
from ..utils.timestamp_utils import days_between, utc_now
from .memory_management import MemoryManagementError

logger = get_logger(__name__)

DECAY_TYPE_MULTIPLIER = {
    MemoryType.EPISODIC.value: 1.2,
    MemoryType.SEMANTIC.value: 0.7,
    MemoryType.PROCEDURAL.value: 0.5
}

PATTERN_SOURCE = 'consolidation'
MIN_TAG_GROUP_SIZE = 3
MIN_PATTERN_GROUP_SIZE = 3
INSIGHT_MEMORY_WINDOW = 100
TOP_ENTITY_INSIGHTS = 5

ENTITY_INSIGHT_TEXT = {
    'person': '{name} appears in several of your memories. They seem to be a significant person in your life.',
    'place': "{name} is a location you've referenced multiple times. It seems to be an important place for you.",
    'project': "{name} is a project you've been working on across multiple entries. It might be significant for your goals.",
    'concept': "The concept of '{name}' appears frequently in your memories. It might represent an important theme in your thinking.",
    'organization': '{name} is an organization that appears in multiple memories. It might play a significant role in your activities.',
    'technology': "{name} is a technology you've mentioned multiple times. It seems to be important in your work or interests."
}

CLUSTER_INSIGHT_TEXT = {
    MemoryType.EPISODIC.value: 'You have several related memories about similar events. This might indicate a recurring theme or '
    'pattern in your experiences.',
    MemoryType.SEMANTIC.value: "You've recorded several related semantic memories. This might represent an area of knowledge or "
    "interest that's important to you.",
    MemoryType.PROCEDURAL.value: "You have several procedural memories with similar patterns. This might represent a workflow or "
    "process you've been refining."
}

MIXED_CLUSTER_TEXT = ('A pattern has been detected across different types of memories. This might represent a multi-faceted '
                      'interest or focus area.')


class ConsolidationError(MemoryManagementError):
    """Custom exception for consolidation errors."""
    pass


def decayed_strength(memory: Memory, now: datetime, base_rate: float) -> float:
    """Ebbinghaus-style strength after the time elapsed since the memory was last accessed.

    Frequently accessed and important memories are more stable and decay slower;
    procedural memories decay slowest and episodic ones fastest.
    """
    days = days_between(memory.last_accessed or memory.created_at, now)
    if days <= 0:
        return memory.strength
    rate = base_rate * DECAY_TYPE_MULTIPLIER.get(memory.memory_type, 1.0)
    stability = 5.0 + memory.access_count + memory.importance * 10.0
    return clamp(memory.strength * math.exp(-days * rate / stability))


def common_tags(group: Sequence[Memory], generic_tags: Sequence[str]) -> List[str]:
    """Tags carried by at least half of the group (and at least two members), most shared first."""
    counts: Dict[str, int] = {}
    for memory in group:
        for tag in set(memory.tags):
            if tag in generic_tags or tag == 'pattern':
                continue
            counts[tag] = counts.get(tag, 0) + 1

    threshold = max(2, (len(group) + 1) // 2)
    shared = [tag for tag, count in counts.items() if count >= threshold]
    return sorted(shared, key=lambda tag: (-counts[tag], tag))


def group_related_memories(memories: Sequence[Memory], settings: MemoryConfig) -> List[List[Memory]]:
    """Partition related memories into groups; each memory lands in at most one group.

    Embedding clustering runs first when enough memories carry vectors, then
    shared-tag grouping over what is left, then pairwise text similarity.
    """
    groups: List[List[Memory]] = []
    assigned = set()
    generic = set(settings.generic_tags)

    embedded = [m for m in memories if m.embedding]
    if settings.enable_semantic_clustering and len(embedded) >= settings.min_cluster_embeddings:
        for seed in embedded:
            if seed.id in assigned:
                continue
            group = [seed]
            for other in embedded:
                if other.id == seed.id or other.id in assigned:
                    continue
                if cosine_similarity(seed.embedding, other.embedding) >= settings.min_similarity_threshold:
                    group.append(other)
            if len(group) >= 2:
                groups.append(group)
                assigned.update(m.id for m in group)

    by_tag: Dict[str, List[Memory]] = {}
    for memory in memories:
        if memory.id in assigned:
            continue
        for tag in memory.tags:
            if tag not in generic:
                by_tag.setdefault(tag, []).append(memory)

    for tag in sorted(by_tag, key=lambda t: (-len(by_tag[t]), t)):
        members = [m for m in by_tag[tag] if m.id not in assigned]
        if len(members) >= MIN_TAG_GROUP_SIZE:
            groups.append(members)
            assigned.update(m.id for m in members)

    remaining = [m for m in memories if m.id not in assigned]
    for index, seed in enumerate(remaining):
        if seed.id in assigned:
            continue
        group = [seed]
        for other in remaining[index + 1:]:
            if other.id in assigned:
                continue
            if jaccard_similarity(f'{seed.title} {seed.content}', f'{other.title} {other.content}') >= settings.min_similarity_threshold:
                group.append(other)
                assigned.add(other.id)
        if len(group) >= 2:
            assigned.add(seed.id)
            groups.append(group)

    return groups


def _merge_insight(current: Insight, candidate: Insight) -> None:
    """Fold a re-derived insight into the one already holding its (category, title)."""
    current.content = candidate.content
    current.confidence = max(current.confidence, candidate.confidence)
    current.source_memories = list(dict.fromkeys(current.source_memories + candidate.source_memories))
    current.related_entities = list(dict.fromkeys(current.related_entities + candidate.related_entities))
    current.is_highlighted = current.is_highlighted or candidate.is_highlighted


class ConsolidationService:
    """Scheduled maintenance for one MemoryManagementService."""

    def __init__(self, memories):
        self.memories = memories
        self.settings: MemoryConfig = memories.settings
        self._last_run: Dict[str, datetime] = {}
        self._user_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def latest_process(self, user_id: str) -> Optional[ConsolidationProcess]:
        try:
            processes = self.memories.store.find_all_by_filter(ConsolidationProcess, {'user_id': user_id})
        except RecordStoreError as e:
            logger.warning(f'Could not load consolidation history for user {user_id}: {e}')
            return None
        return max(processes, key=lambda p: p.start_time) if processes else None

    def last_run(self, user_id: str) -> Optional[datetime]:
        last = self._last_run.get(user_id)
        if last is None:
            latest = self.latest_process(user_id)
            if latest is not None:
                last = latest.end_time or latest.start_time
                self._last_run[user_id] = last
        return last

    def is_due(self, user_id: str, now: Optional[datetime] = None) -> bool:
        last = self.last_run(user_id)
        if last is None:
            return True
        return (now or utc_now()) - last >= timedelta(hours=self.settings.consolidation_interval_hours)

    def consolidate(self, user_id: str, force: bool = False) -> Optional[ConsolidationProcess]:
        """Run one consolidation for a user unless it is not yet due or already running.

        Args:
            user_id: User to consolidate
            force: Ignore the configured interval

        Returns:
            The completed (or failed) process record, or None when skipped

        Raises:
            ConsolidationError: If the user's memories cannot be loaded
        """
        lock = self._user_lock(user_id)
        if not lock.acquire(blocking=False):
            logger.info(f'Consolidation already running for user {user_id}, skipping')
            return None

        try:
            if not force and not self.is_due(user_id):
                logger.debug(f'Consolidation for user {user_id} not due yet')
                return None
            return self._run(user_id)
        finally:
            lock.release()

    def _run(self, user_id: str) -> ConsolidationProcess:
        process = ConsolidationProcess(id=new_id(), user_id=user_id)
        process.append_log('Consolidation started')
        self.memories._save(process)
        logger.info(f'Starting memory consolidation for user {user_id}')

        try:
            memories = self.memories.list_memories(user_id)[:self.settings.max_memories_per_consolidation]
        except MemoryManagementError as e:
            process.status = ProcessStatus.FAILED.value
            process.end_time = utc_now()
            process.append_log(f'Failed to load memories: {e}')
            self._last_run[user_id] = process.end_time
            self._save_process(process)
            logger.error(f'Consolidation failed for user {user_id}: {e}')
            raise ConsolidationError(f'Consolidation failed: {e}')

        now = utc_now()
        process.items_processed = len(memories)

        # Phase 1: decay
        decayed = 0
        for memory in memories:
            try:
                new_strength = decayed_strength(memory, now, self.settings.decay_rate)
                if abs(memory.strength - new_strength) > self.settings.strength_epsilon:
                    memory.strength = new_strength
                    self.memories.update_memory(memory)
                    decayed += 1
            except MemoryManagementError as e:
                logger.warning(f'Failed to decay memory {memory.id}: {e}')
        process.items_modified += decayed
        process.append_log(f'Decayed {decayed} of {len(memories)} memories')

        # Phase 2: group recent memories
        recent = [
            m for m in memories
            if days_between(m.created_at, now) <= self.settings.recent_days_threshold and m.source_collection != PATTERN_SOURCE
        ]
        groups = group_related_memories(recent, self.settings)
        process.append_log(f'Found {len(groups)} related groups among {len(recent)} recent memories')

        # Phase 3: connect groups and synthesize patterns
        for group in groups:
            try:
                created, modified = self._link_group(user_id, group)
                process.items_created += created
                process.items_modified += modified
            except MemoryManagementError as e:
                logger.warning(f'Failed to consolidate group of {len(group)} memories: {e}')

        # Phase 4: insights
        if self.settings.enable_insight_generation:
            try:
                insights, created = self._generate_insights(user_id, groups)
                process.items_created += created
                process.items_modified += len(insights) - created
                process.append_log(f'Generated {len(insights)} insights ({created} new)')
            except MemoryManagementError as e:
                logger.warning(f'Insight generation failed for user {user_id}: {e}')
                process.append_log(f'Insight generation failed: {e}')

        # Phase 5: record totals
        process.status = ProcessStatus.COMPLETED.value
        process.end_time = utc_now()
        process.append_log(f'Completed: processed={process.items_processed} created={process.items_created} '
                           f'modified={process.items_modified}')
        self._last_run[user_id] = process.end_time
        self._save_process(process)

        logger.info(f'Completed memory consolidation for user {user_id}: {process.items_created} created, '
                    f'{process.items_modified} modified')
        return process

    def _save_process(self, process: ConsolidationProcess) -> None:
        try:
            self.memories._save(process)
        except MemoryManagementError as e:
            logger.error(f'Failed to record consolidation process {process.id}: {e}')

    def _link_group(self, user_id: str, group: List[Memory]):
        created = 0
        modified = 0

        for i, first in enumerate(group):
            for second in group[i + 1:]:
                _, is_new = self.memories.upsert_connection(user_id, NodeType.MEMORY.value, first.id, NodeType.MEMORY.value, second.id,
                                                            'related_to', 0.7)
                created += 1 if is_new else 0

        if len(group) < MIN_PATTERN_GROUP_SIZE:
            return created, modified

        tags = common_tags(group, self.settings.generic_tags)
        if not tags:
            return created, modified

        excerpts = [extract_excerpt(m.content, 50) for m in group[:3]]
        pattern_input = MemoryInput(user_id=user_id,
                                    title=f'Pattern: {", ".join(tags)}',
                                    content='A pattern has been identified across multiple memories. '
                                    f'Examples include: {"; ".join(excerpts)}',
                                    memory_type=MemoryType.SEMANTIC.value,
                                    tags=['pattern'] + tags,
                                    source_collection=PATTERN_SOURCE,
                                    source_record_ids=[m.id for m in group],
                                    importance=0.7)
        pattern, is_new = self.memories.create_or_update_memory(pattern_input, update_text='')
        if is_new:
            created += 1
        else:
            modified += 1

        for member in group:
            if member.id == pattern.id:
                continue
            _, is_new = self.memories.upsert_connection(user_id, NodeType.MEMORY.value, member.id, NodeType.MEMORY.value, pattern.id,
                                                        'part_of_pattern', 0.75)
            created += 1 if is_new else 0

        logger.debug(f'Pattern memory {pattern.id} covers {len(group)} memories ({", ".join(tags)})')
        return created, modified

    # Insight generation

    def generate_insights(self, user_id: str, groups: Optional[List[List[Memory]]] = None) -> List[Insight]:
        """Derive insights from the user's recent memories and persist them.

        Sources, in order, until the per-run cap is reached: frequently connected
        entities, groups of related memories, recurring topics and individual
        high-importance memories. An insight with the same category and title as
        an existing one refreshes it instead of adding a duplicate.

        Args:
            user_id: User ID for isolation
            groups: Related-memory groups from the current consolidation (computed when None)

        Returns:
            List of persisted insights, one per (category, title)
        """
        insights, _ = self._generate_insights(user_id, groups)
        return insights

    def _generate_insights(self, user_id: str, groups: Optional[List[List[Memory]]]) -> Tuple[List[Insight], int]:
        memories = self.memories.list_memories(user_id)[:INSIGHT_MEMORY_WINDOW]
        if len(memories) < self.settings.min_insight_memories:
            logger.debug(f'Not enough memories for insights for user {user_id}: {len(memories)}')
            return [], 0

        cap = self.settings.max_insights_per_consolidation
        if groups is None:
            groups = group_related_memories([m for m in memories if m.source_collection != PATTERN_SOURCE], self.settings)

        candidates: Dict[Tuple[str, str], Insight] = {}
        for source in (self._entity_insights, self._cluster_insights, self._topic_insights, self._highlight_insights):
            if len(candidates) >= cap:
                break
            for insight in source(user_id, memories, groups):
                if len(candidates) >= cap:
                    break
                key = (insight.category, insight.title)
                if key in candidates:
                    _merge_insight(candidates[key], insight)
                else:
                    candidates[key] = insight

        return self._persist_insights(user_id, list(candidates.values()))

    def _entity_insights(self, user_id: str, memories: List[Memory], groups) -> List[Insight]:
        memory_ids = {m.id for m in memories}
        linked: Dict[str, List[str]] = {}
        endpoints = {NodeType.MEMORY.value, NodeType.ENTITY.value}
        for connection in self.memories.get_user_connections(user_id):
            if {connection.source_type, connection.target_type} != endpoints:
                continue
            if connection.source_type == NodeType.MEMORY.value:
                memory_id = connection.source_id
            else:
                memory_id = connection.target_id
            _, entity_id = connection.other_end(NodeType.MEMORY.value, memory_id)
            if memory_id in memory_ids and memory_id not in linked.setdefault(entity_id, []):
                linked[entity_id].append(memory_id)

        frequent = [(entity_id, ids) for entity_id, ids in linked.items() if len(ids) >= self.settings.concept_frequency_threshold]
        frequent.sort(key=lambda item: len(item[1]), reverse=True)

        insights = []
        for entity_id, ids in frequent[:TOP_ENTITY_INSIGHTS]:
            entity = self.memories.entities.get_entity(user_id, entity_id)
            if entity is None:
                continue
            template = ENTITY_INSIGHT_TEXT.get(entity.entity_type, '{name} appears frequently in your memories and might be significant.')
            insights.append(
                Insight(id=new_id(),
                        user_id=user_id,
                        title=f'About {entity.name}',
                        content=template.format(name=entity.name),
                        category=InsightCategory.ENTITY_SUMMARY.value,
                        confidence=0.8,
                        source_memories=ids,
                        related_entities=[entity.id]))
        return insights

    def _cluster_insights(self, user_id: str, memories: List[Memory], groups) -> List[Insight]:
        insights = []
        for group in groups:
            if len(group) < MIN_PATTERN_GROUP_SIZE:
                continue

            type_counts: Dict[str, int] = {}
            for memory in group:
                type_counts[memory.memory_type] = type_counts.get(memory.memory_type, 0) + 1
            dominant = max(type_counts, key=type_counts.get)

            if type_counts[dominant] > len(group) / 2:
                category = InsightCategory.TEMPORAL_PATTERN.value
                content = CLUSTER_INSIGHT_TEXT.get(dominant, MIXED_CLUSTER_TEXT)
            else:
                category = InsightCategory.THEMATIC_PATTERN.value
                content = MIXED_CLUSTER_TEXT

            tags = common_tags(group, self.settings.generic_tags)
            theme = ', '.join(tags[:3]) if tags else group[0].title
            insights.append(
                Insight(id=new_id(),
                        user_id=user_id,
                        title=f'Pattern Found: {theme}',
                        content=content,
                        category=category,
                        confidence=0.7,
                        source_memories=[m.id for m in group]))
        return insights

    def _topic_insights(self, user_id: str, memories: List[Memory], groups) -> List[Insight]:
        topics: Dict[str, List[str]] = {}
        for memory in memories:
            for tag in memory.tags:
                if tag == 'life_balance' or '_' in tag or tag in self.settings.generic_tags:
                    continue
                topics.setdefault(tag, []).append(memory.id)

        insights = []
        for topic in sorted(topics, key=lambda t: (-len(topics[t]), t)):
            ids = topics[topic]
            if len(ids) < 3:
                continue
            insights.append(
                Insight(id=new_id(),
                        user_id=user_id,
                        title=f'Interest in {topic[:1].upper()}{topic[1:]}',
                        content=f"You have been recording memories related to '{topic}' frequently. "
                        'This may indicate a current interest or focus area.',
                        category=InsightCategory.TOPIC_TREND.value,
                        confidence=0.75,
                        source_memories=ids))
        return insights

    def _highlight_insights(self, user_id: str, memories: List[Memory], groups) -> List[Insight]:
        insights = []
        for memory in memories:
            if memory.importance <= self.settings.highlight_importance_threshold:
                continue
            insights.append(
                Insight(id=new_id(),
                        user_id=user_id,
                        title=f'Highlight: {memory.title}',
                        content=f"This memory about '{memory.title}' seems particularly important and might be worth revisiting.",
                        category=InsightCategory.HIGHLIGHT.value,
                        confidence=0.65,
                        source_memories=[memory.id],
                        is_highlighted=True))
        return insights

    def _persist_insights(self, user_id: str, candidates: List[Insight]) -> Tuple[List[Insight], int]:
        """Save candidates with distinct (category, title) keys; returns the insights and how many were new."""
        existing = {(i.category, i.title): i for i in self.memories.get_insights(user_id, limit=0)}

        persisted = []
        created = 0
        for candidate in candidates:
            current = existing.get((candidate.category, candidate.title))
            if current is not None:
                _merge_insight(current, candidate)
                persisted.append(self.memories.create_insight(current))
            else:
                persisted.append(self.memories.create_insight(candidate))
                created += 1

        logger.debug(f'Persisted {len(persisted)} insights for user {user_id}, {created} new')
        return persisted, created
