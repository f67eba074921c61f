"""
Configuration management for AWS services, persistence and memory engine settings.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    endpoint_url: str = ''
    connect_timeout: int = 10
    read_timeout: int = 10


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider adapter."""
    dimension: int
    use_external_api: bool
    use_fallback: bool
    tokens_per_minute: int
    max_cache_entries: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    service: str
    use_ssl: bool
    use_aws_auth: bool
    max_results: int


@dataclass
class EntityConfig:
    """Configuration for entity recognition."""
    name_length_ratio: float
    max_edit_distance_ratio: float
    min_name_length: int
    concept_min_occurrences: int
    concept_frequency_threshold: int
    concept_min_word_length: int


@dataclass
class MemoryConfig:
    """Configuration for memory management."""
    decay_rate: float
    min_strength_threshold: float
    archive_strength_floor: float
    strength_epsilon: float
    max_search_results: int
    min_retrieval_score: float
    recent_days_threshold: int
    min_similarity_threshold: float
    min_cluster_embeddings: int
    enable_insight_generation: bool
    max_insights_per_consolidation: int
    min_insight_memories: int
    concept_frequency_threshold: int
    highlight_importance_threshold: float
    consolidation_interval_hours: int
    max_memories_per_consolidation: int
    enable_semantic_clustering: bool
    generic_tags: List[str] = field(default_factory=list)


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    store_backend: str
    bedrock_embed: BedrockEmbedConfig
    embedding: EmbeddingConfig
    opensearch: OpenSearchConfig
    entity: EntityConfig
    memory: MemoryConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              endpoint_url=os.getenv('BEDROCK_EMBED_ENDPOINT_URL', ''),
                                              connect_timeout=int(os.getenv('BEDROCK_EMBED_CONNECT_TIMEOUT', '10')),
                                              read_timeout=int(os.getenv('BEDROCK_EMBED_READ_TIMEOUT', '10')))

    # Embedding adapter configuration
    embedding_config = EmbeddingConfig(dimension=int(os.getenv('EMBEDDING_DIMENSION', '1024')),
                                       use_external_api=_env_bool('EMBEDDING_USE_EXTERNAL_API', 'false'),
                                       use_fallback=_env_bool('EMBEDDING_USE_FALLBACK', 'true'),
                                       tokens_per_minute=int(os.getenv('EMBEDDING_TOKENS_PER_MINUTE', '150000')),
                                       max_cache_entries=int(os.getenv('EMBEDDING_MAX_CACHE_ENTRIES', '10000')))

    # Persistence configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'memengine'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'true'),
                                         use_aws_auth=_env_bool('OPENSEARCH_USE_AWS_AUTH', 'true'),
                                         max_results=int(os.getenv('OPENSEARCH_MAX_RESULTS', '10000')))

    # Entity recognition configuration
    entity_config = EntityConfig(name_length_ratio=float(os.getenv('ENTITY_NAME_LENGTH_RATIO', '0.7')),
                                 max_edit_distance_ratio=float(os.getenv('ENTITY_MAX_EDIT_DISTANCE_RATIO', '0.3')),
                                 min_name_length=int(os.getenv('ENTITY_MIN_NAME_LENGTH', '3')),
                                 concept_min_occurrences=int(os.getenv('ENTITY_CONCEPT_MIN_OCCURRENCES', '2')),
                                 concept_frequency_threshold=int(os.getenv('ENTITY_CONCEPT_FREQUENCY_THRESHOLD', '3')),
                                 concept_min_word_length=int(os.getenv('ENTITY_CONCEPT_MIN_WORD_LENGTH', '4')))

    # Memory configuration
    generic_tags = [t.strip() for t in os.getenv('MEMORY_GENERIC_TAGS', 'daily_log,app_usage').split(',') if t.strip()]
    memory_config = MemoryConfig(decay_rate=float(os.getenv('MEMORY_DECAY_RATE', '0.05')),
                                 min_strength_threshold=float(os.getenv('MEMORY_MIN_STRENGTH_THRESHOLD', '0.2')),
                                 archive_strength_floor=float(os.getenv('MEMORY_ARCHIVE_STRENGTH_FLOOR', '0.05')),
                                 strength_epsilon=float(os.getenv('MEMORY_STRENGTH_EPSILON', '0.01')),
                                 max_search_results=int(os.getenv('MEMORY_MAX_SEARCH_RESULTS', '50')),
                                 min_retrieval_score=float(os.getenv('MEMORY_MIN_RETRIEVAL_SCORE', '0.5')),
                                 recent_days_threshold=int(os.getenv('MEMORY_RECENT_DAYS_THRESHOLD', '3')),
                                 min_similarity_threshold=float(os.getenv('MEMORY_MIN_SIMILARITY_THRESHOLD', '0.7')),
                                 min_cluster_embeddings=int(os.getenv('MEMORY_MIN_CLUSTER_EMBEDDINGS', '5')),
                                 enable_insight_generation=_env_bool('MEMORY_ENABLE_INSIGHT_GENERATION', 'true'),
                                 max_insights_per_consolidation=int(os.getenv('MEMORY_MAX_INSIGHTS_PER_CONSOLIDATION', '5')),
                                 min_insight_memories=int(os.getenv('MEMORY_MIN_INSIGHT_MEMORIES', '5')),
                                 concept_frequency_threshold=int(os.getenv('MEMORY_CONCEPT_FREQUENCY_THRESHOLD', '3')),
                                 highlight_importance_threshold=float(os.getenv('MEMORY_HIGHLIGHT_IMPORTANCE_THRESHOLD', '0.8')),
                                 consolidation_interval_hours=int(os.getenv('MEMORY_CONSOLIDATION_INTERVAL_HOURS', '24')),
                                 max_memories_per_consolidation=int(os.getenv('MEMORY_MAX_MEMORIES_PER_CONSOLIDATION', '500')),
                                 enable_semantic_clustering=_env_bool('MEMORY_ENABLE_SEMANTIC_CLUSTERING', 'true'),
                                 generic_tags=generic_tags)

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     store_backend=os.getenv('STORE_BACKEND', 'opensearch'),
                     bedrock_embed=bedrock_embed_config,
                     embedding=embedding_config,
                     opensearch=opensearch_config,
                     entity=entity_config,
                     memory=memory_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
