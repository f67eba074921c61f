"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .config import AppConfig, config
from .logging_config import get_logger
from .record_store import RecordStore, create_record_store

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None, store: Optional[RecordStore] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config, store)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None, store: Optional[RecordStore] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    The remote embedding model is only called when external embedding calls are
    enabled; otherwise the local fallback is reported as the active provider.

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status = {}

    # Check embedding provider
    if app_config.embedding.use_external_api:
        try:
            embed = BedrockEmbed(app_config.bedrock_embed)
            health_status['embedding'] = {
                'healthy': embed.health_check(),
                'service': 'Amazon Bedrock Embed',
                'model': app_config.bedrock_embed.model_id
            }
        except Exception as e:
            health_status['embedding'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}
    else:
        health_status['embedding'] = {
            'healthy': True,
            'service': 'Local hashed term-frequency embedding',
            'dimension': app_config.embedding.dimension
        }

    # Check record store
    try:
        record_store = store if store is not None else create_record_store(app_config)
        health_status['record_store'] = {
            'healthy': record_store.health_check(),
            'service': type(record_store).__name__,
            'backend': app_config.store_backend
        }
    except Exception as e:
        health_status['record_store'] = {'healthy': False, 'backend': app_config.store_backend, 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None, store: Optional[RecordStore] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    return {
        'service_name': 'MemEngine',
        'version': '1.0.0',
        'configuration': {
            'environment': app_config.environment,
            'store_backend': app_config.store_backend,
            'embedding_external_api': app_config.embedding.use_external_api,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'embedding_dimension': app_config.embedding.dimension,
            'decay_rate': app_config.memory.decay_rate,
            'consolidation_interval_hours': app_config.memory.consolidation_interval_hours,
            'aws_region': app_config.bedrock_embed.region
        },
        'health_status': get_health_status(app_config, store)
    }
